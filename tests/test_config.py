import pytest

from rxportal.config import get_settings


def test_defaults(monkeypatch):
    for name in (
        'DIGITALRX_BASE_URL',
        'DIGITALRX_TIMEOUT',
        'REFILL_LOOKAHEAD_DAYS',
        'STATUS_POLL_INTERVAL',
        'ADMIN_PAGE_SIZE',
        'LOG_LEVEL',
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('RXPORTAL_TIMEZONE', 'America/Chicago')

    settings = get_settings()

    assert settings.digitalrx_base_url == 'https://www.dbswebserver.com/DBSRestApi/API'
    assert settings.digitalrx_timeout == 10.0
    assert settings.refill_lookahead_days == 2
    assert settings.status_poll_interval == 30.0
    assert settings.admin_page_size == 10
    assert settings.log_level == 'INFO'
    assert settings.timezone.key == 'America/Chicago'


def test_overrides(monkeypatch):
    monkeypatch.setenv('REFILL_LOOKAHEAD_DAYS', '5')
    monkeypatch.setenv('DIGITALRX_TIMEOUT', '2.5')
    monkeypatch.setenv('LOG_LEVEL', 'debug')

    settings = get_settings()

    assert settings.refill_lookahead_days == 5
    assert settings.digitalrx_timeout == 2.5
    assert settings.log_level == 'DEBUG'


@pytest.mark.parametrize('name, value', [('REFILL_LOOKAHEAD_DAYS', 'two'), ('DIGITALRX_TIMEOUT', 'soon')])
def test_invalid_numbers_fail_loudly(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        get_settings()
