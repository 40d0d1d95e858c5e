import jwt
import pytest
from fastapi import HTTPException

from rxportal.auth import create_access_token, decode_token
from rxportal.config import get_settings

from conftest import auth_header


def test_token_round_trip():
    data = decode_token(create_access_token('provider-1', 'provider'))
    assert data['sub'] == 'provider-1'
    assert data['role'] == 'provider'
    assert data['type'] == 'access'


def test_expired_and_tampered_tokens_rejected():
    expired = create_access_token('provider-1', 'provider', expires_minutes=-1)
    with pytest.raises(HTTPException) as excinfo:
        decode_token(expired)
    assert excinfo.value.status_code == 401

    forged = jwt.encode({'sub': 'provider-1', 'role': 'admin'}, 'wrong-secret', algorithm='HS256')
    with pytest.raises(HTTPException) as excinfo:
        decode_token(forged)
    assert excinfo.value.status_code == 401


def test_missing_subject_rejected():
    settings = get_settings()
    token = jwt.encode({'role': 'admin'}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    with pytest.raises(HTTPException) as excinfo:
        decode_token(token)
    assert excinfo.value.status_code == 401


def test_role_checks():
    provider = create_access_token('provider-1', 'provider')
    admin = create_access_token('admin-1', 'admin')

    with pytest.raises(HTTPException) as excinfo:
        decode_token(provider, required_role='admin')
    assert excinfo.value.status_code == 403
    assert decode_token(admin, required_role='pharmacist')['sub'] == 'admin-1'


def test_routes_require_bearer_token(api_client):
    resp = api_client.get('/api/refills')
    assert resp.status_code == 401
    body = resp.json()
    assert body['success'] is False
    assert body['error']['message'] == 'Not authenticated'

    resp = api_client.get('/api/admin/tags', headers=auth_header(create_access_token('provider-1', 'provider')))
    assert resp.status_code == 403
    assert resp.json()['error']['code'] == 403


def test_health_and_request_id(api_client):
    resp = api_client.get('/health', headers={'X-Request-Id': 'abc123'})
    assert resp.status_code == 200
    assert resp.json()['db'] == 'ok'
    assert resp.headers['X-Request-Id'] == 'abc123'
