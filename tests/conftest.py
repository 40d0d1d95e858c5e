import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Generator, Iterator

import pytest
import sqlalchemy as sa
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the rxportal package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('JWT_SECRET', 'test-jwt-secret')
os.environ.setdefault('RXPORTAL_DATA_DIR', tempfile.mkdtemp(prefix='rxportal-tests-'))
os.environ.setdefault('PHARMACY_KEY_ENCRYPTION_KEY', Fernet.generate_key().decode())
os.environ.setdefault('REFILL_CHECK_INTERVAL', '0')
os.environ.setdefault('RXPORTAL_TIMEZONE', 'UTC')

from rxportal.auth import create_access_token  # noqa: E402
from rxportal.config import get_settings  # noqa: E402
from rxportal.db import models  # noqa: E402
from rxportal.db.session import configure_engine, get_session  # noqa: E402
from rxportal.encryption import encrypt_api_key, reset_cipher  # noqa: E402

PROVIDER_ID = 'provider-1'
OTHER_PROVIDER_ID = 'provider-2'
ADMIN_ID = 'admin-1'
DIGITALRX_URL = 'https://digitalrx.test/API'


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    get_settings.cache_clear()
    reset_cipher()
    yield
    get_settings.cache_clear()
    reset_cipher()


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        return self.session_factory()


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    """Provide an isolated in-memory SQLite database for each test."""

    from rxportal import main

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(engine)
    configure_engine(engine)

    session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )

    def _session_dependency() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    main.app.dependency_overrides[get_session] = _session_dependency
    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        main.app.dependency_overrides.pop(get_session, None)


@pytest.fixture(scope='function')
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    """Yield a SQLAlchemy session tied to the in-memory database."""

    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope='function')
def api_client(in_memory_db: DatabaseContext) -> Iterator[TestClient]:
    """Yield a FastAPI test client bound to the in-memory database."""

    from rxportal import main

    with TestClient(main.app) as client:
        yield client


def auth_header(token: str) -> Dict[str, str]:
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def provider_headers() -> Dict[str, str]:
    return auth_header(create_access_token(PROVIDER_ID, 'provider'))


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return auth_header(create_access_token(ADMIN_ID, 'admin'))


@pytest.fixture
def pharmacy(db_session: Session) -> models.Pharmacy:
    """A pharmacy with an active DigitalRx backend."""

    pharmacy = models.Pharmacy(name='Demo Compounding', primary_color='#0f766e')
    db_session.add(pharmacy)
    db_session.flush()
    db_session.add(
        models.PharmacyBackend(
            pharmacy_id=pharmacy.id,
            api_key_encrypted=encrypt_api_key('secret-key'),
            api_url=DIGITALRX_URL,
            store_id='190190',
        )
    )
    db_session.commit()
    return pharmacy


@pytest.fixture
def patient(db_session: Session) -> models.Patient:
    patient = models.Patient(
        first_name='Sam',
        last_name='Taylor',
        date_of_birth='1985-04-12',
        gender='female',
        physical_address={'street': '9 Elm St', 'city': 'Austin', 'state': 'TX', 'zipCode': '73301'},
    )
    db_session.add(patient)
    db_session.commit()
    return patient


@pytest.fixture
def make_prescription(db_session: Session) -> Callable[..., models.Prescription]:
    """Factory inserting prescriptions with sensible defaults."""

    def _make(**overrides) -> models.Prescription:
        values = {
            'prescriber_id': PROVIDER_ID,
            'prescription_type': models.PrescriptionType.PRESCRIPTION.value,
            'medication': 'Semaglutide',
            'dosage': '0.25mg',
            'status': 'submitted',
            'submitted_at': datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
        }
        values.update(overrides)
        if values.get('parent_prescription_id'):
            values['prescription_type'] = models.PrescriptionType.REFILL.value
        row = models.Prescription(**values)
        db_session.add(row)
        db_session.commit()
        return row

    return _make
