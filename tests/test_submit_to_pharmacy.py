import pytest

from rxportal.db.models import Prescription, Provider
from rxportal.digitalrx import MISSING_QUEUE_ID_ERROR

from conftest import DIGITALRX_URL, PROVIDER_ID

SUBMIT_URL = f'{DIGITALRX_URL}/RxWebRequest'


@pytest.fixture
def provider(db_session):
    provider = Provider(
        user_id=PROVIDER_ID,
        first_name='Dana',
        last_name='Reyes',
        npi_number='1234567890',
        physical_address={'street': '1 Main St', 'city': 'Austin', 'state': 'TX', 'zip': '73301'},
    )
    db_session.add(provider)
    db_session.commit()
    return provider


@pytest.fixture
def paid_prescription(make_prescription, patient, pharmacy):
    return make_prescription(
        patient_id=patient.id,
        pharmacy_id=pharmacy.id,
        status='pending_payment',
        payment_status='paid',
        quantity=2,
    )


def _submit(api_client, headers, prescription_id):
    return api_client.post(f'/api/prescriptions/{prescription_id}/submit-to-pharmacy', headers=headers)


def test_submits_paid_prescription(
    api_client, provider_headers, provider, paid_prescription, requests_mock, db_session
):
    mocked = requests_mock.post(SUBMIT_URL, json={'QueueID': 777})

    resp = _submit(api_client, provider_headers, paid_prescription.id)

    assert resp.status_code == 200
    assert resp.json()['queue_id'] == '777'
    payload = mocked.last_request.json()
    assert payload['StoreID'] == '190190'
    assert payload['Patient']['FirstName'] == 'Sam'
    assert payload['Patient']['Sex'] == 'F'
    assert payload['Patient']['PatientZip'] == '73301'
    assert payload['Doctor']['DoctorNpi'] == '1234567890'
    assert payload['Doctor']['DoctorZip'] == '73301'
    assert payload['RxClaim']['Qty'] == '2'
    assert payload['RxClaim']['DrugName'] == 'Semaglutide'

    db_session.expire_all()
    row = db_session.get(Prescription, paid_prescription.id)
    assert row.queue_id == '777'
    assert row.status == 'submitted'
    assert row.order_progress == 'pharmacy_processing'
    assert row.submitted_to_pharmacy_at is not None


def test_already_submitted_short_circuits(
    api_client, provider_headers, provider, make_prescription, requests_mock
):
    mocked = requests_mock.post(SUBMIT_URL, json={'QueueID': 1})
    rx = make_prescription(status='submitted', queue_id='555', payment_status='paid')

    resp = _submit(api_client, provider_headers, rx.id)

    assert resp.status_code == 200
    assert resp.json()['queue_id'] == '555'
    assert resp.json()['message'] == 'Prescription already submitted'
    assert not mocked.called


def test_unpaid_prescription_is_rejected(api_client, provider_headers, provider, make_prescription):
    rx = make_prescription(status='pending_payment', payment_status='pending')

    resp = _submit(api_client, provider_headers, rx.id)

    assert resp.status_code == 400
    assert resp.json()['error'] == 'Payment not completed'


def test_missing_queue_id_returns_pharmacy_details(
    api_client, provider_headers, provider, paid_prescription, requests_mock
):
    pharmacy_reply = {'Error': 'Invalid Parameters: DoctorNpi'}
    requests_mock.post(SUBMIT_URL, json=pharmacy_reply)

    resp = _submit(api_client, provider_headers, paid_prescription.id)

    assert resp.status_code == 500
    body = resp.json()
    assert body['success'] is False
    assert body['error'] == MISSING_QUEUE_ID_ERROR
    assert body['details'] == pharmacy_reply


def test_pharmacy_http_error(api_client, provider_headers, provider, paid_prescription, requests_mock):
    requests_mock.post(SUBMIT_URL, status_code=503, text='down')

    resp = _submit(api_client, provider_headers, paid_prescription.id)

    assert resp.status_code == 503
    assert resp.json()['error'] == 'DigitalRx API error: 503'


def test_missing_backend_and_missing_records(api_client, provider_headers, provider, make_prescription):
    rx = make_prescription(payment_status='paid', status='pending_payment')

    no_backend = _submit(api_client, provider_headers, rx.id)
    assert no_backend.status_code == 400
    assert no_backend.json()['error'] == 'Pharmacy backend not configured'

    missing = _submit(api_client, provider_headers, 'does-not-exist')
    assert missing.status_code == 404
    assert missing.json()['error'] == 'Prescription not found'


def test_missing_provider_profile(api_client, provider_headers, make_prescription):
    rx = make_prescription(payment_status='paid')
    resp = _submit(api_client, provider_headers, rx.id)
    assert resp.status_code == 404
    assert resp.json()['error'] == 'Provider not found'
