import asyncio

import pytest

from rxportal.client.api import ApiError
from rxportal.client.notifications import Notifier
from rxportal.client.refill_board import (
    INVALID_PARAMETERS_MESSAGE,
    RefillBoard,
    StatusPoller,
    submission_error_message,
)
from rxportal.digitalrx import MISSING_QUEUE_ID_ERROR


class _DummyApi:
    """In-memory stand-in for :class:`PortalApiClient`."""

    def __init__(self):
        self.refills = []
        self.scheduled = []
        self.batch = {'success': True, 'statuses': []}
        self.errors = {}
        self.calls = []
        self.batch_gate = None

    def _maybe_fail(self, name):
        self.calls.append(name)
        error = self.errors.get(name)
        if error is not None:
            raise error

    async def list_refills(self, search=''):
        self._maybe_fail('list_refills')
        return {'success': True, 'refills': list(self.refills)}

    async def list_scheduled(self, search=''):
        self._maybe_fail('list_scheduled')
        return {'success': True, 'scheduled': list(self.scheduled)}

    async def status_batch(self, *, user_id=None, prescription_ids=None):
        self._maybe_fail('status_batch')
        if self.batch_gate is not None:
            await self.batch_gate.wait()
        return self.batch

    async def skip_refill(self, prescription_id):
        self._maybe_fail('skip_refill')
        return {'success': True}

    async def cancel_refills(self, prescription_id):
        self._maybe_fail('cancel_refills')
        return {'success': True}

    async def submit_to_pharmacy(self, prescription_id):
        self._maybe_fail('submit_to_pharmacy')
        return {'success': True, 'queue_id': 'Q-1'}


def _refill_row(refill_id, **extra):
    row = {
        'id': refill_id,
        'parent_prescription_id': 'parent-1',
        'prescription_type': 'refill',
        'status': 'submitted',
        'refill_number': 1,
        'patient_name': 'Sam Taylor',
        'medication': 'Semaglutide',
    }
    row.update(extra)
    return row


@pytest.fixture
def api():
    return _DummyApi()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def board(api, notifier):
    return RefillBoard(api, notifier, user_id='provider-1')


@pytest.mark.asyncio
async def test_load_populates_tuples(board, api):
    api.refills = [_refill_row('r1', refill_number=2)]
    api.scheduled = [{'id': 'p1', 'prescription_type': 'prescription', 'day': 'Today'}]

    assert await board.load() is True

    assert isinstance(board.refills, tuple)
    assert board.refills[0].id == 'r1'
    assert board.refill_numbers == {'r1': 2}
    assert board.scheduled[0].record.id == 'p1'
    assert board.scheduled[0].day == 'Today'


@pytest.mark.asyncio
async def test_refresh_statuses_replaces_list(board, api):
    api.refills = [_refill_row('r1'), _refill_row('r2')]
    await board.load_refills()
    before = board.refills
    api.batch = {
        'success': True,
        'statuses': [
            {'prescription_id': 'r1', 'success': True, 'status': {'DeliveredDate': 'x', 'TrackingNumber': 'T'}},
            {'prescription_id': 'r2', 'success': False, 'error': 'No queue_id available'},
        ],
    }

    assert await board.refresh_statuses() is True

    assert board.refills is not before
    assert before[0].status == 'submitted'
    assert board.refills[0].status == 'Delivered'
    assert board.refills[0].tracking_number == 'T'
    assert board.refills[1] is before[1]


@pytest.mark.asyncio
async def test_refresh_statuses_failures_are_silent(board, api, notifier):
    api.refills = [_refill_row('r1')]
    await board.load_refills()
    before = board.refills

    api.errors['status_batch'] = ApiError(500, 'boom')
    assert await board.refresh_statuses() is False
    api.errors.clear()
    api.batch = {'success': False}
    assert await board.refresh_statuses() is False

    assert board.refills is before
    assert notifier.items == []


@pytest.mark.asyncio
async def test_refresh_skipped_when_list_empty(board, api):
    assert await board.refresh_statuses() is False
    assert 'status_batch' not in api.calls


@pytest.mark.asyncio
async def test_skip_success_reloads_scheduled(board, api, notifier):
    assert await board.skip('p1') is True
    assert notifier.last.level == 'success'
    assert notifier.last.message == 'Refill skipped, next refill moved forward'
    assert api.calls[-1] == 'list_scheduled'


@pytest.mark.asyncio
@pytest.mark.parametrize(
    'error, message',
    [
        (ApiError(404, 'Original prescription not found'), 'Original prescription not found'),
        (ApiError(409, 'No refill is scheduled for this prescription'), 'No refill is scheduled for this prescription'),
        (ApiError(500, 'Internal'), 'Failed to skip refill'),
        (ApiError(None, 'Request failed'), 'Failed to skip refill'),
    ],
)
async def test_skip_failure_notifies(board, api, notifier, error, message):
    api.scheduled = [{'id': 'p1', 'day': 'Today'}]
    await board.load_scheduled()
    before = board.scheduled
    api.errors['skip_refill'] = error

    assert await board.skip('p1') is False

    assert notifier.last.level == 'error'
    assert notifier.last.message == message
    assert board.scheduled is before


@pytest.mark.asyncio
async def test_cancel_all(board, api, notifier):
    assert await board.cancel_all('p1') is True
    assert notifier.last.message == 'All future refills have been cancelled'

    api.errors['cancel_refills'] = ApiError(500, 'x')
    assert await board.cancel_all('p1') is False
    assert notifier.last.message == 'Failed to cancel refills'


@pytest.mark.asyncio
async def test_submit_to_pharmacy_success(board, api, notifier):
    assert await board.submit_to_pharmacy('r1') == 'Q-1'
    assert notifier.last.message == 'Refill submitted to pharmacy successfully'
    assert api.calls[-1] == 'list_refills'


@pytest.mark.asyncio
async def test_submit_to_pharmacy_translates_invalid_parameters(board, api, notifier):
    api.errors['submit_to_pharmacy'] = ApiError(
        500,
        MISSING_QUEUE_ID_ERROR,
        {'success': False, 'error': MISSING_QUEUE_ID_ERROR, 'details': {'Error': 'Invalid Parameters: Npi'}},
    )

    assert await board.submit_to_pharmacy('r1') is None
    assert notifier.last.message == INVALID_PARAMETERS_MESSAGE


@pytest.mark.parametrize(
    'payload, message',
    [
        ({'error': MISSING_QUEUE_ID_ERROR, 'details': {'Error': 'Store closed'}}, MISSING_QUEUE_ID_ERROR),
        ({'error': 'Payment not completed'}, 'Payment not completed'),
        ({'error': {'message': 'Provider not found'}}, 'Provider not found'),
        ({'error': MISSING_QUEUE_ID_ERROR, 'details': 'Invalid Parameters'}, MISSING_QUEUE_ID_ERROR),
        ({}, 'Failed to submit to pharmacy'),
        (None, 'Failed to submit to pharmacy'),
    ],
)
def test_submission_error_message(payload, message):
    assert submission_error_message(payload) == message


@pytest.mark.asyncio
async def test_poller_polls_immediately_when_list_fills(board, api):
    poller = StatusPoller(board, interval=3600)
    poller.start()
    try:
        api.refills = [_refill_row('r1')]
        api.batch = {
            'success': True,
            'statuses': [{'prescription_id': 'r1', 'success': True, 'status': {'BillingStatus': 'ok'}}],
        }
        await board.load_refills()
        for _ in range(5):
            await asyncio.sleep(0)
        assert api.calls.count('status_batch') == 1
        assert board.refills[0].status == 'Billing'
    finally:
        await poller.stop()


@pytest.mark.asyncio
async def test_poller_interval_and_stop(board, api):
    api.refills = [_refill_row('r1')]
    await board.load_refills()
    poller = StatusPoller(board, interval=0.01)
    poller.start()
    await asyncio.sleep(0.1)
    await poller.stop()
    polls = api.calls.count('status_batch')
    assert polls >= 2

    await asyncio.sleep(0.05)
    assert api.calls.count('status_batch') == polls
    assert poller.running is False


@pytest.mark.asyncio
async def test_poller_skips_while_in_flight_and_drops_late_results(board, api):
    api.refills = [_refill_row('r1')]
    await board.load_refills()
    before = board.refills
    api.batch_gate = asyncio.Event()
    api.batch = {
        'success': True,
        'statuses': [{'prescription_id': 'r1', 'success': True, 'status': {'DeliveredDate': 'x'}}],
    }
    poller = StatusPoller(board, interval=3600)
    poller.start()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert poller.in_flight

    assert await poller.poll_now() is False
    assert api.calls.count('status_batch') == 1

    await poller.stop()
    api.batch_gate.set()
    for _ in range(5):
        await asyncio.sleep(0)

    assert board.refills is before
    assert not poller.in_flight
