"""
Tests for the challenge poller.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from ciam_shared.exceptions import TransportError
from ciam_shared.models import Pending, Success, Failure, FailureKind, utc_now
from ciam_client.challenge_poller import ChallengePoller

from conftest import make_credential


class Recorder:
    """Collects poller callbacks and signals when a terminal outcome arrives."""

    def __init__(self):
        self.updates = []
        self.terminal = []
        self.done = asyncio.Event()

    def on_update(self, transaction_id, remaining, pending):
        self.updates.append((transaction_id, remaining))

    def on_terminal(self, transaction_id, outcome):
        self.terminal.append((transaction_id, outcome))
        self.done.set()


def make_poller(fetch, recorder, now=None, sleep=None):
    return ChallengePoller(
        fetch=fetch,
        on_update=recorder.on_update,
        on_terminal=recorder.on_terminal,
        clock=(lambda: now) if now else utc_now,
        sleep=sleep or AsyncMock()
    )


class TestChallengePoller:
    """Tests for ChallengePoller."""

    @pytest.mark.asyncio
    async def test_countdown_then_approval(self):
        """Two pending ticks report the server countdown, the third tick is terminal."""
        server_now = utc_now()
        expires_at = server_now + timedelta(seconds=5)
        approved = Success(make_credential("carol"))
        fetch = AsyncMock(side_effect=[
            Pending(expires_at=expires_at, server_time=server_now),
            Pending(expires_at=expires_at, server_time=server_now + timedelta(seconds=1)),
            approved,
        ])
        recorder = Recorder()
        poller = make_poller(fetch, recorder)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert fetch.await_count == 3
        assert recorder.updates == [("tx-push", 5.0), ("tx-push", 4.0)]
        assert recorder.terminal == [("tx-push", approved)]
        assert poller.ticks == 3
        assert not poller.active

    @pytest.mark.asyncio
    async def test_local_clock_used_without_server_time(self):
        now = utc_now()
        fetch = AsyncMock(side_effect=[
            Pending(expires_at=now + timedelta(seconds=30)),
            Failure(FailureKind.CHALLENGE_REJECTED),
        ])
        recorder = Recorder()
        poller = make_poller(fetch, recorder, now=now)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert recorder.updates == [("tx-push", 30.0)]
        assert recorder.terminal[0][1].kind is FailureKind.CHALLENGE_REJECTED

    @pytest.mark.asyncio
    async def test_expiry_reported_as_failure(self):
        now = utc_now()
        fetch = AsyncMock(return_value=Pending(expires_at=now - timedelta(seconds=1), server_time=now))
        recorder = Recorder()
        poller = make_poller(fetch, recorder)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert recorder.updates == []
        assert recorder.terminal[0][1].kind is FailureKind.CHALLENGE_EXPIRED
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_server_retry_after_sets_next_delay(self):
        sleep = AsyncMock()
        fetch = AsyncMock(side_effect=[
            Pending(retry_after=7.5),
            Success(make_credential()),
        ])
        recorder = Recorder()
        poller = make_poller(fetch, recorder, sleep=sleep)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 7.5]

    @pytest.mark.asyncio
    async def test_transport_error_skips_tick(self):
        fetch = AsyncMock(side_effect=[
            TransportError("Timeout"),
            Success(make_credential()),
        ])
        recorder = Recorder()
        poller = make_poller(fetch, recorder)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert fetch.await_count == 2
        assert len(recorder.terminal) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_terminal(self):
        fetch = AsyncMock(side_effect=RuntimeError("boom"))
        recorder = Recorder()
        poller = make_poller(fetch, recorder)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert recorder.terminal[0][1].kind is FailureKind.SERVICE_ERROR
        assert not poller.active

    @pytest.mark.asyncio
    async def test_stop_discards_inflight_result(self):
        release = asyncio.Event()

        async def fetch(transaction_id):
            await release.wait()
            return Success(make_credential())

        recorder = Recorder()
        poller = make_poller(fetch, recorder)

        poller.start("tx-push", interval=2.0)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        poller.stop()
        release.set()
        await asyncio.sleep(0.01)

        assert recorder.terminal == []
        assert not poller.active
        assert poller.transaction_id is None

    @pytest.mark.asyncio
    async def test_restart_same_transaction_is_noop(self):
        fetch = AsyncMock(return_value=Pending())
        recorder = Recorder()
        poller = make_poller(fetch, recorder, sleep=asyncio.sleep)

        poller.start("tx-push", interval=60)
        task = poller._task
        poller.start("tx-push", interval=60)
        assert poller._task is task

        poller.start("tx-other", interval=60)
        assert poller._task is not task
        assert poller.transaction_id == "tx-other"

        poller.stop()
        await asyncio.sleep(0)
        assert task.cancelled() or task.done()

    @pytest.mark.asyncio
    async def test_gone_transaction_ends_polling(self):
        """A 410 for the status check is terminal on the first tick."""
        fetch = AsyncMock(side_effect=TransportError("HTTP 410", retryable=False, status=410))
        recorder = Recorder()
        poller = make_poller(fetch, recorder)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert fetch.await_count == 1
        assert recorder.terminal[0][1].kind is FailureKind.TRANSACTION_NOT_FOUND
        assert not poller.active

    @pytest.mark.asyncio
    async def test_rejected_status_request_is_service_error(self):
        fetch = AsyncMock(side_effect=TransportError("HTTP 400", retryable=False, status=400))
        recorder = Recorder()
        poller = make_poller(fetch, recorder)

        poller.start("tx-push", interval=2.0)
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert fetch.await_count == 1
        assert recorder.terminal[0][1].kind is FailureKind.SERVICE_ERROR

    @pytest.mark.asyncio
    async def test_initiation_expiry_enforced_while_service_unreachable(self):
        """The expiry given at start ends polling even if no status ever arrives."""
        now = utc_now()
        fetch = AsyncMock(side_effect=TransportError("Timeout"))
        recorder = Recorder()
        poller = make_poller(fetch, recorder, now=now)

        poller.start("tx-push", interval=2.0, expires_at=now - timedelta(seconds=1))
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert fetch.await_count == 1
        assert recorder.terminal[0][1].kind is FailureKind.CHALLENGE_EXPIRED
        assert not poller.active

    @pytest.mark.asyncio
    async def test_transient_errors_continue_before_expiry(self):
        now = utc_now()
        fetch = AsyncMock(side_effect=[
            TransportError("Timeout"),
            TransportError("Connection reset"),
            Success(make_credential()),
        ])
        recorder = Recorder()
        poller = make_poller(fetch, recorder, now=now)

        poller.start("tx-push", interval=2.0, expires_at=now + timedelta(seconds=60))
        await asyncio.wait_for(recorder.done.wait(), 1.0)

        assert fetch.await_count == 3
        assert isinstance(recorder.terminal[0][1], Success)
