"""
Polling loop for out-of-band challenge confirmation.

The countdown shown to the user is recomputed on every tick from the
server-reported expiry and the server's own clock, so drift between client
and server clocks never accumulates.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ciam_shared.exceptions import CiamClientError, TransportError, RetryExhaustedError
from ciam_shared.models import (
    Outcome, Pending, Failure, FailureKind, DEFAULT_FAILURE_MESSAGES, utc_now
)

logger = logging.getLogger(__name__)


FetchStatus = Callable[[str], Awaitable[Outcome]]
UpdateCallback = Callable[[str, Optional[float], Pending], None]
TerminalCallback = Callable[[str, Outcome], None]

# statuses meaning the transaction no longer exists on the server
_GONE_STATUSES = (404, 410)


def _failure(kind: FailureKind) -> Failure:
    return Failure(kind, DEFAULT_FAILURE_MESSAGES[kind])


class ChallengePoller:
    """
    Polls the status of one challenge transaction until it reaches a terminal
    outcome.

    Each tick awaits ``fetch(transaction_id)``. A Pending outcome is reported
    through ``on_update`` with the reconciled remaining seconds; any other
    outcome stops the poller and is reported through ``on_terminal``.
    Retryable transport errors on a tick are logged and the next tick
    proceeds, unless the last known expiry has passed. Any other error ends
    the poll.
    """

    def __init__(
        self,
        fetch: FetchStatus,
        on_update: UpdateCallback,
        on_terminal: TerminalCallback,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._fetch = fetch
        self._on_update = on_update
        self._on_terminal = on_terminal
        self._clock = clock
        self._sleep = sleep

        self._task: Optional[asyncio.Task] = None
        self._transaction_id: Optional[str] = None
        # bumped by every start/stop; a loop only acts while its generation is current
        self._generation = 0
        self.ticks = 0

        # last expiry reported by the server and how far its clock is ahead of ours
        self._expires_at: Optional[datetime] = None
        self._clock_offset = timedelta(0)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def transaction_id(self) -> Optional[str]:
        return self._transaction_id if self.active else None

    def start(self, transaction_id: str, interval: float, expires_at: Optional[datetime] = None) -> None:
        """
        Begin polling ``transaction_id`` every ``interval`` seconds.

        Starting again for the transaction already being polled is a no-op.
        Starting for a different transaction stops the current poll first.

        Args:
            transaction_id: Transaction to poll
            interval: Seconds between ticks unless the server asks otherwise
            expires_at: Expiry reported when the challenge was created, if any
        """
        if self.active and self._transaction_id == transaction_id:
            logger.debug(f"Poller already running for transaction {transaction_id}")
            return

        self.stop()
        self._generation += 1
        self._transaction_id = transaction_id
        self._expires_at = expires_at
        self._clock_offset = timedelta(0)
        self.ticks = 0
        self._task = asyncio.create_task(self._poll_loop(self._generation, transaction_id, interval))
        logger.info(f"Polling transaction {transaction_id} every {interval}s")

    def stop(self) -> None:
        """Stop polling. Idempotent and safe to call from inside a callback."""
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            logger.debug(f"Stopping poll for transaction {self._transaction_id}")
            if task is not asyncio.current_task():
                task.cancel()

    def _remaining_seconds(self, pending: Optional[Pending] = None) -> Optional[float]:
        """Seconds left on the transaction, reconciled against the server clock when it is known."""
        if pending is not None:
            if pending.expires_at is not None:
                self._expires_at = pending.expires_at
            if pending.server_time is not None:
                self._clock_offset = pending.server_time - self._clock()
                if self._expires_at is None:
                    return None
                return (self._expires_at - pending.server_time).total_seconds()

        if self._expires_at is None:
            return None
        return (self._expires_at - (self._clock() + self._clock_offset)).total_seconds()

    @staticmethod
    def _is_transient(error: CiamClientError) -> bool:
        if isinstance(error, RetryExhaustedError):
            return True
        return isinstance(error, TransportError) and error.retryable

    @staticmethod
    def _failure_for(error: CiamClientError) -> Failure:
        if isinstance(error, TransportError) and error.status in _GONE_STATUSES:
            return _failure(FailureKind.TRANSACTION_NOT_FOUND)
        return _failure(FailureKind.SERVICE_ERROR)

    def _finish(self, transaction_id: str, outcome: Outcome) -> None:
        self.stop()
        self._deliver_terminal(transaction_id, outcome)

    async def _poll_loop(self, generation: int, transaction_id: str, interval: float) -> None:
        delay = interval
        try:
            while generation == self._generation:
                await self._sleep(delay)
                if generation != self._generation:
                    return

                self.ticks += 1
                try:
                    outcome = await self._fetch(transaction_id)
                except CiamClientError as e:
                    if generation != self._generation:
                        return
                    remaining = self._remaining_seconds()
                    if remaining is not None and remaining <= 0:
                        logger.info(f"Transaction {transaction_id} expired while its status was unavailable")
                        self._finish(transaction_id, _failure(FailureKind.CHALLENGE_EXPIRED))
                        return
                    if not self._is_transient(e):
                        logger.error(f"Status check for transaction {transaction_id} rejected: {e.message}")
                        self._finish(transaction_id, self._failure_for(e))
                        return
                    logger.warning(f"Status check for transaction {transaction_id} failed: {e.message}")
                    delay = interval
                    continue

                if generation != self._generation:
                    logger.debug(f"Discarding status for stopped poll of {transaction_id}")
                    return

                if isinstance(outcome, Pending):
                    remaining = self._remaining_seconds(outcome)
                    if remaining is not None and remaining <= 0:
                        logger.info(f"Transaction {transaction_id} expired")
                        self._finish(transaction_id, _failure(FailureKind.CHALLENGE_EXPIRED))
                        return

                    try:
                        self._on_update(transaction_id, remaining, outcome)
                    except Exception as e:
                        logger.error(f"Error in poll update callback: {e}")
                    delay = outcome.retry_after if outcome.retry_after else interval
                    continue

                logger.info(f"Transaction {transaction_id} reached {outcome.outcome_type.value}")
                self._finish(transaction_id, outcome)
                return

        except asyncio.CancelledError:
            logger.debug(f"Poll task for {transaction_id} cancelled")
        except Exception as e:
            logger.error(f"Error in poll loop for {transaction_id}: {e}")
            if generation == self._generation:
                self._finish(transaction_id, _failure(FailureKind.SERVICE_ERROR))

    def _deliver_terminal(self, transaction_id: str, outcome: Outcome) -> None:
        try:
            self._on_terminal(transaction_id, outcome)
        except Exception as e:
            logger.error(f"Error in poll terminal callback: {e}")
