"""
Retry policy for calls to the Identity Service.

The number of attempts depends on how urgent the call is: interactive calls
are retried briefly so the user is not left waiting, background refreshes get
more attempts, and poll ticks are never retried because the next tick is
itself the retry.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from ciam_shared.exceptions import TransportError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Urgency(Enum):
    """How a call is retried."""
    INTERACTIVE = "interactive"
    BACKGROUND = "background"
    POLL = "poll"


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        interactive_attempts: int = 2,
        background_attempts: int = 3,
        poll_attempts: int = 1,
        exponential_base: float = 2.0,
        max_delay: float = 30.0
    ):
        self.attempts: Dict[Urgency, int] = {
            Urgency.INTERACTIVE: max(1, interactive_attempts),
            Urgency.BACKGROUND: max(1, background_attempts),
            Urgency.POLL: max(1, poll_attempts),
        }
        self.exponential_base = exponential_base
        self.max_delay = max_delay

    @classmethod
    def from_config(cls, config) -> "RetryConfig":
        return cls(
            interactive_attempts=config.get_login_retry_attempts(),
            background_attempts=config.get_refresh_retry_attempts(),
            poll_attempts=config.get_poll_retry_attempts(),
            exponential_base=config.get_retry_base(),
            max_delay=config.get_max_retry_delay()
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.exponential_base ** attempt, self.max_delay)


class RetryTransport:
    """
    Runs an operation with retries on retryable transport errors.

    Recognized outcomes, including domain failures, are returned from the first
    attempt that produces them. Non-retryable errors propagate unchanged.
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        urgency: Urgency = Urgency.INTERACTIVE,
        description: str = "request"
    ) -> T:
        """
        Run ``operation`` under the retry policy for ``urgency``.

        Args:
            operation: Zero-argument coroutine function performing one attempt
            urgency: Retry class of the call
            description: Name used in log messages

        Returns:
            Whatever the first successful attempt returned

        Raises:
            RetryExhaustedError: If every allowed attempt failed with a retryable error
            TransportError: If an attempt failed with a non-retryable error
        """
        max_attempts = self.retry_config.attempts[urgency]
        last_error: Optional[TransportError] = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except TransportError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning(f"{description} failed on attempt {attempt}/{max_attempts}: {e.message}")

            if attempt < max_attempts:
                delay = self.retry_config.delay_for(attempt)
                logger.info(f"Retrying {description} in {delay:.1f} seconds...")
                await self._sleep(delay)

        raise RetryExhaustedError(
            f"{description} failed after {max_attempts} attempt(s)",
            attempts=max_attempts,
            last_error=last_error
        )
