"""
Retry Controller for agent requests.

Classifies attempt failures as fatal or retryable and schedules retries
with exponential backoff. One controller tracks one send_message call:

    IDLE -> ATTEMPTING -> SUCCESS
                       -> RETRYING -> ATTEMPTING ...
                       -> FAILED
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum, auto

from chargur.exceptions import AuthenticationRequired, StateTransitionError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 4
DEFAULT_BASE_DELAY = 1.0  # seconds

# Error text that means the credential was refused
_AUTH_SIGNAL = re.compile(r"\b(401|403|unauthori[sz]ed|forbidden|authentication)\b", re.IGNORECASE)


class RetryState(Enum):
    """Retry controller states."""

    IDLE = auto()  # No attempt started
    ATTEMPTING = auto()  # Network call in flight
    RETRYING = auto()  # Waiting out the backoff delay
    SUCCESS = auto()  # Terminal
    FAILED = auto()  # Terminal


VALID_TRANSITIONS: dict[RetryState, set[RetryState]] = {
    RetryState.IDLE: {RetryState.ATTEMPTING},
    RetryState.ATTEMPTING: {RetryState.SUCCESS, RetryState.RETRYING, RetryState.FAILED},
    RetryState.RETRYING: {RetryState.ATTEMPTING, RetryState.SUCCESS, RetryState.FAILED},
    RetryState.SUCCESS: set(),
    RetryState.FAILED: set(),
}


@dataclass
class RetryDecision:
    """What to do after a failed attempt."""

    retry: bool
    delay: float = 0.0
    fatal: bool = False


@dataclass
class RetryStats:
    """Statistics for one send_message call."""

    attempts: int = 0
    failures: int = 0
    retries: int = 0
    delays: list[float] = field(default_factory=list)
    last_error: Exception | None = None


def is_auth_failure(error: BaseException) -> bool:
    """True if the error means the caller's credential was refused."""
    if isinstance(error, AuthenticationRequired):
        return True
    status = getattr(error, "status", None)
    if status in (401, 403):
        return True
    return bool(_AUTH_SIGNAL.search(str(getattr(error, "message", error))))


class RetryController:
    """
    Bounded exponential backoff for one send_message call.

    Delay after failed attempt n (1-indexed) is base_delay * 2 ** (n - 1).
    Authentication failures are fatal and never retried.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize retry controller.

        Args:
            max_retries: Total attempts allowed, including the first
            base_delay: Seconds to wait after the first failure
            sleep: Awaitable used for the backoff pause
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

        self._state = RetryState.IDLE
        self._attempt = 0
        self._stats = RetryStats()

    @property
    def state(self) -> RetryState:
        return self._state

    @property
    def attempt(self) -> int:
        """Number of the current (or last) attempt, 1-indexed."""
        return self._attempt

    @property
    def stats(self) -> RetryStats:
        return self._stats

    def _transition(self, new_state: RetryState) -> None:
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise StateTransitionError(
                f"Invalid retry transition: {self._state.name} -> {new_state.name}",
                from_state=self._state.name,
                to_state=new_state.name,
            )
        self._state = new_state

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after failed attempt `attempt`."""
        return self.base_delay * 2 ** (attempt - 1)

    def is_fatal(self, error: BaseException) -> bool:
        return is_auth_failure(error)

    def begin_attempt(self) -> int:
        """Mark a new network attempt as started and return its number."""
        self._transition(RetryState.ATTEMPTING)
        self._attempt += 1
        self._stats.attempts += 1
        return self._attempt

    def record_success(self) -> None:
        """Record a terminal success (network or recovered)."""
        self._transition(RetryState.SUCCESS)

    def record_failure(self, error: Exception) -> RetryDecision:
        """
        Classify a failed attempt.

        Returns:
            RetryDecision; the controller is FAILED when retry is False
        """
        self._stats.failures += 1
        self._stats.last_error = error

        if self.is_fatal(error):
            logger.warning(f"Attempt {self._attempt} failed with non-retryable error: {error}")
            self._transition(RetryState.FAILED)
            return RetryDecision(retry=False, fatal=True)

        if self._attempt >= self.max_retries:
            logger.error(f"Giving up after {self._attempt}/{self.max_retries} attempts: {error}")
            self._transition(RetryState.FAILED)
            return RetryDecision(retry=False)

        delay = self.delay_for(self._attempt)
        self._transition(RetryState.RETRYING)
        self._stats.retries += 1
        self._stats.delays.append(delay)
        logger.info(f"Attempt {self._attempt}/{self.max_retries} failed, retrying in {delay:.1f}s: {error}")
        return RetryDecision(retry=True, delay=delay)

    async def wait(self, delay: float) -> None:
        """Backoff pause between attempts. Cancellable."""
        await self._sleep(delay)

    def reset(self) -> None:
        """Return to IDLE for a new send_message call."""
        self._state = RetryState.IDLE
        self._attempt = 0
        self._stats = RetryStats()
