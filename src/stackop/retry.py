"""Retry controller: bounded, cleanup-aware retries of one action.

Attempts run strictly one after another. Before every attempt after the
first, the policy's cleanup hook removes whatever the failed attempt left
half-applied, then the backoff delay is observed. A cancel event stops the
loop between attempts and cuts a pending backoff short. Whether an error is worth
retrying is decided by the action itself (by error class or status code),
never by reading error messages.

Error taxonomy:
    TransientProvisioningFailure   retryable
    PermanentConfigurationFailure  short-circuits the remaining attempts
    ProvisioningTimeout            not retried; the request may still be
                                   progressing and a cleanup would destroy it
    ProvisioningCancelled          not retried
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    """Base class for provisioning failures."""

    pass


class TransientProvisioningFailure(ProvisioningError):
    """A failure that a later attempt may not hit (throttling, conflicts, 5xx)."""

    pass


class PermanentConfigurationFailure(ProvisioningError):
    """A failure no retry can fix (bad spec, permission denied, quota)."""

    pass


class ProvisioningTimeout(ProvisioningError):
    """The resource did not become ready within its deadline."""

    pass


class CleanupFailedError(ProvisioningError):
    """Cleanup between attempts failed; the next precondition is unknown."""

    pass


class ProvisioningCancelled(ProvisioningError):
    """The run was cancelled while the resource was provisioning."""

    pass


def default_is_retryable(error: Exception) -> bool:
    """Classify by error class only."""
    if isinstance(
        error, (PermanentConfigurationFailure, ProvisioningTimeout, ProvisioningCancelled)
    ):
        return False
    if isinstance(error, TransientProvisioningFailure):
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


@dataclass(frozen=True)
class Backoff:
    """Delay between attempts.

    delay(n) = initial + increment * (n - 1), where n counts failed attempts.
    increment == 0 gives a fixed delay.
    """

    initial_seconds: float = 5.0
    increment_seconds: float = 0.0
    jitter_ratio: float = 0.0

    def delay(self, failed_attempts: int) -> float:
        base = self.initial_seconds + self.increment_seconds * max(0, failed_attempts - 1)
        if self.jitter_ratio > 0 and base > 0:
            base += random.uniform(0, base * self.jitter_ratio)
        return base

    @classmethod
    def fixed(cls, seconds: float) -> Backoff:
        return cls(initial_seconds=seconds)

    @classmethod
    def incremental(cls, initial_seconds: float, increment_seconds: float) -> Backoff:
        return cls(initial_seconds=initial_seconds, increment_seconds=increment_seconds)


CleanupHook = Callable[[int, Exception], Awaitable[None]]


async def _no_cleanup(attempt: int, error: Exception) -> None:
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, what to clean up in between, how long to wait."""

    max_attempts: int = 3
    cleanup_before_retry: CleanupHook = _no_cleanup
    backoff: Backoff = field(default_factory=Backoff)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


class RetryableAction(Protocol):
    """An action the controller can run and classify failures for."""

    name: str

    async def run(self) -> Any: ...

    def is_retryable(self, error: Exception) -> bool: ...


@dataclass
class CallableAction:
    """Adapts a coroutine function into a RetryableAction."""

    name: str
    func: Callable[[], Awaitable[Any]]
    classify: Callable[[Exception], bool] = default_is_retryable

    async def run(self) -> Any:
        return await self.func()

    def is_retryable(self, error: Exception) -> bool:
        return self.classify(error)


class RetryOutcomeKind(str, Enum):
    SUCCESS = "Success"
    EXHAUSTED = "ExhaustedFailures"


@dataclass
class RetryOutcome:
    """Result of RetryController.execute()."""

    kind: RetryOutcomeKind
    attempts: int
    result: Any = None
    last_error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.kind == RetryOutcomeKind.SUCCESS


class RetryController:
    """Runs a RetryableAction under a RetryPolicy."""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self._sleep = sleep

    async def execute(
        self,
        action: RetryableAction,
        policy: RetryPolicy,
        cancel_event: asyncio.Event | None = None,
    ) -> RetryOutcome:
        """Run the action until it succeeds or attempts are exhausted.

        Args:
            action: What to run.
            policy: Attempts, cleanup and backoff.
            cancel_event: When set, no further cleanup or attempt starts and
                a pending backoff ends early.

        Returns:
            SUCCESS with the action's result, or EXHAUSTED with the last error.
        """
        last_error: Exception | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                # SAFETY: attempt > 1 only after a failed attempt set last_error
                assert last_error is not None
                if cancel_event is not None and cancel_event.is_set():
                    return self._cancelled(action, attempt - 1, last_error)

                try:
                    await policy.cleanup_before_retry(attempt, last_error)
                except Exception as cleanup_error:
                    logger.error(
                        "Cleanup before retry failed, aborting retries",
                        extra={
                            "action": action.name,
                            "attempt": attempt,
                            "error": str(cleanup_error),
                        },
                    )
                    error = CleanupFailedError(
                        f"cleanup before attempt {attempt} failed: {cleanup_error}"
                    )
                    error.__cause__ = cleanup_error
                    error.__context__ = last_error
                    return RetryOutcome(RetryOutcomeKind.EXHAUSTED, attempt - 1, last_error=error)

                wait_time = policy.backoff.delay(attempt - 1)
                if wait_time > 0:
                    await self._pause(wait_time, cancel_event)
                if cancel_event is not None and cancel_event.is_set():
                    return self._cancelled(action, attempt - 1, last_error)

            try:
                result = await action.run()
            except Exception as e:
                last_error = e
                retryable = action.is_retryable(e)

                if not retryable:
                    logger.error(
                        "Action failed with non-retryable error",
                        extra={
                            "action": action.name,
                            "attempt": attempt,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    return RetryOutcome(RetryOutcomeKind.EXHAUSTED, attempt, last_error=e)

                if attempt < policy.max_attempts:
                    logger.warning(
                        "Action failed, retrying",
                        extra={
                            "action": action.name,
                            "attempt": attempt,
                            "max_attempts": policy.max_attempts,
                            "wait_seconds": policy.backoff.delay(attempt),
                            "error": str(e),
                        },
                    )
                continue

            if attempt > 1:
                logger.info(
                    "Action succeeded after retry",
                    extra={"action": action.name, "attempt": attempt},
                )
            return RetryOutcome(RetryOutcomeKind.SUCCESS, attempt, result=result)

        logger.error(
            "Action failed after all attempts",
            extra={
                "action": action.name,
                "max_attempts": policy.max_attempts,
                "error": str(last_error),
            },
        )
        return RetryOutcome(RetryOutcomeKind.EXHAUSTED, policy.max_attempts, last_error=last_error)

    async def _pause(self, seconds: float, cancel_event: asyncio.Event | None) -> None:
        """Sleep for the backoff delay, waking early if the run is cancelled."""
        if cancel_event is None:
            await self._sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        watcher = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            watcher.cancel()

    @staticmethod
    def _cancelled(action: RetryableAction, attempts: int, last_error: Exception) -> RetryOutcome:
        logger.warning(
            "Run cancelled, no further attempts",
            extra={"action": action.name, "attempts": attempts, "error": str(last_error)},
        )
        error = ProvisioningCancelled(f"{action.name}: run cancelled")
        error.__context__ = last_error
        return RetryOutcome(RetryOutcomeKind.EXHAUSTED, attempts, last_error=error)

