"""Provisioning waiter: bounded, cancellable polling for readiness.

A readiness predicate answers one of three things: ready, still pending, or
failed. Pending and failed are never conflated; a collaborator that has
rejected a request ends the wait at once instead of running out the clock.

The wait evaluates the predicate immediately, then every poll interval, and
returns TIMED_OUT only once the full timeout has elapsed. Cancelling the
wait (cancel event or task cancellation) stops watching; the provisioning
request itself is left alone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .retry import PermanentConfigurationFailure

logger = logging.getLogger(__name__)


class ReadinessState(str, Enum):
    """Result of one predicate evaluation."""

    READY = "ready"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class Readiness:
    """Predicate result with an optional detail message.

    Attributes:
        state: Ready, pending or failed.
        detail: Human-readable explanation for logs and reports.
        permanent: For FAILED, whether retrying the apply could help.
    """

    state: ReadinessState
    detail: str = ""
    permanent: bool = True

    @classmethod
    def ready(cls, detail: str = "") -> Readiness:
        return cls(ReadinessState.READY, detail)

    @classmethod
    def pending(cls, detail: str = "") -> Readiness:
        return cls(ReadinessState.PENDING, detail)

    @classmethod
    def failed(cls, detail: str, *, permanent: bool = True) -> Readiness:
        return cls(ReadinessState.FAILED, detail, permanent)


ProgressReporter = Callable[[float], None]


def _no_progress(ratio: float) -> None:
    pass


@dataclass(frozen=True)
class WaitSpec:
    """An asynchronous readiness condition.

    Attributes:
        predicate: Async callable evaluating current state.
        timeout_seconds: Give up after this long.
        poll_interval_seconds: Delay between evaluations.
        progress_reporter: Receives elapsed/timeout after every evaluation.
        description: What is being waited for, for logs.
    """

    predicate: Callable[[], Awaitable[Readiness]]
    timeout_seconds: float
    poll_interval_seconds: float
    progress_reporter: ProgressReporter = _no_progress
    description: str = ""

    def __post_init__(self) -> None:
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds must not be negative")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")


class WaitOutcomeKind(str, Enum):
    """How a wait ended."""

    READY = "Ready"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class WaitOutcome:
    """Result of ProvisioningWaiter.wait()."""

    kind: WaitOutcomeKind
    detail: str = ""
    elapsed_seconds: float = 0.0
    evaluations: int = 0
    permanent: bool = True

    @property
    def ready(self) -> bool:
        return self.kind == WaitOutcomeKind.READY


class ProvisioningWaiter:
    """Drives a readiness predicate until ready, failed, timeout or cancel."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock

    async def wait(
        self, spec: WaitSpec, cancel_event: asyncio.Event | None = None
    ) -> WaitOutcome:
        """Poll spec.predicate until it settles.

        Args:
            spec: Readiness condition.
            cancel_event: When set, the wait returns CANCELLED within one
                poll interval.

        Returns:
            WaitOutcome describing how the wait ended.
        """
        start = self._clock()
        last_ratio = 0.0
        evaluations = 0
        detail = ""

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return self._finish(
                    spec, WaitOutcomeKind.CANCELLED, "wait cancelled", start, evaluations
                )

            readiness = await self._evaluate(spec)
            evaluations += 1
            detail = readiness.detail or detail
            elapsed = self._clock() - start

            if spec.timeout_seconds > 0:
                ratio = min(1.0, elapsed / spec.timeout_seconds)
            else:
                ratio = 1.0
            last_ratio = max(last_ratio, ratio)
            self._report(spec, last_ratio)

            if readiness.state == ReadinessState.READY:
                return self._finish(spec, WaitOutcomeKind.READY, detail, start, evaluations)

            if readiness.state == ReadinessState.FAILED:
                return self._finish(
                    spec,
                    WaitOutcomeKind.FAILED,
                    detail,
                    start,
                    evaluations,
                    permanent=readiness.permanent,
                )

            if elapsed >= spec.timeout_seconds:
                return self._finish(
                    spec,
                    WaitOutcomeKind.TIMED_OUT,
                    detail or f"not ready after {spec.timeout_seconds}s",
                    start,
                    evaluations,
                )

            delay = min(spec.poll_interval_seconds, spec.timeout_seconds - elapsed)
            if cancel_event is None:
                await asyncio.sleep(delay)
                continue
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            except TimeoutError:
                # Normal poll tick
                pass

    async def _evaluate(self, spec: WaitSpec) -> Readiness:
        try:
            return await spec.predicate()
        except PermanentConfigurationFailure as e:
            return Readiness.failed(str(e))
        except Exception as e:
            logger.warning(
                "Readiness check failed, treating as pending",
                extra={
                    "wait": spec.description,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return Readiness.pending(f"{type(e).__name__}: {e}")

    @staticmethod
    def _report(spec: WaitSpec, ratio: float) -> None:
        logger.debug(
            "Waiting for readiness",
            extra={"wait": spec.description, "progress": round(ratio, 3)},
        )
        try:
            spec.progress_reporter(ratio)
        except Exception as e:
            logger.warning(
                "Progress reporter failed",
                extra={"wait": spec.description, "error": str(e)},
            )

    def _finish(
        self,
        spec: WaitSpec,
        kind: WaitOutcomeKind,
        detail: str,
        start: float,
        evaluations: int,
        *,
        permanent: bool = True,
    ) -> WaitOutcome:
        outcome = WaitOutcome(
            kind=kind,
            detail=detail,
            elapsed_seconds=self._clock() - start,
            evaluations=evaluations,
            permanent=permanent,
        )
        log = logger.info if kind == WaitOutcomeKind.READY else logger.warning
        log(
            "Wait finished",
            extra={
                "wait": spec.description,
                "outcome": kind.value,
                "detail": detail,
                "elapsed_seconds": round(outcome.elapsed_seconds, 2),
                "evaluations": evaluations,
            },
        )
        return outcome
