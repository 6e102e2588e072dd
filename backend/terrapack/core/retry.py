"""Retry-with-backoff policy around fallible I/O steps.

A RetryPolicy runs an operation up to ``max_attempts`` times, sleeping an
exponentially growing delay between attempts, and reports the result as an
Outcome instead of raising. Callers decide which typed error a failed
outcome becomes (AcquisitionError for downloads, ExportError for export
steps).

Cancellation is never retried: ``asyncio.CancelledError`` (a BaseException)
propagates straight through ``run``.

Example:
    Retry a download three times:
        >>> policy = RetryPolicy(max_attempts=3, base_delay=2.0)
        >>> outcome = await policy.run(lambda: fetch(url))
        >>> if not outcome.ok:
        ...     raise AcquisitionError("75", "vegetation", outcome.error)
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from terrapack.core import config

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Outcome(Generic[T]):
    """Typed result of a retried operation.

    Attributes:
        value: Result of the successful attempt, None on failure.
        error: Exception of the last failed attempt, None on success.
        attempts: Number of attempts made.
    """

    value: T | None = None
    error: Exception | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff.

    Attributes:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay in seconds after the first failure.
        factor: Multiplier applied to the delay after each failure.
        max_delay: Upper bound of a single delay.
        retry_on: Exception types considered transient; anything else
            fails the outcome immediately.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0
    retry_on: tuple[type[Exception], ...] = (Exception,)

    @classmethod
    def for_downloads(cls, settings: config.Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.download_attempts,
            base_delay=settings.download_backoff_seconds,
            factor=settings.backoff_factor,
            max_delay=settings.max_backoff_seconds,
        )

    @classmethod
    def for_exports(cls, settings: config.Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.export_attempts,
            base_delay=settings.export_backoff_seconds,
            factor=settings.backoff_factor,
            max_delay=settings.max_backoff_seconds,
        )

    def delays(self) -> list[float]:
        """Return the delays slept between consecutive attempts.

        Returns:
            ``max_attempts - 1`` delays in seconds.

        Example:
            >>> RetryPolicy(max_attempts=4, base_delay=1.0).delays()
            [1.0, 2.0, 4.0]
        """
        return [
            min(self.base_delay * self.factor**i, self.max_delay)
            for i in range(self.max_attempts - 1)
        ]

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "operation",
    ) -> Outcome[T]:
        """Run an async operation under the policy.

        Args:
            operation: Zero-argument callable returning a fresh awaitable
                for every attempt.
            label: Name used in log messages.

        Returns:
            Outcome holding either the value or the last error.
        """
        delays = self.delays()
        error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return Outcome(value=await operation(), attempts=attempt)
            except self.retry_on as exc:
                error = exc
            except Exception as exc:
                return Outcome(error=exc, attempts=attempt)
            if attempt < self.max_attempts:
                delay = delays[attempt - 1]
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    label,
                    attempt,
                    self.max_attempts,
                    delay,
                    error,
                )
                await asyncio.sleep(delay)
        logger.error("%s failed after %d attempts", label, self.max_attempts)
        return Outcome(error=error, attempts=self.max_attempts)

    def run_sync(
        self,
        operation: Callable[[], T],
        label: str = "operation",
    ) -> Outcome[T]:
        """Blocking variant of run() for code executing on worker threads."""
        delays = self.delays()
        error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return Outcome(value=operation(), attempts=attempt)
            except self.retry_on as exc:
                error = exc
            except Exception as exc:
                return Outcome(error=exc, attempts=attempt)
            if attempt < self.max_attempts:
                delay = delays[attempt - 1]
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    label,
                    attempt,
                    self.max_attempts,
                    delay,
                    error,
                )
                time.sleep(delay)
        logger.error("%s failed after %d attempts", label, self.max_attempts)
        return Outcome(error=error, attempts=self.max_attempts)
