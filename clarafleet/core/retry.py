"""Retry utilities for handling transient failures.

Provides exponential backoff with jitter and a context object for
fine-grained retry control, used where a step may fail transiently
(for example a package download during GPU toolkit installation).

Usage:
    from clarafleet.core.retry import RetryContext

    retry = RetryContext(
        max_retries=1,
        retry_on=(GpuPrerequisiteError,),
        is_retryable=lambda e: getattr(e, "transient", False),
        operation_name="gpu_prerequisites",
    )
    while retry.should_retry():
        try:
            await install()
            retry.record_success()
            break
        except GpuPrerequisiteError as e:
            if not retry.can_retry(e):
                raise
            await retry.wait()
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from prometheus_client import Counter

from clarafleet.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

RETRY_ATTEMPTS_TOTAL = Counter(
    "clarafleet_retry_attempts_total",
    "Retried step outcomes, one increment per decision",
    labelnames=["operation", "outcome"],  # outcome: success, retry, exhausted, not_retryable
)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff parameters for one retried step.

    Attributes:
        max_retries: Extra attempts after the first one (0 disables retrying)
        base_delay: Seconds to wait before the second attempt
        max_delay: Upper bound for any single wait
        exponential_base: Growth factor between consecutive waits
        jitter: Fraction (0.0-1.0) by which a wait is randomly stretched or shrunk
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.1


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the given failed attempt.

    ``base_delay * exponential_base ** (attempt - 1)``, capped at ``max_delay``
    and then spread by up to ``jitter`` in either direction.

    Args:
        attempt: Number of failed attempts so far (1 for the first failure)
        config: Backoff parameters
    """
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    # Not for cryptographic purposes, only spreads retries apart.
    if config.jitter > 0:
        jitter_range = delay * config.jitter
        delay = delay - jitter_range + (random.random() * 2 * jitter_range)  # noqa: S311

    return max(0.0, delay)


# =============================================================================
# Retry Context
# =============================================================================


class RetryContext:
    """Attempt accounting for a retried operation.

    An error is retried only when it is an instance of ``retry_on`` and the
    optional ``is_retryable`` predicate accepts it.

    Attributes:
        attempts: Number of failed attempts recorded so far
        last_error: Last exception recorded (if any)
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: float = 0.1,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        is_retryable: Callable[[BaseException], bool] | None = None,
        operation_name: str = "unknown",
    ) -> None:
        """Create the attempt counter.

        Args:
            max_retries, base_delay, max_delay, exponential_base, jitter: See RetryConfig
            retry_on: Exception types eligible for another attempt
            is_retryable: Extra predicate an eligible error must satisfy
            operation_name: Label used in log records and the attempts counter
        """
        self._config = RetryConfig(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            exponential_base=exponential_base,
            jitter=jitter,
        )
        self._retry_on = retry_on
        self._is_retryable = is_retryable
        self._operation_name = operation_name
        self._attempts = 0
        self._last_error: BaseException | None = None

    @property
    def attempts(self) -> int:
        """Failed attempt count."""
        return self._attempts

    @property
    def last_error(self) -> BaseException | None:
        """Most recent failure passed to can_retry."""
        return self._last_error

    def should_retry(self) -> bool:
        """Return True while another attempt is allowed."""
        return self._attempts <= self._config.max_retries

    def can_retry(self, error: BaseException) -> bool:
        """Record a failure and decide whether it should be retried.

        Args:
            error: Exception raised by the attempt

        Returns:
            True when the caller should wait and try again
        """
        self._last_error = error
        self._attempts += 1

        is_retryable = isinstance(error, self._retry_on) and (
            self._is_retryable is None or self._is_retryable(error)
        )

        if not is_retryable:
            logger.debug(
                f"{type(error).__name__} in '{self._operation_name}' is not retried",
                extra={"operation": self._operation_name, "error_type": type(error).__name__},
            )
            RETRY_ATTEMPTS_TOTAL.labels(
                operation=self._operation_name, outcome="not_retryable"
            ).inc()
            return False

        if self._attempts > self._config.max_retries:
            logger.warning(
                f"Giving up on '{self._operation_name}' after {self._attempts} attempts",
                extra={"operation": self._operation_name, "attempts": self._attempts},
            )
            RETRY_ATTEMPTS_TOTAL.labels(operation=self._operation_name, outcome="exhausted").inc()
            return False

        RETRY_ATTEMPTS_TOTAL.labels(operation=self._operation_name, outcome="retry").inc()
        return True

    def record_success(self) -> None:
        """Record that the operation succeeded after at least one retry."""
        if self._attempts > 0:
            logger.info(
                f"Operation '{self._operation_name}' succeeded after {self._attempts + 1} attempts",
                extra={"operation": self._operation_name, "attempts": self._attempts + 1},
            )
            RETRY_ATTEMPTS_TOTAL.labels(operation=self._operation_name, outcome="success").inc()

    async def wait(self) -> None:
        """Wait before the next retry attempt."""
        delay = calculate_delay(self._attempts, self._config)
        logger.info(
            f"Retrying '{self._operation_name}' in {delay:.2f}s (attempt {self._attempts + 1})",
            extra={
                "operation": self._operation_name,
                "attempt": self._attempts,
                "delay_seconds": delay,
            },
        )
        await asyncio.sleep(delay)
