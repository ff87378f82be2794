"""
RetryPolicy -- bounded retry of transient store failures.

Responsibility:
    Re-runs a whole unit of work when the persistence layer reports a
    transient failure (network, timeout, 503, 429), with exponential
    backoff and jitter.  On an auth-shaped failure (expired token, 401) it
    calls a re-authentication hook once and retries immediately.

Architecture position:
    Kernel > Services.  Module services wrap their transactional unit of
    work in ``RetryPolicy.run``.  Because every unit of work rolls back on
    failure, a retry always starts from a clean transaction.

Invariants enforced:
    - Business-rule errors (every BillingKernelError except
      TransientStoreError) are NEVER retried.
    - At most ``max_retries`` retries; at most one re-authentication.
    - delay(attempt) = min(base * 2**attempt + jitter, max_delay) with
      jitter uniformly drawn from [0, jitter_ratio * base * 2**attempt).

Failure modes:
    - TransientStoreError once retries are exhausted, chained to the last
      underlying error.
    - Non-retryable errors propagate unchanged on the first occurrence.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from billing_kernel.exceptions import BillingKernelError, TransientStoreError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

DEFAULT_RETRYABLE_FRAGMENTS = ("network", "timeout", "fetch failed", "503", "429")
DEFAULT_AUTH_FRAGMENTS = ("jwt", "token expired", "unauthorized", "401")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential-backoff retry for transient persistence failures.

    Usage:
        policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0)
        invoice = policy.run(lambda: work(), operation="create_invoice")
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_ratio: float = 0.3
    retryable_fragments: tuple[str, ...] = DEFAULT_RETRYABLE_FRAGMENTS
    auth_fragments: tuple[str, ...] = DEFAULT_AUTH_FRAGMENTS
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> RetryPolicy:
        """Build from ``billing_config.schema.RetrySettings``."""
        values = dict(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay_ms / 1000,
            max_delay=settings.max_delay_ms / 1000,
            jitter_ratio=settings.jitter_ratio,
            retryable_fragments=tuple(settings.retryable_fragments),
            auth_fragments=tuple(settings.auth_fragments),
        )
        values.update(overrides)
        return cls(**values)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        jitter = self.rng() * self.jitter_ratio * delay
        return min(delay + jitter, self.max_delay)

    def _message_matches(self, exc: BaseException, fragments: tuple[str, ...]) -> bool:
        message = str(exc).lower()
        return any(fragment in message for fragment in fragments)

    def is_retryable(self, exc: BaseException) -> bool:
        """True for transient store failures; never for business-rule errors."""
        if isinstance(exc, TransientStoreError):
            return True
        if isinstance(exc, BillingKernelError):
            return False
        if isinstance(exc, DBAPIError) and exc.connection_invalidated:
            return True
        if isinstance(exc, (OperationalError, ConnectionError, TimeoutError)):
            return True
        return self._message_matches(exc, self.retryable_fragments)

    def is_auth_error(self, exc: BaseException) -> bool:
        if isinstance(exc, BillingKernelError):
            return False
        return self._message_matches(exc, self.auth_fragments)

    def run(
        self,
        fn: Callable[[], T],
        *,
        operation: str,
        reauthenticate: Callable[[], None] | None = None,
    ) -> T:
        """Run ``fn``, retrying transient failures.

        Args:
            fn: Zero-argument unit of work.  Must be safe to re-run, which
                holds when it rolls back on failure.
            operation: Name used in logs and in the final error.
            reauthenticate: Optional hook called once on an auth-shaped error.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            TransientStoreError: Retries exhausted.
        """
        attempt = 0
        reauthenticated = False
        while True:
            try:
                return fn()
            except Exception as exc:
                if (
                    reauthenticate is not None
                    and not reauthenticated
                    and self.is_auth_error(exc)
                ):
                    reauthenticated = True
                    logger.warning(
                        "store_reauthentication_attempted",
                        extra={"operation": operation, "error": str(exc)},
                    )
                    reauthenticate()
                    continue

                if not self.is_retryable(exc):
                    raise

                if attempt >= self.max_retries:
                    logger.error(
                        "store_retries_exhausted",
                        extra={
                            "operation": operation,
                            "attempts": attempt + 1,
                            "error": str(exc),
                        },
                    )
                    raise TransientStoreError(
                        operation=operation,
                        reason=str(exc),
                        attempts=attempt + 1,
                    ) from exc

                delay = self.delay_for(attempt)
                logger.warning(
                    "store_retry_scheduled",
                    extra={
                        "operation": operation,
                        "attempt": attempt + 1,
                        "delay_seconds": round(delay, 3),
                        "error": str(exc),
                    },
                )
                self.sleep(delay)
                attempt += 1
