"""Retry executor for remote accounting API calls.

Wraps any async remote operation with tenacity retry + exponential backoff
and classifies the final failure:
- 401 -> AuthError (no retry)
- other 4xx except 429 -> ValidationError (no retry)
- 429, 5xx, transport errors -> retried; TransientError once attempts run out

Delay before retry n (n = the failed attempt number) is
min(base * 2^(n-1), ceiling) plus optional uniform jitter, so with the
defaults three attempts wait 1s then 2s.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from src.ledgerlink.accounting.errors import (
    AuthError,
    RemoteAPIError,
    TransientError,
    ValidationError,
)
from src.ledgerlink.config import Settings
from src.ledgerlink.core.monitoring import remote_call_retries_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """True for rate limits, server faults and transport failures."""
    if not isinstance(exc, RemoteAPIError):
        return False
    status = exc.status_code
    return status is None or status == 429 or status >= 500


class RetryExecutor:
    """Executes remote operations with classified retry.

    Args:
        max_retries: Total attempts, including the first.
        base_delay: Delay after the first failed attempt, in seconds.
        max_delay: Upper bound on any single delay, in seconds.
        jitter: Upper bound of uniform random jitter added to each delay.
        sleep: Awaitable sleep used between attempts (injectable for tests).
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        jitter: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryExecutor:
        return cls(
            max_retries=settings.SYNC_MAX_RETRIES,
            base_delay=settings.SYNC_BACKOFF_BASE_SECONDS,
            max_delay=settings.SYNC_BACKOFF_MAX_SECONDS,
            jitter=settings.SYNC_BACKOFF_JITTER_SECONDS,
        )

    def compute_delay(self, attempt: int) -> float:
        """Backoff (without jitter) after the given failed attempt number."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def _wait(self) -> wait_base:
        wait = wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return wait

    async def execute(self, operation: Callable[[], Awaitable[T]], *, description: str) -> T:
        """Run operation, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            description: Short label for logs and metrics (e.g. "create:Invoice").

        Raises:
            AuthError: Remote rejected the credentials (401).
            ValidationError: Remote rejected the payload (other 4xx).
            TransientError: Retryable failure persisted through max_retries attempts.
        """

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            remote_call_retries_total.labels(operation=description).inc()
            logger.warning(
                "remote.retry",
                operation=description,
                attempt=retry_state.attempt_number,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                status_code=getattr(exc, "status_code", None),
                error=str(exc),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self._wait(),
            retry=retry_if_exception(is_transient),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await operation()
        except RemoteAPIError as exc:
            attempts = retrying.statistics.get("attempt_number", 1)
            raise self._classify(exc, description, attempts) from exc
        return result

    def _classify(self, exc: RemoteAPIError, description: str, attempts: int) -> Exception:
        status = exc.status_code
        if status == 401:
            logger.warning("remote.auth_rejected", operation=description)
            return AuthError(f"{description}: remote rejected credentials")
        if status is not None and 400 <= status < 500 and status != 429:
            logger.info("remote.validation_rejected", operation=description, status_code=status, error=str(exc))
            return ValidationError(f"{description}: {exc}", status_code=status)
        logger.error(
            "remote.retries_exhausted",
            operation=description,
            attempts=attempts,
            status_code=status,
            error=str(exc),
        )
        return TransientError(f"{description}: {exc} (after {attempts} attempts)", attempts=attempts)
