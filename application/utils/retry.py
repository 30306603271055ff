"""Retry policy for provider calls (tenacity)."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger
from core.settings import PaymentRetry
from domain.payment.exceptions import ProviderError


logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable_provider_error(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _retry_logger(operation: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "provider_call_retry",
            operation=operation,
            attempt=state.attempt_number,
            sleep_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
            provider=getattr(exc, "provider", None),
            provider_code=getattr(exc, "provider_code", None),
        )
    return _log


def build_retrying(
    policy: PaymentRetry,
    *,
    operation: str = "provider_call",
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> AsyncRetrying:
    """
    Only ``ProviderError(retryable=True)`` is retried; the last error is
    re-raised unchanged once attempts run out.
    """
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_exponential(multiplier=policy.base_backoff, min=policy.base_backoff, max=policy.max_backoff),
        retry=retry_if_exception(is_retryable_provider_error),
        before_sleep=_retry_logger(operation),
        **kwargs,
    )


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: PaymentRetry,
    *,
    operation: str = "provider_call",
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> T:
    """Run ``fn`` under the retry policy. ``fn`` must reuse the same idempotency key."""
    async for attempt in build_retrying(policy, operation=operation, sleep=sleep):
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover
