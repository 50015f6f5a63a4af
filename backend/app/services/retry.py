"""
SiteSurvey Backend — Retry Executor
=====================================

What:  Bounded retry with deterministic exponential backoff for any async
       fallible operation (storage API calls, mostly).
How:   A thin wrapper over tenacity's AsyncRetrying.

Backoff schedule (defaults: 3 attempts, 1s initial delay, multiplier 2):
    attempt 1 → runs immediately
    attempt 2 → after 1s  (initial_delay * 2^0)
    attempt 3 → after 2s  (initial_delay * 2^1)
    then the last exception is re-raised exactly as it was thrown

No jitter: uploads for one request are already serialized into small
batches, so there is no herd to spread out, and a fixed schedule keeps the
worst-case request latency predictable.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnRetry = Callable[[BaseException, int], None]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between (seconds)."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay_before(self, attempt_number: int) -> float:
        """Wait applied before `attempt_number` (1-based); attempt 1 has none."""
        if attempt_number <= 1:
            return 0.0
        return self.initial_delay * self.backoff_multiplier ** (attempt_number - 2)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )


async def execute_with_retry(
    operation: Callable[..., Union[Awaitable[T], T]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[OnRetry] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` until it succeeds or the policy's attempts are used up.

    Args:
        operation: Called as operation(*args) once per attempt. Coroutine
                   functions, lambdas returning a coroutine and plain
                   callables all work: an awaitable result is awaited.
        policy:    Attempts and backoff; defaults to the configured policy.
        on_retry:  Called as on_retry(error, attempt_number) before each wait.
                   Observability only: an exception raised here is logged
                   and otherwise ignored.
        retry_on:  Exception types worth retrying; anything else propagates
                   on the first occurrence.
        give_up_on: Subclasses of `retry_on` that should still not be retried
                    (client errors such as ValidationError).
        sleep:     Awaitable sleep, injectable so tests need not wait.

    Returns:
        The value of the first successful attempt.

    Raises:
        The last exception raised by `operation`, unmodified.
    """
    policy = policy or RetryPolicy.from_settings()

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Attempt %d/%d failed (%s: %s); retrying in %.2fs",
            retry_state.attempt_number,
            policy.max_attempts,
            type(error).__name__,
            error,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )
        if on_retry is not None and error is not None:
            try:
                on_retry(error, retry_state.attempt_number)
            except Exception:
                logger.exception("on_retry callback raised; ignoring")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        # tenacity: multiplier * exp_base ** (attempt_number - 1), where
        # attempt_number is the attempt that just failed
        wait=wait_exponential(
            multiplier=policy.initial_delay,
            exp_base=policy.backoff_multiplier,
            min=0,
        ),
        retry=retry_if_exception_type(retry_on) & retry_if_not_exception_type(give_up_on),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = operation(*args)
            if inspect.isawaitable(result):
                result = await result
    return result
