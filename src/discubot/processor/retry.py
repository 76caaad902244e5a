"""Retry helpers with exponential back-off."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from discubot.logging import get_logger

log = get_logger("discubot.processor.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOptions:
    """Back-off schedule shared by in-call retries and the retry entry point.

    Attributes:
        max_attempts: Total attempts allowed (the first call included).
        initial_delay: Delay in seconds after the first failed attempt.
        backoff_multiplier: Factor applied to the delay per further attempt.
        max_delay: Upper bound on any single delay.
        timeout: Optional per-attempt timeout in seconds.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


def compute_backoff_delay(attempts: int, options: RetryOptions) -> float:
    """Delay to wait after ``attempts`` failed attempts.

    ``initial_delay * backoff_multiplier ** (attempts - 1)``, capped at
    ``max_delay``. Zero attempts means no wait.
    """
    if attempts <= 0:
        return 0.0
    delay = options.initial_delay * options.backoff_multiplier ** (attempts - 1)
    return float(min(delay, options.max_delay))


def _always(_: Exception) -> bool:
    return True


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    should_retry: Callable[[Exception], bool] = _always,
    on_retry: Callable[[int, Exception, float], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``func`` until it succeeds, retrying with exponential back-off.

    Args:
        func: Zero-argument coroutine factory.
        options: Back-off schedule (defaults to :class:`RetryOptions`).
        should_retry: Predicate deciding whether an exception is worth
            another attempt. Non-retryable exceptions propagate immediately.
        on_retry: Optional callback ``(attempt, error, delay)`` invoked
            before each wait.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The first successful result.

    Raises:
        The last exception once attempts are exhausted. A per-attempt
        timeout surfaces as :class:`TimeoutError`.
    """
    opts = options or RetryOptions()

    for attempt in range(1, opts.max_attempts + 1):
        try:
            if opts.timeout is not None:
                return await asyncio.wait_for(func(), timeout=opts.timeout)
            return await func()
        except Exception as e:
            if attempt >= opts.max_attempts or not should_retry(e):
                if attempt > 1:
                    log.warning(
                        "retry_attempts_exhausted",
                        attempts=attempt,
                        error=str(e) or type(e).__name__,
                    )
                raise
            delay = compute_backoff_delay(attempt, opts)
            log.debug(
                "retrying_after_error",
                attempt=attempt,
                max_attempts=opts.max_attempts,
                delay=delay,
                error=str(e) or type(e).__name__,
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
