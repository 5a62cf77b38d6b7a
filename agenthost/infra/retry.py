"""Retry policies with pluggable backoff.

A RetryPolicy bundles the three things every retry loop in agenthost
needs: how many attempts, how long to wait between them, and which
failures are worth another try. The same policy object drives the
tooling install (5 attempts, 10s apart), the channel's reconnecting
command runner (1 + 2 retries, 5s then 10s) and instance creation.

Example:
    from agenthost.infra.retry import RetryPolicy, fixed, on_exception

    policy = RetryPolicy(max_attempts=5, backoff=fixed(10.0))
    await policy.run(install_packages, channel)

    # Decorator form, for idempotent provider calls
    @retry(on=on_status_code(429, 503), max_attempts=3, base_delay=0.5)
    async def list_computers(project_id: str) -> list[dict]:
        ...
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ParamSpec, TypeVar

from loguru import logger

P = ParamSpec("P")
T = TypeVar("T")

type RetryPredicate = Callable[[Exception], bool]
type Backoff = Callable[[int], float]
"""Maps a zero-based retry number to the delay before that retry."""

type RetryHook = Callable[[int, Exception], Awaitable[None]]


# =============================================================================
# Backoff functions
# =============================================================================


def fixed(delay: float) -> Backoff:
    """Same delay before every retry."""
    return lambda _: delay


def linear(step: float) -> Backoff:
    """Delay grows by ``step`` each retry: step, 2*step, 3*step, ..."""
    return lambda attempt: step * (attempt + 1)


def exponential(
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
) -> Backoff:
    """Exponential backoff capped at ``max_delay``, with up to 10% jitter."""

    def backoff(attempt: int) -> float:
        delay = min(base_delay * (exponential_base**attempt), max_delay)
        if jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    return backoff


# =============================================================================
# Policy
# =============================================================================


def _always(_: Exception) -> bool:
    return True


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How often, how patiently, and on what to retry an async operation.

    Args:
        max_attempts: Total attempts including the first one.
        backoff: Delay before each retry, given the retry number.
        retry_on: Predicate deciding whether a failure is retryable.
        name: Label used in log lines.
    """

    max_attempts: int = 3
    backoff: Backoff = field(default_factory=lambda: exponential())
    retry_on: RetryPredicate = _always
    name: str = "operation"

    async def run[R](
        self,
        fn: Callable[..., Awaitable[R]],
        *args: Any,
        on_retry: RetryHook | None = None,
        **kwargs: Any,
    ) -> R:
        """Call ``fn`` until it succeeds, the failure is not retryable, or attempts run out.

        Args:
            fn: Async callable to invoke.
            on_retry: Awaited between a failure and the next attempt, after the
                backoff sleep. Used by channels to reconnect.

        Raises:
            The last exception raised by ``fn``.
        """
        for attempt in range(self.max_attempts):
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                has_retries_left = attempt < self.max_attempts - 1
                if not (has_retries_left and self.retry_on(e)):
                    raise

                delay = self.backoff(attempt)
                logger.warning(
                    "Retry {n}/{max} of {name} after {kind}: {error}. Waiting {delay:.1f}s...",
                    n=attempt + 1,
                    max=self.max_attempts,
                    name=self.name,
                    kind=type(e).__name__,
                    error=e,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                if on_retry is not None:
                    await on_retry(attempt, e)

        raise AssertionError("unreachable")

    def with_name(self, name: str) -> RetryPolicy:
        return RetryPolicy(self.max_attempts, self.backoff, self.retry_on, name)


def retry(
    on: type[Exception] | tuple[type[Exception], ...] | RetryPredicate = Exception,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Wrap an async function in a named RetryPolicy with exponential backoff.

    Args:
        on: An exception class, a tuple of them, or a predicate.
        max_attempts: Maximum number of attempts (including the first one).
        base_delay: Initial delay in seconds before first retry.
        exponential_base: Multiplier for exponential backoff.
        max_delay: Maximum delay cap in seconds.
        jitter: Whether to add random jitter (up to 10%).
    """
    policy = RetryPolicy(
        max_attempts=max_attempts,
        backoff=exponential(base_delay, exponential_base, max_delay, jitter),
        retry_on=on_exception(on) if not callable(on) or isinstance(on, type) else on,
    )

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        named = policy.with_name(func.__qualname__)

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await named.run(func, *args, **kwargs)

        return wrapper

    return decorator


# =============================================================================
# Common Predicates
# =============================================================================


def on_exception(types: type[Exception] | tuple[type[Exception], ...]) -> RetryPredicate:
    """Retry when the failure is an instance of ``types``."""
    return lambda e: isinstance(e, types)


def on_status_code(*codes: int) -> RetryPredicate:
    """Retry on HTTP status codes exposed as a ``status`` attribute."""

    def predicate(e: Exception) -> bool:
        return getattr(e, "status", None) in codes

    return predicate


def on_exception_message(*patterns: str, case_sensitive: bool = False) -> RetryPredicate:
    """Retry when the exception message contains any of ``patterns``."""

    def predicate(e: Exception) -> bool:
        msg = str(e)
        if not case_sensitive:
            msg = msg.lower()
            return any(p.lower() in msg for p in patterns)
        return any(p in msg for p in patterns)

    return predicate


def any_of(*predicates: RetryPredicate) -> RetryPredicate:
    """Combine predicates with OR logic."""

    def combined(e: Exception) -> bool:
        return any(p(e) for p in predicates)

    return combined
