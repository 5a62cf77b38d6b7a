"""Fixed-cadence polling for remote readiness checks."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)


class NotReadyError(Exception):
    """Check did not pass yet - retry."""


async def poll_until[T](
    check: Callable[[], Awaitable[T | None]],
    *,
    attempts: int,
    interval: float,
    description: str = "resource",
) -> T:
    """Call ``check`` until it returns a non-None value.

    A check that raises counts as a failed attempt. It is called at
    most ``attempts`` times with ``interval`` seconds between calls.

    Raises:
        TimeoutError: If no attempt succeeded.
    """
    log = logger.bind(component="wait")

    async def _check() -> T:
        try:
            result = await check()
        except Exception as e:
            log.debug("{what} check failed: {error}", what=description, error=e)
            raise NotReadyError() from e
        if result is None:
            raise NotReadyError()
        return result

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(interval),
            retry=retry_if_exception_type(NotReadyError),
            reraise=False,
        ):
            with attempt:
                return await _check()
    except RetryError as e:
        raise TimeoutError(
            f"{description} not ready after {attempts} attempts ({interval:.0f}s apart)"
        ) from e
    raise AssertionError("unreachable")
