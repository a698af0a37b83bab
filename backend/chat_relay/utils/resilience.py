"""
Call wrappers for collaborator I/O.

Two explicit flavours:

- ``must_succeed``: transcript persistence and state transitions. Bounded by
  a timeout, never retried, failures surface as typed relay errors.
- ``best_effort``: notifications and other non-critical calls. Retried a few
  times with tenacity, then logged and dropped.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import RelayError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def must_succeed(
    operation: str,
    call: Callable[[], Awaitable[T]],
    timeout: float,
    **context: Any
) -> T:
    """
    Run a critical collaborator call.

    Args:
        operation: Operation name for logs (e.g. 'store.append_message')
        call: Zero-argument coroutine factory
        timeout: Seconds before the call is abandoned
        **context: Extra log context (session_id, ...)

    Returns:
        The call's result

    Raises:
        RelayError: Typed errors raised by the call are propagated as-is
        UpstreamUnavailableError: Timeout or any untyped failure
    """
    start_time = time.time()

    try:
        return await asyncio.wait_for(call(), timeout=timeout)

    except RelayError:
        raise

    except asyncio.TimeoutError:
        logger.error(
            f"{operation} timed out after {timeout:.1f}s",
            extra={"operation": operation, "status": "timeout", **context}
        )
        raise UpstreamUnavailableError(f"{operation} timed out")

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"{operation} failed after {duration:.3f}s: {e}",
            extra={
                "operation": operation,
                "status": "error",
                "error_type": type(e).__name__,
                "error_message": str(e),
                **context
            },
            exc_info=True
        )
        raise UpstreamUnavailableError(f"{operation} failed: {e}")


async def best_effort(
    operation: str,
    call: Callable[[], Awaitable[T]],
    attempts: int = 2,
    timeout: Optional[float] = None,
    **context: Any
) -> Optional[T]:
    """
    Run a non-critical collaborator call; log and continue on failure.

    Args:
        operation: Operation name for logs
        call: Zero-argument coroutine factory
        attempts: Total attempts before giving up
        timeout: Optional per-attempt timeout in seconds
        **context: Extra log context

    Returns:
        The call's result, or None if every attempt failed
    """
    async def attempt_once() -> T:
        if timeout is None:
            return await call()
        return await asyncio.wait_for(call(), timeout=timeout)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2.0),
        retry=retry_if_exception_type(Exception),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )

    result: Optional[T] = None
    try:
        async for attempt in retrying:
            with attempt:
                result = await attempt_once()
    except Exception as e:
        logger.warning(
            f"Best-effort {operation} dropped after {attempts} attempt(s): {e}",
            extra={
                "operation": operation,
                "status": "dropped",
                "error_type": type(e).__name__,
                **context
            }
        )
        return None

    return result


__all__ = ['must_succeed', 'best_effort']
