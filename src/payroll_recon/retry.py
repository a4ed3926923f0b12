"""Bounded retry with fixed backoff for transient I/O failures."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from .errors import NON_RETRYABLE_ERRORS
from .logging_utils import error_name, format_context

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY_MS = 200


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    event: str,
    attempts: int = DEFAULT_ATTEMPTS,
    delay_ms: int = DEFAULT_DELAY_MS,
    context: Optional[Dict[str, Any]] = None,
    non_retryable: Tuple[Type[BaseException], ...] = NON_RETRYABLE_ERRORS,
) -> T:
    """Await ``operation`` up to ``attempts`` times.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        event: Event name used in log lines (``<EVENT>_ATTEMPT``, ``<EVENT>_FAILED``).
        attempts: Maximum number of attempts, at least 1.
        delay_ms: Fixed delay between attempts in milliseconds.
        context: Log context (see logging_utils.ALLOWED_CONTEXT_KEYS).
        non_retryable: Error types that are re-raised immediately.

    Returns:
        The operation's result.

    Raises:
        The last error once attempts are exhausted, or a non-retryable error
        on first occurrence.
    """
    attempts = max(1, attempts)
    context = context or {}

    for attempt in range(1, attempts + 1):
        logger.info(f"{event}_ATTEMPT {format_context({**context, 'attempt': attempt})}")
        try:
            return await operation()
        except non_retryable:
            raise
        except Exception as e:
            failure = format_context({**context, "attempt": attempt, "error_name": error_name(e)})
            if attempt == attempts:
                logger.error(f"{event}_FAILED {failure}")
                raise
            logger.warning(f"{event}_FAILED {failure}")
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)

    raise RuntimeError("Retry attempts exhausted.")
