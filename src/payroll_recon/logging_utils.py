"""Structured lifecycle logging helpers."""

import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Only identifiers and timings are logged; row data and file contents never are.
ALLOWED_CONTEXT_KEYS = frozenset([
    "firm_id",
    "user_id",
    "pay_run_id",
    "import_id",
    "template_id",
    "run_id",
    "run_number",
    "source_type",
    "status",
    "attempt",
    "duration_ms",
    "error_name",
])


def sanitize_context(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop keys outside the whitelist and values that are not scalars."""
    if not context:
        return {}
    return {
        key: value
        for key, value in context.items()
        if key in ALLOWED_CONTEXT_KEYS
        and value is not None
        and isinstance(value, (str, int, float, bool))
    }


def format_context(context: Optional[Dict[str, Any]]) -> str:
    sanitized = sanitize_context(context)
    return " ".join(f"{key}={value}" for key, value in sorted(sanitized.items()))


def error_name(error: BaseException) -> str:
    return type(error).__name__


class Span:
    """Timed lifecycle span that logs ``<EVENT>_STARTED/_COMPLETED/_FAILED``.

    Example:
        span = start_span("RECONCILIATION_RUN", pay_run_id=pay_run.id)
        try:
            ...
            span.end(status="SUCCESS")
        except Exception as e:
            span.fail(e)
            raise
    """

    def __init__(self, event: str, context: Dict[str, Any], log: logging.Logger):
        self.event = event
        self.context = context
        self._log = log
        self._started_at = time.monotonic()

    def duration_ms(self) -> int:
        return int((time.monotonic() - self._started_at) * 1000)

    def end(self, **extra: Any) -> None:
        context = {**self.context, **extra, "duration_ms": self.duration_ms()}
        self._log.info(f"{self.event}_COMPLETED {format_context(context)}")

    def fail(self, error: BaseException, **extra: Any) -> None:
        context = {
            **self.context,
            **extra,
            "duration_ms": self.duration_ms(),
            "error_name": error_name(error),
        }
        self._log.error(f"{self.event}_FAILED {format_context(context)}")


def start_span(event: str, log: Optional[logging.Logger] = None, **context: Any) -> Span:
    """Log ``<EVENT>_STARTED`` and return a span to close with end() or fail()."""
    target = log or logger
    target.info(f"{event}_STARTED {format_context(context)}")
    return Span(event, context, target)
