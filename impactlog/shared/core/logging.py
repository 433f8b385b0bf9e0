import logging
import re
import sys
from typing import Any, cast

import structlog

from impactlog.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_PHONE_REGEX = re.compile(
    r"(?<!\w)(?:\+?\d{1,3}[\s.-]?)?(?:\(?\d{2,4}\)?[\s.-]?){2,4}\d{2,4}(?!\w)"
)


def _redact_text(text: str) -> str:
    text = _EMAIL_REGEX.sub("[EMAIL_REDACTED]", text)

    # Only plausible phone numbers; dates, ids and quantities stay readable.
    def _replace_phone(match: re.Match[str]) -> str:
        candidate = match.group(0)
        digits = re.sub(r"\D", "", candidate)
        looks_like_phone = len(digits) >= 10 and (
            candidate.strip().startswith("+")
            or any(ch in candidate for ch in (" ", "-", ".", "(", ")"))
        )
        return "[PHONE_REDACTED]" if looks_like_phone else candidate

    return _PHONE_REGEX.sub(_replace_phone, text)


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact contact details from log payloads.

    Campaign names and notes are free text and regularly carry
    agency emails or phone numbers.
    """

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {k: redact_recursive(v) for k, v in data.items()}
        if isinstance(data, (list, tuple)):
            return [redact_recursive(item) for item in data]
        if isinstance(data, str):
            return _redact_text(data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,  # Support async context
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
