from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# request id of the HTTP request being served, taken from X-Request-ID
_request_id: ContextVar[Optional[str]] = ContextVar("salonauth_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    value = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    _request_id.set(value)
    return value


def _bind_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    return event_dict


# Field names whose values are credentials or personal data. Matching is by
# substring so ``new_password``, ``refresh_token`` and ``two_factor_code`` are
# covered.
_MASKED_FIELDS = ("password", "secret", "token", "authorization", "cookie", "code", "email")
_UNMASKED_FIELDS = frozenset({"event", "error_code", "status_code", "error_type"})


def _mask_value(value: str) -> str:
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) <= 8:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _mask_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key in _UNMASKED_FIELDS or not isinstance(value, str):
            continue
        if any(field in key.lower() for field in _MASKED_FIELDS):
            event_dict[key] = _mask_value(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline.

    ``console`` switches from one JSON object per line to the coloured
    development renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=_env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Driver, SMTP and Redis messages can leak hosts, DSNs and statements.
_SCRUB_PATTERNS = [
    re.compile(r"(?i)\b(?:postgres(?:ql)?|redis|rediss|smtp)://\S+"),
    re.compile(r"(?i)\b(?:select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)connection\s+.*?\b(?:failed|refused|timed out|timeout)\b"),
    re.compile(r"(?i)\b(?:password|secret|token|key)\s*[:=]\s*\S+"),
    re.compile(r"\b[45]\d\d[ -]\d\.\d\.\d+\b.*"),
    re.compile(r"(?i)/(?:etc|home|srv|tmp|usr|var)/\S+"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub an infrastructure error message before it is put in a response."""
    if not isinstance(error, str) or not error.strip():
        return "An error occurred"
    for pattern in _SCRUB_PATTERNS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 300 else error[:297] + "..."
