"""
Structured logging setup for the CRM sidecar.
Provides JSON-formatted logs with request context and secret redaction.
"""

import logging
import re
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

REDACTED = "[REDACTED]"

# Order matters: the "password is invalid" form must be masked before the
# generic password= pattern sees it.
_SECRET_PATTERNS = [
    (re.compile(r"(password is invalid:\s*)([^\s,;\"']+)", re.IGNORECASE), rf"\1{REDACTED}"),
    (re.compile(r"(client_secret\"?\s*[=:]\s*\"?)([^&\s,;\"']+)", re.IGNORECASE), rf"\1{REDACTED}"),
    (re.compile(r"(password\"?\s*[=:]\s*\"?)([^&\s,;\"']+)", re.IGNORECASE), rf"\1{REDACTED}"),
]


def redact_secrets(text: str) -> str:
    """Mask client secrets and passwords that may appear in upstream error bodies."""
    if not text:
        return text
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            # request_id / profile_id bound by the request middleware
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_event,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _redact_event(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Run every string value of the event through redact_secrets."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_secrets(value)
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_request(method: str, path: str, status_code: int, duration_ms: float, profile_id: str = None):
    """Log HTTP requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }

    if profile_id:
        log_data["profile_id"] = profile_id

    if status_code >= 400:
        logger.warning("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
