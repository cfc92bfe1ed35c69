from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

execution_id_var: ContextVar[Optional[str]] = ContextVar("execution_id", default=None)

SECRET_KEY_MARKERS = ("password", "secret", "token", "api_key", "authorization")


def get_execution_id() -> Optional[str]:
    return execution_id_var.get()


def bind_execution_id(execution_id: Optional[str] = None) -> str:
    """Bind the id of the workflow execution whose nodes are being dispatched."""
    eid = execution_id or str(uuid.uuid4())
    execution_id_var.set(eid)
    return eid


def _add_execution_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    eid = get_execution_id()
    if eid and "execution_id" not in event_dict:
        event_dict["execution_id"] = eid
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in SECRET_KEY_MARKERS):
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_execution_id,
        _redact_secrets,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() not in {"0", "false", "no", "off"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    # Credentials
    r'(?i)(password|secret|token|credential|api.?key)\s*[:=]\s*[^\s,;]+',
    r'(?i)bearer\s+[a-z0-9._\-]+',
    r'\bsk-[A-Za-z0-9_\-]{8,}',
    # Filesystem paths
    r'(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    # Stack traces
    r'(?i)traceback\s*\(most recent call last\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: Any, *, replacement: str = "[redacted]") -> str:
    """Strip credentials, paths and traces from provider error text.

    The result is safe to store in node outputs and to return to callers.
    Messages longer than ``MAX_ERROR_MESSAGE_LENGTH`` are truncated.
    """
    if isinstance(error, BaseException):
        error = str(error) or error.__class__.__name__
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result
