from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

SERVICE_NAME = "otcauth"

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Correlation id of the request being served, if any."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when none was sent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_phone_number(value: str) -> str:
    """Keep the country prefix and last two digits of a phone number."""
    if len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


_SECRET_KEYS = {"secret", "token", "authorization", "code", "handle", "password"}
_PHONE_KEYS = {"phone", "phone_number"}
_PLAIN_KEYS = {"error_code", "event"}


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask one-time codes, bearer tokens and phone numbers in log entries."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if not isinstance(value, str) or key in _PLAIN_KEYS:
            continue
        lower_key = key.lower()
        if lower_key in _PHONE_KEYS:
            event_dict[key] = mask_phone_number(value)
        elif any(marker in lower_key for marker in _SECRET_KEYS):
            if lower_key.endswith("_code") or lower_key == "code":
                event_dict[key] = "***"
            elif len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _add_service(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _renderers(json_output: bool) -> List[Any]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Arguments left as ``None`` are read from ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Development mode always renders for the console.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
        _add_correlation_id,
        # must follow every processor that adds fields
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    processors.extend(_renderers(json_output and not development_mode))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
