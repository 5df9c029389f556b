from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

if TYPE_CHECKING:
    from tollgate.config import Settings

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Credentials are masked outright. "code" covers TOTP, recovery and
# authorization codes, where even a partial value narrows a guess.
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "code")
# Contact details keep their edges so support can match a report to a line
_CONTACT_KEYS = ("email", "phone")
_SAFE_KEYS = frozenset({"error_code", "status_code", "client_id"})
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, generating one if absent."""
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


def _mask_contact(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and contact-detail values before rendering."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = "***"
        elif any(marker in lower_key for marker in _CONTACT_KEYS):
            event_dict[key] = _mask_contact(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # Module-level loggers must pick up configure_logging after import
        cache_logger_on_first_use=False,
    )


def configure_logging(settings: "Settings") -> None:
    """Re-apply logging from loaded settings (values may come from .env)."""
    _configure_structlog(
        log_level=settings.log_level,
        json_output=settings.log_json,
        development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
    )


# Import-time defaults so module-level loggers work before settings load
_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
