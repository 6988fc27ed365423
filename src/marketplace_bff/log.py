# src/marketplace_bff/log.py

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from .config import Settings, get_settings

_UNCONFIGURED = object()

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(rid: Optional[str]) -> None:
    request_id_var.set(rid)


def session_hint(session_id: Optional[str]) -> Optional[str]:
    """Short, non-reusable prefix of a session id for log correlation."""
    if not session_id:
        return None
    return f"{session_id[:8]}..."


_JWT_RE = re.compile(r"\beyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\b")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_KV_RE = re.compile(
    r"(?i)\b(refresh_token|access_token|id_token|client_secret|password|totp|otp|csrf_token|token|secret)\b\s*[=:]\s*([^\s,;&]+)"
)
_SENSITIVE_KEYS = {
    "password",
    "otp",
    "totp",
    "refresh_token",
    "access_token",
    "id_token",
    "client_secret",
    "csrf_token",
    "cookie",
    "authorization",
}


def _redact_str(s: str) -> str:
    s = _JWT_RE.sub("***REDACTED***", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in list(event_dict.items()):
        if str(k).lower() in _SENSITIVE_KEYS:
            event_dict[k] = "***REDACTED***"
        elif isinstance(v, str):
            event_dict[k] = _redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    rid = request_id_var.get()
    if rid:
        event_dict.setdefault("request_id", rid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def configure_logging(
        level: Optional[str] = None,
        settings: Optional[Settings] = None,
) -> structlog.stdlib.BoundLogger:
    """
    JSON logs on stdout (plus an optional rotating file) for both structlog and
    plain stdlib loggers such as uvicorn's. Safe to call more than once; the
    handlers are rebuilt only when LOG_FILE differs from the last call.
    """
    s = settings or get_settings()
    level = str(level or s.LOG_LEVEL).upper()

    root = logging.getLogger()
    root.setLevel(level)

    log_file = str(s.LOG_FILE) if s.LOG_FILE else None
    if getattr(root, "_marketplace_bff_log_target", _UNCONFIGURED) == log_file:
        return structlog.get_logger("marketplace_bff")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    for old in list(root.handlers):
        root.removeHandler(old)
        with suppress(Exception):
            old.close()
    root.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_contextvars,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        with suppress(Exception):
            logging.getLogger(name).setLevel(level)

    root._marketplace_bff_log_target = log_file
    return structlog.get_logger("marketplace_bff")
