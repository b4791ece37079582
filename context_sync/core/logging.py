from __future__ import annotations

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from context_sync.core.config import settings

_request_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
_workspace_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("workspace_id", default=None)


class JsonLineFormatter(jsonlogger.JsonFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = super().format(record)
        return json.dumps(json.loads(payload), separators=(",", ":"), ensure_ascii=False, default=str)


class _StructuredContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id_ctx.get()
        if getattr(record, "workspace_id", None) is None:
            record.workspace_id = _workspace_id_ctx.get()
        if not hasattr(record, "event_type"):
            record.event_type = None
        if not hasattr(record, "plane"):
            record.plane = None
        if not hasattr(record, "service"):
            record.service = settings.APP_NAME
        if not hasattr(record, "env"):
            record.env = settings.ENVIRONMENT
        if not hasattr(record, "version"):
            record.version = settings.APP_VERSION
        if not hasattr(record, "ts"):
            record.ts = datetime.now(timezone.utc).isoformat()
        return True


def set_request_context(*, request_id: str | None = None, workspace_id: str | None = None) -> None:
    _request_id_ctx.set(request_id)
    _workspace_id_ctx.set(workspace_id)


def clear_request_context() -> None:
    set_request_context(request_id=None, workspace_id=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def get_workspace_id() -> str | None:
    return _workspace_id_ctx.get()


def log_event(
    event_type: str,
    *,
    level: int = logging.INFO,
    payload: dict[str, Any] | None = None,
    workspace_id: str | None = None,
    request_id: str | None = None,
    plane: str = "data",
) -> None:
    logger = logging.getLogger("context_sync.observability")
    extra = {
        "event_type": event_type,
        "plane": plane,
        "request_id": request_id if request_id is not None else get_request_id(),
        "workspace_id": workspace_id if workspace_id is not None else get_workspace_id(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "service": settings.APP_NAME,
        "env": settings.ENVIRONMENT,
        "version": settings.APP_VERSION,
    }
    if payload:
        extra.update(payload)
    logger.log(level, event_type, extra=extra)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.addFilter(_StructuredContextFilter())
    formatter = JsonLineFormatter(
        "%(ts)s %(levelname)s %(service)s %(env)s %(event_type)s %(request_id)s %(workspace_id)s %(plane)s %(version)s %(message)s"
    )
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel(settings.LOG_LEVEL.upper())
    root.handlers = [handler]
