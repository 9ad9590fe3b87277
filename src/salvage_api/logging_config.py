from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "salvage-yard"

# Set per HTTP request, and by the scheduler for each sweep run.
correlation_id: ContextVar[str | None] = ContextVar("salvage_correlation_id", default=None)

_AUDIT_ATTR = "audit_fields"
_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] [%(correlation_id)s] %(message)s"
_QUIET_LOGGERS = ("apscheduler", "httpx", "httpcore", "asyncio")


def bind_correlation_id(incoming: str | None = None) -> str:
    """Bind the caller's correlation id to this context, minting one when none was sent."""
    cid = (incoming or "").strip()[:64] or uuid.uuid4().hex[:12]
    correlation_id.set(cid)
    return cid


def audit(**fields: Any) -> dict[str, Any]:
    """``extra=`` payload for record-keeping fields (VIN, sale id, actor, amounts). None values are dropped."""
    return {_AUDIT_ATTR: {name: value for name, value in fields.items() if value is not None}}


class RequestContextFilter(logging.Filter):
    """Stamps every record with the service name and the bound correlation id."""

    def __init__(self, service: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        record.correlation_id = correlation_id.get() or "-"
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None) or correlation_id.get()
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": getattr(record, "service", SERVICE_NAME),
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": None if cid == "-" else cid,
        }
        fields = getattr(record, _AUDIT_ATTR, None)
        if fields:
            entry["audit"] = fields
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = {
                "type": record.exc_info[0].__name__,
                "trace": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json", *, service: str = SERVICE_NAME) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter(service))
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
