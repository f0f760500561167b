"""Structured logging for the bridge.

Every BridgeService operation runs inside a LogContext that tags its log
records with a correlation id and the tenant it acts for. Records are
rendered as one JSON object per line, or as plain text for local runs.

Usage:
    from issuance_bridge.logging_config import configure_logging

    configure_logging(load_settings())
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .config import BridgeSettings

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

CONTEXT_VARS: dict[str, ContextVar[Optional[str]]] = {
    "correlation_id": correlation_id_var,
    "tenant_id": tenant_id_var,
}

# Attributes every LogRecord carries; anything else arrived through `extra=`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    *CONTEXT_VARS,
}

# Marks handlers installed here so reconfiguring leaves foreign handlers alone
_HANDLER_MARK = "_issuance_bridge_handler"

TEXT_FORMAT = (
    "%(asctime)s %(levelname)-8s %(name)s "
    "[%(correlation_id)s tenant=%(tenant_id)s] %(message)s"
)


class BridgeContextFilter(logging.Filter):
    """Copies the current correlation id and tenant onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


class StructuredFormatter(logging.Formatter):
    """Renders a record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for name in CONTEXT_VARS:
            value = getattr(record, name, None)
            if value:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )
        return json.dumps(entry, default=str)


def _bridge_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(BridgeContextFilter())
    setattr(handler, _HANDLER_MARK, True)
    return handler


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Install the bridge's handlers on the root logger.

    Calling it again replaces handlers installed by an earlier call; other
    handlers on the root logger are kept.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON lines (True) or TEXT_FORMAT (False)
        log_file: Optional file that receives the same records as stdout
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in [h for h in root.handlers if getattr(h, _HANDLER_MARK, False)]:
        root.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = (
        StructuredFormatter() if json_format else logging.Formatter(TEXT_FORMAT)
    )
    root.addHandler(_bridge_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        root.addHandler(_bridge_handler(logging.FileHandler(log_file), formatter))

    # Federation lookups would otherwise log every request line at INFO
    logging.getLogger("httpx").setLevel(
        logging.DEBUG if root.level <= logging.DEBUG else logging.WARNING
    )


def configure_logging(settings: "BridgeSettings") -> None:
    """Apply `log_level` and `log_json` from the bridge settings."""
    setup_logging(settings.log_level, json_format=settings.log_json)


def generate_correlation_id() -> str:
    return f"cor_{uuid.uuid4().hex[:16]}"


class LogContext:
    """Sets correlation id and tenant for the enclosed block, then restores them."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ):
        self._values = {"correlation_id": correlation_id, "tenant_id": tenant_id}
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        for name, value in self._values.items():
            if value:
                var = CONTEXT_VARS[name]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
