from __future__ import annotations

import hashlib
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, Mapping, Optional

from dploy.errors import DployError

_ROOT_LOGGER = "dploy"

_LEVEL_SYMBOLS: Dict[int, str] = {
    logging.DEBUG: "(?)",
    logging.INFO: "(*)",
    logging.WARNING: "(!)",
    logging.ERROR: "(x)",
    logging.CRITICAL: "(X)",
}

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("dploy_log_context", default={})


def token_hint(token: str) -> str:
    """Short stable fingerprint of a credential, safe to put in log lines."""
    if not token:
        return "-"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]


class _DployFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = created.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        symbol = getattr(record, "symbol", _LEVEL_SYMBOLS.get(record.levelno, "(?)"))
        category = getattr(record, "category", record.name)
        event = getattr(record, "event", "")
        message = record.getMessage()
        fields: Dict[str, Any] = dict(getattr(record, "fields", {}))

        parts = [stamp, f"{record.levelname:<8}", str(category)]

        if event == "rollout.step":
            step_name = str(fields.pop("step", "step"))
            child_name = fields.pop("child", None)
            if child_name:
                parts.append(f"{symbol} >> {step_name} >> {child_name}")
            else:
                parts.append(f"{symbol} >> {step_name}")
            if message:
                parts.append(message)
        elif event:
            parts.append(f"{symbol} {event}")
            if message:
                parts.append(message)
        elif message:
            parts.append(f"{symbol} {message}")

        parts.extend(f"{key}: {value}" for key, value in fields.items())

        formatted = " | ".join(parts)
        if record.exc_info:
            return f"{formatted}\n{self.formatException(record.exc_info)}"
        return formatted


@dataclass(frozen=True)
class Operation:
    logger: "BoundLogger"
    name: str
    message: str
    fields: Dict[str, Any]
    start_time: float = 0.0

    async def __aenter__(self) -> "Operation":
        object.__setattr__(self, "start_time", perf_counter())
        self.logger.info("operation.start", self.message, operation=self.name, **self.fields)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        duration_ms = round((perf_counter() - self.start_time) * 1000, 1)
        if exc_type is None:
            self.logger.info(
                "operation.complete",
                "Completed",
                operation=self.name,
                duration_ms=duration_ms,
            )
            return
        if isinstance(exc, DployError):
            self.logger.error(
                "operation.error",
                str(exc),
                operation=self.name,
                duration_ms=duration_ms,
                error_type=exc_type.__name__,
            )
        else:
            self.logger.error(
                "operation.error",
                "Failed",
                operation=self.name,
                duration_ms=duration_ms,
                error_type=exc_type.__name__,
                exc_info=(exc_type, exc, tb),
            )

    def step(self, name: str, message: str, **fields: Any) -> None:
        self.logger.info("rollout.step", message, operation=self.name, step=name, **fields)

    def child(self, parent_step: str, child_name: str, message: str, **fields: Any) -> None:
        self.logger.debug(
            "rollout.step",
            message,
            operation=self.name,
            step=parent_step,
            child=child_name,
            **fields,
        )


class BoundLogger:
    def __init__(self, category: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._category = category
        self._fields: Dict[str, Any] = dict(fields or {})

    def bind(self, **fields: Any) -> "BoundLogger":
        merged = dict(self._fields)
        merged.update(fields)
        return BoundLogger(self._category, merged)

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        current = dict(_LOG_CONTEXT.get())
        current.update(fields)
        token = _LOG_CONTEXT.set(current)
        try:
            yield
        finally:
            _LOG_CONTEXT.reset(token)

    def operation(self, name: str, message: str, **fields: Any) -> Operation:
        return Operation(self, name=name, message=message, fields=fields)

    def debug(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: str, *, exc_info: Any = None, **fields: Any) -> None:
        self._log(logging.ERROR, event, message, exc_info=exc_info, **fields)

    def _log(
        self,
        severity: int,
        event: str,
        message: str,
        *,
        exc_info: Any = None,
        **fields: Any,
    ) -> None:
        merged: Dict[str, Any] = {}
        merged.update(_LOG_CONTEXT.get())
        merged.update(self._fields)
        merged.update(fields)

        logging.getLogger(_ROOT_LOGGER).log(
            severity,
            message,
            extra={
                "category": self._category,
                "event": event,
                "symbol": _LEVEL_SYMBOLS.get(severity, "(?)"),
                "fields": merged,
            },
            exc_info=exc_info,
        )


def configure_logging(log_level: str, log_file: Optional[str] = None) -> None:
    formatter = _DployFormatter()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream_handler]

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(log_level.upper())
    logger.handlers.clear()
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
