"""Logging configuration for FastRabbit."""

import json
import logging
import os
import sys
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, cast

_log_context: ContextVar[dict[str, Any]] = ContextVar("fastrabbit_log_context", default={})

# Attributes every LogRecord carries, anything else on a record came from 'extra'.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "context"}


class ContextStore:
    """The logging context of the running task.

    It lives in a context variable: every asyncio task, and every worker
    thread started through anyio, works on a copy, so concurrent deliveries
    never see each other's values.
    """

    def set(self, data: dict[str, Any]) -> Token[dict[str, Any]]:
        return _log_context.set(data)

    def get(self) -> dict[str, Any]:
        return _log_context.get()

    def reset(self, token: Token[dict[str, Any]]) -> None:
        _log_context.reset(token)

    def clear(self) -> None:
        _log_context.set({})


_context_store = ContextStore()


class ContextFilter(logging.Filter):
    """Attaches the task context and the per-call 'extra' values as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRIBUTES}
        record.context = {**_context_store.get(), **extra}
        return True


class FastRabbitLogger(logging.Logger):
    @contextmanager
    def contextualize(self, **kwargs: Any) -> Generator[None]:
        """Adds values to every log written inside the block.

        Nested blocks extend the outer context, which is restored on exit::

            with logger.contextualize(queue_name="orders"):
                logger.info("This log carries the queue_name.")
        """
        token = _context_store.set({**_context_store.get(), **kwargs})
        try:
            yield
        finally:
            _context_store.reset(token)


class TextFormatter(logging.Formatter):
    """Human-readable lines, with the context appended as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)

        context = getattr(record, "context", None) or {}
        pairs = " ".join(f"{key}={value}" for key, value in context.items() if value)
        return f"{line} | {pairs}" if pairs else line


class JsonFormatter(logging.Formatter):
    """One compact JSON object per record, context keys at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "process": record.process,
            "thread": record.thread,
        }
        payload.update(getattr(record, "context", {}))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), default=str)


TEXT_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(process)d:%(thread)d "
    "| %(module)s:%(funcName)s:%(lineno)d | %(message)s"
)


def setup_logger() -> FastRabbitLogger:
    """Builds the ``fastrabbit`` logger from the environment.

    ``FASTRABBIT_LOG_LEVEL`` takes a numeric level and
    ``FASTRABBIT_ENABLE_LOG_SERIALIZE=1`` switches to JSON lines.
    """
    level = int(os.getenv("FASTRABBIT_LOG_LEVEL", logging.INFO))
    serialize = bool(int(os.getenv("FASTRABBIT_ENABLE_LOG_SERIALIZE", 0)))

    logging.setLoggerClass(FastRabbitLogger)
    fastrabbit_logger = logging.getLogger("fastrabbit")
    logging.setLoggerClass(logging.Logger)

    fastrabbit_logger.handlers.clear()
    fastrabbit_logger.setLevel(level)
    fastrabbit_logger.propagate = False

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter() if serialize else TextFormatter(TEXT_FORMAT))
    fastrabbit_logger.addHandler(handler)

    return cast(FastRabbitLogger, fastrabbit_logger)


logger: FastRabbitLogger = setup_logger()
