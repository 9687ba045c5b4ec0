"""Concurrency utilities."""

import inspect
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from types import FunctionType
from typing import Any

import psutil

from fastrabbit.middlewares.base import BaseMiddleware


@dataclass(frozen=True)
class ConnectionInfo:
    """Detailed information about a single network connection."""

    remote_address: str
    remote_port: int
    status: str


@dataclass(frozen=True)
class ProcessInfo:
    """Detailed information about a single OS process."""

    pid: int
    running: bool
    num_threads: int
    connections: list[ConnectionInfo] = field(default_factory=list)


def ensure_async_callable_function(callable_object: Callable[..., Any]) -> None:
    """Ensures that a callable is an async function.

    Args:
        callable_object: The callable to check.
    """
    if not isinstance(callable_object, FunctionType):
        raise TypeError(f"The object must be a function type but it is {callable_object}.")

    if not inspect.iscoroutinefunction(callable_object):
        raise TypeError(f"The function {callable_object} must be async.")


def ensure_work_function(callable_object: Callable[..., Any]) -> None:
    """Ensures that a work function can receive a message body.

    Sync and async functions are accepted, both with ``(body)`` or
    ``(body, context)`` signatures.
    """
    if not isinstance(callable_object, FunctionType):
        raise TypeError(f"The object must be a function type but it is {callable_object}.")

    signature = inspect.signature(callable_object)
    positional = [
        p
        for p in signature.parameters.values()
        if p.kind
        in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.VAR_POSITIONAL,
        )
    ]
    if not positional:
        raise TypeError(f"The function {callable_object} must receive the message body.")


def ensure_async_middleware(middleware: type[BaseMiddleware]) -> None:
    """Ensures that a middleware is an async middleware.

    Args:
        middleware: The middleware to check.
    """
    if not (isinstance(middleware, type) and issubclass(middleware, BaseMiddleware)):
        raise TypeError(f"The object {middleware} must be a {BaseMiddleware.__name__}.")

    if not inspect.iscoroutinefunction(middleware.on_message):
        raise TypeError(f"The on_message method must be async on {middleware}.")

    if not inspect.iscoroutinefunction(middleware.on_publish):
        raise TypeError(f"The on_publish method must be async on {middleware}.")


def get_process_info() -> ProcessInfo:
    """Collects the data of the current process and its broker connections."""
    process = psutil.Process(os.getpid())

    connections: list[ConnectionInfo] = []
    for connection in process.net_connections(kind="tcp"):
        if not connection.raddr:
            continue

        connections.append(
            ConnectionInfo(
                remote_address=connection.raddr.ip,
                remote_port=connection.raddr.port,
                status=connection.status,
            )
        )

    return ProcessInfo(
        pid=process.pid,
        running=process.is_running(),
        num_threads=process.num_threads(),
        connections=connections,
    )
