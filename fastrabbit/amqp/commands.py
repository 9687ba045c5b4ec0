import inspect
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from functools import partial
from typing import Any

import anyio.to_thread
from anyio import CapacityLimiter

from fastrabbit.clients.amqp import get_current_channel
from fastrabbit.datastructures import DeliveryContext
from fastrabbit.types import WorkCallable

_thread_limiter: ContextVar[CapacityLimiter | None] = ContextVar(
    "fastrabbit_thread_limiter", default=None
)


@contextmanager
def use_thread_limiter(limiter: CapacityLimiter) -> Generator[None]:
    """Bounds the worker threads of the sync work functions called inside the block."""
    token = _thread_limiter.set(limiter)
    try:
        yield
    finally:
        _thread_limiter.reset(token)


def accepts_context(target: WorkCallable) -> bool:
    """Tells whether the work function takes ``(body, context)`` or only ``(body)``."""
    parameters = list(inspect.signature(target).parameters.values())
    if any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in parameters):
        return True

    positional = [
        p
        for p in parameters
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2


class HandleMessageCommand:
    def __init__(self, *, target: WorkCallable):
        self.target = target
        self.with_context = accepts_context(target)
        self.is_async = inspect.iscoroutinefunction(target)

    async def on_message(self, body: bytes, context: DeliveryContext) -> Any:
        call = partial(self.target, body)
        if self.with_context:
            call = partial(self.target, body, context)

        if self.is_async:
            return await call()

        # A worker thread cannot be interrupted, on cancellation it is abandoned.
        return await anyio.to_thread.run_sync(
            call, abandon_on_cancel=True, limiter=_thread_limiter.get()
        )


class PublishMessageCommand:
    def __init__(self, *, exchange: str):
        self.exchange = exchange

    async def on_publish(
        self, body: bytes, routing_key: str, headers: Mapping[str, Any] | None
    ) -> Any:
        channel = get_current_channel()
        await channel.publish(self.exchange, body, routing_key=routing_key, headers=headers)
