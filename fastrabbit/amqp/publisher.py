"""Publishing of messages into the broker exchange."""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, validate_call

from fastrabbit.amqp.commands import PublishMessageCommand
from fastrabbit.concurrency.utils import ensure_async_middleware
from fastrabbit.exceptions import FastRabbitException
from fastrabbit.logger import logger
from fastrabbit.middlewares.base import BaseMiddleware

PublishableData = BaseModel | dict[str, Any] | str | bytes


def serialize_body(data: PublishableData) -> bytes:
    """Turns the publishable types into the message body, dicts as compact JSON."""
    match data:
        case bytes():
            return data
        case str():
            return data.encode("utf-8")
        case dict():
            return json.dumps(data, separators=(",", ":")).encode("utf-8")
        case BaseModel():
            return data.model_dump_json().encode("utf-8")

    raise FastRabbitException(
        f"The message {data!r} cannot be published, "
        "it must be a pydantic model, a dict, a str or bytes."
    )


class Publisher:
    """Sends messages with a fixed routing key through the publisher middlewares."""

    def __init__(self, routing_key: str, middlewares: list[type[BaseMiddleware]] | None = None):
        self.exchange = ""
        self.routing_key = routing_key
        self.middlewares: list[type[BaseMiddleware]] = []

        for middleware in middlewares or []:
            self.include_middleware(middleware)

    @validate_call(config=ConfigDict(strict=True))
    async def publish(self, data: PublishableData, headers: dict[str, Any] | None = None) -> None:
        body = serialize_body(data)
        await self.build_callstack().on_publish(body, self.routing_key, headers)

    def build_callstack(self) -> PublishMessageCommand | BaseMiddleware:
        callstack: PublishMessageCommand | BaseMiddleware = PublishMessageCommand(
            exchange=self.exchange
        )
        for middleware in reversed(self.middlewares):
            callstack = middleware(next_call=callstack)

        return callstack

    @validate_call(config=ConfigDict(strict=True))
    def include_middleware(self, middleware: type[BaseMiddleware]) -> None:
        if middleware not in self.middlewares:
            ensure_async_middleware(middleware)
            self.middlewares.append(middleware)

    def set_exchange(self, exchange: str) -> None:
        logger.debug(f"The publisher for '{self.routing_key}' will use the exchange '{exchange}'.")
        self.exchange = exchange
