from collections.abc import Mapping
from typing import Any, Union

from fastrabbit.amqp.commands import HandleMessageCommand, PublishMessageCommand
from fastrabbit.datastructures import DeliveryContext


class BaseMiddleware:
    def __init__(
        self, next_call: Union["BaseMiddleware", "PublishMessageCommand", "HandleMessageCommand"]
    ):
        self.next_call = next_call

    async def on_message(self, body: bytes, context: DeliveryContext) -> Any:
        if isinstance(self.next_call, PublishMessageCommand):
            raise TypeError(f"Incorrect middleware stack build for {self.__class__.__name__}")

        if not self.next_call:
            return

        return await self.next_call.on_message(body, context)

    async def on_publish(
        self, body: bytes, routing_key: str, headers: Mapping[str, Any] | None
    ) -> Any:
        if isinstance(self.next_call, HandleMessageCommand):
            raise TypeError(f"Incorrect middleware stack build for {self.__class__.__name__}")

        if not self.next_call:
            return

        return await self.next_call.on_publish(body, routing_key, headers)
