from abc import ABC, abstractmethod
from typing import Any, Self

from fastrabbit.clients.amqp import AMQPChannel
from fastrabbit.datastructures import DeliveryContext, PolicyConfig
from fastrabbit.logger import logger


class AcknowledgmentPolicy(ABC):
    """Turns the outcome of a delivery into broker calls.

    A policy is built once per subscribed queue and shared by all the tasks
    of that subscription. It declares the retry topology it needs when it is
    created, so the declarations must be idempotent.
    """

    name: str = ""

    def __init__(self, channel: AMQPChannel, config: PolicyConfig) -> None:
        self.channel = channel
        self.config = config

    @classmethod
    async def create(cls, channel: AMQPChannel, config: PolicyConfig) -> Self:
        policy = cls(channel, config)
        await policy.declare()
        logger.debug(f"The {cls.__name__} policy is ready for exchange '{config.exchange}'.")
        return policy

    @classmethod
    def work_queue_arguments(cls, config: PolicyConfig) -> dict[str, Any]:
        """Extra arguments the subscribed queue needs to feed this policy."""
        return {}

    async def declare(self) -> None:
        """Declares the broker topology owned by this policy."""
        return None

    async def acknowledge(self, context: DeliveryContext) -> None:
        await self.channel.acknowledge(context.delivery_tag)

    @abstractmethod
    async def reject(self, context: DeliveryContext, body: bytes, requeue: bool = False) -> None:
        pass

    async def requeue(self, context: DeliveryContext, body: bytes) -> None:
        await self.reject(context, body, requeue=True)

    async def error(self, context: DeliveryContext, body: bytes, cause: BaseException) -> None:
        await self.reject(context, body)

    async def timeout(self, context: DeliveryContext, body: bytes) -> None:
        await self.reject(context, body)

    async def noop(self, context: DeliveryContext) -> None:
        return None
