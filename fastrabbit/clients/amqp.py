"""Transport boundary over aio-pika.

Every broker call made by the policies, the subscriptions and the publishers
goes through an :class:`AMQPChannel`. The channel serializes those calls with
a lock, so the many tasks of a subscription can share it safely.
"""

from collections.abc import Mapping
from contextvars import ContextVar
from datetime import timedelta
from typing import Any

import aio_pika
import anyio
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractQueue,
    AbstractQueueIterator,
    AbstractRobustConnection,
)

from fastrabbit.exceptions import FastRabbitException
from fastrabbit.logger import logger

_current_channel: ContextVar["AMQPChannel | None"] = ContextVar(
    "fastrabbit_current_channel", default=None
)
_default_channel: "AMQPChannel | None" = None


class AMQPChannel:
    def __init__(self, channel: AbstractChannel) -> None:
        self._channel = channel
        self._lock = anyio.Lock()
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}

    @property
    def is_closed(self) -> bool:
        return bool(self._channel.is_closed)

    async def set_prefetch(self, count: int) -> None:
        async with self._lock:
            await self._channel.set_qos(prefetch_count=count)

    async def declare_exchange(self, name: str, kind: str, durable: bool = True) -> None:
        async with self._lock:
            logger.debug(f"Declaring exchange '{name}' ({kind}, durable={durable}).")
            exchange = await self._channel.declare_exchange(
                name, type=aio_pika.ExchangeType(kind), durable=durable
            )
            self._exchanges[name] = exchange

    async def declare_queue(
        self, name: str, durable: bool = True, arguments: Mapping[str, Any] | None = None
    ) -> None:
        async with self._lock:
            logger.debug(f"Declaring queue '{name}' (durable={durable}, arguments={arguments}).")
            queue = await self._channel.declare_queue(
                name, durable=durable, arguments=dict(arguments or {})
            )
            self._queues[name] = queue

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        async with self._lock:
            logger.debug(f"Binding queue '{queue}' to '{exchange}' with key '{routing_key}'.")
            await self._get_queue(queue).bind(exchange, routing_key=routing_key)

    async def publish(
        self,
        exchange: str,
        body: bytes,
        *,
        routing_key: str = "",
        headers: Mapping[str, Any] | None = None,
        expiration_millis: int | None = None,
    ) -> None:
        expiration = None
        if expiration_millis is not None:
            expiration = timedelta(milliseconds=expiration_millis)

        message = aio_pika.Message(
            body=body,
            headers=dict(headers or {}),
            expiration=expiration,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )

        async with self._lock:
            target = await self._get_exchange(exchange)
            await target.publish(message, routing_key=routing_key)

        logger.debug(f"Message published to '{exchange}' with routing key '{routing_key}'.")

    async def acknowledge(self, delivery_tag: int) -> None:
        async with self._lock:
            channel = await self._channel.get_underlay_channel()
            await channel.basic_ack(delivery_tag)

    async def negative_ack(self, delivery_tag: int, requeue: bool = False) -> None:
        async with self._lock:
            channel = await self._channel.get_underlay_channel()
            await channel.basic_reject(delivery_tag, requeue=requeue)

    def consume(self, queue: str, no_ack: bool = False) -> AbstractQueueIterator:
        return self._get_queue(queue).iterator(no_ack=no_ack)

    async def close(self) -> None:
        if not self.is_closed:
            await self._channel.close()

    async def _get_exchange(self, name: str) -> AbstractExchange:
        if not name:
            return self._channel.default_exchange

        if name not in self._exchanges:
            self._exchanges[name] = await self._channel.get_exchange(name, ensure=False)
        return self._exchanges[name]

    def _get_queue(self, name: str) -> AbstractQueue:
        if name not in self._queues:
            raise FastRabbitException(f"The queue '{name}' must be declared before its use.")
        return self._queues[name]


class AMQPConnection:
    def __init__(self, url: str, heartbeat: int = 30) -> None:
        self.url = url
        self.heartbeat = heartbeat
        self._connection: AbstractRobustConnection | None = None

    async def connect(self) -> None:
        if self._connection and not self._connection.is_closed:
            return

        logger.debug("Opening the broker connection.")
        self._connection = await aio_pika.connect_robust(self.url, heartbeat=self.heartbeat)

    async def channel(self) -> AMQPChannel:
        if not self._connection:
            raise FastRabbitException("The broker connection is not open.")

        channel = await self._connection.channel(publisher_confirms=True)
        return AMQPChannel(channel)

    async def close(self) -> None:
        if self._connection and not self._connection.is_closed:
            logger.debug("Closing the broker connection.")
            await self._connection.close()
        self._connection = None


def set_current_channel(channel: AMQPChannel | None) -> Any:
    """Binds the channel used by publishers inside the current task."""
    return _current_channel.set(channel)


def set_default_channel(channel: AMQPChannel | None) -> None:
    """Sets the channel used by publishers outside of any subscription."""
    global _default_channel
    _default_channel = channel


def get_current_channel() -> AMQPChannel:
    channel = _current_channel.get() or _default_channel
    if channel is None:
        raise FastRabbitException(
            "There is no open channel to publish on. "
            "Messages can only be published while the broker is running."
        )
    return channel
