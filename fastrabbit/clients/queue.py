from typing import TYPE_CHECKING

import anyio
from aio_pika.abc import AbstractIncomingMessage, AbstractQueueIterator

from fastrabbit.clients.amqp import AMQPChannel
from fastrabbit.datastructures import DeliveryContext
from fastrabbit.logger import logger

if TYPE_CHECKING:
    from fastrabbit.amqp.subscriber import Subscriber
    from fastrabbit.concurrency.dispatcher import WorkDispatcher


class QueueSubscription:
    """Binds a subscriber queue to its exchange and feeds its deliveries.

    Deliveries are handed to the dispatcher one at a time. Each one waits for
    a free slot of the pool first, and only the hand-off itself shares a lock
    with ``unsubscribe``. Once ``unsubscribe`` returns the dispatcher receives
    nothing else from this subscription, and a delivery still waiting for a
    slot is given back to the broker.
    """

    def __init__(self, channel: AMQPChannel, subscriber: "Subscriber") -> None:
        self.channel = channel
        self.subscriber = subscriber

        self._lock = anyio.Lock()
        self._subscribed = False
        self._closed = False
        self._iterator: AbstractQueueIterator | None = None

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    async def declare(self) -> None:
        queue_policy = self.subscriber.queue_policy
        exchange = self.subscriber.exchange
        queue_name = self.subscriber.queue_name

        await self.channel.declare_exchange(
            exchange, queue_policy.exchange_type, durable=queue_policy.durable
        )
        arguments = {
            **self.subscriber.handler_class.work_queue_arguments(self.subscriber.policy_config),
            **queue_policy.arguments,
        }
        await self.channel.declare_queue(
            queue_name, durable=queue_policy.durable, arguments=arguments
        )
        for routing_key in self.subscriber.routing_keys:
            await self.channel.bind_queue(queue_name, exchange, routing_key)

    async def subscribe(self, dispatcher: "WorkDispatcher") -> None:
        """Consumes the queue until ``unsubscribe`` is called."""
        queue_name = self.subscriber.queue_name
        no_ack = not self.subscriber.dispatch_policy.ack

        async with self._lock:
            if self._closed:
                return

            self._iterator = self.channel.consume(queue_name, no_ack=no_ack)
            self._subscribed = True

        logger.info(f"Listening for messages on '{queue_name}'.")
        async with self._iterator as messages:
            async for message in messages:
                # Reserved outside the lock, unsubscribe never waits for the pool.
                token = await dispatcher.reserve()
                async with self._lock:
                    if not self._subscribed:
                        dispatcher.release(token)
                        await self._give_back(message)
                        break

                    context = self._translate_message(message)
                    dispatcher.start(token, context, message.body)

        logger.debug(f"Stopped listening for messages on '{queue_name}'.")

    async def unsubscribe(self) -> None:
        async with self._lock:
            self._closed = True
            if not self._subscribed:
                return

            self._subscribed = False
            if self._iterator is not None:
                logger.debug(f"Cancelling the consumer of '{self.subscriber.queue_name}'.")
                await self._iterator.close()

    async def _give_back(self, message: AbstractIncomingMessage) -> None:
        if self.subscriber.dispatch_policy.ack:
            await self.channel.negative_ack(message.delivery_tag, requeue=True)

    def _translate_message(self, message: AbstractIncomingMessage) -> DeliveryContext:
        return DeliveryContext(
            delivery_tag=message.delivery_tag,
            routing_key=message.routing_key or "",
            headers=dict(message.headers or {}),
            exchange=message.exchange or "",
            redelivered=bool(message.redelivered),
            message_id=message.message_id,
            content_type=message.content_type,
        )
