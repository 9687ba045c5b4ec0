import anyio
from anyio import get_cancelled_exc_class

from fastrabbit.amqp.subscriber import Subscriber
from fastrabbit.clients.amqp import AMQPChannel, AMQPConnection, set_current_channel
from fastrabbit.clients.queue import QueueSubscription
from fastrabbit.concurrency.dispatcher import WorkDispatcher
from fastrabbit.logger import logger
from fastrabbit.observability import Metrics


class ConsumeTask:
    """Runs one subscriber: its channel, retry topology and dispatcher."""

    def __init__(
        self, subscriber: Subscriber, connection: AMQPConnection, metrics: Metrics | None = None
    ) -> None:
        self.ready = False
        self.running = False
        self.subscriber = subscriber
        self.connection = connection
        self.metrics = metrics

        self._stopping = False
        self._subscription: QueueSubscription | None = None

    async def start(self) -> None:
        logger.debug(f"The consume loop started for {self.subscriber.name}")

        self.running = True
        channel: AMQPChannel | None = None
        try:
            with logger.contextualize(
                subscriber=self.subscriber.name, queue_name=self.subscriber.queue_name
            ):
                channel = await self.connection.channel()
                set_current_channel(channel)
                await channel.set_prefetch(self.subscriber.queue_policy.prefetch)

                subscription = QueueSubscription(channel, self.subscriber)
                await subscription.declare()

                policy = await self.subscriber.handler_class.create(
                    channel, self.subscriber.policy_config
                )
                dispatcher = WorkDispatcher(
                    name=self.subscriber.name,
                    callstack=self.subscriber.build_callstack(),
                    policy=policy,
                    dispatch_policy=self.subscriber.dispatch_policy,
                    metrics=self.metrics,
                )

                self._subscription = subscription
                if self._stopping:
                    return

                async with dispatcher:
                    self.ready = True
                    await subscription.subscribe(dispatcher)
        except get_cancelled_exc_class():
            logger.debug("We got a cancellation from parent, the in-flight messages are dropped")
            raise
        except Exception:
            logger.exception(
                f"A non-recoverable exception happened on message handler {self.subscriber.name}."
            )
        finally:
            self.ready = False
            self.running = False
            if channel is not None:
                with anyio.CancelScope(shield=True):
                    await channel.close()

    def task_ready(self) -> bool:
        return self.ready

    def task_alive(self) -> bool:
        return self.running

    async def shutdown(self) -> None:
        self.ready = False
        self._stopping = True
        if self._subscription is not None:
            await self._subscription.unsubscribe()
