from typing import Any

from fastrabbit.datastructures import DeliveryContext, PolicyConfig
from fastrabbit.handlers.base import AcknowledgmentPolicy
from fastrabbit.logger import logger


class MaxRetry(AcknowledgmentPolicy):
    """Retries through the broker dead-letter mechanism up to a bound.

    Rejected messages are dead-lettered by the working queue into
    ``<exchange>-retry``. That queue holds them for ``retry_timeout_millis``
    and then dead-letters them back into the source exchange. Once the
    ``x-death`` history reaches ``max_retries`` the message is moved to
    ``<exchange>-error`` instead.

    The broker appends two ``x-death`` records per cycle (one for the reject,
    one for the expiration), and the raw count is compared with
    ``max_retries``.
    """

    name = "maxretry"

    @classmethod
    def work_queue_arguments(cls, config: PolicyConfig) -> dict[str, Any]:
        return {"x-dead-letter-exchange": config.retry_exchange_name}

    async def declare(self) -> None:
        retry_name = self.config.retry_exchange_name
        await self.channel.declare_exchange(retry_name, "topic", durable=True)
        await self.channel.declare_queue(
            retry_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": self.config.exchange,
                "x-message-ttl": self.config.retry_timeout_millis,
            },
        )
        await self.channel.bind_queue(retry_name, retry_name, routing_key="#")

        error_name = self.config.error_exchange_name
        await self.channel.declare_exchange(error_name, "topic", durable=True)
        await self.channel.declare_queue(error_name, durable=True)
        await self.channel.bind_queue(error_name, error_name, routing_key="#")

    async def reject(self, context: DeliveryContext, body: bytes, requeue: bool = False) -> None:
        if context.redelivery_history_count < self.config.max_retries:
            await self.channel.negative_ack(context.delivery_tag, requeue=requeue)
            return

        logger.warning(
            f"The message reached {context.redelivery_history_count} deaths, "
            f"moving it to '{self.config.error_exchange_name}'."
        )
        await self.channel.publish(
            self.config.error_exchange_name, body, routing_key=context.routing_key
        )
        await self.channel.acknowledge(context.delivery_tag)
