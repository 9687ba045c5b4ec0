import random

from fastrabbit.datastructures import DeliveryContext
from fastrabbit.handlers.base import AcknowledgmentPolicy
from fastrabbit.logger import logger


def backoff_delay_millis(retry_count: int) -> int:
    """Delay before the next attempt, a jittered polynomial in milliseconds."""
    return (retry_count**4) + 15 + (random.randrange(30) * (retry_count + 1)) * 1000


class ExponentialBackoff(AcknowledgmentPolicy):
    """Republishes failed messages with a growing per-message expiration.

    The retry queue has no TTL of its own. Each republished message carries
    its delay as expiration and a ``retry_count`` header, and the retry queue
    dead-letters it back to the source exchange once it expires.
    """

    name = "exponential"

    @property
    def max_retries(self) -> int:
        return max(self.config.max_retries, 1)

    async def declare(self) -> None:
        retry_name = self.config.retry_exchange_name
        await self.channel.declare_exchange(retry_name, "fanout", durable=True)
        await self.channel.declare_queue(
            retry_name,
            durable=True,
            arguments={"x-dead-letter-exchange": self.config.exchange},
        )
        await self.channel.bind_queue(retry_name, retry_name, routing_key="")

    async def reject(self, context: DeliveryContext, body: bytes, requeue: bool = False) -> None:
        if requeue:
            await self.requeue(context, body)
            return

        await self.channel.negative_ack(context.delivery_tag, requeue=False)

    async def requeue(self, context: DeliveryContext, body: bytes) -> None:
        await self.channel.negative_ack(context.delivery_tag, requeue=False)

        if context.retry_count >= self.max_retries:
            logger.warning(
                f"The message was retried {context.retry_count} times, it will be dropped."
            )
            return

        retry_count = context.retry_count + 1
        headers = {key: value for key, value in context.headers.items() if key != "x-death"}
        headers["retry_count"] = retry_count
        await self.channel.publish(
            self.config.retry_exchange_name,
            body,
            routing_key=context.routing_key,
            headers=headers,
            expiration_millis=backoff_delay_millis(retry_count),
        )
        logger.info(f"The message was sent to retry (attempt {retry_count}).")

    async def error(self, context: DeliveryContext, body: bytes, cause: BaseException) -> None:
        await self.requeue(context, body)

    async def timeout(self, context: DeliveryContext, body: bytes) -> None:
        await self.requeue(context, body)
