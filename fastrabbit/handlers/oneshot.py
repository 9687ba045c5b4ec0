from fastrabbit.datastructures import DeliveryContext
from fastrabbit.handlers.base import AcknowledgmentPolicy


class OneShot(AcknowledgmentPolicy):
    """Acknowledges or rejects each delivery once, without retry topology."""

    name = "oneshot"

    async def reject(self, context: DeliveryContext, body: bytes, requeue: bool = False) -> None:
        await self.channel.negative_ack(context.delivery_tag, requeue=requeue)
