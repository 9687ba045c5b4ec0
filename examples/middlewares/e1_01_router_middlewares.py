from collections.abc import Mapping
from typing import Any

from fastrabbit import (
    BaseMiddleware,
    DeliveryContext,
    FastRabbit,
    RabbitBroker,
    RabbitRouter,
)
from fastrabbit.logger import logger
from fastrabbit.middlewares.gzip import GZipMiddleware


class AuditMiddleware(BaseMiddleware):
    async def on_message(self, body: bytes, context: DeliveryContext) -> Any:
        logger.info(f"Received {len(body)} bytes from {context.routing_key}")
        return await super().on_message(body, context)

    async def on_publish(
        self, body: bytes, routing_key: str, headers: Mapping[str, Any] | None
    ) -> Any:
        logger.info(f"Publishing {len(body)} bytes to {routing_key}")
        return await super().on_publish(body, routing_key, headers)


router = RabbitRouter(prefix="inventory", middlewares=[GZipMiddleware])


@router.subscriber("stock", queue_name="stock")
async def update_stock(body: bytes):
    logger.info(f"Updated the stock with {body!r}")


broker = RabbitBroker(exchange="warehouse", routers=[router], middlewares=[AuditMiddleware])
app = FastRabbit(broker)


@app.after_startup
async def test_publish() -> None:
    await router.publish({"sku": "A-1", "quantity": 3}, to_queue="inventory.stock")
