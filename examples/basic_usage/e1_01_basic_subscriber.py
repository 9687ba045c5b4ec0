from fastrabbit import DeliveryContext, FastRabbit, RabbitBroker, ack
from fastrabbit.logger import logger

broker = RabbitBroker(exchange="shop")
app = FastRabbit(broker)


@broker.subscriber("orders-created", queue_name="orders", routing_keys=["orders.created"])
async def process_order(body: bytes, context: DeliveryContext):
    logger.info(f"Processed order {body!r} with tag {context.delivery_tag}")
    return ack()


@app.after_startup
async def test_publish() -> None:
    await broker.publish({"order_id": 1}, routing_key="orders.created")
