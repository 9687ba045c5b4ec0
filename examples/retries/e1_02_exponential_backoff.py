from fastrabbit import DeliveryContext, FastRabbit, RabbitBroker, ack
from fastrabbit.logger import logger

broker = RabbitBroker(exchange="webhooks")
app = FastRabbit(broker)


@broker.subscriber(
    "deliver-webhook",
    queue_name="webhooks",
    handler="exponential",
    max_retries=5,
)
async def deliver(body: bytes, context: DeliveryContext):
    if context.retry_count < 2:
        raise ConnectionError("The webhook endpoint refused the connection")

    logger.info(f"Delivered the webhook after {context.retry_count} retries")
    return ack()


@app.after_startup
async def test_publish() -> None:
    await broker.publish({"event": "invoice.paid"}, to_queue="webhooks")
