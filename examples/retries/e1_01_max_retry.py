import random

from fastrabbit import FastRabbit, MaxRetry, RabbitBroker, ack, reject
from fastrabbit.logger import logger

broker = RabbitBroker(exchange="payments")
app = FastRabbit(broker)


@broker.subscriber(
    "charge",
    queue_name="charges",
    handler=MaxRetry,
    max_retries=6,
    retry_timeout_millis=5_000,
)
async def charge(body: bytes):
    if random.random() < 0.5:
        logger.warning("The payment gateway is unavailable, retrying later")
        return reject()

    logger.info(f"Charged {body!r}")
    return ack()


@app.after_startup
async def test_publish() -> None:
    await broker.publish({"amount": 10}, to_queue="charges")
