import time

from fastrabbit import FastRabbit, RabbitBroker, reject
from fastrabbit.logger import logger

broker = RabbitBroker(exchange="reports")
app = FastRabbit(broker)


@broker.subscriber("render-report", queue_name="reports", threads=2, timeout_after=30)
def render_report(body: bytes):
    if not body:
        return reject()

    time.sleep(1)
    logger.info(f"Rendered the report {body!r}")


@app.after_startup
async def test_publish() -> None:
    await broker.publish("monthly", to_queue="reports")
