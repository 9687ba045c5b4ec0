import gzip
import json
from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel

from fastrabbit.amqp.commands import PublishMessageCommand
from fastrabbit.amqp.publisher import Publisher, serialize_body
from fastrabbit.clients.amqp import AMQPChannel, set_current_channel, set_default_channel
from fastrabbit.exceptions import FastRabbitException
from fastrabbit.middlewares.base import BaseMiddleware
from fastrabbit.middlewares.gzip import GZipMiddleware
from fastrabbit.router import RabbitRouter
from tests.conftest import callstack_matches


class Order(BaseModel):
    id: int
    status: str


@pytest.fixture
def default_channel(mock_channel: MagicMock):
    set_default_channel(mock_channel)
    yield mock_channel
    set_default_channel(None)


class TestPublisherSerialization:
    @pytest.mark.parametrize(
        ["data", "expected"],
        [
            (b"raw", b"raw"),
            ("text", b"text"),
            ({"id": 1, "items": [1, 2]}, b'{"id":1,"items":[1,2]}'),
            (Order(id=7, status="paid"), b'{"id":7,"status":"paid"}'),
        ],
    )
    @pytest.mark.asyncio
    async def test_publish_serializes(self, default_channel: MagicMock, data, expected: bytes):
        publisher = Publisher(routing_key="orders.created")
        publisher.set_exchange("orders")

        await publisher.publish(data, headers={"source": "tests"})

        default_channel.publish.assert_awaited_once_with(
            "orders", expected, routing_key="orders.created", headers={"source": "tests"}
        )

    def test_unserializable_message(self):
        with pytest.raises(FastRabbitException):
            serialize_body(12.5)

    @pytest.mark.asyncio
    async def test_publish_without_channel(self):
        publisher = Publisher(routing_key="orders")
        with pytest.raises(FastRabbitException):
            await publisher.publish(b"body")

    @pytest.mark.asyncio
    async def test_current_channel_wins(self, default_channel: MagicMock):
        task_channel = MagicMock(spec=AMQPChannel)
        set_current_channel(task_channel)
        try:
            await Publisher(routing_key="orders").publish(b"body")
        finally:
            set_current_channel(None)

        task_channel.publish.assert_awaited_once()
        default_channel.publish.assert_not_called()


class TestPublisherMiddlewares:
    def test_callstack(
        self,
        first_middleware: type[BaseMiddleware],
        second_middleware: type[BaseMiddleware],
    ):
        publisher = Publisher(routing_key="orders", middlewares=[first_middleware])
        publisher.include_middleware(second_middleware)
        publisher.include_middleware(first_middleware)

        expected_output = [first_middleware, second_middleware, PublishMessageCommand]
        assert callstack_matches(publisher.build_callstack(), expected_output)

    @pytest.mark.asyncio
    async def test_gzip_publish(self, default_channel: MagicMock):
        publisher = Publisher(routing_key="orders", middlewares=[GZipMiddleware])

        await publisher.publish({"id": 1})

        args = default_channel.publish.await_args
        assert json.loads(gzip.decompress(args.args[1])) == {"id": 1}
        assert args.kwargs["headers"] == {"Content-Encoding": "gzip"}


class TestRouterPublish:
    @pytest.mark.asyncio
    async def test_publish_to_queue(self, default_channel: MagicMock):
        router = RabbitRouter()
        router.set_exchange("orders")

        await router.publish("hello", to_queue="orders.created")

        default_channel.publish.assert_awaited_once_with(
            "orders", b"hello", routing_key="orders.created", headers=None
        )

    @pytest.mark.asyncio
    async def test_publish_without_destination(self, default_channel: MagicMock):
        router = RabbitRouter()

        await router.publish("hello")

        default_channel.publish.assert_not_called()
