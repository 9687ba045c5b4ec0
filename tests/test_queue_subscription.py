from unittest.mock import AsyncMock, MagicMock, call

import anyio
import pytest

from fastrabbit.amqp.commands import HandleMessageCommand
from fastrabbit.amqp.subscriber import Subscriber
from fastrabbit.clients.queue import QueueSubscription
from fastrabbit.concurrency.dispatcher import WorkDispatcher
from fastrabbit.datastructures import DispatchPolicy, PolicyConfig, QueuePolicy, WorkOutcome
from fastrabbit.handlers import MaxRetry, OneShot
from fastrabbit.observability import NullMetrics


class FakeQueueIterator:
    def __init__(self, messages: list[MagicMock], delay: float = 0.0):
        self.messages = list(messages)
        self.delay = delay
        self.closed = False

    async def __aenter__(self) -> "FakeQueueIterator":
        return self

    async def __aexit__(self, *args) -> None:
        return None

    def __aiter__(self) -> "FakeQueueIterator":
        return self

    async def __anext__(self) -> MagicMock:
        if self.closed or not self.messages:
            raise StopAsyncIteration

        if self.delay:
            await anyio.sleep(self.delay)
        return self.messages.pop(0)

    async def close(self) -> None:
        self.closed = True


def make_message(delivery_tag: int, body: bytes = b"body", headers: dict | None = None):
    message = MagicMock()
    message.delivery_tag = delivery_tag
    message.body = body
    message.routing_key = "orders.created"
    message.headers = headers or {}
    message.exchange = "orders"
    message.redelivered = False
    message.message_id = f"id-{delivery_tag}"
    message.content_type = "application/json"
    return message


def make_subscriber(handler=OneShot, ack: bool = True, **queue_options) -> Subscriber:
    async def work(body):
        return None

    return Subscriber(
        alias="orders",
        func=work,
        exchange="orders",
        queue_name="orders.created",
        handler=handler,
        dispatch_policy=DispatchPolicy(ack=ack),
        queue_policy=QueuePolicy(**queue_options),
        max_retries=3,
    )


@pytest.fixture
def dispatcher() -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.reserve = AsyncMock(side_effect=lambda: object())
    return dispatcher


class TestQueueSubscriptionDeclare:
    @pytest.mark.asyncio
    async def test_declare_binds_the_queue_name_by_default(self, mock_channel: MagicMock):
        subscription = QueueSubscription(mock_channel, make_subscriber())
        await subscription.declare()

        mock_channel.declare_exchange.assert_awaited_once_with("orders", "direct", durable=True)
        mock_channel.declare_queue.assert_awaited_once_with(
            "orders.created", durable=True, arguments={}
        )
        mock_channel.bind_queue.assert_awaited_once_with(
            "orders.created", "orders", "orders.created"
        )

    @pytest.mark.asyncio
    async def test_declare_with_routing_keys(self, mock_channel: MagicMock):
        subscriber = make_subscriber(exchange_type="topic", routing_keys=("orders.*", "refunds.#"))
        subscription = QueueSubscription(mock_channel, subscriber)
        await subscription.declare()

        mock_channel.declare_exchange.assert_awaited_once_with("orders", "topic", durable=True)
        assert mock_channel.bind_queue.await_args_list == [
            call("orders.created", "orders", "orders.*"),
            call("orders.created", "orders", "refunds.#"),
        ]

    @pytest.mark.asyncio
    async def test_declare_merges_the_policy_arguments(self, mock_channel: MagicMock):
        subscriber = make_subscriber(handler=MaxRetry, arguments={"x-max-priority": 5})
        subscription = QueueSubscription(mock_channel, subscriber)
        await subscription.declare()

        mock_channel.declare_queue.assert_awaited_once_with(
            "orders.created",
            durable=True,
            arguments={"x-dead-letter-exchange": "orders-retry", "x-max-priority": 5},
        )


class TestQueueSubscriptionConsume:
    @pytest.mark.asyncio
    async def test_subscribe_feeds_the_dispatcher(
        self, mock_channel: MagicMock, dispatcher: MagicMock
    ):
        mock_channel.consume.return_value = FakeQueueIterator(
            [make_message(1, headers={"retry_count": 2}), make_message(2)]
        )
        subscription = QueueSubscription(mock_channel, make_subscriber())

        await subscription.subscribe(dispatcher)

        mock_channel.consume.assert_called_once_with("orders.created", no_ack=False)
        assert dispatcher.reserve.await_count == 2
        assert dispatcher.start.call_count == 2

        _, context, body = dispatcher.start.call_args_list[0].args
        assert body == b"body"
        assert context.delivery_tag == 1
        assert context.routing_key == "orders.created"
        assert context.exchange == "orders"
        assert context.message_id == "id-1"
        assert context.retry_count == 2

    @pytest.mark.asyncio
    async def test_subscribe_without_ack(self, mock_channel: MagicMock, dispatcher: MagicMock):
        mock_channel.consume.return_value = FakeQueueIterator([])
        subscription = QueueSubscription(mock_channel, make_subscriber(ack=False))

        await subscription.subscribe(dispatcher)

        mock_channel.consume.assert_called_once_with("orders.created", no_ack=True)

    @pytest.mark.asyncio
    async def test_unsubscribe_before_subscribe(
        self, mock_channel: MagicMock, dispatcher: MagicMock
    ):
        subscription = QueueSubscription(mock_channel, make_subscriber())

        await subscription.unsubscribe()
        await subscription.subscribe(dispatcher)

        mock_channel.consume.assert_not_called()
        dispatcher.reserve.assert_not_called()
        dispatcher.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_delivery_after_unsubscribe(
        self, mock_channel: MagicMock, dispatcher: MagicMock
    ):
        iterator = FakeQueueIterator([make_message(1), make_message(2)], delay=0.01)
        mock_channel.consume.return_value = iterator
        subscription = QueueSubscription(mock_channel, make_subscriber())

        async with anyio.create_task_group() as task_group:

            def start(token, context, body):
                task_group.start_soon(subscription.unsubscribe)

            dispatcher.start.side_effect = start
            await subscription.subscribe(dispatcher)

        assert iterator.closed
        assert not subscription.subscribed
        dispatcher.start.assert_called_once()
        dispatcher.release.assert_called_once()
        mock_channel.negative_ack.assert_awaited_once_with(2, requeue=True)


class TestQueueSubscriptionStop:
    @pytest.mark.asyncio
    async def test_unsubscribe_does_not_wait_for_a_saturated_pool(self, mock_channel: MagicMock):
        finish = anyio.Event()
        handled = []

        async def work(body, context):
            handled.append(context.delivery_tag)
            await finish.wait()
            return WorkOutcome.ACK

        mock_channel.consume.return_value = FakeQueueIterator(
            [make_message(1), make_message(2), make_message(3)]
        )
        subscription = QueueSubscription(mock_channel, make_subscriber())
        dispatcher = WorkDispatcher(
            name="orders",
            callstack=HandleMessageCommand(target=work),
            policy=OneShot(mock_channel, PolicyConfig(exchange="orders")),
            dispatch_policy=DispatchPolicy(threads=1, timeout_after=None),
            metrics=NullMetrics(),
        )

        async with dispatcher, anyio.create_task_group() as task_group:
            task_group.start_soon(subscription.subscribe, dispatcher)
            await anyio.sleep(0.05)

            with anyio.fail_after(0.5):
                await subscription.unsubscribe()
            finish.set()

        assert handled == [1]
        mock_channel.acknowledge.assert_awaited_once_with(1)
        mock_channel.negative_ack.assert_awaited_once_with(2, requeue=True)
        assert dispatcher.in_flight == 0
