import threading
import time
from unittest.mock import MagicMock, call

import anyio
import anyio.to_thread
import pytest
from prometheus_client import CollectorRegistry

from fastrabbit.amqp.commands import HandleMessageCommand
from fastrabbit.concurrency.dispatcher import WorkDispatcher
from fastrabbit.datastructures import DeliveryContext, DispatchPolicy, PolicyConfig, WorkOutcome
from fastrabbit.exceptions import FastRabbitException
from fastrabbit.handlers import ExponentialBackoff, OneShot
from fastrabbit.handlers.base import AcknowledgmentPolicy
from fastrabbit.observability import PrometheusMetrics
from tests.conftest import make_context


@pytest.fixture
def policy() -> MagicMock:
    return MagicMock(spec=AcknowledgmentPolicy)


@pytest.fixture
def metrics() -> PrometheusMetrics:
    return PrometheusMetrics(registry=CollectorRegistry())


def count(metrics: PrometheusMetrics, event: str, outcome: str = "") -> float:
    labels = {"subscriber": "orders", "event": event, "outcome": outcome}
    return metrics.registry.get_sample_value("fastrabbit_work_events_total", labels) or 0


def timed(metrics: PrometheusMetrics) -> float:
    labels = {"subscriber": "orders"}
    return metrics.registry.get_sample_value("fastrabbit_work_duration_seconds_count", labels) or 0


def build_dispatcher(
    work, policy: MagicMock, metrics: PrometheusMetrics, **dispatch_options
) -> WorkDispatcher:
    return WorkDispatcher(
        name="orders",
        callstack=HandleMessageCommand(target=work),
        policy=policy,
        dispatch_policy=DispatchPolicy(**dispatch_options),
        metrics=metrics,
    )


async def dispatch(dispatcher: WorkDispatcher, *contexts: DeliveryContext) -> None:
    async with dispatcher:
        for context in contexts:
            await dispatcher.submit(context, b"body")


class TestOutcomeMapping:
    @pytest.mark.asyncio
    async def test_ack_end_to_end(self, policy: MagicMock, metrics: PrometheusMetrics):
        async def work(body):
            return WorkOutcome.ACK

        context = make_context(delivery_tag=3)
        await dispatch(build_dispatcher(work, policy, metrics), context)

        policy.acknowledge.assert_awaited_once_with(context)
        assert count(metrics, "started") == 1
        assert count(metrics, "ended") == 1
        assert count(metrics, "handled", "ack") == 1
        assert timed(metrics) == 1

    @pytest.mark.parametrize(
        ["result", "method"],
        [
            (WorkOutcome.REJECT, "reject"),
            (WorkOutcome.REQUEUE, "requeue"),
            ("ack", "acknowledge"),
        ],
    )
    @pytest.mark.asyncio
    async def test_result_selects_the_policy_call(
        self, policy: MagicMock, metrics: PrometheusMetrics, result, method: str
    ):
        async def work(body):
            return result

        await dispatch(build_dispatcher(work, policy, metrics), make_context())

        getattr(policy, method).assert_awaited_once()
        called = [name for name, _, _ in policy.method_calls]
        assert called == [method]

    @pytest.mark.parametrize("result", [None, 42, "done", {"status": "ok"}])
    @pytest.mark.asyncio
    async def test_other_results_are_noop(
        self, policy: MagicMock, metrics: PrometheusMetrics, result
    ):
        async def work(body):
            return result

        context = make_context()
        await dispatch(build_dispatcher(work, policy, metrics), context)

        policy.noop.assert_awaited_once_with(context)
        policy.acknowledge.assert_not_called()
        policy.reject.assert_not_called()

    @pytest.mark.parametrize("result", [WorkOutcome.TIMEOUT, "error"])
    @pytest.mark.asyncio
    async def test_dispatcher_outcomes_returned_by_work_are_noop(
        self, policy: MagicMock, metrics: PrometheusMetrics, result
    ):
        async def work(body):
            return result

        context = make_context()
        await dispatch(build_dispatcher(work, policy, metrics), context)

        policy.noop.assert_awaited_once_with(context)
        policy.timeout.assert_not_called()
        policy.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_result_is_counted_as_reject(
        self, policy: MagicMock, metrics: PrometheusMetrics
    ):
        async def work(body):
            return None

        await dispatch(build_dispatcher(work, policy, metrics), make_context())

        assert count(metrics, "handled", "reject") == 1
        assert count(metrics, "handled", "noop") == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_passes_the_cause(self, policy: MagicMock, metrics: PrometheusMetrics):
        error = ValueError("broken payload")

        async def work(body):
            raise error

        context = make_context()
        await dispatch(build_dispatcher(work, policy, metrics), context)

        policy.error.assert_awaited_once_with(context, b"body", error)
        assert count(metrics, "handled", "error") == 1
        assert count(metrics, "ended") == 1

    @pytest.mark.asyncio
    async def test_timeout(self, policy: MagicMock, metrics: PrometheusMetrics):
        finished = []

        async def work(body):
            await anyio.sleep(1)
            finished.append(body)
            return WorkOutcome.ACK

        context = make_context()
        dispatcher = build_dispatcher(work, policy, metrics, timeout_after=0.05)
        await dispatch(dispatcher, context)

        policy.timeout.assert_awaited_once_with(context, b"body")
        policy.acknowledge.assert_not_called()
        assert not finished
        assert count(metrics, "handled", "timeout") == 1

    @pytest.mark.asyncio
    async def test_sync_work_timeout_discards_the_late_result(
        self, policy: MagicMock, metrics: PrometheusMetrics
    ):
        release = threading.Event()

        def work(body):
            release.wait(timeout=2)
            return WorkOutcome.ACK

        dispatcher = build_dispatcher(work, policy, metrics, timeout_after=0.05)
        await dispatch(dispatcher, make_context())
        release.set()

        policy.timeout.assert_awaited_once()
        policy.acknowledge.assert_not_called()

    @pytest.mark.asyncio
    async def test_policy_failure_is_contained(
        self, policy: MagicMock, metrics: PrometheusMetrics
    ):
        policy.acknowledge.side_effect = RuntimeError("channel closed")

        async def work(body):
            return WorkOutcome.ACK

        await dispatch(build_dispatcher(work, policy, metrics), make_context(1), make_context(2))

        assert policy.acknowledge.await_count == 2
        assert count(metrics, "ended") == 2
        assert count(metrics, "handled", "ack") == 0


class TestDispositionWithPolicies:
    @pytest.mark.asyncio
    async def test_error_settles_once_with_oneshot(
        self, mock_channel: MagicMock, metrics: PrometheusMetrics
    ):
        policy = await OneShot.create(mock_channel, PolicyConfig(exchange="orders"))

        async def work(body):
            raise ValueError("broken payload")

        await dispatch(build_dispatcher(work, policy, metrics), make_context(delivery_tag=4))

        assert mock_channel.method_calls == [call.negative_ack(4, requeue=False)]

    @pytest.mark.asyncio
    async def test_sync_timeout_settles_once_with_oneshot(
        self, mock_channel: MagicMock, metrics: PrometheusMetrics
    ):
        policy = await OneShot.create(mock_channel, PolicyConfig(exchange="orders"))
        release = threading.Event()
        returned = threading.Event()

        def work(body):
            release.wait(timeout=2)
            returned.set()
            return WorkOutcome.ACK

        dispatcher = build_dispatcher(work, policy, metrics, timeout_after=0.05)
        await dispatch(dispatcher, make_context(delivery_tag=5))
        release.set()
        await anyio.to_thread.run_sync(returned.wait, 2)
        await anyio.sleep(0.01)

        assert mock_channel.method_calls == [call.negative_ack(5, requeue=False)]

    @pytest.mark.asyncio
    async def test_timeout_settles_once_with_exponential_backoff(
        self, mock_channel: MagicMock, metrics: PrometheusMetrics
    ):
        policy = await ExponentialBackoff.create(mock_channel, PolicyConfig(exchange="orders"))
        mock_channel.reset_mock()

        async def work(body):
            await anyio.sleep(1)
            return WorkOutcome.ACK

        dispatcher = build_dispatcher(work, policy, metrics, timeout_after=0.05)
        await dispatch(dispatcher, make_context(delivery_tag=6))

        assert [name for name, _, _ in mock_channel.method_calls] == ["negative_ack", "publish"]
        mock_channel.negative_ack.assert_awaited_once_with(6, requeue=False)
        assert mock_channel.publish.await_args.kwargs["headers"] == {"retry_count": 1}
        mock_channel.acknowledge.assert_not_called()


class TestDispatchPolicy:
    @pytest.mark.asyncio
    async def test_ack_mode_off_never_calls_the_policy(
        self, policy: MagicMock, metrics: PrometheusMetrics
    ):
        async def work(body):
            raise ValueError("ignored")

        await dispatch(build_dispatcher(work, policy, metrics, ack=False), make_context())

        assert policy.method_calls == []
        assert count(metrics, "started") == 1
        assert count(metrics, "ended") == 1

    @pytest.mark.asyncio
    async def test_sync_work_with_context(self, policy: MagicMock, metrics: PrometheusMetrics):
        received = []

        def work(body, context):
            received.append((body, context.delivery_tag, threading.current_thread().name))
            time.sleep(0.01)
            return WorkOutcome.ACK

        await dispatch(build_dispatcher(work, policy, metrics), make_context(delivery_tag=11))

        assert received[0][:2] == (b"body", 11)
        assert received[0][2] != threading.main_thread().name
        policy.acknowledge.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pool_bound(self, policy: MagicMock, metrics: PrometheusMetrics):
        running = 0
        peak = 0

        async def work(body):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await anyio.sleep(0.02)
            running -= 1
            return WorkOutcome.ACK

        dispatcher = build_dispatcher(work, policy, metrics, threads=2)
        contexts = [make_context(delivery_tag=tag) for tag in range(1, 7)]
        await dispatch(dispatcher, *contexts)

        assert peak == 2
        assert policy.acknowledge.await_count == 6
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_submit_requires_a_running_dispatcher(
        self, policy: MagicMock, metrics: PrometheusMetrics
    ):
        async def work(body):
            return WorkOutcome.ACK

        dispatcher = build_dispatcher(work, policy, metrics)
        with pytest.raises(FastRabbitException):
            await dispatcher.submit(make_context(), b"body")

    @pytest.mark.asyncio
    async def test_sync_work_runs_up_to_the_pool_size(
        self, policy: MagicMock, metrics: PrometheusMetrics
    ):
        barrier = threading.Barrier(60, timeout=5)

        def work(body):
            barrier.wait()
            return WorkOutcome.ACK

        dispatcher = build_dispatcher(work, policy, metrics, threads=60, timeout_after=None)
        await dispatch(dispatcher, *[make_context(delivery_tag=tag) for tag in range(60)])

        assert policy.acknowledge.await_count == 60
        policy.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_released_slot_can_be_reserved_again(
        self, policy: MagicMock, metrics: PrometheusMetrics
    ):
        async def work(body):
            return WorkOutcome.ACK

        dispatcher = build_dispatcher(work, policy, metrics, threads=1)
        async with dispatcher:
            token = await dispatcher.reserve()
            assert dispatcher.in_flight == 1

            dispatcher.release(token)
            assert dispatcher.in_flight == 0

            await dispatcher.submit(make_context(), b"body")

        policy.acknowledge.assert_awaited_once()
