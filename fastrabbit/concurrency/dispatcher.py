"""Concurrent execution of work functions.

Each delivery becomes one task. The task runs the work function under a
deadline, turns what happened into a :class:`WorkOutcome` and makes exactly
one call into the acknowledgment policy of its subscription.

Timeouts are enforced by cancelling the work. For async work functions the
cancellation lands at their next await. Sync work functions run in a worker
thread that cannot be interrupted: the thread is abandoned and keeps running
in the background, and whatever it returns afterwards is discarded. Side
effects already issued by the work function are never rolled back.

Sync work functions get their own thread limiter per dispatcher, sized like
the pool, instead of the process-wide default of anyio.
"""

from types import TracebackType
from typing import Any, Self

import anyio
from anyio.abc import TaskGroup

from fastrabbit.amqp.commands import HandleMessageCommand, use_thread_limiter
from fastrabbit.datastructures import DeliveryContext, DispatchPolicy, WorkOutcome
from fastrabbit.exceptions import FastRabbitException
from fastrabbit.handlers.base import AcknowledgmentPolicy
from fastrabbit.logger import logger
from fastrabbit.middlewares.base import BaseMiddleware
from fastrabbit.observability import Metrics, get_apm_provider, get_metrics


class WorkDispatcher:
    def __init__(
        self,
        name: str,
        callstack: HandleMessageCommand | BaseMiddleware,
        policy: AcknowledgmentPolicy,
        dispatch_policy: DispatchPolicy,
        metrics: Metrics | None = None,
    ) -> None:
        self.name = name
        self.callstack = callstack
        self.policy = policy
        self.dispatch_policy = dispatch_policy
        self.metrics = metrics or get_metrics()
        self.apm = get_apm_provider()

        self._limiter = anyio.CapacityLimiter(dispatch_policy.threads)
        self._thread_limiter = anyio.CapacityLimiter(dispatch_policy.threads)
        self._task_group: TaskGroup | None = None

    @property
    def in_flight(self) -> int:
        return int(self._limiter.borrowed_tokens)

    async def __aenter__(self) -> Self:
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> bool | None:
        task_group, self._task_group = self._task_group, None
        if task_group is None:
            return None

        if exc_type is None and self.in_flight:
            logger.info(f"Waiting for {self.in_flight} in-flight messages to finish.")
        return await task_group.__aexit__(exc_type, exc_value, traceback)

    async def reserve(self) -> object:
        """Waits for a free slot of the pool and returns the token holding it.

        The token is handed back to :meth:`start`, or to :meth:`release` when
        the delivery is not going to be processed after all.
        """
        if self._task_group is None:
            raise FastRabbitException("The dispatcher must be entered before receiving messages.")

        token = object()
        await self._limiter.acquire_on_behalf_of(token)
        return token

    def start(self, token: object, context: DeliveryContext, body: bytes) -> None:
        """Schedules the work for one delivery on a reserved slot."""
        if self._task_group is None:
            self.release(token)
            raise FastRabbitException("The dispatcher must be entered before receiving messages.")

        try:
            self._task_group.start_soon(self._run, context, body, token)
        except BaseException:
            self.release(token)
            raise

    def release(self, token: object) -> None:
        self._limiter.release_on_behalf_of(token)

    async def submit(self, context: DeliveryContext, body: bytes) -> None:
        """Schedules the work for one delivery.

        Waits while the pool is saturated, which throttles the delivery feed.
        """
        token = await self.reserve()
        self.start(token, context, body)

    async def _run(self, context: DeliveryContext, body: bytes, token: object) -> None:
        try:
            log_context = {
                "subscriber": self.name,
                "delivery_tag": context.delivery_tag,
                "routing_key": context.routing_key,
            }
            with (
                logger.contextualize(**log_context),
                self.apm.start_trace(name=self.name),
                use_thread_limiter(self._thread_limiter),
            ):
                self.metrics.increment(self.name, "started")
                outcome, result, cause = await self._execute(context, body)

                if self.dispatch_policy.ack:
                    await self._settle(outcome, result, cause, context, body)

                self.metrics.increment(self.name, "ended")
        finally:
            self.release(token)

    async def _execute(
        self, context: DeliveryContext, body: bytes
    ) -> tuple[WorkOutcome, Any, Exception | None]:
        result: Any = None
        cause: Exception | None = None

        with anyio.move_on_after(self.dispatch_policy.timeout_after) as scope:
            try:
                with (
                    self.metrics.timing(self.name),
                    self.apm.start_span(name=f"{self.name}.work"),
                ):
                    result = await self.callstack.on_message(body, context)
            except Exception as e:
                cause = e

        # The deadline wins over anything the work produced after it expired.
        if scope.cancel_called:
            logger.error(f"The work timed out after {self.dispatch_policy.timeout_after}s.")
            return WorkOutcome.TIMEOUT, WorkOutcome.TIMEOUT, None

        if cause is not None:
            logger.error("Unhandled exception on message", exc_info=cause)
            self.apm.report_exception(type(cause), cause, cause.__traceback__)
            return WorkOutcome.ERROR, WorkOutcome.ERROR, cause

        return WorkOutcome.from_result(result), result, None

    async def _settle(
        self,
        outcome: WorkOutcome,
        result: Any,
        cause: Exception | None,
        context: DeliveryContext,
        body: bytes,
    ) -> None:
        try:
            match outcome:
                case WorkOutcome.ACK:
                    await self.policy.acknowledge(context)
                case WorkOutcome.TIMEOUT:
                    await self.policy.timeout(context, body)
                case WorkOutcome.ERROR if cause is not None:
                    await self.policy.error(context, body, cause)
                case WorkOutcome.REJECT:
                    await self.policy.reject(context, body)
                case WorkOutcome.REQUEUE:
                    await self.policy.requeue(context, body)
                case _:
                    await self.policy.noop(context)
        except Exception:
            logger.exception(f"The '{outcome}' disposition of the message failed.", stacklevel=5)
            return

        handled = "reject" if result is None else outcome.value
        self.metrics.increment(self.name, "handled", handled)
        logger.info(f"Message handled as '{outcome}'.")
