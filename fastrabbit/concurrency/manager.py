"""Task manager for subscriber tasks."""

import asyncio

from fastrabbit.amqp.subscriber import Subscriber
from fastrabbit.clients.amqp import AMQPConnection
from fastrabbit.concurrency.tasks import ConsumeTask
from fastrabbit.logger import logger
from fastrabbit.observability import Metrics


class AsyncTaskManager:
    """Public-facing controller for managing a fleet of subscriber tasks."""

    def __init__(self, connection: AMQPConnection, metrics: Metrics | None = None) -> None:
        """Initializes the AsyncTaskManager."""
        self.connection = connection
        self.metrics = metrics
        self._tasks: list[ConsumeTask] = []
        self._running: list[asyncio.Task[None]] = []

    def create_task(self, subscriber: Subscriber) -> None:
        """Registers a subscriber configuration to be managed."""
        self._tasks.append(ConsumeTask(subscriber, self.connection, self.metrics))

    async def start(self) -> None:
        """Starts the subscribers tasks on the running event loop."""
        for task in self._tasks:
            coroutine = task.start()
            self._running.append(asyncio.create_task(coroutine, name=task.subscriber.name))

    def alive(self) -> dict[str, bool]:
        """Checks if the tasks are alive.

        Returns:
            A dictionary mapping task names to their liveness status.
        """
        liveness: dict[str, bool] = {}
        for task in self._tasks:
            liveness[task.subscriber.name] = task.task_alive()
        return liveness

    def ready(self) -> dict[str, bool]:
        """Checks if the tasks are ready.

        Returns:
            A dictionary mapping task names to their readiness status.
        """
        readiness: dict[str, bool] = {}
        for task in self._tasks:
            readiness[task.subscriber.name] = task.task_ready()
        return readiness

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stops the deliveries and waits for the in-flight messages.

        All the subscriptions are stopped at once. Whatever has not finished
        within ``timeout`` seconds is cancelled.
        """
        stopping = [
            asyncio.create_task(task.shutdown(), name=f"{task.subscriber.name}.shutdown")
            for task in self._tasks
        ]
        waiting = [*stopping, *self._running]

        if waiting:
            done, pending = await asyncio.wait(waiting, timeout=timeout)
            for running_task in pending:
                logger.warning(f"The task {running_task.get_name()} did not stop in time.")
                running_task.cancel()

            for stopped_task in stopping:
                if stopped_task not in done or stopped_task.cancelled():
                    continue
                if stopped_task.exception() is not None:
                    logger.error(
                        f"The task {stopped_task.get_name()} failed to stop.",
                        exc_info=stopped_task.exception(),
                    )

        self._tasks.clear()
        self._running.clear()
