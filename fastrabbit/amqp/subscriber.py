from fastrabbit.amqp.commands import HandleMessageCommand
from fastrabbit.concurrency.utils import ensure_async_middleware
from fastrabbit.datastructures import DispatchPolicy, PolicyConfig, QueuePolicy
from fastrabbit.exceptions import FastRabbitException
from fastrabbit.handlers import AcknowledgmentPolicy
from fastrabbit.middlewares.base import BaseMiddleware
from fastrabbit.types import WorkCallable


class Subscriber:
    def __init__(
        self,
        alias: str,
        func: WorkCallable,
        exchange: str,
        queue_name: str,
        handler: type[AcknowledgmentPolicy],
        dispatch_policy: DispatchPolicy,
        queue_policy: QueuePolicy,
        max_retries: int,
        retry_exchange: str | None = None,
        error_exchange: str | None = None,
        retry_timeout_millis: int = 60_000,
        middlewares: list[type[BaseMiddleware]] | None = None,
    ) -> None:
        self.alias = alias
        self.exchange = exchange
        self.queue_name = queue_name
        self.handler_class = handler
        self.dispatch_policy = dispatch_policy
        self.queue_policy = queue_policy
        self.max_retries = max_retries
        self.retry_exchange = retry_exchange
        self.error_exchange = error_exchange
        self.retry_timeout_millis = retry_timeout_millis
        self.handler = HandleMessageCommand(target=func)
        self.middlewares: list[type[BaseMiddleware]] = []

        if middlewares:
            for middleware in middlewares:
                self.include_middleware(middleware)

    def include_middleware(self, middleware: type[BaseMiddleware]) -> None:
        if not (isinstance(middleware, type) and issubclass(middleware, BaseMiddleware)):
            raise FastRabbitException(
                f"The middleware should be a {BaseMiddleware.__name__} type."
            )

        if middleware in self.middlewares:
            return

        ensure_async_middleware(middleware)
        self.middlewares.append(middleware)

    def build_callstack(self) -> HandleMessageCommand | BaseMiddleware:
        callstack: HandleMessageCommand | BaseMiddleware = self.handler
        for middleware in reversed(self.middlewares):
            callstack = middleware(next_call=callstack)
        return callstack

    @property
    def routing_keys(self) -> tuple[str, ...]:
        return self.queue_policy.routing_keys or (self.queue_name,)

    @property
    def policy_config(self) -> PolicyConfig:
        return PolicyConfig(
            exchange=self.exchange,
            max_retries=self.max_retries,
            retry_exchange=self.retry_exchange,
            error_exchange=self.error_exchange,
            retry_timeout_millis=self.retry_timeout_millis,
        )

    @property
    def name(self) -> str:
        return self.alias

    def set_exchange(self, exchange: str) -> None:
        self.exchange = exchange

    def add_prefix(self, new_prefix: str) -> None:
        self.alias = f"{new_prefix}.{self.alias}".lower()
        self.queue_name = f"{new_prefix}.{self.queue_name}"
