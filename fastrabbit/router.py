import re
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, validate_call

from fastrabbit.amqp.publisher import Publisher
from fastrabbit.amqp.subscriber import Subscriber
from fastrabbit.concurrency.utils import ensure_work_function
from fastrabbit.datastructures import (
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_RETRY_TIMEOUT_MILLIS,
    DispatchPolicy,
    QueuePolicy,
)
from fastrabbit.exceptions import FastRabbitException
from fastrabbit.handlers import AcknowledgmentPolicy, get_handler_class
from fastrabbit.logger import logger
from fastrabbit.middlewares.base import BaseMiddleware
from fastrabbit.types import SubscribedCallable, WorkCallable

_PREFIX_REGEX = re.compile(r"^[a-zA-Z0-9]+([_./-][a-zA-Z0-9]+)*$")


class RabbitRouter:
    def __init__(
        self,
        prefix: str = "",
        *,
        routers: Sequence["RabbitRouter"] | None = None,
        middlewares: Sequence[type[BaseMiddleware]] | None = None,
    ):
        if prefix and not (isinstance(prefix, str) and _PREFIX_REGEX.match(prefix)):
            raise FastRabbitException(
                "Prefix must be a string that starts and ends with a letter or number, "
                "and can only contain periods, slashes, dashes or underscores in the middle."
            )

        self.prefix: str = prefix
        self.exchange: str = ""
        self.routers: list[RabbitRouter] = []
        self.publishers: dict[str, Publisher] = {}
        self.subscribers: dict[str, Subscriber] = {}
        self.middlewares: list[type[BaseMiddleware]] = []

        if routers:
            if not isinstance(routers, Sequence):
                raise FastRabbitException("Your routers should be passed as a sequence")

            for router in routers:
                self.include_router(router)

        if middlewares:
            if not isinstance(middlewares, Sequence):
                raise FastRabbitException("Your middlewares should be passed as a sequence")

            for middleware in middlewares:
                self.include_middleware(middleware)

    @validate_call(config=ConfigDict(strict=True, arbitrary_types_allowed=True))
    def subscriber(
        self,
        alias: str,
        *,
        queue_name: str,
        routing_keys: Sequence[str] | None = None,
        handler: str | type[AcknowledgmentPolicy] = "oneshot",
        threads: int = 10,
        timeout_after: float | None = 5.0,
        ack: bool = True,
        prefetch: int = 10,
        durable: bool = True,
        exchange_type: str = "direct",
        max_retries: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        retry_exchange: str | None = None,
        error_exchange: str | None = None,
        retry_timeout_millis: int = DEFAULT_RETRY_TIMEOUT_MILLIS,
        queue_arguments: dict[str, Any] | None = None,
        middlewares: Sequence[type[BaseMiddleware]] | None = None,
    ) -> SubscribedCallable:
        handler_class = get_handler_class(handler)

        if threads < 1:
            raise FastRabbitException(f"The threads value ({threads}) must be positive.")

        if max_retries < 1:
            raise FastRabbitException(f"The max_retries value ({max_retries}) must be positive.")

        if timeout_after is not None and timeout_after <= 0:
            raise FastRabbitException(
                f"The timeout_after value ({timeout_after}) must be positive or None."
            )

        def decorator(func: WorkCallable) -> WorkCallable:
            ensure_work_function(func)

            prefixed_alias = alias
            prefixed_queue_name = queue_name
            if self.prefix:
                prefixed_alias = f"{self.prefix}.{prefixed_alias}"
                prefixed_queue_name = f"{self.prefix}.{prefixed_queue_name}"

            prefixed_alias = prefixed_alias.lower()
            if prefixed_alias in self.subscribers:
                raise FastRabbitException(
                    f"The alias '{prefixed_alias}' already exists."
                    " The alias must be unique among all subscribers"
                )

            dispatch_policy = DispatchPolicy(threads=threads, timeout_after=timeout_after, ack=ack)
            queue_policy = QueuePolicy(
                durable=durable,
                prefetch=prefetch,
                exchange_type=exchange_type,
                routing_keys=tuple(routing_keys or ()),
                arguments=dict(queue_arguments or {}),
            )

            subscriber_middlewares = list(middlewares) if middlewares else []
            for middleware in self.middlewares:
                subscriber_middlewares.append(middleware)

            subscriber = Subscriber(
                alias=prefixed_alias,
                func=func,
                exchange=self.exchange,
                queue_name=prefixed_queue_name,
                handler=handler_class,
                dispatch_policy=dispatch_policy,
                queue_policy=queue_policy,
                max_retries=max_retries,
                retry_exchange=retry_exchange,
                error_exchange=error_exchange,
                retry_timeout_millis=retry_timeout_millis,
                middlewares=subscriber_middlewares,
            )

            logger.debug(f"Registered the subscriber '{prefixed_alias}' on '{prefixed_queue_name}'")
            self.subscribers[prefixed_alias] = subscriber
            return func

        return decorator

    @validate_call(config=ConfigDict(strict=True))
    def publisher(self, routing_key: str) -> Publisher:
        if routing_key not in self.publishers:
            publisher = Publisher(routing_key=routing_key, middlewares=self.middlewares)
            publisher.set_exchange(self.exchange)
            self.publishers[routing_key] = publisher

        return self.publishers[routing_key]

    @validate_call(config=ConfigDict(strict=True))
    async def publish(
        self,
        data: BaseModel | dict[str, Any] | str | bytes,
        routing_key: str | None = None,
        to_queue: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        routing_key = routing_key or to_queue
        if not routing_key:
            logger.warning("The message has no routing key nor destination queue, skipping it.")
            return

        publisher = self.publisher(routing_key=routing_key)
        await publisher.publish(data=data, headers=headers)

    def include_router(self, router: "RabbitRouter") -> None:
        if not (router and isinstance(router, RabbitRouter)):
            raise FastRabbitException(f"Your routers must be of type {RabbitRouter.__name__}")

        if self is router:
            raise FastRabbitException(f"There is a cyclical reference on router {self.prefix}.")

        router.add_prefix(self.prefix)
        for existing_router in self.routers:
            if existing_router.prefix == router.prefix:
                raise FastRabbitException(
                    f"The prefix={router.prefix} is duplicated, it must be unique."
                )

        router.set_exchange(self.exchange)
        for middleware in self.middlewares:
            router.include_middleware(middleware)

        self.routers.append(router)

    @validate_call(config=ConfigDict(strict=True))
    def include_middleware(self, middleware: type[BaseMiddleware]) -> None:
        for publisher in self.publishers.values():
            publisher.include_middleware(middleware)

        for subscriber in self.subscribers.values():
            subscriber.include_middleware(middleware)

        if middleware not in self.middlewares:
            self.middlewares.append(middleware)

        for router in self.routers:
            router.include_middleware(middleware)

    def set_exchange(self, exchange: str) -> None:
        self.exchange = exchange

        for router in self.routers:
            router.set_exchange(exchange)

        for publisher in self.publishers.values():
            publisher.set_exchange(exchange)

        for subscriber in self.subscribers.values():
            subscriber.set_exchange(exchange)

    def add_prefix(self, new_prefix: str) -> None:
        if not new_prefix:
            return

        self.prefix = f"{new_prefix}.{self.prefix}" if self.prefix else new_prefix
        subscribers_to_realias = dict(self.subscribers)

        self.subscribers.clear()
        for subscriber in subscribers_to_realias.values():
            subscriber.add_prefix(new_prefix)
            self.subscribers[subscriber.alias] = subscriber

        for router in self.routers:
            router.add_prefix(new_prefix)

    def get_subscribers(self) -> dict[str, Subscriber]:
        subscribers: dict[str, Subscriber] = {}
        subscribers.update(self.subscribers)

        for router in self.routers:
            subscribers.update(router.get_subscribers())

        return subscribers
