from collections.abc import AsyncGenerator, Generator, Sequence
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from pydantic import validate_call
from starlette.status import HTTP_200_OK, HTTP_500_INTERNAL_SERVER_ERROR
from starlette.types import Lifespan

from fastrabbit.__about__ import __version__
from fastrabbit.broker import RabbitBroker
from fastrabbit.concurrency.utils import ensure_async_callable_function
from fastrabbit.logger import logger
from fastrabbit.observability import get_apm_provider
from fastrabbit.types import NoArgAsyncCallable

HOOK_STAGES = ("on_startup", "after_startup", "on_shutdown", "after_shutdown")


class Application:
    """Starts and stops the broker between the user lifecycle hooks."""

    def __init__(
        self,
        broker: RabbitBroker,
        on_startup: Sequence[NoArgAsyncCallable] | None = None,
        on_shutdown: Sequence[NoArgAsyncCallable] | None = None,
        after_startup: Sequence[NoArgAsyncCallable] | None = None,
        after_shutdown: Sequence[NoArgAsyncCallable] | None = None,
    ):
        self.broker = broker
        self._hooks: dict[str, list[NoArgAsyncCallable]] = {stage: [] for stage in HOOK_STAGES}

        initial_hooks = zip(HOOK_STAGES, (on_startup, after_startup, on_shutdown, after_shutdown))
        for stage, funcs in initial_hooks:
            for func in funcs or ():
                self._register_hook(stage, func)

    @validate_call
    def on_startup(self, func: NoArgAsyncCallable) -> NoArgAsyncCallable:
        return self._register_hook("on_startup", func)

    @validate_call
    def after_startup(self, func: NoArgAsyncCallable) -> NoArgAsyncCallable:
        return self._register_hook("after_startup", func)

    @validate_call
    def on_shutdown(self, func: NoArgAsyncCallable) -> NoArgAsyncCallable:
        return self._register_hook("on_shutdown", func)

    @validate_call
    def after_shutdown(self, func: NoArgAsyncCallable) -> NoArgAsyncCallable:
        return self._register_hook("after_shutdown", func)

    def _register_hook(self, stage: str, func: NoArgAsyncCallable) -> NoArgAsyncCallable:
        ensure_async_callable_function(func)
        self._hooks[stage].append(func)
        return func

    async def _run_hooks(self, stage: str) -> None:
        for func in self._hooks[stage]:
            await func()

    @contextmanager
    def _traced(self, name: str) -> Generator[None]:
        apm = get_apm_provider()
        with (
            apm.start_trace(name=name),
            logger.contextualize(trace_id=apm.get_trace_id(), span_id=apm.get_span_id()),
        ):
            yield

    async def _start(self) -> None:
        get_apm_provider().start()
        with self._traced("start"):
            logger.info("Starting the FastRabbit consumers")
            await self._run_hooks("on_startup")
            await self.broker.start()
            await self._run_hooks("after_startup")
            logger.info("The FastRabbit consumers started")

    async def _shutdown(self) -> None:
        with self._traced("shutdown"):
            logger.info("Terminating the FastRabbit consumers")
            await self._run_hooks("on_shutdown")
            await self.broker.shutdown()
            await self._run_hooks("after_shutdown")
            logger.info("The FastRabbit consumers terminated")

        get_apm_provider().shutdown()


class FastRabbit(FastAPI, Application):
    """The ASGI application serving the consumers of a broker.

    Besides the lifecycle hooks it exposes the health checks of the consumers and the
    Prometheus metrics of the process. Every other keyword argument is handed
    over to :class:`fastapi.FastAPI`.
    """

    def __init__(
        self,
        broker: RabbitBroker,
        *,
        on_startup: Sequence[NoArgAsyncCallable] | None = None,
        on_shutdown: Sequence[NoArgAsyncCallable] | None = None,
        after_startup: Sequence[NoArgAsyncCallable] | None = None,
        after_shutdown: Sequence[NoArgAsyncCallable] | None = None,
        lifespan: Lifespan["FastRabbit"] | None = None,
        title: str = "FastRabbit",
        version: str = __version__,
        info_url: str = "/consumers/info",
        liveness_url: str = "/consumers/alive",
        readiness_url: str = "/consumers/ready",
        metrics_url: str = "/consumers/metrics",
        **fastapi_options: Any,
    ):
        FastAPI.__init__(self, title=title, version=version, lifespan=self.run, **fastapi_options)
        Application.__init__(
            self,
            broker,
            on_startup=on_startup,
            on_shutdown=on_shutdown,
            after_startup=after_startup,
            after_shutdown=after_shutdown,
        )

        self.user_lifespan = lifespan
        self.add_api_route(path=info_url, endpoint=self._get_info, methods=["GET"])
        self.add_api_route(path=liveness_url, endpoint=self._get_liveness, methods=["GET"])
        self.add_api_route(path=readiness_url, endpoint=self._get_readiness, methods=["GET"])
        self.add_api_route(path=metrics_url, endpoint=self._get_metrics, methods=["GET"])

    @asynccontextmanager
    async def run(self, app: "FastRabbit") -> AsyncGenerator[None]:
        if self.user_lifespan is None:
            await self._start()
            yield
            await self._shutdown()
            return

        async with self.user_lifespan(app):
            await self._start()
            yield
            await self._shutdown()

    async def _get_info(self, _: Request) -> JSONResponse:
        return JSONResponse(content=self.broker.info())

    async def _get_metrics(self, _: Request) -> Response:
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    async def _get_liveness(self, _: Request) -> JSONResponse:
        return self._health_response("alive", self.broker.alive())

    async def _get_readiness(self, _: Request) -> JSONResponse:
        return self._health_response("ready", self.broker.ready())

    @staticmethod
    def _health_response(check: str, healthy: bool) -> JSONResponse:
        status_code = HTTP_200_OK if healthy else HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(content={check: healthy}, status_code=status_code)
