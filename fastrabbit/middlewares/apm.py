from collections.abc import Mapping
from typing import Any

from fastrabbit.datastructures import DeliveryContext
from fastrabbit.logger import logger
from fastrabbit.middlewares.base import BaseMiddleware
from fastrabbit.observability import get_apm_provider


class DistributedTracePropagateMiddleware(BaseMiddleware):
    def __init__(self, next_call: Any):
        super().__init__(next_call)
        self.apm = get_apm_provider()

    async def on_message(self, body: bytes, context: DeliveryContext) -> Any:
        headers = {str(k): str(v) for k, v in context.headers.items() if isinstance(v, str)}
        self.apm.set_distributed_trace_context(headers=headers)
        return await super().on_message(body, context)

    async def on_publish(
        self, body: bytes, routing_key: str, headers: Mapping[str, Any] | None
    ) -> Any:
        new_headers = dict(headers or {})
        new_headers.update(self.apm.get_distributed_trace_context())
        return await super().on_publish(body, routing_key, new_headers)


class DistributedTraceContextualizeLogsMiddleware(BaseMiddleware):
    def __init__(self, next_call: Any):
        super().__init__(next_call)
        self.apm = get_apm_provider()

    async def on_message(self, body: bytes, context: DeliveryContext) -> Any:
        with logger.contextualize(trace_id=self.apm.get_trace_id(), span_id=self.apm.get_span_id()):
            return await super().on_message(body, context)

    async def on_publish(
        self, body: bytes, routing_key: str, headers: Mapping[str, Any] | None
    ) -> Any:
        with logger.contextualize(trace_id=self.apm.get_trace_id(), span_id=self.apm.get_span_id()):
            return await super().on_publish(body, routing_key, headers)
