import gzip
from collections.abc import Mapping
from typing import Any

from fastrabbit.datastructures import DeliveryContext
from fastrabbit.middlewares.base import BaseMiddleware


class GZipMiddleware(BaseMiddleware):
    async def on_message(self, body: bytes, context: DeliveryContext) -> Any:
        if context.headers.get("Content-Encoding") == "gzip":
            body = gzip.decompress(data=body)

        return await super().on_message(body, context)

    async def on_publish(
        self, body: bytes, routing_key: str, headers: Mapping[str, Any] | None
    ) -> Any:
        new_headers = dict(headers or {})
        new_headers["Content-Encoding"] = "gzip"
        compressed_body = gzip.compress(data=body)
        return await super().on_publish(compressed_body, routing_key, new_headers)
