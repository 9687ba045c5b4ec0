from collections.abc import Awaitable, Callable
from typing import Any

# A work function receives the body and, optionally, the delivery context.
WorkCallable = Callable[..., Any]
SubscribedCallable = Callable[[WorkCallable], WorkCallable]

NoArgAsyncCallable = Callable[[], Awaitable[None]]
