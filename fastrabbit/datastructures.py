from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

DEFAULT_MAX_RETRY_ATTEMPTS = 25
DEFAULT_RETRY_TIMEOUT_MILLIS = 60_000


class WorkOutcome(StrEnum):
    """The result vocabulary of a work function.

    ``TIMEOUT`` and ``ERROR`` are produced by the dispatcher only. A work
    function returning either of them gets ``NOOP``, like any other value
    that is not one of its own outcomes.
    """

    ACK = "ack"
    REJECT = "reject"
    REQUEUE = "requeue"
    TIMEOUT = "timeout"
    ERROR = "error"
    NOOP = "noop"

    @classmethod
    def from_result(cls, result: Any) -> "WorkOutcome":
        if isinstance(result, str) and result in cls._value2member_map_:
            outcome = cls(result)
            if outcome not in (cls.TIMEOUT, cls.ERROR):
                return outcome

        return cls.NOOP


def ack() -> WorkOutcome:
    return WorkOutcome.ACK


def reject() -> WorkOutcome:
    return WorkOutcome.REJECT


def requeue() -> WorkOutcome:
    return WorkOutcome.REQUEUE


@dataclass(frozen=True)
class DeliveryContext:
    delivery_tag: int
    routing_key: str
    headers: Mapping[str, Any] = field(default_factory=dict)
    exchange: str = ""
    redelivered: bool = False
    message_id: str | None = None
    content_type: str | None = None

    def __post_init__(self) -> None:
        snapshot = MappingProxyType(dict(self.headers or {}))
        object.__setattr__(self, "headers", snapshot)

    @property
    def redelivery_history_count(self) -> int:
        deaths = self.headers.get("x-death")
        if not deaths:
            return 0
        return len(deaths)

    @property
    def retry_count(self) -> int:
        return int(self.headers.get("retry_count") or 0)


@dataclass(frozen=True)
class PolicyConfig:
    exchange: str
    max_retries: int = DEFAULT_MAX_RETRY_ATTEMPTS
    retry_exchange: str | None = None
    error_exchange: str | None = None
    retry_timeout_millis: int = DEFAULT_RETRY_TIMEOUT_MILLIS

    @property
    def retry_exchange_name(self) -> str:
        return self.retry_exchange or f"{self.exchange}-retry"

    @property
    def error_exchange_name(self) -> str:
        return self.error_exchange or f"{self.exchange}-error"


@dataclass(frozen=True)
class DispatchPolicy:
    threads: int = 10
    timeout_after: float | None = 5
    ack: bool = True


@dataclass(frozen=True)
class QueuePolicy:
    durable: bool = True
    prefetch: int = 10
    exchange_type: str = "direct"
    routing_keys: tuple[str, ...] = ()
    arguments: Mapping[str, Any] = field(default_factory=dict)
