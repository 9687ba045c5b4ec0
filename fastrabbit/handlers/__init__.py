"""Acknowledgment policies."""

from fastrabbit.exceptions import FastRabbitException
from fastrabbit.handlers.base import AcknowledgmentPolicy
from fastrabbit.handlers.exponential import ExponentialBackoff
from fastrabbit.handlers.maxretry import MaxRetry
from fastrabbit.handlers.oneshot import OneShot

HANDLER_MAP: dict[str, type[AcknowledgmentPolicy]] = {
    OneShot.name: OneShot,
    MaxRetry.name: MaxRetry,
    ExponentialBackoff.name: ExponentialBackoff,
}


def get_handler_class(handler: str | type[AcknowledgmentPolicy]) -> type[AcknowledgmentPolicy]:
    if isinstance(handler, type) and issubclass(handler, AcknowledgmentPolicy):
        return handler

    if isinstance(handler, str) and handler.lower() in HANDLER_MAP:
        return HANDLER_MAP[handler.lower()]

    raise FastRabbitException(
        f"The handler {handler} is unknown. It should be one of {list(HANDLER_MAP)} "
        f"or a subclass of {AcknowledgmentPolicy.__name__}."
    )


__all__ = [
    "AcknowledgmentPolicy",
    "ExponentialBackoff",
    "HANDLER_MAP",
    "MaxRetry",
    "OneShot",
    "get_handler_class",
]
