"""A FastAPI-based framework of reliable RabbitMQ consumers with retry policies"""

from fastrabbit.amqp.publisher import Publisher
from fastrabbit.amqp.subscriber import Subscriber
from fastrabbit.applications import FastRabbit
from fastrabbit.broker import RabbitBroker
from fastrabbit.datastructures import DeliveryContext, WorkOutcome, ack, reject, requeue
from fastrabbit.handlers import AcknowledgmentPolicy, ExponentialBackoff, MaxRetry, OneShot
from fastrabbit.middlewares.base import BaseMiddleware
from fastrabbit.router import RabbitRouter

__all__ = [
    "FastRabbit",
    "RabbitBroker",
    "RabbitRouter",
    "Publisher",
    "Subscriber",
    "BaseMiddleware",
    "DeliveryContext",
    "WorkOutcome",
    "AcknowledgmentPolicy",
    "OneShot",
    "MaxRetry",
    "ExponentialBackoff",
    "ack",
    "reject",
    "requeue",
]
