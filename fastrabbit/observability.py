"""APM providers and the metrics backends of the dispatcher."""

import os
import time
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from functools import cache
from types import TracebackType
from typing import Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from fastrabbit.exceptions import FastRabbitException
from fastrabbit.logger import logger

try:
    import newrelic.agent

    _new_relic_agent = newrelic.agent
except ModuleNotFoundError:
    _new_relic_agent = None


class ApmProvider(ABC):
    """What the framework needs from an APM agent.

    ``start`` and ``shutdown`` are for processes that are not launched by the
    agent's own wrapper script.
    """

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def shutdown(self) -> None: ...

    @abstractmethod
    @contextmanager
    def start_trace(self, name: str, context: dict[str, str] | None = None) -> Generator[Any]:
        """Opens a top-level transaction, joining ``context`` when it carries trace headers."""

    @abstractmethod
    @contextmanager
    def start_span(self, name: str) -> Generator[Any]:
        """Opens a segment inside the current transaction."""

    @abstractmethod
    def set_distributed_trace_context(self, headers: dict[str, str]) -> None: ...

    @abstractmethod
    def get_distributed_trace_context(self) -> dict[str, str]:
        """Headers that carry the current trace to downstream consumers."""

    @abstractmethod
    def report_exception(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: TracebackType | None = None,
        attributes: dict[str, str] | None = None,
    ) -> None: ...

    @abstractmethod
    def add_custom_metric(self, metric_name: str, value: int | float) -> None: ...

    @abstractmethod
    def get_trace_id(self) -> str | None: ...

    @abstractmethod
    def get_span_id(self) -> str | None: ...

    @abstractmethod
    def active(self) -> bool: ...


class NoOpProvider(ApmProvider):
    def start(self) -> None:
        return None

    def shutdown(self) -> None:
        return None

    @contextmanager
    def start_trace(self, name: str, context: dict[str, str] | None = None) -> Generator[Any]:
        yield

    @contextmanager
    def start_span(self, name: str) -> Generator[Any]:
        yield

    def set_distributed_trace_context(self, headers: dict[str, str]) -> None:
        return None

    def get_distributed_trace_context(self) -> dict[str, str]:
        return {}

    def report_exception(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: TracebackType | None = None,
        attributes: dict[str, str] | None = None,
    ) -> None:
        return None

    def add_custom_metric(self, metric_name: str, value: int | float) -> None:
        return None

    def get_trace_id(self) -> str | None:
        return ""

    def get_span_id(self) -> str | None:
        return ""

    def active(self) -> bool:
        return False


class NewRelicProvider(ApmProvider):
    """Reports through the New Relic agent (``pip install fastrabbit[newrelic]``).

    Failures of the agent while starting or stopping are logged and never
    stop the consumers.
    """

    def __init__(self) -> None:
        if _new_relic_agent is None:
            raise FastRabbitException(
                "The New Relic agent is not installed, install it with "
                "'pip install fastrabbit[newrelic]'."
            )

        self._agent = _new_relic_agent

    def start(self) -> None:
        pid = os.getpid()
        try:
            if self.active():
                logger.warning(f"The New Relic agent is already active on process [{pid}].")
                return

            self._agent.initialize()
            self._agent.register_application(timeout=5.0)
            logger.info(f"The New Relic agent was registered for process [{pid}].")
        except Exception:
            logger.exception(f"The New Relic agent failed to start on process [{pid}].")

    def shutdown(self) -> None:
        try:
            self._agent.shutdown_agent()
        except Exception:
            logger.exception(f"The New Relic agent failed to stop on process [{os.getpid()}].")

    @contextmanager
    def start_trace(self, name: str, context: dict[str, str] | None = None) -> Generator[Any]:
        application = self._agent.application(activate=False)
        with self._agent.BackgroundTask(application=application, name=name) as transaction:
            if context:
                self.set_distributed_trace_context(headers=context)
            yield transaction

    @contextmanager
    def start_span(self, name: str) -> Generator[Any]:
        with self._agent.FunctionTrace(name=name) as trace:
            yield trace

    def set_distributed_trace_context(self, headers: dict[str, str]) -> None:
        if headers:
            pairs = [(str(key).lower(), str(value)) for key, value in headers.items()]
            self._agent.accept_distributed_trace_headers(pairs, transport_type="AMQP")

    def get_distributed_trace_context(self) -> dict[str, str]:
        pairs: list[tuple[str, str]] = []
        self._agent.insert_distributed_trace_headers(pairs)
        return dict(pairs)

    def report_exception(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: TracebackType | None = None,
        attributes: dict[str, str] | None = None,
    ) -> None:
        self._agent.record_exception(exc=exc_type, value=exc_value, tb=traceback, params=attributes)

    def add_custom_metric(self, metric_name: str, value: int | float) -> None:
        self._agent.record_custom_metric(name=metric_name, value=value)

    def get_trace_id(self) -> str | None:
        return str(trace_id) if (trace_id := self._agent.current_trace_id()) else None

    def get_span_id(self) -> str | None:
        return str(span_id) if (span_id := self._agent.current_span_id()) else None

    def active(self) -> bool:
        application = self._agent.application(activate=False)
        return bool(application) and bool(application.active)


PROVIDER_MAP: dict[str, type[ApmProvider]] = {
    "newrelic": NewRelicProvider,
}


@cache
def get_apm_provider(provider_name: str | None = None) -> ApmProvider:
    name = provider_name or os.getenv("FASTRABBIT_APM_PROVIDER")
    name = name.lower() if isinstance(name, str) else ""

    provider_cls = PROVIDER_MAP.get(name, NoOpProvider)
    provider = provider_cls()

    logger.debug(f"The observability method choosen is: {name} {provider_cls.__name__}")
    return provider


def metric_name(subscriber: str, event: str, outcome: str = "") -> str:
    """The dotted name of a work metric, ``work.<subscriber>.<event>[.<outcome>]``."""
    name = f"work.{subscriber}.{event}"
    return f"{name}.{outcome}" if outcome else name


class Metrics(ABC):
    """Contract of the metrics backend used by the dispatcher.

    ``event`` is one of ``started``, ``ended`` or ``handled``, the last one
    carries the outcome label of the delivery.
    """

    @abstractmethod
    def increment(self, subscriber: str, event: str, outcome: str = "") -> None:
        pass

    @abstractmethod
    @contextmanager
    def timing(self, subscriber: str) -> Generator[None]:
        pass


class NullMetrics(Metrics):
    def increment(self, subscriber: str, event: str, outcome: str = "") -> None:
        return None

    @contextmanager
    def timing(self, subscriber: str) -> Generator[None]:
        yield


# Buckets of the work duration histogram, in seconds.
WORK_TIME_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class PrometheusMetrics(Metrics):
    """Records the work metrics as Prometheus series.

    The series live in ``registry``, the process-wide default registry unless
    another one is given. The FastRabbit application exposes that registry for
    scraping.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        self.registry = registry
        self.work_events = Counter(
            "fastrabbit_work_events_total",
            "Deliveries seen by the dispatcher, per lifecycle event",
            ["subscriber", "event", "outcome"],
            registry=registry,
        )
        self.work_duration = Histogram(
            "fastrabbit_work_duration_seconds",
            "Time spent running the work function",
            ["subscriber"],
            buckets=WORK_TIME_BUCKETS,
            registry=registry,
        )

    def increment(self, subscriber: str, event: str, outcome: str = "") -> None:
        self.work_events.labels(subscriber=subscriber, event=event, outcome=outcome).inc()

    @contextmanager
    def timing(self, subscriber: str) -> Generator[None]:
        with self.work_duration.labels(subscriber=subscriber).time():
            yield


class ApmMetrics(Metrics):
    """Reports the metrics as custom metrics of the configured APM provider."""

    def __init__(self, apm: ApmProvider | None = None) -> None:
        self.apm = apm or get_apm_provider()

    def increment(self, subscriber: str, event: str, outcome: str = "") -> None:
        self.apm.add_custom_metric(f"Custom/{metric_name(subscriber, event, outcome)}", 1)

    @contextmanager
    def timing(self, subscriber: str) -> Generator[None]:
        start = time.monotonic()
        try:
            yield
        finally:
            elapsed = time.monotonic() - start
            self.apm.add_custom_metric(f"Custom/{metric_name(subscriber, 'time')}", elapsed)


METRICS_MAP: dict[str, type[Metrics]] = {
    "null": NullMetrics,
    "prometheus": PrometheusMetrics,
    "apm": ApmMetrics,
}


def get_metrics(metrics_name: str | None = None) -> Metrics:
    name = metrics_name or os.getenv("FASTRABBIT_METRICS")
    name = name.lower() if isinstance(name, str) else ""
    return _create_metrics(name)


# One backend per name, the Prometheus series can only be registered once.
@cache
def _create_metrics(name: str) -> Metrics:
    metrics_cls = METRICS_MAP.get(name, NullMetrics)
    logger.debug(f"The metrics backend choosen is: {name} {metrics_cls.__name__}")
    return metrics_cls()
