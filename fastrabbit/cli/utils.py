import logging
import os
from enum import StrEnum

from fastrabbit.exceptions import FastRabbitCLIException


class LogLevels(StrEnum):
    """A class to represent log levels."""

    CRITICAL = "CRITICAL"
    FATAL = "FATAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"


LOGGING_LEVEL_MAP: dict[str, int] = {
    LogLevels.CRITICAL: logging.CRITICAL,
    LogLevels.FATAL: logging.FATAL,
    LogLevels.ERROR: logging.ERROR,
    LogLevels.WARNING: logging.WARNING,
    LogLevels.WARN: logging.WARNING,
    LogLevels.INFO: logging.INFO,
    LogLevels.DEBUG: logging.DEBUG,
}


def get_log_level(level: LogLevels | str | int) -> int:
    """Get the log level.

    Args:
        level: The log level to get. Can be an integer, a LogLevels enum value, or a string.

    Returns:
        The log level as an integer.
    """
    if isinstance(level, int):
        return level

    if isinstance(level, str) and level.upper() in LOGGING_LEVEL_MAP:
        return LOGGING_LEVEL_MAP[level.upper()]

    possible_values = [value.value for value in LogLevels]
    raise FastRabbitCLIException(
        f"Invalid value for '--log-level', it should be one of {possible_values}"
    )


class APMProviders(StrEnum):
    """A class to represent the possible APM providers."""

    NOOP = "NOOP"
    NEWRELIC = "NEWRELIC"


class MetricsBackends(StrEnum):
    """A class to represent the possible metrics backends."""

    NULL = "NULL"
    PROMETHEUS = "PROMETHEUS"
    APM = "APM"


def ensure_amqp_url() -> None:
    url = os.getenv("FASTRABBIT_AMQP_URL", "")
    if url and not url.startswith(("amqp://", "amqps://")):
        raise FastRabbitCLIException(
            f"The FASTRABBIT_AMQP_URL ({url}) must use the amqp:// or amqps:// scheme."
        )
