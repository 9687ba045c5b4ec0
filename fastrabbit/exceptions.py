"""Exceptions raised by FastRabbit."""


class FastRabbitException(Exception):
    """Base exception for every FastRabbit failure."""


class FastRabbitCLIException(FastRabbitException):
    """Raised when the command line receives an invalid configuration."""
