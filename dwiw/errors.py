"""Exception types raised by dwiw."""

from __future__ import annotations


class DWIWError(RuntimeError):
    """Base class for every error raised by dwiw."""


class ConfigurationError(DWIWError):
    """Raised when connection options are missing or invalid."""


class ConnectionFailedError(DWIWError):
    """Raised when a connection cannot be established."""


class OperationTimeoutError(DWIWError):
    """Raised when a connect or execute call exceeds its timeout."""


class ExecutionError(DWIWError):
    """Raised when a statement fails for a reason that is not retried."""


class NotConnectedError(DWIWError):
    """Raised when an operation needs a live connection and there is none."""


__all__ = [
    "ConfigurationError",
    "ConnectionFailedError",
    "DWIWError",
    "ExecutionError",
    "NotConnectedError",
    "OperationTimeoutError",
]
