"""Simple, fault tolerant access to PostgreSQL."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import AppConfig, LocalConfig, ProfileConfig, ProfileLocalConfig, load_config
from .connections import Connection, Statement
from .errors import (
    ConfigurationError,
    ConnectionFailedError,
    DWIWError,
    ExecutionError,
    NotConnectedError,
    OperationTimeoutError,
)
from .models import ConnectionEvent, ConnectionKey, ConnectionState
from .registry import ConnectionRegistry
from .retry import ExponentialBackoffRetryPolicy, FixedIntervalRetryPolicy, RetryPolicy, RetryState

__all__ = [
    "AppConfig",
    "ConfigurationError",
    "Connection",
    "ConnectionEvent",
    "ConnectionFailedError",
    "ConnectionKey",
    "ConnectionRegistry",
    "ConnectionState",
    "DWIWError",
    "ExecutionError",
    "ExponentialBackoffRetryPolicy",
    "FixedIntervalRetryPolicy",
    "LocalConfig",
    "NotConnectedError",
    "OperationTimeoutError",
    "ProfileConfig",
    "ProfileLocalConfig",
    "RetryPolicy",
    "RetryState",
    "Statement",
    "__version__",
    "load_config",
]
