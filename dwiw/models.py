"""Shared dataclasses used across connection/registry modules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable


@dataclass(frozen=True, slots=True)
class ConnectionKey:
    """Canonical identity of a reusable connection."""

    database: str
    user: str
    password: str = ""
    host: str = ""
    port: int | None = None
    proxy: bool = False
    proxy_host: str | None = None
    proxy_port: int | None = None
    proxy_key: str | None = None
    proxy_cipher: str | None = None

    @property
    def is_local(self) -> bool:
        return not self.host and not self.proxy

    def dsn(self) -> str:
        """Connection string for diagnostics, with the password masked."""

        target = self.host or "localhost"
        if self.port is not None:
            target = f"{target}:{self.port}"
        dsn = f"postgresql://{self.user}:***@{target}/{self.database}"
        if self.proxy:
            dsn += f"?proxy={self.proxy_host}:{self.proxy_port}"
            if self.proxy_cipher:
                dsn += f"&cipher={self.proxy_cipher}"
        return dsn


class ConnectionState(str, Enum):
    """Lifecycle states of a Connection."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    FAILED = "Failed"


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """Status change emitted to registry listeners."""

    key: ConnectionKey
    status: str
    detail: str | None
    at: datetime


ConnectionListener = Callable[[ConnectionEvent], None]


__all__ = ["ConnectionEvent", "ConnectionKey", "ConnectionListener", "ConnectionState"]
