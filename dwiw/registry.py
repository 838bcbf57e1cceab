"""Registry that hands out and reuses live connections."""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any, Callable, Mapping

from .config import AppConfig, LocalConfig, ProfileLocalConfig
from .connections import Connection, EventLoopRunner
from .errors import ConfigurationError, DWIWError
from .models import ConnectionEvent, ConnectionKey, ConnectionListener
from .resolver import ResolvedOptions, resolve_options
from .retry import FixedIntervalRetryPolicy, RetryPolicy

LOG = logging.getLogger(__name__)


class ConnectionRegistry:
    """Caches one shared connection per connection key.

    Create one registry per application (or per test) and call :meth:`close`
    when done; it disconnects everything it handed out and stops the
    background event loop. Lookup-or-create is atomic per key, but a shared
    Connection itself must still be used by one thread at a time.
    """

    def __init__(
        self,
        local_config: LocalConfig | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        safe: bool = True,
        environ: Mapping[str, str] | None = None,
        runner: EventLoopRunner | None = None,
    ) -> None:
        self._local_config = local_config or LocalConfig()
        self._retry_policy = retry_policy or FixedIntervalRetryPolicy()
        self._safe = safe
        self._environ = environ
        self._runner = runner or EventLoopRunner()
        self._connections: dict[ConnectionKey, Connection] = {}
        self._live: weakref.WeakSet[Connection] = weakref.WeakSet()
        self._lock = threading.Lock()
        self._key_locks: dict[ConnectionKey, threading.Lock] = {}
        self._listeners: set[ConnectionListener] = set()
        self._closed = False
        self.last_error: DWIWError | None = None

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs: Any) -> ConnectionRegistry:
        """Build a registry serving the profiles and retry settings of ``config``."""

        kwargs.setdefault("retry_policy", config.retry.build_policy())
        kwargs.setdefault("safe", config.safe)
        return cls(ProfileLocalConfig(config), **kwargs)

    def __enter__(self) -> ConnectionRegistry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, key: object) -> bool:
        return key in self._connections

    @property
    def local_config(self) -> LocalConfig:
        return self._local_config

    @property
    def connections(self) -> tuple[Connection, ...]:
        """Shared connections currently cached."""

        with self._lock:
            return tuple(self._connections.values())

    def connect(self, profile: str | None = None, **options: Any) -> Connection | None:
        """Resolve options and return a connected Connection.

        Raises ConfigurationError or ConnectionFailedError on failure unless
        ``no_abort=True`` is passed, in which case None is returned and the
        error is kept in :attr:`last_error`.
        """

        no_abort = bool(options.get("no_abort"))
        try:
            resolved = resolve_options(self._local_config, profile, environ=self._environ, **options)
        except ConfigurationError as exc:
            self.last_error = exc
            if not no_abort:
                raise
            return None
        return self.get_or_create(resolved)

    def get_or_create(self, resolved: ResolvedOptions) -> Connection | None:
        if resolved.unique:
            return self._build(resolved)
        with self._lock_for(resolved.key):
            cached = self.get(resolved.key)
            if cached is not None:
                if resolved.verbose is not None:
                    cached.verbose = resolved.verbose
                return cached
            connection = self._build(resolved)
            if connection is not None:
                with self._lock:
                    self._connections[resolved.key] = connection
            return connection

    def get(self, key: ConnectionKey) -> Connection | None:
        with self._lock:
            return self._connections.get(key)

    def remove(self, key: ConnectionKey, connection: Connection | None = None) -> None:
        """Forget the cached connection for ``key``; no-op if there is none.

        When ``connection`` is given, the entry is only removed if it still
        refers to that connection.
        """

        with self._lock:
            current = self._connections.get(key)
            if current is None:
                return
            if connection is not None and current is not connection:
                return
            del self._connections[key]

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        """Subscribe to connection status events; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def emit(self, event: ConnectionEvent) -> None:
        for listener in tuple(self._listeners):
            listener(event)

    def close(self) -> None:
        """Disconnect every connection handed out and stop the event loop."""

        if self._closed:
            return
        self._closed = True
        for connection in list(self._live):
            if connection.connected:
                connection.disconnect()
        with self._lock:
            self._connections.clear()
            self._key_locks.clear()
        self._runner.shutdown()

    def _build(self, resolved: ResolvedOptions) -> Connection | None:
        if self._closed:
            raise DWIWError("connection registry is closed")
        connection = Connection(
            resolved.key,
            self._runner,
            retry_policy=self._retry_policy,
            quiet=resolved.quiet,
            verbose=bool(resolved.verbose),
            retry=resolved.retry,
            no_abort=resolved.no_abort,
            timeout=resolved.timeout,
            unique=resolved.unique,
            safe=self._safe,
            registry=self,
        )
        self._live.add(connection)
        if not connection.connect():
            LOG.debug(
                "Connection not established",
                extra={"dsn": resolved.key.dsn(), "error": str(connection.last_error)},
            )
            return None
        return connection

    def _lock_for(self, key: ConnectionKey) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())


__all__ = ["ConnectionRegistry"]
