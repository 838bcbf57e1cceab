"""Shared fixtures: an in-memory stand-in for asyncpg connections."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import pytest

from dwiw.config import AppConfig, ProfileConfig, ProfileLocalConfig
from dwiw.registry import ConnectionRegistry
from dwiw.retry import RetryState


@dataclass
class FakeResult:
    columns: tuple[tuple[str, str], ...] = ()
    rows: list[tuple[Any, ...]] = field(default_factory=list)
    status: str | None = None


class _FakeType:
    def __init__(self, name: str) -> None:
        self.name = name


class _FakeAttribute:
    def __init__(self, name: str, type_name: str) -> None:
        self.name = name
        self.type = _FakeType(type_name)


class FakeRecord:
    """Mimics the mapping/sequence behaviour of asyncpg.Record."""

    def __init__(self, names: tuple[str, ...], values: tuple[Any, ...]) -> None:
        self._names = names
        self._values = values

    def keys(self):  # type: ignore[no-untyped-def]
        return iter(self._names)

    def values(self):  # type: ignore[no-untyped-def]
        return iter(self._values)

    def items(self):  # type: ignore[no-untyped-def]
        return iter(zip(self._names, self._values))

    def __getitem__(self, key: int | str) -> Any:
        if isinstance(key, str):
            return self._values[self._names.index(key)]
        return self._values[key]

    def __len__(self) -> int:
        return len(self._values)


class _FakePrepared:
    def __init__(self, handle: FakeHandle, query: str) -> None:
        self._handle = handle
        self._query = query
        self._result = FakeResult()

    async def fetch(self, *args: Any) -> list[FakeRecord]:
        server = self._handle.server
        server.executed.append((self._query, args))
        if server.execute_delay:
            await asyncio.sleep(server.execute_delay)
        if self._handle.closed:
            raise RuntimeError("connection is closed")
        if server.execute_errors:
            if server.close_on_error:
                self._handle.closed = True
            raise server.execute_errors.pop(0)
        result = server.handlers[self._query]
        if callable(result):
            result = result(*args)
        self._result = result
        names = tuple(name for name, _ in result.columns)
        return [FakeRecord(names, tuple(row)) for row in result.rows]

    def get_statusmsg(self) -> str:
        if self._result.status is not None:
            return self._result.status
        return f"SELECT {len(self._result.rows)}"

    def get_attributes(self) -> tuple[_FakeAttribute, ...]:
        return tuple(_FakeAttribute(name, type_name) for name, type_name in self._result.columns)


class FakeHandle:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.closed = False
        self.terminated = False
        self.prepared: list[str] = []

    async def prepare(self, query: str) -> _FakePrepared:
        if self.closed:
            raise RuntimeError("connection is closed")
        if query not in self.server.handlers:
            raise RuntimeError(f'syntax error at or near "{query.split()[0]}"')
        self.prepared.append(query)
        return _FakePrepared(self, query)

    async def fetchval(self, query: str) -> Any:
        assert query == "SELECT lastval()"
        if self.server.lastval is None:
            raise RuntimeError('lastval is not yet defined in this session')
        return self.server.lastval

    async def execute(self, query: str) -> str:
        return query.split()[0].upper()

    def get_server_version(self) -> tuple[int, int]:
        return (16, 2)

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True

    def terminate(self) -> None:
        self.closed = True
        self.terminated = True


class FakeServer:
    """Scriptable replacement for ``asyncpg.connect``."""

    def __init__(self) -> None:
        self.handlers: dict[str, FakeResult | Callable[..., FakeResult]] = {}
        self.connect_errors: list[BaseException] = []
        self.execute_errors: list[BaseException] = []
        self.close_on_error = False
        self.connect_delay = 0.0
        self.execute_delay = 0.0
        self.lastval: int | None = None
        self.connect_calls: list[dict[str, Any]] = []
        self.handles: list[FakeHandle] = []
        self.executed: list[tuple[str, tuple[Any, ...]]] = []

    def on(
        self,
        query: str,
        result: FakeResult | Callable[..., FakeResult] | None = None,
        **fields: Any,
    ) -> None:
        self.handlers[query] = result if result is not None else FakeResult(**fields)

    async def connect(self, **kwargs: Any) -> FakeHandle:
        self.connect_calls.append(kwargs)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        handle = FakeHandle(self)
        self.handles.append(handle)
        return handle


class RecordingPolicy:
    """Retry policy that never sleeps and remembers what it was asked."""

    def __init__(self) -> None:
        self.allow = True
        self.calls: list[str] = []

    def should_retry(self, error: str, state: RetryState) -> bool:
        self.calls.append(error)
        if not self.allow:
            return False
        state.begin()
        state.attempts += 1
        return True


TABLE_T = [
    {"id": 5, "a": "x", "b": "y"},
    {"id": 6, "a": "z", "b": "w"},
]


def _select_by_id(row_id: int) -> FakeResult:
    rows = [(row["a"], row["b"]) for row in TABLE_T if row["id"] == row_id]
    return FakeResult(columns=(("a", "text"), ("b", "text")), rows=rows)


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    fake = FakeServer()
    fake.on("SELECT 1", FakeResult(columns=(("?column?", "int4"),), rows=[(1,)]))
    fake.on("SELECT a, b FROM t WHERE id = $1", _select_by_id)
    fake.on(
        "SELECT id, a FROM t ORDER BY id",
        FakeResult(
            columns=(("id", "int4"), ("a", "text")),
            rows=[(row["id"], row["a"]) for row in TABLE_T],
        ),
    )
    monkeypatch.setattr("dwiw.connections.asyncpg.connect", fake.connect)
    return fake


@pytest.fixture
def policy() -> RecordingPolicy:
    return RecordingPolicy()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        default_profile="main",
        profiles=[
            ProfileConfig(
                name="main",
                database="app",
                user="app",
                password="secret",
                host="db.internal",
                port=5432,
                replicas=["replica-1.internal:5433"],
            ),
            ProfileConfig(name="reports", database="reports", user="reporter", password=""),
        ],
    )


@pytest.fixture
def registry(server: FakeServer, policy: RecordingPolicy, app_config: AppConfig) -> Iterator[ConnectionRegistry]:
    reg = ConnectionRegistry(ProfileLocalConfig(app_config), retry_policy=policy, environ={})
    try:
        yield reg
    finally:
        reg.close()
