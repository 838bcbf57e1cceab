"""Connections and prepared statements with retry and timeout handling."""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import re
import socket
import ssl
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Coroutine, Sequence

import asyncpg

from . import query
from .errors import (
    ConnectionFailedError,
    DWIWError,
    ExecutionError,
    NotConnectedError,
    OperationTimeoutError,
)
from .models import ConnectionEvent, ConnectionKey, ConnectionState
from .retry import (
    FixedIntervalRetryPolicy,
    RetryPolicy,
    RetryState,
    is_retryable_connect_error,
    is_retryable_execute_error,
)

if TYPE_CHECKING:
    from .registry import ConnectionRegistry

LOG = logging.getLogger(__name__)

# Driver calls reachable through Connection.call_native().
SAFE_NATIVE_OPERATIONS = frozenset(
    {
        "get_server_pid",
        "get_server_version",
        "get_settings",
        "is_closed",
        "is_in_transaction",
    }
)
NATIVE_OPERATIONS = SAFE_NATIVE_OPERATIONS | {
    "copy_from_query",
    "copy_from_table",
    "copy_records_to_table",
    "copy_to_table",
    "execute",
    "executemany",
    "fetch",
    "fetchrow",
    "fetchval",
    "reload_schema_state",
    "reset",
    "reset_type_codec",
    "set_type_codec",
}

_NATIVE_PLACEHOLDER = re.compile(r"\$\d")
_DOLLAR_QUOTE = re.compile(r"\$(?:[A-Za-z_]\w*)?\$")
_JSONB_KEY_OPERATORS = ("?|", "?&")


class EventLoopRunner:
    """Runs driver coroutines on a private loop so callers can block on them."""

    def __init__(self, name: str = "dwiw-asyncpg") -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name=name, daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def run(self, coro: Coroutine[Any, Any, Any], timeout: float | None = None) -> Any:
        """Run ``coro`` to completion, abandoning it after ``timeout`` seconds."""

        if not self.running:
            coro.close()
            raise DWIWError("event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout or None)
        except concurrent.futures.TimeoutError:
            if future.done():
                # The coroutine itself raised a TimeoutError.
                raise
            future.cancel()
            raise OperationTimeoutError(f"operation exceeded {timeout} sec") from None

    def call_soon(self, callback: Any, *args: Any) -> None:
        if self.running:
            self._loop.call_soon_threadsafe(callback, *args)

    def shutdown(self) -> None:
        """Stop the background loop and wait for its thread."""

        if not self.running:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=1)
        if not self._thread.is_alive():
            self._loop.close()


def _skip_past(sql: str, start: int, terminator: str) -> int:
    end = sql.find(terminator, start)
    return len(sql) if end == -1 else end + len(terminator)


def translate_placeholders(sql: str) -> str:
    """Rewrite ``?`` placeholders as ``$1``, ``$2``... for asyncpg.

    Quoted literals and identifiers, dollar-quoted bodies and comments are
    copied untouched, as are the jsonb ``?|`` and ``?&`` operators. SQL that
    already binds ``$n`` placeholders is returned unchanged; write queries
    using the bare jsonb ``?`` operator that way.
    """

    if "?" not in sql:
        return sql
    out: list[str] = []
    index = 0
    pos = 0
    while pos < len(sql):
        char = sql[pos]
        end = pos + 1
        if char in ("'", '"'):
            end = _skip_past(sql, pos + 1, char)
        elif sql.startswith("--", pos):
            end = _skip_past(sql, pos, "\n")
        elif sql.startswith("/*", pos):
            end = _skip_past(sql, pos + 2, "*/")
        elif char == "$" and (pos == 0 or not (sql[pos - 1].isalnum() or sql[pos - 1] == "_")):
            if _NATIVE_PLACEHOLDER.match(sql, pos):
                return sql
            tag = _DOLLAR_QUOTE.match(sql, pos)
            if tag:
                end = _skip_past(sql, tag.end(), tag.group())
        elif sql.startswith(_JSONB_KEY_OPERATORS, pos):
            end = pos + 2
        elif char == "?":
            index += 1
            out.append(f"${index}")
            pos = end
            continue
        out.append(sql[pos:end])
        pos = end
    return "".join(out)


def _rows_from_status(status: str | None, fallback: int) -> int:
    # Command tags look like "SELECT 3", "INSERT 0 1" or "CREATE TABLE".
    if status:
        tail = status.rsplit(" ", 1)[-1]
        if tail.isdigit():
            return int(tail)
    return fallback


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class Statement:
    """A query prepared on a Connection, plus the rows of its last execution."""

    def __init__(self, connection: Connection, sql: str) -> None:
        self.sql = sql
        self.query = translate_placeholders(sql)
        self._connection = connection
        self._prepared: Any = None
        self._prepared_on: Any = None
        self._records: list[Any] = []
        self._position = 0
        self._columns: tuple[str, ...] = ()
        self._column_types: tuple[str, ...] = ()
        self._status: str | None = None
        self._rows = 0

    def __repr__(self) -> str:
        return f"Statement({self.sql!r})"

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def columns(self) -> tuple[str, ...]:
        return self._columns

    @property
    def column_types(self) -> tuple[str, ...]:
        """Server type names of the result columns, in column order."""

        return self._column_types

    @property
    def status(self) -> str | None:
        """Command tag reported for the last execution."""

        return self._status

    @property
    def rows(self) -> int:
        """Rows affected (or returned) by the last execution."""

        return self._rows

    @property
    def row_count(self) -> int:
        return len(self._records)

    def execute(self, *values: Any) -> int | None:
        """Execute with ``values`` bound to the placeholders."""

        return self._connection._execute(self, values)

    def fetch_mapping(self) -> dict[str, Any] | None:
        record = self._next_record()
        return dict(record.items()) if record is not None else None

    def fetch_values(self) -> list[Any] | None:
        record = self._next_record()
        return list(record.values()) if record is not None else None

    def fetch_all_mappings(self) -> list[dict[str, Any]]:
        return [dict(record.items()) for record in self._drain()]

    def fetch_all_values(self) -> list[list[Any]]:
        return [list(record.values()) for record in self._drain()]

    async def _run(self, handle: Any, values: Sequence[Any]) -> tuple[list[Any], str | None, tuple[Any, ...]]:
        if self._prepared is None or self._prepared_on is not handle:
            self._prepared = await handle.prepare(self.query)
            self._prepared_on = handle
        records = await self._prepared.fetch(*values)
        return list(records), self._prepared.get_statusmsg(), tuple(self._prepared.get_attributes())

    def _load(self, records: list[Any], status: str | None, attributes: tuple[Any, ...]) -> None:
        self._records = records
        self._position = 0
        self._status = status
        self._columns = tuple(attribute.name for attribute in attributes)
        self._column_types = tuple(attribute.type.name for attribute in attributes)
        self._rows = _rows_from_status(status, len(records))

    def _next_record(self) -> Any:
        if self._position >= len(self._records):
            return None
        record = self._records[self._position]
        self._position += 1
        return record

    def _drain(self) -> list[Any]:
        remaining = self._records[self._position :]
        self._position = len(self._records)
        return remaining


class Connection:
    """One session with the database server.

    Build connections through :class:`~dwiw.registry.ConnectionRegistry`,
    which also decides whether they are shared. A Connection is not safe for
    concurrent use: run one operation at a time, since the result accessors
    read whatever statement executed last.
    """

    def __init__(
        self,
        key: ConnectionKey,
        runner: EventLoopRunner,
        *,
        retry_policy: RetryPolicy | None = None,
        quiet: bool = False,
        verbose: bool = False,
        retry: bool = True,
        no_abort: bool = False,
        timeout: float = 0.0,
        unique: bool = False,
        safe: bool = True,
        registry: ConnectionRegistry | None = None,
    ) -> None:
        self._key = key
        self._runner = runner
        self._retry_policy = retry_policy or FixedIntervalRetryPolicy()
        self._quiet = quiet
        self._verbose = verbose
        self._retry = retry
        self._no_abort = no_abort
        self._timeout = timeout
        self._unique = unique
        self._safe = safe
        self._registry = registry
        self._handle: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._last_error: DWIWError | None = None
        self._recent_prepared: Statement | None = None
        self._recent_executed: Statement | None = None
        self._execute_return_code: int | None = None
        self._description = self._describe_target()
        self._retry_state = RetryState(description=self._description, quiet=quiet)

    def __repr__(self) -> str:
        return f"Connection({self._key.dsn()!r}, state={self._state.value})"

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._handle is not None:
            self.disconnect()

    # --- State -----------------------------------------------------------------------

    @property
    def key(self) -> ConnectionKey:
        return self._key

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._handle is not None

    @property
    def unique(self) -> bool:
        return self._unique

    @property
    def description(self) -> str:
        return self._description

    @property
    def status(self) -> str:
        """Waiting label during an outage, otherwise the state name."""

        return self._retry_state.label or self._state.value

    @property
    def retry_state(self) -> RetryState:
        return self._retry_state

    @property
    def last_error(self) -> DWIWError | None:
        return self._last_error

    @property
    def verbose(self) -> bool:
        return self._verbose

    @verbose.setter
    def verbose(self, value: bool) -> None:
        self._verbose = bool(value)

    @property
    def quiet(self) -> bool:
        return self._quiet

    @quiet.setter
    def quiet(self, value: bool) -> None:
        self._quiet = bool(value)
        self._retry_state.quiet = self._quiet

    @property
    def safe(self) -> bool:
        return self._safe

    @safe.setter
    def safe(self, value: bool) -> None:
        self._safe = bool(value)

    @property
    def timeout(self) -> float:
        """Seconds after which connect/execute give up; 0 disables the limit."""

        return self._timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        if value < 0:
            raise ValueError(f"timeout must not be negative (got {value})")
        self._timeout = float(value)
        if self._verbose:
            LOG.info("Timeout set to %s", self._timeout, extra={"connection": self._description})

    # --- Connect / disconnect --------------------------------------------------------

    def connect(self) -> bool:
        """Open the driver handle, retrying transient failures.

        Returns False on timeout, and on other failures when ``no_abort`` is
        set; otherwise a failure raises ConnectionFailedError.
        """

        if self._handle is not None:
            return True
        self._state = ConnectionState.CONNECTING
        while True:
            try:
                handle = self._runner.run(self._open_handle(), self._timeout)
            except OperationTimeoutError:
                self._state = ConnectionState.FAILED
                self._set_error(OperationTimeoutError(f"connection timeout ({self._timeout} sec passed)"))
                self._operation_failed()
                self._emit("Timeout", str(self._last_error))
                return False
            except Exception as exc:
                message = _describe(exc)
                if self._retry and is_retryable_connect_error(exc) and self._retry_wait(message):
                    continue
                self._state = ConnectionState.FAILED
                if not self._quiet:
                    LOG.warning("%s", message, extra={"connection": self._description})
                error = ConnectionFailedError(f"can't connect to database: {message}")
                self._set_error(error)
                self._operation_failed()
                self._emit("Failed", message)
                if not self._no_abort:
                    raise error from exc
                return False
            break
        self._handle = handle
        self._state = ConnectionState.CONNECTED
        self._last_error = None
        self._operation_successful()
        self._emit("Connected", None)
        return True

    def disconnect(self) -> bool:
        """Close the handle and drop the registry entry for this connection."""

        if self._registry is not None and not self._unique:
            self._registry.remove(self._key, self)
        handle = self._handle
        if handle is None:
            self._set_error(NotConnectedError("not connected in disconnect()"))
            return False
        self._handle = None
        self._state = ConnectionState.DISCONNECTED
        self._recent_executed = None
        try:
            self._runner.run(handle.close(), self._timeout)
        except Exception as exc:
            self._runner.call_soon(handle.terminate)
            self._set_error(DWIWError(f"couldn't disconnect: {_describe(exc)}"))
            self._emit("Disconnected", str(self._last_error))
            return False
        self._last_error = None
        self._emit("Disconnected", None)
        return True

    close = disconnect

    # --- Statements ------------------------------------------------------------------

    def prepare(self, sql: str) -> Statement | None:
        """Build a Statement for ``sql``; the server prepares it on first execute."""

        if not self.check_connected("prepare"):
            return None
        self._last_error = None
        if self._verbose:
            LOG.info("PREPARE> %s", sql, extra={"connection": self._description})
        statement = Statement(self, sql)
        self._recent_prepared = statement
        return statement

    def execute(self, sql: str | Statement, *values: Any) -> int | None:
        """Run ``sql`` (text or a prepared Statement) with bound ``values``.

        Returns the affected row count (0 is a success) or None on failure,
        with the reason in :attr:`last_error`. Raises NotConnectedError when
        there is no live handle, unless the connection is quiet.
        """

        if self._handle is None:
            error = NotConnectedError("not connected in execute()")
            self._set_error(error)
            if not self._quiet:
                raise error
            return None
        if isinstance(sql, Statement):
            statement = sql
        else:
            if self._verbose:
                LOG.info("EXECUTE> %s", sql, extra={"connection": self._description})
            statement = self.prepare(sql)
        return self._execute(statement, values)

    do = execute

    def _execute(self, statement: Statement, values: Sequence[Any]) -> int | None:
        if statement.connection is not self:
            self._set_error(ExecutionError(f"{statement!r} belongs to another connection"))
            return None
        if self._handle is None:
            return self.execute(statement, *values)
        self._last_error = None
        if self._verbose:
            LOG.info("_EXECUTE: %s", statement.sql, extra={"values": list(values)})
        while True:
            try:
                result = self._runner.run(statement._run(self._handle, values), self._timeout)
            except OperationTimeoutError:
                self._set_error(OperationTimeoutError(f"query timeout ({self._timeout} sec passed)"))
                self._abandon()
                self._emit("Timeout", str(self._last_error))
                return None
            except Exception as exc:
                message = _describe(exc)
                if self._retry and is_retryable_execute_error(exc) and self._retry_wait(message):
                    failure = self._revive()
                    if failure is None or is_retryable_connect_error(failure):
                        continue
                    self._give_up_reconnect(failure)
                    return None
                self._set_error(ExecutionError(f"{message} [in prepared statement]"))
                if not self._quiet:
                    LOG.warning(
                        "execute of prepared statement failed",
                        extra={"sql": statement.sql, "error": message},
                    )
                self._operation_failed()
                return None
            break
        statement._load(*result)
        self._operation_successful()
        self._recent_executed = statement
        self._execute_return_code = statement.rows
        if self._verbose:
            LOG.info("EXECUTE successful", extra={"rows": statement.rows})
        return statement.rows

    @property
    def recent_statement(self) -> Statement | None:
        """Most recently, successfully executed statement."""

        return self._recent_executed

    @property
    def recent_prepared(self) -> Statement | None:
        """Most recently prepared statement, executed or not."""

        return self._recent_prepared

    @property
    def recent_sql(self) -> str | None:
        return self._recent_executed.sql if self._recent_executed else None

    @property
    def prepared_sql(self) -> str | None:
        return self._recent_prepared.sql if self._recent_prepared else None

    @property
    def execute_return_code(self) -> int | None:
        return self._execute_return_code

    def rows_affected(self) -> int | None:
        if self._recent_executed is None:
            return None
        return self._recent_executed.rows

    def inserted_id(self) -> int | None:
        """Last value handed out by a sequence in this session, if any."""

        if self._handle is None or self._recent_executed is None:
            return None
        try:
            return self._runner.run(self._handle.fetchval("SELECT lastval()"), self._timeout)
        except Exception as exc:
            # lastval() is undefined until a sequence has been used.
            self._set_error(ExecutionError(_describe(exc)))
            return None

    # --- Result accessors ------------------------------------------------------------

    def mapping(self, sql: str | Statement | None = None, *values: Any) -> dict[str, Any] | None:
        return query.fetch_mapping(self, sql, *values)

    def mappings(self, sql: str | Statement, *values: Any) -> list[dict[str, Any]]:
        return query.fetch_mappings(self, sql, *values)

    def array(self, sql: str | Statement, *values: Any) -> list[Any]:
        return query.fetch_array(self, sql, *values)

    def arrays(self, sql: str | Statement, *values: Any) -> list[list[Any]]:
        return query.fetch_arrays(self, sql, *values)

    def flat_array(self, sql: str | Statement, *values: Any) -> list[Any]:
        return query.fetch_flat_array(self, sql, *values)

    def scalar(self, sql: str | Statement, *values: Any) -> Any:
        return query.fetch_scalar(self, sql, *values)

    def csv(self, sql: str | Statement, *values: Any) -> str | None:
        return query.fetch_csv(self, sql, *values)

    # --- Native passthrough ----------------------------------------------------------

    def call_native(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke an allow-listed method of the underlying asyncpg connection."""

        allowed = SAFE_NATIVE_OPERATIONS if self._safe else NATIVE_OPERATIONS
        if name not in allowed:
            kind = "unsafe" if name in NATIVE_OPERATIONS else "undefined"
            raise DWIWError(f"{kind} method ({name}) called")
        if self._handle is None:
            raise NotConnectedError(f"not connected in {name}()")
        method = getattr(self._handle, name, None)
        if method is None:
            raise DWIWError(f"undefined method ({name}) called")
        result = method(*args, **kwargs)
        if inspect.iscoroutine(result):
            return self._runner.run(result, self._timeout)
        return result

    # --- Internals -------------------------------------------------------------------

    async def _open_handle(self) -> Any:
        key = self._key
        kwargs: dict[str, Any] = {
            "database": key.database,
            "user": key.user,
            "password": key.password,
        }
        if key.proxy:
            kwargs["host"] = key.proxy_host
            kwargs["port"] = key.proxy_port
            if key.proxy_cipher:
                context = ssl.create_default_context()
                context.set_ciphers(key.proxy_cipher)
                if key.proxy_key:
                    context.load_cert_chain(key.proxy_key)
                kwargs["ssl"] = context
        else:
            if key.host:
                kwargs["host"] = key.host
            if key.port is not None:
                kwargs["port"] = key.port
        return await asyncpg.connect(**kwargs)

    def _retry_wait(self, error: str) -> bool:
        first = self._retry_state.down_since is None
        approved = self._retry_policy.should_retry(error, self._retry_state)
        if approved and first:
            self._emit("Waiting", error)
        return approved

    def _revive(self) -> Exception | None:
        """Reopen a closed handle; returns the reconnect failure, if any."""

        handle = self._handle
        if handle is not None and not handle.is_closed():
            return None
        try:
            self._handle = self._runner.run(self._open_handle(), self._timeout)
        except Exception as exc:
            # The closed handle stays in place; on a transient failure the
            # next attempt fails on it and goes back to the retry policy.
            LOG.debug("Reconnect attempt failed", extra={"connection": self._description, "error": _describe(exc)})
            return exc
        return None

    def _give_up_reconnect(self, failure: Exception) -> None:
        message = _describe(failure)
        self._abandon()
        self._state = ConnectionState.FAILED
        if not self._quiet:
            LOG.warning("%s", message, extra={"connection": self._description})
        self._set_error(ConnectionFailedError(f"can't connect to database: {message}"))
        self._operation_failed()
        self._emit("Failed", message)

    def _abandon(self) -> None:
        handle = self._handle
        self._handle = None
        self._state = ConnectionState.DISCONNECTED
        self._recent_executed = None
        if handle is not None:
            self._runner.call_soon(handle.terminate)
        if self._registry is not None and not self._unique:
            self._registry.remove(self._key, self)

    def _operation_successful(self) -> None:
        state = self._retry_state
        if state.attempts > 0:
            since = state.down_since.isoformat() if state.down_since else "unknown"
            if not self._quiet:
                LOG.warning("%s is back up (down since %s)", self._description, since)
            self._emit("Restored", f"down since {since}")
        state.reset()

    def _operation_failed(self) -> None:
        self._retry_state.reset()

    def check_connected(self, operation: str) -> bool:
        """Return True when a handle is open; otherwise record a NotConnectedError.

        Used by operations that signal failure with a return value instead of
        raising.
        """

        if self._handle is not None:
            return True
        self._set_error(NotConnectedError(f"not connected in {operation}()"))
        if not self._quiet:
            LOG.warning("not connected to the database", extra={"operation": operation})
        return False

    def _set_error(self, error: DWIWError) -> None:
        self._last_error = error
        if self._registry is not None:
            self._registry.last_error = error

    def _emit(self, status: str, detail: str | None) -> None:
        if self._registry is None:
            return
        self._registry.emit(
            ConnectionEvent(
                key=self._key,
                status=status,
                detail=detail,
                at=datetime.now(tz=timezone.utc),
            )
        )

    def _describe_target(self) -> str:
        origin = socket.gethostname()
        if self._key.host:
            return f"connection to {self._key.host}'s PostgreSQL server from {origin}"
        return f"local connection to PostgreSQL server on {origin}"


__all__ = [
    "NATIVE_OPERATIONS",
    "SAFE_NATIVE_OPERATIONS",
    "Connection",
    "EventLoopRunner",
    "Statement",
    "translate_placeholders",
]
