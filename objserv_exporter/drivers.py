"""Driver backends that open sessions to an ObjectServer."""

from __future__ import annotations

import asyncio
import importlib
import logging
from types import ModuleType
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .errors import ConnectFailed, ProtocolError, QueryError
from .models import Target

LOG = logging.getLogger(__name__)

DEMO_DRIVER = "demo"


@runtime_checkable
class Cursor(Protocol):
    """Result set of one executed statement."""

    columns: tuple[str, ...]

    async def fetch(self, size: int) -> Sequence[Sequence[object]]:
        """Return up to ``size`` rows; an empty sequence means exhausted."""

    async def fetch_all(self) -> Sequence[Sequence[object]]:
        """Return every remaining row."""

    async def close(self) -> None:
        """Release server-side resources held by the cursor."""


@runtime_checkable
class Connection(Protocol):
    """A live session; callers never run two statements on it at once."""

    supports_streaming: bool

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> Cursor:
        """Run a statement and return its cursor."""

    async def ping(self, sql: str) -> None:
        """Cheap round-trip used as a liveness probe."""

    async def close(self) -> None:
        """Close the session."""


class Driver(Protocol):
    """Factory for connections to one kind of server."""

    async def connect(self, target: Target) -> Connection:
        """Open a new connection to ``target``."""


class DbApiCursor:
    """Async facade over a blocking DB-API cursor."""

    def __init__(self, owner: DbApiConnection, cursor: Any) -> None:
        self._owner = owner
        self._cursor = cursor
        description = cursor.description or ()
        self.columns = tuple(str(column[0]) for column in description)

    async def fetch(self, size: int) -> Sequence[Sequence[object]]:
        if not self.columns:
            return ()
        return await self._owner._call(self._cursor.fetchmany, size)

    async def fetch_all(self) -> Sequence[Sequence[object]]:
        if not self.columns:
            return ()
        return await self._owner._call(self._cursor.fetchall)

    async def close(self) -> None:
        await self._owner._call(self._cursor.close)


class DbApiConnection:
    """Connection backed by any DB-API 2.0 module, run off the event loop."""

    supports_streaming = True

    def __init__(self, module: ModuleType, raw: Any) -> None:
        self._module = module
        self._raw = raw

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> DbApiCursor:
        def _execute() -> Any:
            cursor = self._raw.cursor()
            if params:
                cursor.execute(sql, tuple(params))
            else:
                cursor.execute(sql)
            return cursor

        cursor = await self._call(_execute)
        return DbApiCursor(self, cursor)

    async def ping(self, sql: str) -> None:
        def _ping() -> None:
            cursor = self._raw.cursor()
            try:
                cursor.execute(sql)
                if cursor.description:
                    cursor.fetchall()
            finally:
                cursor.close()

        await self._call(_ping)

    async def close(self) -> None:
        await self._call(self._raw.close)

    async def _call(self, func: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as exc:
            raise self._translate(exc) from exc

    def _translate(self, exc: Exception) -> Exception:
        """Map DB-API exception classes onto the exporter taxonomy."""

        tainting = tuple(
            cls
            for cls in (getattr(self._module, "OperationalError", None), getattr(self._module, "InterfaceError", None))
            if isinstance(cls, type)
        )
        if tainting and isinstance(exc, tainting):
            return ProtocolError(str(exc))
        if isinstance(exc, (OSError, EOFError)):
            return ProtocolError(str(exc))
        database_error = getattr(self._module, "DatabaseError", None)
        if isinstance(database_error, type) and isinstance(exc, database_error):
            return QueryError(str(exc))
        return ProtocolError(f"{type(exc).__name__}: {exc}")


class DbApiDriver:
    """Opens connections through the DB-API module named by the target."""

    def __init__(self, module_name: str) -> None:
        self._module_name = module_name
        self._module: ModuleType | None = None

    @property
    def module_name(self) -> str:
        return self._module_name

    async def connect(self, target: Target) -> DbApiConnection:
        module = self._load()
        kwargs = self.connect_kwargs(target)
        try:
            async with asyncio.timeout(target.connect_timeout):
                raw = await asyncio.to_thread(module.connect, **kwargs)
        except TimeoutError as exc:
            raise ConnectFailed(f"Timed out connecting to target '{target.name}'.") from exc
        except Exception as exc:
            raise ConnectFailed(f"Failed to connect to target '{target.name}': {exc}") from exc
        LOG.debug("Opened connection", extra={"target": target.name, "driver": self._module_name})
        return DbApiConnection(module, raw)

    @staticmethod
    def connect_kwargs(target: Target) -> dict[str, object]:
        kwargs: dict[str, object] = {"host": target.host}
        if target.port is not None:
            kwargs["port"] = target.port
        if target.user:
            kwargs["user"] = target.user
        if target.password is not None:
            kwargs["password"] = target.password
        if target.database:
            kwargs["database"] = target.database
        kwargs.update(dict(target.options))
        return kwargs

    def _load(self) -> ModuleType:
        if self._module is None:
            try:
                self._module = importlib.import_module(self._module_name)
            except ImportError as exc:
                raise ConnectFailed(f"DB-API driver '{self._module_name}' is not installed.") from exc
        return self._module


DEMO_RESULTS: Mapping[str, tuple[tuple[str, ...], tuple[tuple[object, ...], ...]]] = {
    "select Severity, count(*) as Events from alerts.status group by Severity": (
        ("Severity", "Events"),
        ((0, 12), (1, 4), (2, 9), (3, 3), (4, 1), (5, 0)),
    ),
    "select Type, count(*) as Events from alerts.status group by Type": (
        ("Type", "Events"),
        ((1, 20), (2, 9)),
    ),
    (
        "select LogName, HostName, AppName, count(*) as Connections from catalog.connections "
        "group by LogName, HostName, AppName"
    ): (
        ("LogName", "HostName", "AppName", "Connections"),
        (("root", "omnibus1", "nco_p_mttrapd", 1), ("root", "omnibus2", "nco_webgui", 3)),
    ),
    "select 1": (("1",), ((1,),)),
}


class DemoCursor:
    def __init__(self, columns: tuple[str, ...], rows: Sequence[Sequence[object]]) -> None:
        self.columns = columns
        self._rows = list(rows)
        self._offset = 0

    async def fetch(self, size: int) -> Sequence[Sequence[object]]:
        batch = self._rows[self._offset : self._offset + size]
        self._offset += len(batch)
        return batch

    async def fetch_all(self) -> Sequence[Sequence[object]]:
        return await self.fetch(len(self._rows))

    async def close(self) -> None:
        self._offset = len(self._rows)


class DemoConnection:
    """Serves canned results keyed by normalised SQL text."""

    supports_streaming = True

    def __init__(self, results: Mapping[str, tuple[tuple[str, ...], Sequence[Sequence[object]]]]) -> None:
        self._results = {_normalize(sql): result for sql, result in results.items()}
        self.closed = False

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> DemoCursor:
        if self.closed:
            raise ProtocolError("Connection is closed.")
        result = self._results.get(_normalize(sql))
        if result is None:
            raise QueryError(f"Demo server has no result for: {sql.strip()[:60]}")
        columns, rows = result
        return DemoCursor(tuple(columns), rows)

    async def ping(self, sql: str) -> None:
        if self.closed:
            raise ProtocolError("Connection is closed.")

    async def close(self) -> None:
        self.closed = True


class DemoDriver:
    """Stub driver for trying the exporter without an ObjectServer."""

    def __init__(
        self,
        results: Mapping[str, tuple[tuple[str, ...], Sequence[Sequence[object]]]] | None = None,
    ) -> None:
        self._results = results or DEMO_RESULTS

    async def connect(self, target: Target) -> DemoConnection:
        return DemoConnection(self._results)


def _normalize(sql: str) -> str:
    return " ".join(sql.split()).rstrip(";").lower()


def driver_for(target: Target) -> Driver:
    """Default driver factory used by the connection manager."""

    if target.driver == DEMO_DRIVER:
        return DemoDriver()
    return DbApiDriver(target.driver)


__all__ = [
    "Connection",
    "Cursor",
    "DEMO_DRIVER",
    "DEMO_RESULTS",
    "DbApiConnection",
    "DbApiDriver",
    "DemoConnection",
    "DemoDriver",
    "Driver",
    "driver_for",
]
