"""Scripted ObjectServer stand-ins shared by the engine, pool and service tests."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Sequence

from objserv_exporter.errors import ConnectFailed, ProtocolError, QueryError
from objserv_exporter.models import QueryDefinition, Target

Result = tuple[tuple[str, ...], Sequence[Sequence[object]]]


class FakeCursor:
    def __init__(self, connection: FakeConnection, columns: tuple[str, ...], rows: Sequence[Sequence[object]]) -> None:
        self._connection = connection
        self.columns = columns
        self._rows = list(rows)
        self.closed = False

    async def fetch(self, size: int) -> Sequence[Sequence[object]]:
        batch, self._rows = self._rows[:size], self._rows[size:]
        return batch

    async def fetch_all(self) -> Sequence[Sequence[object]]:
        rows, self._rows = self._rows, []
        return rows

    async def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, server: FakeServer, number: int) -> None:
        self._server = server
        self.number = number
        self.supports_streaming = server.streaming
        self.busy = False
        self.closed = False
        self.executed: list[str] = []

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> FakeCursor:
        if self.busy:
            raise AssertionError("two statements in flight on one connection")
        if self.closed:
            raise ProtocolError("connection is closed")
        self.busy = True
        try:
            self.executed.append(sql)
            delay = self._server.delays.get(sql, 0.0)
            if delay:
                await asyncio.sleep(delay)
            error = self._server.errors.get(sql)
            if error is not None:
                raise error
            if sql not in self._server.results:
                raise QueryError(f"no such table in: {sql}")
            columns, rows = self._server.results[sql]
            return FakeCursor(self, tuple(columns), rows)
        finally:
            self.busy = False

    async def ping(self, sql: str) -> None:
        self._server.pings += 1
        if self.number in self._server.dead:
            raise ProtocolError("connection reset by peer")

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._server.open -= 1
            self._server.closed += 1


class FakeServer:
    """Driver that serves scripted results and counts open connections."""

    def __init__(
        self,
        results: Mapping[str, Result] | None = None,
        *,
        delays: Mapping[str, float] | None = None,
        errors: Mapping[str, Exception] | None = None,
        streaming: bool = True,
        connect_delay: float = 0.0,
    ) -> None:
        self.results: dict[str, Result] = dict(results or {})
        self.delays: dict[str, float] = dict(delays or {})
        self.errors: dict[str, Exception] = dict(errors or {})
        self.streaming = streaming
        self.connect_delay = connect_delay
        self.connect_failures = 0
        self.dead: set[int] = set()
        self.connections: list[FakeConnection] = []
        self.open = 0
        self.peak = 0
        self.closed = 0
        self.pings = 0

    async def connect(self, target: Target) -> FakeConnection:
        if self.connect_failures:
            self.connect_failures -= 1
            raise ConnectFailed(f"cannot reach {target.host}")
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        connection = FakeConnection(self, len(self.connections))
        self.connections.append(connection)
        self.open += 1
        self.peak = max(self.peak, self.open)
        return connection


def make_query(name: str = "q", **overrides: Any) -> QueryDefinition:
    fields: dict[str, Any] = {
        "name": name,
        "sql": f"select * from {name}",
        "metric": f"objserv_{name}",
        "value": "value",
        "labels": ("labelA",),
    }
    fields.update(overrides)
    return QueryDefinition(**fields)


def make_target(name: str = "T1", queries: Sequence[QueryDefinition] = (), **overrides: Any) -> Target:
    fields: dict[str, Any] = {
        "name": name,
        "driver": "fake",
        "host": "omnibus",
        "pool_size": 2,
        "pool_timeout": 1.0,
        "scrape_timeout": 2.0,
        "queries": tuple(queries),
    }
    fields.update(overrides)
    return Target(**fields)


def labelled_rows(*pairs: tuple[object, object]) -> Result:
    return ("labelA", "value"), [list(pair) for pair in pairs]


__all__ = ["FakeConnection", "FakeServer", "labelled_rows", "make_query", "make_target"]
