"""Deadline-bounded query execution against a pooled connection."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, TypeVar

from .drivers import Connection
from .errors import ExporterError, ProtocolError, QueryError, QueryTimeout
from .models import QueryDefinition, RawRow

LOG = logging.getLogger(__name__)

T = TypeVar("T")


def deadline_after(seconds: float) -> float:
    """Absolute event-loop time ``seconds`` from now."""

    return asyncio.get_running_loop().time() + seconds


class QueryRunner:
    """Runs configured queries and classifies what goes wrong.

    Every round-trip to the server is bounded by the caller's deadline. An
    expired deadline abandons the in-flight call and raises
    :class:`QueryTimeout`; the connection must then be treated as unusable.
    """

    def __init__(self, *, batch_size: int = 500) -> None:
        self._batch_size = batch_size

    async def stream(
        self,
        connection: Connection,
        query: QueryDefinition,
        deadline: float,
    ) -> AsyncIterator[RawRow]:
        """Yield rows lazily; each call re-executes the query."""

        statement = query.sql.strip()
        if not statement:
            raise QueryError(f"Query '{query.name}' has no SQL to execute.")
        cursor = await self._bounded(connection.execute(statement, query.params), query, deadline)
        abandoned = False
        try:
            if connection.supports_streaming:
                while True:
                    batch = await self._bounded(cursor.fetch(self._batch_size), query, deadline)
                    if not batch:
                        break
                    for values in batch:
                        yield RawRow.from_values(cursor.columns, values)
            else:
                for values in await self._bounded(cursor.fetch_all(), query, deadline):
                    yield RawRow.from_values(cursor.columns, values)
        except (ProtocolError, QueryTimeout):
            abandoned = True
            raise
        finally:
            if not abandoned:
                try:
                    await self._bounded(cursor.close(), query, deadline)
                except QueryError as exc:
                    LOG.debug("Cursor close failed", extra={"query": query.name, "error": str(exc)})

    async def run(self, connection: Connection, query: QueryDefinition, deadline: float) -> list[RawRow]:
        """Execute ``query`` and buffer the full result set."""

        return [row async for row in self.stream(connection, query, deadline)]

    async def _bounded(self, awaitable: Awaitable[T], query: QueryDefinition, deadline: float) -> T:
        try:
            async with asyncio.timeout_at(deadline):
                return await awaitable
        except TimeoutError:
            raise QueryTimeout(f"Query '{query.name}' exceeded its deadline.") from None
        except ExporterError:
            raise
        except Exception as exc:
            raise ProtocolError(f"Query '{query.name}' failed: {type(exc).__name__}: {exc}") from exc


__all__ = ["QueryRunner", "deadline_after"]
