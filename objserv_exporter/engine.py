"""Scrape orchestration: connection, fan-out query execution and merging."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Callable, Iterator

from .errors import (
    CONNECTION_TAINTING,
    ConnectFailed,
    DuplicateSeriesError,
    ExporterError,
    PoolExhausted,
    ProtocolError,
    QueryError,
    QueryTimeout,
    ValueCoercionError,
)
from .mapper import RowMapper
from .models import (
    DURATION_METRIC,
    MetricSample,
    MetricType,
    QueryDefinition,
    QueryOutcome,
    ScrapeResult,
    ScrapeStatus,
    TARGET_LABEL,
    Target,
    UP_METRIC,
)
from .pool import ConnectionManager, PooledConnection
from .runner import QueryRunner, deadline_after

LOG = logging.getLogger(__name__)

UP_HELP = "1 if a connection to the target could be established, 0 otherwise."
DURATION_HELP = "Seconds taken to scrape the target."

Jobs = Iterator[tuple[int, QueryDefinition]]


class ScrapeState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    QUERYING = "querying"
    MAPPING = "mapping"
    DONE = "done"


_TRANSITIONS: dict[ScrapeState, frozenset[ScrapeState]] = {
    ScrapeState.IDLE: frozenset({ScrapeState.CONNECTING}),
    ScrapeState.CONNECTING: frozenset({ScrapeState.QUERYING, ScrapeState.DONE}),
    ScrapeState.QUERYING: frozenset({ScrapeState.MAPPING}),
    ScrapeState.MAPPING: frozenset({ScrapeState.DONE}),
    ScrapeState.DONE: frozenset(),
}


class Scrape:
    """Progress of one collect call through its states."""

    def __init__(self, target: str) -> None:
        self.target = target
        self.state = ScrapeState.IDLE
        self.history: list[ScrapeState] = [ScrapeState.IDLE]

    def advance(self, state: ScrapeState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Scrape of '{self.target}' cannot move from {self.state.value} to {state.value}.")
        LOG.debug("Scrape state change", extra={"target": self.target, "from": self.state.value, "to": state.value})
        self.state = state
        self.history.append(state)


class CollectionEngine:
    """Runs one scrape of one target and reports what it produced.

    Connection failures end the scrape with ``up=0``. Query failures are
    isolated: siblings keep running and the scrape is ``partial`` as long as
    one query succeeded. ``up`` and ``scrape_duration_seconds`` are always the
    last two samples.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        runner: QueryRunner | None = None,
        *,
        clock: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._manager = manager
        self._runner = runner or QueryRunner()
        self._clock = clock
        self._wall_clock = wall_clock

    async def collect(self, target: Target, timeout: float | None = None) -> ScrapeResult:
        """Scrape ``target`` within ``timeout`` seconds (default: the target's scrape timeout)."""

        started = self._clock()
        budget = target.scrape_timeout if timeout is None else max(0.0, timeout)
        deadline = deadline_after(budget)
        scrape = Scrape(target.name)

        scrape.advance(ScrapeState.CONNECTING)
        try:
            primary = await self._acquire(target, min(target.pool_timeout, budget), deadline)
        except (PoolExhausted, ConnectFailed) as exc:
            LOG.warning("Scrape could not obtain a connection", extra={"target": target.name, "error": str(exc)})
            scrape.advance(ScrapeState.DONE)
            return self._result(target, started, up=False, outcomes=(), error=exc)

        scrape.advance(ScrapeState.QUERYING)
        outcomes = await self._run_queries(target, primary, deadline)
        scrape.advance(ScrapeState.MAPPING)
        outcomes = merge_outcomes(outcomes)
        scrape.advance(ScrapeState.DONE)
        return self._result(target, started, up=True, outcomes=outcomes)

    async def _run_queries(
        self,
        target: Target,
        primary: PooledConnection,
        deadline: float,
    ) -> tuple[QueryOutcome, ...]:
        queries = target.queries
        outcomes: list[QueryOutcome | None] = [None] * len(queries)
        jobs: Jobs = iter(enumerate(queries))
        stranded: list[ExporterError] = []
        workers = max(1, min(target.fan_out, target.pool_size, len(queries)))
        async with asyncio.TaskGroup() as group:
            group.create_task(self._worker(target, primary, jobs, outcomes, deadline, stranded))
            for _ in range(workers - 1):
                group.create_task(self._worker(target, None, jobs, outcomes, deadline, stranded))
        reason: ExporterError = (
            stranded[-1] if stranded else QueryTimeout("Scrape ended before the query could run.")
        )
        return tuple(
            outcome if outcome is not None else QueryOutcome(query=query.name, failure=reason)
            for outcome, query in zip(outcomes, queries)
        )

    async def _worker(
        self,
        target: Target,
        lease: PooledConnection | None,
        jobs: Jobs,
        outcomes: list[QueryOutcome | None],
        deadline: float,
        stranded: list[ExporterError],
    ) -> None:
        """Pull queries off the shared job iterator until it is drained."""

        if lease is None:
            # Extra workers only take spare capacity.
            try:
                lease = await self._acquire(target, 0, deadline)
            except (PoolExhausted, ConnectFailed) as exc:
                LOG.debug("No spare connection for fan-out", extra={"target": target.name, "error": str(exc)})
                return
        try:
            for index, query in jobs:
                if lease is None:
                    try:
                        lease = await self._acquire(target, self._remaining(target, deadline), deadline)
                    except (PoolExhausted, ConnectFailed) as exc:
                        LOG.warning(
                            "Lost connection mid-scrape",
                            extra={"target": target.name, "query": query.name, "error": str(exc)},
                        )
                        stranded.append(exc)
                        outcomes[index] = QueryOutcome(query=query.name, failure=exc)
                        return
                outcome = await self._run_query(target, lease, query, deadline)
                outcomes[index] = outcome
                if isinstance(outcome.failure, CONNECTION_TAINTING):
                    lease.taint()
                    await self._manager.release(lease, healthy=False)
                    lease = None
        finally:
            if lease is not None:
                await self._manager.release(lease, healthy=not lease.tainted)

    async def _acquire(self, target: Target, timeout: float, deadline: float) -> PooledConnection:
        try:
            async with asyncio.timeout_at(deadline):
                return await self._manager.acquire(target, timeout=timeout)
        except TimeoutError:
            raise PoolExhausted(f"Scrape deadline passed while connecting to target '{target.name}'.") from None

    async def _run_query(
        self,
        target: Target,
        lease: PooledConnection,
        query: QueryDefinition,
        deadline: float,
    ) -> QueryOutcome:
        if query.timeout is not None:
            deadline = min(deadline, deadline_after(query.timeout))
        mapper = RowMapper(query, target.name, clock=self._wall_clock)
        samples: list[MetricSample] = []
        row_errors: list[ExporterError] = []
        rows = 0
        try:
            async for row in self._runner.stream(lease.connection, query, deadline):
                rows += 1
                try:
                    sample = mapper.map(row)
                except (ValueCoercionError, DuplicateSeriesError) as exc:
                    row_errors.append(exc)
                    continue
                if sample is not None:
                    samples.append(sample)
        except (QueryTimeout, ProtocolError, QueryError) as exc:
            LOG.warning(
                "Query failed",
                extra={"target": target.name, "query": query.name, "kind": exc.kind, "error": str(exc)},
            )
            # Rows already read are discarded with the failed query.
            return QueryOutcome(query=query.name, failure=exc, rows=rows, row_errors=tuple(row_errors))

        if row_errors:
            LOG.warning(
                "Query rows skipped",
                extra={
                    "target": target.name,
                    "query": query.name,
                    "skipped": len(row_errors),
                    "error": str(row_errors[0]),
                },
            )
        failure: ExporterError | None = None
        if rows and not samples:
            failure = row_errors[0] if row_errors else ValueCoercionError(
                f"Every row of query '{query.name}' had a null value."
            )
        return QueryOutcome(
            query=query.name,
            samples=tuple(samples) if failure is None else (),
            row_errors=tuple(row_errors),
            failure=failure,
            rows=rows,
        )

    def _result(
        self,
        target: Target,
        started: float,
        *,
        up: bool,
        outcomes: tuple[QueryOutcome, ...],
        error: ExporterError | None = None,
    ) -> ScrapeResult:
        if not up:
            status = ScrapeStatus.FAILED
        elif all(outcome.ok for outcome in outcomes):
            status = ScrapeStatus.SUCCESS
        elif any(outcome.ok for outcome in outcomes):
            status = ScrapeStatus.PARTIAL
        else:
            status = ScrapeStatus.FAILED
        duration = self._clock() - started
        now = self._wall_clock()
        labels = ((TARGET_LABEL, target.name),)
        samples = [sample for outcome in outcomes for sample in outcome.samples]
        samples.append(MetricSample(UP_METRIC, MetricType.GAUGE, labels, 1.0 if up else 0.0, now, UP_HELP))
        samples.append(MetricSample(DURATION_METRIC, MetricType.GAUGE, labels, duration, now, DURATION_HELP))
        LOG.debug(
            "Scrape finished",
            extra={"target": target.name, "status": status.value, "duration": round(duration, 4)},
        )
        return ScrapeResult(
            target=target.name,
            status=status,
            up=up,
            duration=duration,
            samples=tuple(samples),
            outcomes=outcomes,
            error=error,
        )

    @staticmethod
    def _remaining(target: Target, deadline: float) -> float:
        left = deadline - asyncio.get_running_loop().time()
        return max(0.0, min(target.pool_timeout, left))


def merge_outcomes(outcomes: tuple[QueryOutcome, ...]) -> tuple[QueryOutcome, ...]:
    """Drop series a later query repeats, in configured query order."""

    seen: set[tuple[str, tuple[tuple[str, str], ...]]] = set()
    merged: list[QueryOutcome] = []
    for outcome in outcomes:
        if not outcome.ok:
            merged.append(outcome)
            continue
        kept: list[MetricSample] = []
        duplicates: list[ExporterError] = []
        for sample in outcome.samples:
            if sample.identity in seen:
                duplicates.append(
                    DuplicateSeriesError(f"Series {sample.name}{sample.label_map} already produced by another query.")
                )
                continue
            seen.add(sample.identity)
            kept.append(sample)
        if duplicates:
            LOG.warning("Duplicate series across queries", extra={"query": outcome.query, "count": len(duplicates)})
            outcome = replace(
                outcome,
                samples=tuple(kept),
                row_errors=outcome.row_errors + tuple(duplicates),
                failure=None if kept else duplicates[0],
            )
        merged.append(outcome)
    return tuple(merged)


__all__ = ["CollectionEngine", "Scrape", "ScrapeState", "merge_outcomes"]
