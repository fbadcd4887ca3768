"""Shared dataclasses used across the pool, runner, mapper and engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from .errors import ExporterError

TARGET_LABEL = "target"
UP_METRIC = "up"
DURATION_METRIC = "scrape_duration_seconds"
RESERVED_METRICS = frozenset({UP_METRIC, DURATION_METRIC})


class MetricType(str, Enum):
    """Prometheus metric types a query may produce."""

    COUNTER = "counter"
    GAUGE = "gauge"


def metric_family(name: str, type: MetricType) -> str:
    """Family name prometheus_client uses: counters drop a trailing ``_total``."""

    return name.removesuffix("_total") if type is MetricType.COUNTER else name


def exposed_name(name: str, type: MetricType) -> str:
    """Sample name as it appears on the metrics page."""

    family = metric_family(name, type)
    return f"{family}_total" if type is MetricType.COUNTER else family


class CellKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    NULL = "null"


@dataclass(frozen=True, slots=True)
class Cell:
    """A single column value tagged with the kind the driver returned."""

    kind: CellKind
    value: str | int | float | bool | None = None

    @classmethod
    def of(cls, raw: object) -> Cell:
        """Wrap a driver value, normalising the types DB-API modules hand back."""

        if raw is None:
            return NULL_CELL
        if isinstance(raw, bool):
            return cls(CellKind.BOOLEAN, raw)
        if isinstance(raw, int):
            return cls(CellKind.INTEGER, raw)
        if isinstance(raw, float):
            return cls(CellKind.FLOAT, raw)
        if isinstance(raw, Decimal):
            if raw.is_finite() and raw == raw.to_integral_value():
                return cls(CellKind.INTEGER, int(raw))
            return cls(CellKind.FLOAT, float(raw))
        if isinstance(raw, (datetime, date, time)):
            return cls(CellKind.STRING, raw.isoformat())
        if isinstance(raw, (bytes, bytearray, memoryview)):
            return cls(CellKind.STRING, bytes(raw).decode("utf-8", errors="replace"))
        return cls(CellKind.STRING, str(raw))

    @property
    def is_null(self) -> bool:
        return self.kind is CellKind.NULL


NULL_CELL = Cell(CellKind.NULL)


@dataclass(frozen=True, slots=True)
class RawRow:
    """One result row: ordered column names paired with tagged cells."""

    columns: tuple[str, ...]
    cells: tuple[Cell, ...]

    @classmethod
    def from_values(cls, columns: Sequence[str], values: Iterable[object]) -> RawRow:
        return cls(tuple(columns), tuple(Cell.of(value) for value in values))

    @classmethod
    def from_mapping(cls, row: Mapping[str, object]) -> RawRow:
        return cls.from_values(tuple(row), row.values())

    def get(self, column: str) -> Cell | None:
        """Look a column up by exact name, then case-insensitively."""

        for name, cell in zip(self.columns, self.cells):
            if name == column:
                return cell
        folded = column.casefold()
        for name, cell in zip(self.columns, self.cells):
            if name.casefold() == folded:
                return cell
        return None


@dataclass(frozen=True, slots=True)
class QueryDefinition:
    """Runtime representation of a configured query."""

    name: str
    sql: str
    metric: str
    value: str
    type: MetricType = MetricType.GAUGE
    labels: tuple[str, ...] = ()
    params: tuple[Any, ...] = ()
    help: str = ""
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class Target:
    """Runtime representation of one ObjectServer to scrape."""

    name: str
    driver: str
    host: str = "localhost"
    port: int | None = None
    user: str | None = None
    password: str | None = field(default=None, repr=False)
    database: str | None = None
    options: tuple[tuple[str, Any], ...] = ()
    pool_size: int = 2
    pool_timeout: float = 5.0
    connect_timeout: float = 5.0
    idle_timeout: float = 300.0
    ping_query: str = "select 1"
    fan_out: int = 2
    scrape_timeout: float = 10.0
    queries: tuple[QueryDefinition, ...] = ()


LabelPairs = tuple[tuple[str, str], ...]


@dataclass(frozen=True, slots=True)
class MetricSample:
    """One data point; labels keep their declared order with `target` first."""

    name: str
    type: MetricType
    labels: LabelPairs
    value: float
    timestamp: float
    help: str = ""

    @property
    def family(self) -> str:
        return metric_family(self.name, self.type)

    @property
    def exposed_name(self) -> str:
        return exposed_name(self.name, self.type)

    @property
    def identity(self) -> tuple[str, LabelPairs]:
        return self.exposed_name, self.labels

    @property
    def label_map(self) -> dict[str, str]:
        return dict(self.labels)


class ScrapeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class QueryOutcome:
    """What a single query contributed to a scrape."""

    query: str
    samples: tuple[MetricSample, ...] = ()
    row_errors: tuple[ExporterError, ...] = ()
    failure: ExporterError | None = None
    rows: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True, slots=True)
class ScrapeResult:
    """Everything one collect produced for one target."""

    target: str
    status: ScrapeStatus
    up: bool
    duration: float
    samples: tuple[MetricSample, ...]
    outcomes: tuple[QueryOutcome, ...] = ()
    error: ExporterError | None = None

    @property
    def failures(self) -> tuple[QueryOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if not outcome.ok)


__all__ = [
    "Cell",
    "CellKind",
    "DURATION_METRIC",
    "LabelPairs",
    "MetricSample",
    "MetricType",
    "NULL_CELL",
    "QueryDefinition",
    "QueryOutcome",
    "RESERVED_METRICS",
    "RawRow",
    "ScrapeResult",
    "ScrapeStatus",
    "TARGET_LABEL",
    "Target",
    "UP_METRIC",
    "exposed_name",
    "metric_family",
]
