"""Row to sample mapping for configured queries."""

from __future__ import annotations

import time
from typing import Callable

from .errors import DuplicateSeriesError, ValueCoercionError
from .models import Cell, CellKind, LabelPairs, MetricSample, QueryDefinition, RawRow, TARGET_LABEL


def label_text(cell: Cell | None) -> str:
    """Render a cell as a label value; null and absent columns become ``""``."""

    if cell is None or cell.kind is CellKind.NULL:
        return ""
    if cell.kind is CellKind.BOOLEAN:
        return "true" if cell.value else "false"
    if cell.kind is CellKind.INTEGER:
        return str(int(cell.value))  # type: ignore[arg-type]
    if cell.kind is CellKind.FLOAT:
        number = float(cell.value)  # type: ignore[arg-type]
        if number.is_integer():
            return str(int(number))
        return repr(number)
    return str(cell.value)


def sample_value(cell: Cell | None, column: str) -> float | None:
    """Coerce the value column to a float; ``None`` means the server reported null."""

    if cell is None:
        raise ValueCoercionError(f"Value column '{column}' is missing from the result set.")
    if cell.kind is CellKind.NULL:
        return None
    if cell.kind is CellKind.BOOLEAN:
        return 1.0 if cell.value else 0.0
    if cell.kind in (CellKind.INTEGER, CellKind.FLOAT):
        return float(cell.value)  # type: ignore[arg-type]
    text = str(cell.value).strip()
    try:
        return float(text)
    except ValueError:
        raise ValueCoercionError(f"Value column '{column}' is not numeric: {text[:40]!r}") from None


class RowMapper:
    """Maps the rows of one query execution to samples.

    A mapper is scoped to a single query run: it remembers the label sets it
    has produced so a repeated series is rejected instead of double counted.
    """

    def __init__(
        self,
        query: QueryDefinition,
        target: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._query = query
        self._target = target
        self._clock = clock
        self._seen: set[LabelPairs] = set()

    @property
    def query(self) -> QueryDefinition:
        return self._query

    def map(self, row: RawRow) -> MetricSample | None:
        """Return the sample for ``row``, or ``None`` when its value is null."""

        query = self._query
        labels: LabelPairs = ((TARGET_LABEL, self._target),) + tuple(
            (column, label_text(row.get(column))) for column in query.labels
        )
        value = sample_value(row.get(query.value), query.value)
        if value is None:
            return None
        if labels in self._seen:
            rendered = ",".join(f'{name}="{text}"' for name, text in labels)
            raise DuplicateSeriesError(f"Duplicate series {query.metric}{{{rendered}}} in query '{query.name}'.")
        self._seen.add(labels)
        return MetricSample(
            name=query.metric,
            type=query.type,
            labels=labels,
            value=value,
            timestamp=self._clock(),
            help=query.help,
        )

    def reset(self) -> None:
        """Forget seen series so the mapper can serve another scrape."""

        self._seen.clear()


__all__ = ["RowMapper", "label_text", "sample_value"]
