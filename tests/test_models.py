"""Tests for the tagged cell variant and raw rows."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from objserv_exporter.models import Cell, CellKind, RawRow


def test_cell_tags_driver_values() -> None:
    assert Cell.of(None).kind is CellKind.NULL
    assert Cell.of(True) == Cell(CellKind.BOOLEAN, True)
    assert Cell.of(7) == Cell(CellKind.INTEGER, 7)
    assert Cell.of(1.5) == Cell(CellKind.FLOAT, 1.5)
    assert Cell.of("x") == Cell(CellKind.STRING, "x")


def test_cell_normalizes_decimal_dates_and_bytes() -> None:
    assert Cell.of(Decimal("12")) == Cell(CellKind.INTEGER, 12)
    assert Cell.of(Decimal("2.5")) == Cell(CellKind.FLOAT, 2.5)
    assert Cell.of(datetime(2024, 1, 2, 3, 4, 5)) == Cell(CellKind.STRING, "2024-01-02T03:04:05")
    assert Cell.of(b"omnibus") == Cell(CellKind.STRING, "omnibus")


def test_raw_row_lookup_prefers_exact_name() -> None:
    row = RawRow.from_values(("severity", "Severity"), (1, 2))

    assert row.get("Severity") == Cell(CellKind.INTEGER, 2)
    assert row.get("SEVERITY") == Cell(CellKind.INTEGER, 1)
    assert row.get("Missing") is None


def test_raw_row_from_mapping_keeps_column_order() -> None:
    row = RawRow.from_mapping({"Node": "host1", "Tally": 3})

    assert row.columns == ("Node", "Tally")
    assert row.cells[1] == Cell(CellKind.INTEGER, 3)
