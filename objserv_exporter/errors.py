"""Failure taxonomy shared by the pool, runner, mapper and engine."""

from __future__ import annotations


class ExporterError(RuntimeError):
    """Base class for every failure the exporter reports."""

    kind = "error"


class ConfigError(ExporterError):
    """Raised when a configuration file cannot be read or parsed."""

    kind = "config"


class UnknownTargetError(ExporterError, LookupError):
    """Raised when a scrape names a target that is not configured."""

    kind = "unknown_target"


class PoolExhausted(ExporterError):
    """No pooled connection became available before the acquire timeout."""

    kind = "pool_exhausted"


class ConnectFailed(ExporterError):
    """A fresh connection could not be opened or failed its liveness check."""

    kind = "connect_failed"


class ProtocolError(ExporterError):
    """The connection misbehaved; it must not be returned to the pool."""

    kind = "protocol_error"


class QueryTimeout(ExporterError):
    """The query did not complete before its deadline."""

    kind = "timeout"


class QueryError(ExporterError):
    """The server rejected the query (syntax, permissions, unknown table)."""

    kind = "query_error"


class ValueCoercionError(ExporterError):
    """The value column of a row is missing or not numeric."""

    kind = "value_coercion"


class DuplicateSeriesError(ExporterError):
    """Two rows produced the same metric name and label set."""

    kind = "duplicate_series"


CONNECTION_TAINTING: tuple[type[ExporterError], ...] = (ProtocolError, QueryTimeout)


__all__ = [
    "CONNECTION_TAINTING",
    "ConfigError",
    "ConnectFailed",
    "DuplicateSeriesError",
    "ExporterError",
    "PoolExhausted",
    "ProtocolError",
    "QueryError",
    "QueryTimeout",
    "UnknownTargetError",
    "ValueCoercionError",
]
