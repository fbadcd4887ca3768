"""Exporter configuration loading helpers."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

import tomllib
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

from .errors import ConfigError, UnknownTargetError
from .models import RESERVED_METRICS, MetricType, QueryDefinition, TARGET_LABEL, Target, exposed_name, metric_family

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path("objserv_exporter.toml")

_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class QueryConfig(BaseModel):
    """One `[[queries]]` entry."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    sql: str = Field(min_length=1)
    params: tuple[Any, ...] = ()
    metric: str
    type: MetricType = MetricType.GAUGE
    help: str = ""
    labels: tuple[str, ...] = ()
    value: str = Field(min_length=1)
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("metric")
    @classmethod
    def _check_metric(cls, value: str) -> str:
        if not _METRIC_NAME.match(value) or value.startswith("__"):
            raise ValueError(f"'{value}' is not a valid metric name")
        if value.removesuffix("_total") in RESERVED_METRICS:
            raise ValueError(f"metric name '{value}' is reserved for scrape meta samples")
        return value

    @field_validator("labels")
    @classmethod
    def _check_labels(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        seen: set[str] = set()
        for label in value:
            if not _LABEL_NAME.match(label) or label.startswith("__"):
                raise ValueError(f"'{label}' is not a valid label name")
            if label == TARGET_LABEL:
                raise ValueError(f"label '{TARGET_LABEL}' is reserved")
            if label in seen:
                raise ValueError(f"label '{label}' is listed twice")
            seen.add(label)
        return value

    @model_validator(mode="after")
    def _check_value_column(self) -> QueryConfig:
        if self.value in self.labels:
            raise ValueError(f"column '{self.value}' cannot be both a label and the value")
        return self


class TargetConfig(BaseModel):
    """One `[[targets]]` entry."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    driver: str = Field(min_length=1)
    host: str = "localhost"
    port: int | None = Field(default=4100, ge=1, le=65535)
    user: str | None = None
    password: SecretStr | None = None
    database: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    pool_size: int = Field(default=2, ge=1)
    pool_timeout: float = Field(default=5.0, ge=0)
    connect_timeout: float = Field(default=5.0, gt=0)
    idle_timeout: float = Field(default=300.0, gt=0)
    ping_query: str = "select 1"
    fan_out: int = Field(default=2, ge=1)
    scrape_timeout: float | None = Field(default=None, gt=0)
    queries: tuple[str, ...] | None = None


class ExporterConfig(BaseModel):
    """Shape of the exporter configuration file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    default_target: str | None = None
    scrape_timeout: float = Field(default=10.0, gt=0)
    scrape_timeout_offset: float = Field(default=0.5, ge=0)
    targets: tuple[TargetConfig, ...] = ()
    queries: tuple[QueryConfig, ...] = ()


@dataclass(frozen=True, slots=True)
class Configuration:
    """Validated configuration snapshot handed to scrapes."""

    source: ExporterConfig
    targets: Mapping[str, Target]
    path: Path | None = None

    @property
    def default_target(self) -> str | None:
        if self.source.default_target:
            return self.source.default_target
        if len(self.targets) == 1:
            return next(iter(self.targets))
        return None

    @property
    def scrape_timeout_offset(self) -> float:
        return self.source.scrape_timeout_offset

    def target(self, name: str | None) -> Target:
        """Resolve a target by name, falling back to the default target."""

        resolved = name or self.default_target
        if not resolved:
            raise UnknownTargetError("No target requested and no default target configured.")
        try:
            return self.targets[resolved]
        except KeyError:
            raise UnknownTargetError(f"Target '{resolved}' is not configured.") from None

    def render(self) -> str:
        """JSON dump of the active configuration with secrets masked."""

        return self.source.model_dump_json(indent=2)


def load_config(path: str | Path | None = None) -> Configuration:
    """Read and validate a configuration file.

    Entries that fail validation are logged and skipped so one bad query
    cannot take the exporter down; only an unreadable file is fatal.
    """

    config_path = Path(path) if path is not None else CONFIG_FILE
    try:
        with config_path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file '{config_path}' does not exist.") from exc
    except (tomllib.TOMLDecodeError, OSError) as exc:
        raise ConfigError(f"Cannot read configuration file '{config_path}': {exc}") from exc
    configuration = build_configuration(raw)
    return Configuration(source=configuration.source, targets=configuration.targets, path=config_path)


def build_configuration(raw: Mapping[str, Any]) -> Configuration:
    """Validate a parsed document into a :class:`Configuration`."""

    queries = _parse_entries(raw.get("queries"), QueryConfig, "query")
    queries = _drop_conflicting_metrics(queries)
    targets = _parse_entries(raw.get("targets"), TargetConfig, "target")
    settings = {key: value for key, value in raw.items() if key not in ("queries", "targets")}
    try:
        source = ExporterConfig(**settings, targets=tuple(targets), queries=tuple(queries))
    except ValidationError as exc:
        raise ConfigError(f"Invalid global settings: {exc}") from exc

    by_name = {query.name: query for query in source.queries}
    resolved: dict[str, Target] = {}
    for entry in source.targets:
        resolved[entry.name] = _to_target(entry, by_name, source.scrape_timeout)
    if source.default_target and source.default_target not in resolved:
        LOG.warning("Default target is not configured", extra={"target": source.default_target})
    return Configuration(source=source, targets=resolved)


def _parse_entries(entries: object, model: type[BaseModel], kind: str) -> list[Any]:
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ConfigError(f"Expected a list of {kind} tables.")
    parsed: list[Any] = []
    names: set[str] = set()
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            LOG.warning("Skipping malformed entry", extra={"kind": kind, "position": position})
            continue
        try:
            item: Any = model(**entry)
        except ValidationError as exc:
            LOG.warning(
                "Skipping invalid entry",
                extra={"kind": kind, "entry": entry.get("name"), "error": str(exc)},
            )
            continue
        if item.name in names:
            LOG.warning("Skipping duplicate entry", extra={"kind": kind, "entry": item.name})
            continue
        names.add(item.name)
        parsed.append(item)
    return parsed


def _drop_conflicting_metrics(queries: list[QueryConfig]) -> list[QueryConfig]:
    types: dict[str, MetricType] = {}
    kept: list[QueryConfig] = []
    for query in queries:
        # Family and exposed names must both stay unique to one type.
        names = {metric_family(query.metric, query.type), exposed_name(query.metric, query.type)}
        if any(types.get(name, query.type) is not query.type for name in names):
            LOG.warning(
                "Skipping query whose metric is already used with another type",
                extra={"query": query.name, "metric": query.metric},
            )
            continue
        types.update(dict.fromkeys(names, query.type))
        kept.append(query)
    return kept


def _to_target(entry: TargetConfig, queries: Mapping[str, QueryConfig], scrape_timeout: float) -> Target:
    if entry.queries is None:
        selected = tuple(queries.values())
    else:
        selected = []
        for name in entry.queries:
            if name not in queries:
                LOG.warning("Target references an unknown query", extra={"target": entry.name, "query": name})
                continue
            selected.append(queries[name])
    return Target(
        name=entry.name,
        driver=entry.driver,
        host=entry.host,
        port=entry.port,
        user=entry.user,
        password=entry.password.get_secret_value() if entry.password else None,
        database=entry.database,
        options=tuple(sorted(entry.options.items())),
        pool_size=entry.pool_size,
        pool_timeout=entry.pool_timeout,
        connect_timeout=entry.connect_timeout,
        idle_timeout=entry.idle_timeout,
        ping_query=entry.ping_query,
        fan_out=entry.fan_out,
        scrape_timeout=entry.scrape_timeout or scrape_timeout,
        queries=tuple(_to_query(query) for query in selected),
    )


def _to_query(entry: QueryConfig) -> QueryDefinition:
    return QueryDefinition(
        name=entry.name,
        sql=entry.sql,
        metric=entry.metric,
        value=entry.value,
        type=entry.type,
        labels=entry.labels,
        params=entry.params,
        help=entry.help or f"Metric from query '{entry.name}'.",
        timeout=entry.timeout,
    )


class ConfigStore:
    """Holds the active configuration and swaps it atomically on reload.

    Scrapes take :attr:`current` once and keep using that snapshot even if a
    reload lands while they are running.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        loader: Callable[[str | Path | None], Configuration] = load_config,
        initial: Configuration | None = None,
    ) -> None:
        self._path = path
        self._loader = loader
        self._lock = threading.Lock()
        self._config = initial if initial is not None else loader(path)

    @property
    def current(self) -> Configuration:
        with self._lock:
            return self._config

    def reload(self) -> bool:
        """Re-read the file; on failure keep the previous configuration."""

        try:
            fresh = self._loader(self._path)
        except ConfigError as exc:
            LOG.error("Configuration reload failed, keeping previous configuration", extra={"error": str(exc)})
            return False
        self.swap(fresh)
        LOG.info("Configuration reloaded", extra={"targets": sorted(fresh.targets)})
        return True

    def swap(self, config: Configuration) -> None:
        with self._lock:
            self._config = config


__all__ = [
    "CONFIG_FILE",
    "ConfigStore",
    "Configuration",
    "ExporterConfig",
    "QueryConfig",
    "TargetConfig",
    "build_configuration",
    "load_config",
]
