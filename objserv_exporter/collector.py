"""prometheus_client glue: the per-scrape collector and exporter self-metrics."""

from __future__ import annotations

import platform
from typing import Callable, Iterable, Iterator

from prometheus_client import CollectorRegistry, Counter, Gauge, PlatformCollector, ProcessCollector
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .models import MetricSample, ScrapeResult


class TargetCollector(Collector):
    """Collector registered for a single scrape of a single target.

    ``describe`` returns nothing: the metric families a target produces are
    only known once its queries have run, so registration cannot check names
    up front.
    """

    def __init__(self, scrape: Callable[[], ScrapeResult]) -> None:
        self._scrape = scrape
        self.last_result: ScrapeResult | None = None

    def describe(self) -> Iterable[Metric]:
        return []

    def collect(self) -> Iterator[Metric]:
        result = self._scrape()
        self.last_result = result
        yield from to_families(result.samples)


def to_families(samples: Iterable[MetricSample]) -> list[Metric]:
    """Group samples into metric families, keeping first-seen order."""

    families: dict[str, Metric] = {}
    for sample in samples:
        family = families.get(sample.family)
        if family is None:
            family = Metric(sample.family, sample.help or sample.name, sample.type.value)
            families[sample.family] = family
        family.add_sample(sample.exposed_name, sample.label_map, sample.value)
    return list(families.values())


class ExporterMetrics:
    """The exporter's own metrics, served apart from target samples."""

    def __init__(self, registry: CollectorRegistry, *, version: str) -> None:
        self.registry = registry
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
        self.build_info = Gauge(
            "objserv_exporter_build_info",
            "Build information of the ObjectServer exporter.",
            ["version", "python_version"],
            registry=registry,
        )
        self.build_info.labels(version=version, python_version=platform.python_version()).set(1)
        self.scrapes = Counter(
            "objserv_exporter_scrapes",
            "Scrapes served, by target and outcome.",
            ["target", "status"],
            registry=registry,
        )
        self.query_failures = Counter(
            "objserv_exporter_query_failures",
            "Failed queries, by target, query and failure kind.",
            ["target", "query", "kind"],
            registry=registry,
        )

    def observe(self, result: ScrapeResult) -> None:
        self.scrapes.labels(target=result.target, status=result.status.value).inc()
        for outcome in result.failures:
            kind = outcome.failure.kind if outcome.failure is not None else "error"
            self.query_failures.labels(target=result.target, query=outcome.query, kind=kind).inc()


__all__ = ["ExporterMetrics", "TargetCollector", "to_families"]
