"""Tests for the prometheus_client collector and exporter self-metrics."""

from __future__ import annotations

import platform

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.parser import text_string_to_metric_families

from objserv_exporter.collector import ExporterMetrics, TargetCollector, to_families
from objserv_exporter.errors import QueryTimeout
from objserv_exporter.models import MetricSample, MetricType, QueryOutcome, ScrapeResult, ScrapeStatus

LABELS = (("target", "T1"),)


def _result() -> ScrapeResult:
    samples = (
        MetricSample("objserv_events_total", MetricType.COUNTER, LABELS + (("Node", "a"),), 3.0, 1.0, "Events."),
        MetricSample("objserv_events_total", MetricType.COUNTER, LABELS + (("Node", "b"),), 4.0, 1.0, "Events."),
        MetricSample("objserv_connections", MetricType.GAUGE, LABELS, 2.0, 1.0, "Connections."),
        MetricSample("up", MetricType.GAUGE, LABELS, 1.0, 1.0, "Up."),
        MetricSample("scrape_duration_seconds", MetricType.GAUGE, LABELS, 0.25, 1.0, "Duration."),
    )
    outcomes = (
        QueryOutcome(query="events", samples=samples[:2]),
        QueryOutcome(query="slow", failure=QueryTimeout("too slow")),
    )
    return ScrapeResult("T1", ScrapeStatus.PARTIAL, True, 0.25, samples, outcomes)


def test_to_families_groups_samples_in_first_seen_order() -> None:
    families = to_families(_result().samples)

    assert [family.name for family in families] == ["objserv_events", "objserv_connections", "up", "scrape_duration_seconds"]
    events = families[0]
    assert events.type == "counter"
    assert [sample.name for sample in events.samples] == ["objserv_events_total", "objserv_events_total"]
    assert events.samples[1].labels == {"target": "T1", "Node": "b"}


def test_counter_without_suffix_gets_total_sample_name() -> None:
    sample = MetricSample("objserv_deletes", MetricType.COUNTER, LABELS, 9.0, 1.0)

    (family,) = to_families([sample])

    assert family.name == "objserv_deletes"
    assert family.samples[0].name == "objserv_deletes_total"
    assert family.documentation == "objserv_deletes"


def test_collector_scrapes_on_every_collect() -> None:
    calls: list[int] = []

    def _scrape() -> ScrapeResult:
        calls.append(1)
        return _result()

    collector = TargetCollector(_scrape)
    registry = CollectorRegistry(auto_describe=False)
    registry.register(collector)

    assert calls == []
    assert list(collector.describe()) == []
    text = generate_latest(registry).decode("utf-8")

    assert calls == [1]
    assert collector.last_result is not None
    families = {family.name: family for family in text_string_to_metric_families(text)}
    assert families["objserv_events"].type == "counter"
    assert {(sample.labels["Node"], sample.value) for sample in families["objserv_events"].samples} == {
        ("a", 3.0),
        ("b", 4.0),
    }
    assert families["up"].samples[0].value == 1.0


def test_exporter_metrics_count_scrapes_and_failures() -> None:
    registry = CollectorRegistry()
    metrics = ExporterMetrics(registry, version="1.2.3")

    metrics.observe(_result())
    metrics.observe(_result())

    assert registry.get_sample_value(
        "objserv_exporter_build_info", {"version": "1.2.3", "python_version": platform.python_version()}
    ) == 1.0
    assert registry.get_sample_value("objserv_exporter_scrapes_total", {"target": "T1", "status": "partial"}) == 2.0
    assert registry.get_sample_value(
        "objserv_exporter_query_failures_total", {"target": "T1", "query": "slow", "kind": "timeout"}
    ) == 2.0


def test_counters_with_and_without_suffix_share_one_family() -> None:
    samples = [
        MetricSample("events", MetricType.COUNTER, LABELS + (("Node", "a"),), 1.0, 1.0, "Events."),
        MetricSample("events_total", MetricType.COUNTER, LABELS + (("Node", "b"),), 2.0, 1.0, "Events."),
    ]
    registry = CollectorRegistry(auto_describe=False)
    registry.register(TargetCollector(lambda: ScrapeResult("T1", ScrapeStatus.SUCCESS, True, 0.1, tuple(samples))))

    text = generate_latest(registry).decode("utf-8")

    assert [family.name for family in to_families(samples)] == ["events"]
    assert text.count("# TYPE events_total counter") == 1
    assert text.count("events_total{") == 2
