from __future__ import annotations

import pytest

from symserver.common.metrics import Counter, Gauge, Histogram, MetricsRegistry


def test_counter_renders_and_rejects_decrement() -> None:
    counter = Counter("symserver_test_total", "Test counter")
    counter.inc()
    counter.inc(2)
    assert counter.value == 3
    assert "symserver_test_total 3.0" in counter.render()
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_gauge_reads_supplier_at_render_time() -> None:
    entries = [1, 2]
    gauge = Gauge("symserver_test_entries", "Entries")
    gauge.bind(lambda: len(entries))
    entries.append(3)
    assert gauge.value == 3
    assert "symserver_test_entries 3.0" in gauge.render()


def test_histogram_buckets_are_cumulative() -> None:
    histogram = Histogram("symserver_test_seconds", buckets=[0.1, 1.0])
    for value in (0.05, 0.5, 5.0):
        histogram.observe(value)
    rendered = histogram.render()
    assert 'symserver_test_seconds_bucket{le="0.1"} 1' in rendered
    assert 'symserver_test_seconds_bucket{le="1.0"} 2' in rendered
    assert 'symserver_test_seconds_bucket{le="+Inf"} 3' in rendered
    assert "symserver_test_seconds_count 3" in rendered
    assert histogram.count == 3


def test_registry_returns_existing_metric_for_duplicate_name() -> None:
    registry = MetricsRegistry()
    first = registry.register(Counter("dup_total"))
    second = registry.register(Counter("dup_total"))
    assert first is second
    assert registry.render().count("# TYPE dup_total counter") == 1
