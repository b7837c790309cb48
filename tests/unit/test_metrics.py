"""
Unit tests for SyncMetrics.

Tests cover:
- Counters and histogram recorded per batch
- Divergence counter by kind
- Pending gauge
- Snapshot values with and without exported metrics
"""

from typing import Any

import pytest
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from recordsync.metrics import SyncMetrics, SyncMetricSnapshot
from tests.fixtures import collect_metrics, metric_total


@pytest.fixture
def metrics(meter: Any) -> SyncMetrics:
    return SyncMetrics(operation="sync", meter=meter)


class TestRecordBatch:
    """Tests for record_batch()."""

    def test_counters(self, metrics: SyncMetrics, metric_reader: InMemoryMetricReader):
        metrics.record_batch(processed=498, failed=2, duration_seconds=1.5)
        metrics.record_batch(processed=200, failed=0, duration_seconds=0.5)

        assert metric_total(metric_reader, "recordsync.entities.migrated", operation="sync") == 698
        assert metric_total(metric_reader, "recordsync.entities.failed", operation="sync") == 2

    def test_batch_duration_histogram(
        self, metrics: SyncMetrics, metric_reader: InMemoryMetricReader
    ):
        metrics.record_batch(processed=1, failed=0, duration_seconds=1.5)
        metrics.record_batch(processed=1, failed=0, duration_seconds=0.5)

        (point,) = collect_metrics(metric_reader)["recordsync.batch.duration"]
        assert point.count == 2
        assert point.sum == pytest.approx(2.0)
        assert point.attributes == {"operation": "sync"}

    def test_empty_batch_only_records_duration(
        self, metrics: SyncMetrics, metric_reader: InMemoryMetricReader
    ):
        """Zero counts are not added to the counters."""
        metrics.record_batch(processed=0, failed=0, duration_seconds=0.1)

        assert metric_total(metric_reader, "recordsync.entities.migrated") == 0
        assert metric_total(metric_reader, "recordsync.entities.failed") == 0
        assert len(collect_metrics(metric_reader)["recordsync.batch.duration"]) == 1
        assert metrics.get_snapshot().batches == 1


class TestRecordDivergences:
    """Tests for record_divergences()."""

    def test_counted_by_kind(self, meter: Any, metric_reader: InMemoryMetricReader):
        metrics = SyncMetrics(operation="verify", meter=meter)

        metrics.record_divergences(3, "attribute")
        metrics.record_divergences(1, "missing")
        metrics.record_divergences(2, "attribute")

        assert metric_total(metric_reader, "recordsync.divergences", kind="attribute") == 5
        assert (
            metric_total(metric_reader, "recordsync.divergences", kind="missing", operation="verify")
            == 1
        )

    def test_non_positive_count_is_ignored(self, metrics: SyncMetrics):
        metrics.record_divergences(0, "field")
        assert metrics.get_snapshot().divergences == {}


class TestPendingGauge:
    """Tests for record_pending()."""

    def test_gauge_reports_last_value(
        self, metrics: SyncMetrics, metric_reader: InMemoryMetricReader
    ):
        metrics.record_pending(702)
        metrics.record_pending(204)

        (point,) = collect_metrics(metric_reader)["recordsync.backlog.pending"]
        assert point.value == 204
        assert point.attributes == {"operation": "sync"}

    def test_negative_is_clamped(self, metrics: SyncMetrics):
        metrics.record_pending(-3)
        assert metrics.get_snapshot().pending == 0


class TestSnapshot:
    """Tests for get_snapshot() and SyncMetricSnapshot."""

    def test_accumulates(self, metrics: SyncMetrics):
        metrics.record_batch(processed=10, failed=1, duration_seconds=0.25)
        metrics.record_divergences(2, "field")
        metrics.record_pending(5)

        assert metrics.get_snapshot() == SyncMetricSnapshot(
            entities_migrated=10,
            entities_failed=1,
            divergences={"field": 2},
            batches=1,
            batch_durations=[0.25],
            pending=5,
        )

    def test_snapshot_is_a_copy(self, metrics: SyncMetrics):
        snapshot = metrics.get_snapshot()
        metrics.record_divergences(1, "field")
        assert snapshot.divergences == {}

    def test_to_dict(self):
        snapshot = SyncMetricSnapshot(entities_migrated=3, divergences={"missing": 1})
        assert snapshot.to_dict() == {
            "entities_migrated": 3,
            "entities_failed": 0,
            "divergences": {"missing": 1},
            "batches": 0,
            "batch_durations": [],
            "pending": 0,
        }


class TestDisabledMetrics:
    """enable_metrics=False uses a no-op meter."""

    def test_nothing_is_exported(self, meter: Any, metric_reader: InMemoryMetricReader):
        metrics = SyncMetrics(enable_metrics=False, meter=meter)

        metrics.record_batch(processed=5, failed=0, duration_seconds=0.1)

        assert collect_metrics(metric_reader) == {}

    def test_snapshot_still_counts(self):
        metrics = SyncMetrics(enable_metrics=False)

        metrics.record_batch(processed=5, failed=1, duration_seconds=0.1)

        snapshot = metrics.get_snapshot()
        assert snapshot.entities_migrated == 5
        assert snapshot.entities_failed == 1

    def test_default_meter_is_global(self):
        """Without an SDK the global meter hands out no-op instruments."""
        metrics = SyncMetrics()
        metrics.record_batch(processed=1, failed=0, duration_seconds=0.1)
        assert metrics.meter is not None
