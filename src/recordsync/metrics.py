"""
OpenTelemetry metrics for sync and verification.

Instruments are created on the global meter provider unless a meter is
passed in. Without a configured SDK the OpenTelemetry API hands out
no-op instruments, so recording is always safe.

Example:
    >>> metrics = SyncMetrics(operation="sync")
    >>> metrics.record_batch(processed=498, failed=2, duration_seconds=1.8)
    >>> metrics.record_pending(702)
    >>> metrics.get_snapshot().entities_migrated
    498

Metrics Exposed:
    - recordsync.entities.migrated (Counter): Entities written to the normalized store
    - recordsync.entities.failed (Counter): Entities that failed to migrate
    - recordsync.divergences (Counter): Divergence records found by verification
    - recordsync.batch.duration (Histogram): Time spent per batch
    - recordsync.backlog.pending (Gauge): Last observed pending count

All metrics carry an 'operation' attribute (sync, verify, remigrate).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Meter, NoOpMeter, Observation

METER_NAME = "recordsync"


@dataclass(frozen=True)
class SyncMetricSnapshot:
    """
    Accumulated metric values, for tests and end-of-run summaries.

    Attributes:
        entities_migrated: Entities written to the normalized store
        entities_failed: Entities that failed to migrate
        divergences: Divergence records found, by kind
        batches: Number of batches recorded
        batch_durations: Duration of each batch in seconds
        pending: Last observed pending count
    """

    entities_migrated: int = 0
    entities_failed: int = 0
    divergences: dict[str, int] = field(default_factory=dict)
    batches: int = 0
    batch_durations: list[float] = field(default_factory=list)
    pending: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entities_migrated": self.entities_migrated,
            "entities_failed": self.entities_failed,
            "divergences": dict(self.divergences),
            "batches": self.batches,
            "batch_durations": list(self.batch_durations),
            "pending": self.pending,
        }


@dataclass
class SyncMetrics:
    """
    Container for sync metric instruments.

    Attributes:
        operation: Value of the 'operation' attribute on every measurement
        enable_metrics: Whether metrics are exported (default True)
        meter: Meter to create instruments on (default: global meter)
    """

    operation: str = "sync"
    enable_metrics: bool = True
    meter: Meter | None = None

    # Internal state
    _migrated_counter: Any = field(default=None, init=False, repr=False)
    _failed_counter: Any = field(default=None, init=False, repr=False)
    _divergence_counter: Any = field(default=None, init=False, repr=False)
    _batch_duration_histogram: Any = field(default=None, init=False, repr=False)
    _pending_value: int = field(default=0, init=False, repr=False)

    # Internal counters for snapshot
    _migrated_count: int = field(default=0, init=False, repr=False)
    _failed_count: int = field(default=0, init=False, repr=False)
    _divergence_counts: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _batch_durations: list[float] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if not self.enable_metrics:
            self.meter = NoOpMeter(METER_NAME)
        elif self.meter is None:
            self.meter = metrics.get_meter(METER_NAME)
        self._setup_metrics(self.meter)

    def _setup_metrics(self, meter: Meter) -> None:
        self._migrated_counter = meter.create_counter(
            name="recordsync.entities.migrated",
            unit="entities",
            description="Entities written to the normalized store",
        )
        self._failed_counter = meter.create_counter(
            name="recordsync.entities.failed",
            unit="entities",
            description="Entities that could not be migrated",
        )
        self._divergence_counter = meter.create_counter(
            name="recordsync.divergences",
            unit="records",
            description="Divergence records found by verification",
        )
        self._batch_duration_histogram = meter.create_histogram(
            name="recordsync.batch.duration",
            unit="s",
            description="Time spent processing one batch in seconds",
        )
        meter.create_observable_gauge(
            name="recordsync.backlog.pending",
            callbacks=[self._observe_pending],
            unit="entities",
            description="Pending entities observed after the last batch",
        )

    def _base_attributes(self) -> dict[str, str]:
        return {"operation": self.operation}

    def _observe_pending(self, options: CallbackOptions) -> Any:
        yield Observation(value=self._pending_value, attributes=self._base_attributes())

    def record_batch(self, processed: int, failed: int, duration_seconds: float) -> None:
        """
        Record one processed batch.

        Args:
            processed: Entities written successfully
            failed: Entities that failed
            duration_seconds: Batch wall-clock time
        """
        attrs = self._base_attributes()
        if processed:
            self._migrated_counter.add(processed, attrs)
        if failed:
            self._failed_counter.add(failed, attrs)
        self._batch_duration_histogram.record(duration_seconds, attrs)

        self._migrated_count += processed
        self._failed_count += failed
        self._batch_durations.append(duration_seconds)

    def record_divergences(self, count: int, kind: str) -> None:
        """
        Record divergence records of one kind.

        Args:
            count: Number of records
            kind: DivergenceKind value (field, attribute, missing, unreadable)
        """
        if count <= 0:
            return
        self._divergence_counter.add(count, {**self._base_attributes(), "kind": kind})
        self._divergence_counts[kind] = self._divergence_counts.get(kind, 0) + count

    def record_pending(self, count: int) -> None:
        """Update the pending count reported by the gauge."""
        self._pending_value = max(0, count)

    def get_snapshot(self) -> SyncMetricSnapshot:
        """
        Get a snapshot of accumulated values.

        Returns:
            SyncMetricSnapshot with current values
        """
        return SyncMetricSnapshot(
            entities_migrated=self._migrated_count,
            entities_failed=self._failed_count,
            divergences=dict(self._divergence_counts),
            batches=len(self._batch_durations),
            batch_durations=list(self._batch_durations),
            pending=self._pending_value,
        )


__all__ = [
    "METER_NAME",
    "SyncMetricSnapshot",
    "SyncMetrics",
]
