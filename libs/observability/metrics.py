"""Prometheus metrics for feature materialization and serving."""

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from .config import MetricsConfig

logger = structlog.get_logger(__name__)


class FeatureStoreMetrics:
    """Feature store specific metrics tracking."""

    def __init__(
        self,
        prefix: str = "feature_store",
        registry: CollectorRegistry | None = None,
        config: MetricsConfig | None = None,
    ):
        self.prefix = prefix
        buckets = (config or MetricsConfig()).histogram_buckets

        # Materialization metrics
        self.materialization_runs_total = Counter(
            f"{prefix}_materialization_runs_total",
            "Materialization runs by outcome",
            ["feature_id", "run_kind", "status"],
            registry=registry,
        )

        self.materialization_duration = Histogram(
            f"{prefix}_materialization_duration_seconds",
            "Materialization run duration in seconds",
            ["feature_id", "run_kind"],
            buckets=buckets,
            registry=registry,
        )

        self.facts_written_total = Counter(
            f"{prefix}_facts_written_total",
            "Feature value facts appended to the offline store",
            ["feature_id"],
            registry=registry,
        )

        self.runs_reaped_total = Counter(
            f"{prefix}_runs_reaped_total",
            "Runs failed by the reaper after exceeding their budget",
            ["feature_id"],
            registry=registry,
        )

        self.stream_offset = Gauge(
            f"{prefix}_stream_committed_offset",
            "Last committed change feed offset",
            ["consumer_id"],
            registry=registry,
        )

        # Serving metrics
        self.online_lookups_total = Counter(
            f"{prefix}_online_lookups_total",
            "Online feature vector lookups",
            ["entity_type", "outcome"],
            registry=registry,
        )

        self.online_vectors_synced_total = Counter(
            f"{prefix}_online_vectors_synced_total",
            "Online vectors updated by the sync process",
            ["feature_id"],
            registry=registry,
        )

        self.stale_writes_total = Counter(
            f"{prefix}_stale_writes_total",
            "Online updates ignored because a newer value was already stored",
            ["feature_id"],
            registry=registry,
        )

        self.historical_rows_total = Counter(
            f"{prefix}_historical_rows_total",
            "Point-in-time rows served",
            ["coverage"],
            registry=registry,
        )

        # Monitoring metrics
        self.drift_alerts_total = Counter(
            f"{prefix}_drift_alerts_total",
            "Monitoring alerts emitted",
            ["feature_id", "alert_type", "severity"],
            registry=registry,
        )

        self.drift_score = Gauge(
            f"{prefix}_drift_score",
            "Latest normalized mean shift per feature",
            ["feature_id"],
            registry=registry,
        )

    def record_run(
        self, feature_id: str, run_kind: str, status: str, duration_seconds: float
    ) -> None:
        """Record a finished materialization run."""
        self.materialization_runs_total.labels(
            feature_id=feature_id, run_kind=run_kind, status=status
        ).inc()
        self.materialization_duration.labels(
            feature_id=feature_id, run_kind=run_kind
        ).observe(duration_seconds)

    def record_facts_written(self, feature_id: str, count: int) -> None:
        self.facts_written_total.labels(feature_id=feature_id).inc(count)

    def record_reaped_run(self, feature_id: str) -> None:
        self.runs_reaped_total.labels(feature_id=feature_id).inc()

    def record_offset_commit(self, consumer_id: str, offset: int) -> None:
        self.stream_offset.labels(consumer_id=consumer_id).set(offset)

    def record_online_lookup(self, entity_type: str, outcome: str) -> None:
        """Record an online lookup (outcome: hit, miss, not_found)."""
        self.online_lookups_total.labels(entity_type=entity_type, outcome=outcome).inc()

    def record_online_sync(self, feature_id: str, vectors: int) -> None:
        self.online_vectors_synced_total.labels(feature_id=feature_id).inc(vectors)

    def record_stale_write(self, feature_id: str) -> None:
        self.stale_writes_total.labels(feature_id=feature_id).inc()

    def record_historical_rows(self, complete: int, incomplete: int) -> None:
        self.historical_rows_total.labels(coverage="complete").inc(complete)
        self.historical_rows_total.labels(coverage="incomplete").inc(incomplete)

    def record_alert(
        self, feature_id: str, alert_type: str, severity: str, score: float | None
    ) -> None:
        """Record an emitted monitoring alert."""
        self.drift_alerts_total.labels(
            feature_id=feature_id, alert_type=alert_type, severity=severity
        ).inc()
        if score is not None:
            self.drift_score.labels(feature_id=feature_id).set(score)


_default_metrics: FeatureStoreMetrics | None = None


def get_metrics() -> FeatureStoreMetrics:
    """Get or create the process-wide metrics instance.

    Collectors register against the default Prometheus registry once; tests
    build their own ``FeatureStoreMetrics(registry=CollectorRegistry())``.
    """
    global _default_metrics

    if _default_metrics is None:
        _default_metrics = FeatureStoreMetrics()
        logger.debug("Feature store metrics registered", prefix="feature_store")

    return _default_metrics
