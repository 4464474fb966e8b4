"""Prometheus metrics for notification dispatch and subscription maintenance."""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# Dedicated registry so tests and multiple app instances never collide with the default one
hookrelay_registry = CollectorRegistry()

notifications_received_total = Counter(
    'hookrelay_notifications_received_total',
    'Total number of change notifications received',
    ['outcome'],
    registry=hookrelay_registry
)

forward_attempts_total = Counter(
    'hookrelay_forward_attempts_total',
    'Total number of envelope forwarding attempts',
    ['result'],
    registry=hookrelay_registry
)

processor_runs_total = Counter(
    'hookrelay_processor_runs_total',
    'Total number of queue processor runs',
    ['processor', 'result'],
    registry=hookrelay_registry
)

renewals_total = Counter(
    'hookrelay_renewals_total',
    'Total number of subscription renewal attempts',
    ['result'],
    registry=hookrelay_registry
)

reconcile_changes_total = Counter(
    'hookrelay_reconcile_changes_total',
    'Total number of tracking store changes made by reconciliation',
    ['kind'],
    registry=hookrelay_registry
)

dispatch_duration_seconds = Histogram(
    'hookrelay_dispatch_duration_seconds',
    'Time spent dispatching one notification batch',
    registry=hookrelay_registry
)

loop_guard_entries = Gauge(
    'hookrelay_loop_guard_entries',
    'Number of keys held by the loop prevention table',
    registry=hookrelay_registry
)


class MetricsCollector:
    """Collector for HookRelay metrics."""

    def record_notification(self, outcome: str) -> None:
        notifications_received_total.labels(outcome=outcome).inc()

    def record_forward(self, success: bool) -> None:
        forward_attempts_total.labels(result="success" if success else "failure").inc()

    def record_processor_run(self, processor: str, processed: bool) -> None:
        processor_runs_total.labels(processor=processor, result="processed" if processed else "skipped").inc()

    def record_renewal(self, result: str) -> None:
        renewals_total.labels(result=result).inc()

    def record_reconcile_changes(self, kind: str, count: int) -> None:
        if count:
            reconcile_changes_total.labels(kind=kind).inc(count)

    def record_dispatch_duration(self, duration: float) -> None:
        dispatch_duration_seconds.observe(duration)

    def update_loop_guard_size(self, size: int) -> None:
        loop_guard_entries.set(size)

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(hookrelay_registry).decode('utf-8')


# Global metrics collector
metrics = MetricsCollector()
