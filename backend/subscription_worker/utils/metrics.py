"""
In-memory metrics for the batch pipeline.

Counters and histograms kept by the worker process:
- batch_runs_total / records_claimed_total: claim activity
- records_processed_total{status}: per-record outcomes
- notifications_created_total / notification_errors_total
- publish_failures_total{topic}
- stale_records_reaped_total
- analysis_latency_seconds{type}: gateway round-trip time

Samples are grouped by family name, then by label set, so the Prometheus
renderer can emit one ``# TYPE`` line per family without re-parsing keys.
"""
import logging
from collections import defaultdict, deque
from typing import Any

logger = logging.getLogger("subworker.metrics")

_PREFIX = "subworker_"

# Raw samples kept per histogram for min/max/p95; count and sum stay cumulative.
HISTOGRAM_WINDOW = 1024

LabelSet = tuple[tuple[str, str], ...]


def _label_set(labels: dict[str, str] | None) -> LabelSet:
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def _format_labels(label_set: LabelSet, *extra: tuple[str, str]) -> str:
    """``(("status", "ok"),)`` → ``{status="ok"}``; empty string without labels."""
    pairs = [*label_set, *extra]
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"


class _Histogram:
    __slots__ = ("count", "total", "window")

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.window: deque[float] = deque(maxlen=HISTOGRAM_WINDOW)

    def observe(self, value: float):
        self.count += 1
        self.total += value
        self.window.append(value)


def _summarize(hist: _Histogram | None) -> dict[str, Any]:
    if hist is None or not hist.count:
        return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}
    ordered = sorted(hist.window)
    return {
        "count": hist.count,
        "sum": hist.total,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": hist.total / hist.count,
        "p95": ordered[max(0, int(len(ordered) * 0.95) - 1)],
    }


class MetricsCollector:
    """Process-local counters and histograms, keyed by family then label set."""

    def __init__(self):
        self.counters: dict[str, dict[LabelSet, int]] = defaultdict(lambda: defaultdict(int))
        self.histograms: dict[str, dict[LabelSet, _Histogram]] = defaultdict(lambda: defaultdict(_Histogram))

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        self.counters[name][_label_set(labels)] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        self.histograms[name][_label_set(labels)].observe(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        family = self.counters.get(name)
        if family is None:
            return 0
        return family.get(_label_set(labels), 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        """count / sum / min / max / avg / p95 for one label set."""
        family = self.histograms.get(name)
        return _summarize(family.get(_label_set(labels)) if family is not None else None)

    def reset(self):
        self.counters.clear()
        self.histograms.clear()

    def get_all_metrics(self) -> dict[str, Any]:
        """Flat snapshot keyed ``name{k="v"}``, for debugging and tests."""
        return {
            "counters": {
                name + _format_labels(ls): value
                for name, family in self.counters.items()
                for ls, value in family.items()
            },
            "histograms": {
                name + _format_labels(ls): _summarize(hist)
                for name, family in self.histograms.items()
                for ls, hist in family.items()
            },
        }

    def to_prometheus_text(self) -> str:
        """Prometheus text exposition; histograms are rendered as summaries."""
        lines: list[str] = []
        for name, family in sorted(self.counters.items()):
            prom_name = _PREFIX + name
            lines.append(f"# TYPE {prom_name} counter")
            for ls, value in family.items():
                lines.append(f"{prom_name}{_format_labels(ls)} {value}")

        for name, family in sorted(self.histograms.items()):
            prom_name = _PREFIX + name
            lines.append(f"# TYPE {prom_name} summary")
            for ls, hist in family.items():
                stats = _summarize(hist)
                lines.append(f"{prom_name}_count{_format_labels(ls)} {stats['count']}")
                lines.append(f"{prom_name}_sum{_format_labels(ls)} {stats['sum']:.6f}")
                if stats["count"]:
                    quantile = _format_labels(ls, ("quantile", "0.95"))
                    lines.append(f"{prom_name}{quantile} {stats['p95']:.6f}")
        return "\n".join(lines) + "\n"


# Global metrics collector instance
metrics = MetricsCollector()


def record_batch_claimed(claimed: int):
    metrics.increment_counter("batch_runs_total")
    metrics.increment_counter("records_claimed_total", value=claimed)


def record_record_processed(status: str, duration_seconds: float):
    """
    Record the outcome of one processed record.

    Args:
        status: ``success`` or ``error``
        duration_seconds: wall time spent on the record
    """
    metrics.increment_counter("records_processed_total", labels={"status": status})
    metrics.observe_histogram("record_duration_seconds", duration_seconds)


def record_notifications(created: int, errors: int):
    if created:
        metrics.increment_counter("notifications_created_total", value=created)
    if errors:
        metrics.increment_counter("notification_errors_total", value=errors)


def record_publish_failure(topic: str):
    metrics.increment_counter("publish_failures_total", labels={"topic": topic})


def record_analysis_latency(type_slug: str, seconds: float):
    metrics.observe_histogram("analysis_latency_seconds", seconds, labels={"type": type_slug})


def record_stale_reaped(count: int):
    if count:
        metrics.increment_counter("stale_records_reaped_total", value=count)


def to_prometheus_text() -> str:
    return metrics.to_prometheus_text()
