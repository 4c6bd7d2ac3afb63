"""In-process metrics counters and histograms."""

import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def _key(name: str, labels: dict[str, str] = None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels.items()) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    if value < 100:
        metrics["buckets"]["<100"] += 1
    elif value < 1000:
        metrics["buckets"]["100-1000"] += 1
    elif value < 10000:
        metrics["buckets"]["1000-10000"] += 1
    else:
        metrics["buckets"][">=10000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement in milliseconds since ``start_time``."""
    duration_ms = (time.monotonic() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    for key, data in _metrics.items():
        metric_result = {"count": data["count"], "sum": data["sum"]}
        if data["values"]:
            values = data["values"]
            metric_result.update(
                {
                    "min": min(values),
                    "max": max(values),
                    "avg": data["sum"] / len(values),
                    "buckets": dict(data["buckets"]),
                }
            )
        result[key] = metric_result
    return result


def get_counter(name: str, labels: dict[str, str] = None) -> float:
    data = _metrics.get(_key(name, labels))
    return data["count"] if data else 0


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    _metrics.clear()


# Issuance lifecycle
def increment_submissions(kind: str) -> None:
    increment_counter("sri_submissions_total", labels={"kind": kind})


def increment_reception(outcome: str) -> None:
    increment_counter("sri_receptions_total", labels={"outcome": outcome})


def increment_authorized(kind: str) -> None:
    increment_counter("sri_authorized_total", labels={"kind": kind})


def increment_rejected(kind: str) -> None:
    increment_counter("sri_rejected_total", labels={"kind": kind})


def increment_recoveries(trigger: str) -> None:
    increment_counter("sri_recoveries_total", labels={"trigger": trigger})


def increment_auto_heal() -> None:
    """Sequence collision repaired with a freshly allocated number."""
    increment_counter("sri_auto_heal_total")


def increment_timeouts() -> None:
    increment_counter("sri_timeouts_total")


def increment_transport_failures(operation: str) -> None:
    increment_counter("sri_transport_failures_total", labels={"operation": operation})


def record_poll_duration(duration_ms: float) -> None:
    record_histogram("sri_poll_duration_ms", duration_ms)


def increment_notification_failures() -> None:
    increment_counter("notification_failures_total")
