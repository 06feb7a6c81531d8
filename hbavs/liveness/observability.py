"""
Monitor metrics in Prometheus text format.

Usage:
    metrics = MonitorMetrics()
    metrics.cycles_total.inc()
    print(metrics.to_prometheus())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Union

from .policy import LivenessStatus


@dataclass
class Counter:
    """Simple counter metric."""
    name: str
    help: str
    labels: Dict[str, str] = field(default_factory=dict)
    _value: float = 0

    def inc(self, amount: float = 1) -> None:
        self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def to_prometheus(self) -> str:
        labels_str = ",".join(f'{k}="{v}"' for k, v in self.labels.items())
        if labels_str:
            return f"{self.name}{{{labels_str}}} {self._value}"
        return f"{self.name} {self._value}"


@dataclass
class Gauge:
    """Simple gauge metric."""
    name: str
    help: str
    labels: Dict[str, str] = field(default_factory=dict)
    _value: float = 0

    def set(self, value: float) -> None:
        self._value = value

    @property
    def value(self) -> float:
        return self._value

    def to_prometheus(self) -> str:
        labels_str = ",".join(f'{k}="{v}"' for k, v in self.labels.items())
        if labels_str:
            return f"{self.name}{{{labels_str}}} {self._value}"
        return f"{self.name} {self._value}"


Metric = Union[Counter, Gauge]


class MonitorMetrics:
    """Counters for cycles, reads, alerts and penalties, plus status gauges."""

    def __init__(self, namespace: str = "hbavs"):
        self._namespace = namespace

        self.cycles_total = Counter(f"{namespace}_cycles_total", "Completed check cycles")
        self.cycles_aborted = Counter(
            f"{namespace}_cycles_aborted_total", "Cycles aborted because ledger time was unavailable",
        )
        self.cycles_skipped = Counter(
            f"{namespace}_cycles_skipped_total", "Ticks skipped because a cycle was in flight",
        )
        self.read_failures = Counter(f"{namespace}_read_failures_total", "Per-operator read failures")
        self.alerts_sent = Counter(f"{namespace}_alerts_sent_total", "Alerts delivered")
        self.alerts_failed = Counter(f"{namespace}_alerts_failed_total", "Alerts that failed to deliver")
        self.penalties_applied = Counter(f"{namespace}_penalties_applied_total", "Penalties applied by the monitor")
        self.penalties_failed = Counter(f"{namespace}_penalties_failed_total", "Penalty calls that failed")

        self.operators_by_status: Dict[LivenessStatus, Gauge] = {
            status: Gauge(
                f"{namespace}_operators",
                "Monitored operators by status",
                labels={"status": status.value},
            )
            for status in LivenessStatus
        }

    def set_status_counts(self, counts: Dict[LivenessStatus, int]) -> None:
        for status, gauge in self.operators_by_status.items():
            gauge.set(counts.get(status, 0))

    def _scalar_metrics(self) -> List[Metric]:
        return [
            self.cycles_total,
            self.cycles_aborted,
            self.cycles_skipped,
            self.read_failures,
            self.alerts_sent,
            self.alerts_failed,
            self.penalties_applied,
            self.penalties_failed,
        ]

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus format."""
        lines = []
        for metric in self._scalar_metrics():
            lines.append(f"# HELP {metric.name} {metric.help}")
            lines.append(f"# TYPE {metric.name} {'counter' if isinstance(metric, Counter) else 'gauge'}")
            lines.append(metric.to_prometheus())
            lines.append("")

        name = f"{self._namespace}_operators"
        lines.append(f"# HELP {name} Monitored operators by status")
        lines.append(f"# TYPE {name} gauge")
        for gauge in self.operators_by_status.values():
            lines.append(gauge.to_prometheus())
        lines.append("")

        return "\n".join(lines)
