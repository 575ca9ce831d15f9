"""
Prometheus-compatible metrics for the Reecher backend.

Counters and gauges rendered in Prometheus text exposition format.
No external dependencies required -- uses plain Python with thread-safe counters.

Metrics exposed:
  - reecher_channel_transitions_total  (counter)  Channel status changes by from/to
  - reecher_gateway_requests_total     (counter)  Gateway calls by operation/outcome
  - reecher_sync_runs_total            (counter)  Finished sync runs by outcome
  - reecher_sync_runs_active           (gauge)    Sync runs currently in flight
  - reecher_reaper_actions_total       (counter)  Reaper interventions by action
"""

import threading
import time
from typing import Dict, Tuple


class _LabeledCounter:
    """Thread-safe counter with label dimensions."""

    def __init__(self, *label_names: str) -> None:
        self._lock = threading.Lock()
        self._values: Dict[Tuple[str, ...], float] = {}
        self.label_names = label_names

    def inc(self, labels: Tuple[str, ...], amount: float = 1) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0) + amount

    def get(self, labels: Tuple[str, ...]) -> float:
        with self._lock:
            return self._values.get(labels, 0)

    def items(self) -> list:
        with self._lock:
            return list(self._values.items())


class _Gauge:
    """Thread-safe gauge that can go up or down."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: float = 0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1) -> None:
        with self._lock:
            self._value -= amount

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class MetricsRegistry:
    """Central registry for all application metrics."""

    def __init__(self) -> None:
        self.channel_transitions_total = _LabeledCounter("from", "to")
        self.gateway_requests_total = _LabeledCounter("operation", "outcome")
        self.sync_runs_total = _LabeledCounter("outcome")
        self.reaper_actions_total = _LabeledCounter("action")

        self.sync_runs_active = _Gauge()

        self._start_time = time.time()

    @staticmethod
    def _render_counter(lines: list, name: str, help_text: str, counter: _LabeledCounter) -> None:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} counter")
        for labels, value in counter.items():
            rendered = ",".join(f'{k}="{v}"' for k, v in zip(counter.label_names, labels))
            lines.append(f"{name}{{{rendered}}} {value}")

    def render(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: list[str] = []

        self._render_counter(
            lines, "reecher_channel_transitions_total",
            "Channel lifecycle transitions by source and target status.",
            self.channel_transitions_total,
        )
        self._render_counter(
            lines, "reecher_gateway_requests_total",
            "Gateway HTTP calls by operation and outcome.",
            self.gateway_requests_total,
        )
        self._render_counter(
            lines, "reecher_sync_runs_total",
            "Finished group sync runs by terminal status.",
            self.sync_runs_total,
        )
        self._render_counter(
            lines, "reecher_reaper_actions_total",
            "Reaper interventions by action.",
            self.reaper_actions_total,
        )

        lines.append("# HELP reecher_sync_runs_active Sync runs currently in flight in this process.")
        lines.append("# TYPE reecher_sync_runs_active gauge")
        lines.append(f"reecher_sync_runs_active {self.sync_runs_active.value}")

        lines.append("# HELP reecher_uptime_seconds Seconds since the metrics registry was created.")
        lines.append("# TYPE reecher_uptime_seconds gauge")
        lines.append(f"reecher_uptime_seconds {time.time() - self._start_time:.1f}")

        # Prometheus text format requires a trailing newline
        lines.append("")
        return "\n".join(lines)


# Singleton instance -- import this from anywhere in the backend
metrics = MetricsRegistry()
