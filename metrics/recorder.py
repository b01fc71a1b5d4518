"""
In-process metrics for the controller, rendered in the Prometheus text
exposition format by the ops server's /metrics endpoint.

A single MetricsRecorder is created at startup and handed to every
component that reports metrics.
"""
import threading
import time
from typing import Dict, List, Tuple

METRIC_PREFIX = "overlay_controller"

# name -> (type, help)
METRIC_DEFINITIONS: Dict[str, Tuple[str, str]] = {
    "reconciliation_total": ("counter", "Reconciliation passes by loop and status"),
    "reconciliation_duration_seconds": ("gauge", "Duration of the last reconciliation pass by loop"),
    "overlay_operations_total": ("counter", "Overlay create/update/delete operations by source"),
    "overlay_errors_total": ("counter", "Failed overlay operations by operation and error type"),
    "overlays_active": ("gauge", "Overlays managed by the controller by source"),
    "decisions_total": ("counter", "Decisions by capacity type and outcome"),
    "savings_plan_utilization_percent": ("gauge", "Aggregated savings plan utilization by overlay"),
    "remaining_capacity": ("gauge", "Aggregated remaining savings plan capacity in $/hour by overlay"),
    "reserved_instances_total": ("gauge", "Active reserved instances by overlay"),
    "data_freshness_seconds": ("gauge", "Age of the capacity data by family"),
    "family_skipped_total": ("counter", "Capacity families skipped by reason"),
    "preference_parse_errors_total": ("counter", "Rejected NodePool preference annotations"),
    "info": ("gauge", "Controller build and mode information"),
}

LabelSet = Tuple[Tuple[str, str], ...]


def _labels(**labels) -> LabelSet:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class MetricsRecorder:
    """Thread-safe counters and gauges for the controller"""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, Dict[LabelSet, float]] = {name: {} for name in METRIC_DEFINITIONS}
        self.start_time = time.time()

    def _inc(self, name: str, amount: float = 1.0, /, **labels) -> None:
        key = _labels(**labels)
        with self._lock:
            series = self._values[name]
            series[key] = series.get(key, 0.0) + amount

    def _set(self, name: str, value: float, /, **labels) -> None:
        with self._lock:
            self._values[name][_labels(**labels)] = float(value)

    def get(self, name: str, /, **labels) -> float:
        """Current value of one series, 0 when it was never recorded"""
        with self._lock:
            return self._values[name].get(_labels(**labels), 0.0)

    # -------------------------------------------------------------------------
    # Recording API
    # -------------------------------------------------------------------------
    def record_reconciliation(self, loop: str, status: str, duration: float) -> None:
        self._inc("reconciliation_total", loop=loop, status=status)
        self._set("reconciliation_duration_seconds", duration, loop=loop)

    def record_overlay_operation(self, operation: str, source: str) -> None:
        self._inc("overlay_operations_total", operation=operation, source=source)

    def record_overlay_error(self, operation: str, error_type: str) -> None:
        self._inc("overlay_errors_total", operation=operation, error_type=error_type)

    def set_active_overlays(self, source: str, count: int) -> None:
        self._set("overlays_active", count, source=source)

    def record_decision(self, decision) -> None:
        capacity_type = decision.capacity_type.value
        self._inc(
            "decisions_total",
            capacity_type=capacity_type,
            should_exist=str(decision.should_exist).lower(),
        )
        if decision.capacity_type.is_savings_plan:
            if decision.utilization_percent is not None:
                self._set(
                    "savings_plan_utilization_percent",
                    decision.utilization_percent,
                    capacity_type=capacity_type,
                    name=decision.name,
                )
            self._set(
                "remaining_capacity",
                decision.remaining_capacity,
                capacity_type=capacity_type,
                name=decision.name,
            )
        else:
            self._set("reserved_instances_total", decision.count, name=decision.name)

    def set_data_freshness(self, family: str, age_seconds: float) -> None:
        self._set("data_freshness_seconds", age_seconds, family=family)

    def record_family_skipped(self, family: str, reason: str) -> None:
        self._inc("family_skipped_total", family=family, reason=reason)

    def record_preference_parse_error(self, nodepool: str) -> None:
        self._inc("preference_parse_errors_total", nodepool=nodepool)

    def set_info(self, version: str, disabled: bool, threshold: float) -> None:
        self._set(
            "info",
            1,
            version=version,
            disabled_mode=str(disabled).lower(),
            threshold=f"{threshold:g}",
        )

    # -------------------------------------------------------------------------
    # Exposition
    # -------------------------------------------------------------------------
    def render(self) -> str:
        """Render every metric in the Prometheus text exposition format"""
        lines: List[str] = [
            f"# HELP {METRIC_PREFIX}_uptime_seconds Controller uptime in seconds",
            f"# TYPE {METRIC_PREFIX}_uptime_seconds gauge",
            f"{METRIC_PREFIX}_uptime_seconds {time.time() - self.start_time:.2f}",
        ]
        with self._lock:
            snapshot = {name: dict(series) for name, series in self._values.items()}

        for name, (metric_type, help_text) in METRIC_DEFINITIONS.items():
            full_name = f"{METRIC_PREFIX}_{name}"
            lines.append("")
            lines.append(f"# HELP {full_name} {help_text}")
            lines.append(f"# TYPE {full_name} {metric_type}")
            for labels, value in sorted(snapshot[name].items()):
                if labels:
                    rendered = ",".join(f'{k}="{_escape(v)}"' for k, v in labels)
                    lines.append(f"{full_name}{{{rendered}}} {value:g}")
                else:
                    lines.append(f"{full_name} {value:g}")
        return "\n".join(lines) + "\n"
