"""Snapshot of the latest reconciliation outcomes, served by /api/status."""
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class ControllerStatus:
    def __init__(self):
        self._lock = threading.Lock()
        self._capacity: Optional[Dict[str, Any]] = None
        self._nodepools: Dict[str, Dict[str, Any]] = {}

    def record_capacity_pass(self, summary: Dict[str, Any]) -> None:
        with self._lock:
            self._capacity = {**summary, "finished_at": _now_iso()}

    def record_nodepool(self, name: str, summary: Dict[str, Any]) -> None:
        with self._lock:
            self._nodepools[name] = {**summary, "finished_at": _now_iso()}

    def forget_nodepool(self, name: str) -> None:
        with self._lock:
            self._nodepools.pop(name, None)

    @property
    def ready(self) -> bool:
        """Ready once the first capacity pass has completed"""
        with self._lock:
            return self._capacity is not None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "capacity": dict(self._capacity) if self._capacity else None,
                "nodepools": {name: dict(s) for name, s in sorted(self._nodepools.items())},
            }
