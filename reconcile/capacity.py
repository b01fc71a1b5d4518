"""
Decision-path loop: capacity metrics -> aggregation -> decisions -> overlays.

Each capacity family is handled independently. A family whose data is too
old, or whose queries fail, is skipped for the cycle and its existing
overlays are left untouched; the other families still run.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from analysis.aggregation import aggregate_capacity
from analysis.capacity_model import CapacityFamily
from analysis.decision import Decision, DecisionEngine
from kube.store import OverlayStore
from metrics.capacity_queries import CapacityQueries
from metrics.prometheus_client import PrometheusError
from overlay.generator import OverlayGenerator
from overlay.model import (
    CAPACITY_TYPE_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    TYPE_LABEL,
    OverlayType,
)
from reconcile.differ import (
    ReconciliationCancelled,
    ReconciliationError,
    ReconciliationResult,
    reconcile_overlays,
)

logger = logging.getLogger(__name__)

LOOP_NAME = "capacity"

FAMILY_ORDER = (
    CapacityFamily.COMPUTE_SAVINGS_PLAN,
    CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN,
    CapacityFamily.RESERVED_INSTANCE,
)

STATUS_RECONCILED = "reconciled"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


def capacity_selector(family: CapacityFamily) -> Dict[str, str]:
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        TYPE_LABEL: OverlayType.COST_DECISION.value,
        CAPACITY_TYPE_LABEL: family.value,
    }


@dataclass
class FamilyOutcome:
    family: CapacityFamily
    status: str
    reason: str = ""
    data_age_seconds: Optional[float] = None
    decisions: List[Decision] = field(default_factory=list)
    result: ReconciliationResult = field(default_factory=ReconciliationResult)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "data_age_seconds": self.data_age_seconds,
            "decisions": [
                {"name": d.name, "should_exist": d.should_exist, "reason": d.reason}
                for d in self.decisions
            ],
            "result": self.result.to_dict(),
        }


@dataclass
class CapacityPassResult:
    families: Dict[CapacityFamily, FamilyOutcome] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return all(
            o.status != STATUS_FAILED and o.result.errors == 0 for o in self.families.values()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "duration_seconds": round(self.duration_seconds, 3),
            "families": {f.value: o.to_dict() for f, o in self.families.items()},
        }


class CapacityReconciler:
    """Periodic reconciliation of cost-decision overlays.

    Args:
        queries: Typed capacity queries
        store: Object store holding the overlays
        engine: Decision engine (threshold, weights, naming)
        generator: Overlay generator (disabled mode)
        recorder: MetricsRecorder
        freshness_ceilings: Maximum data age in seconds per family
        owner_references: Extra owner references added to every overlay
        interval: Seconds between passes
        status: Optional ControllerStatus updated after every pass
    """

    def __init__(
        self,
        queries: CapacityQueries,
        store: OverlayStore,
        engine: DecisionEngine,
        generator: OverlayGenerator,
        recorder,
        freshness_ceilings: Dict[Any, float],
        owner_references: Sequence[Dict[str, Any]] = (),
        interval: float = 300.0,
        status=None,
    ):
        self.queries = queries
        self.store = store
        self.engine = engine
        self.generator = generator
        self.recorder = recorder
        self.freshness_ceilings = {CapacityFamily(k): float(v) for k, v in freshness_ceilings.items()}
        self.owner_references = tuple(r for r in owner_references if r)
        self.interval = interval
        self.status = status

    def reconcile_family(
        self,
        family: CapacityFamily,
        stop_event: Optional[threading.Event] = None,
    ) -> FamilyOutcome:
        try:
            age = self.queries.query_data_freshness(family)
        except PrometheusError as e:
            return self._skip(family, "freshness-unavailable", f"data freshness query failed: {e}")
        self.recorder.set_data_freshness(family.value, age)

        ceiling = self.freshness_ceilings.get(family)
        if ceiling is not None and age > ceiling:
            outcome = self._skip(
                family, "stale-data", f"data is {age:.0f}s old (ceiling {ceiling:.0f}s)"
            )
            outcome.data_age_seconds = age
            return outcome

        try:
            samples = self.queries.query_capacity(family)
        except PrometheusError as e:
            outcome = self._skip(family, "query-failed", f"capacity query failed: {e}")
            outcome.data_age_seconds = age
            return outcome

        aggregated = aggregate_capacity(samples, family)
        decisions = self.engine.analyze(family, aggregated)
        for decision in decisions:
            self.recorder.record_decision(decision)

        desired = [
            overlay.with_owner_references(*self.owner_references)
            for overlay in self.generator.generate_all(decisions)
        ]
        logger.info(
            f"[{family.value}] {len(samples)} sample(s), {len(aggregated)} key(s), "
            f"{len(desired)}/{len(decisions)} overlay(s) desired"
        )

        outcome = FamilyOutcome(
            family=family, status=STATUS_RECONCILED, data_age_seconds=age, decisions=decisions
        )
        try:
            outcome.result = reconcile_overlays(
                self.store, desired, capacity_selector(family), family.value,
                recorder=self.recorder, stop_event=stop_event,
            )
        except ReconciliationError as e:
            logger.error(str(e))
            outcome.status = STATUS_FAILED
            outcome.reason = str(e)
            return outcome

        self.recorder.set_active_overlays(family.value, len(desired))
        return outcome

    def _skip(self, family: CapacityFamily, reason: str, message: str) -> FamilyOutcome:
        logger.warning(f"[{family.value}] Skipping this cycle: {message}")
        self.recorder.record_family_skipped(family.value, reason)
        return FamilyOutcome(family=family, status=STATUS_SKIPPED, reason=message)

    def reconcile_once(self, stop_event: Optional[threading.Event] = None) -> CapacityPassResult:
        """Run one pass over every capacity family.

        Raises:
            ReconciliationCancelled: If stop_event is set during the pass
        """
        started = time.monotonic()
        result = CapacityPassResult()
        try:
            for family in FAMILY_ORDER:
                if stop_event is not None and stop_event.is_set():
                    raise ReconciliationCancelled("stop requested")
                try:
                    result.families[family] = self.reconcile_family(family, stop_event)
                except ReconciliationCancelled:
                    raise
                except Exception as e:
                    logger.exception(f"[{family.value}] Reconciliation failed: {e}")
                    result.families[family] = FamilyOutcome(
                        family=family, status=STATUS_FAILED, reason=str(e)
                    )
        finally:
            result.duration_seconds = time.monotonic() - started

        status = "success" if result.ok else "error"
        self.recorder.record_reconciliation(LOOP_NAME, status, result.duration_seconds)
        if self.status is not None:
            self.status.record_capacity_pass(result.to_dict())
        logger.info(f"Capacity pass finished in {result.duration_seconds:.2f}s (status={status})")
        return result

    def run(self, stop_event: threading.Event) -> None:
        """Reconcile immediately, then every ``interval`` seconds until stopped"""
        logger.info(f"Capacity reconciler started (interval={self.interval:.0f}s)")
        while not stop_event.is_set():
            try:
                self.reconcile_once(stop_event)
            except ReconciliationCancelled:
                logger.info("Capacity pass cancelled")
                break
            except Exception as e:
                logger.exception(f"Capacity pass failed: {e}")
                self.recorder.record_reconciliation(LOOP_NAME, "error", 0.0)
            stop_event.wait(self.interval)
        logger.info("Capacity reconciler stopped")
