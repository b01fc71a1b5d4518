"""
Decision engine: turn aggregated capacity into should-exist verdicts for
cost-aware overlays.

Rules for savings plans, evaluated in order:
  1. utilization >= threshold        -> delete ("at/above threshold")
  2. remaining capacity <= 0         -> delete ("no remaining capacity")
  3. otherwise                       -> keep   ("capacity available")

Reserved instances have no utilization signal: the overlay exists while at
least one reservation is active.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from analysis.capacity_model import AggregatedCapacity, CapacityFamily, GLOBAL_KEY

logger = logging.getLogger(__name__)

# Decision overlays never carry a real price; the autoscaler computes it.
PLACEHOLDER_PRICE = "0.00"

DEFAULT_THRESHOLD = 95.0

DEFAULT_WEIGHTS: Dict[CapacityFamily, int] = {
    CapacityFamily.RESERVED_INSTANCE: 30,
    CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN: 20,
    CapacityFamily.COMPUTE_SAVINGS_PLAN: 10,
}

DEFAULT_PREFIXES: Dict[CapacityFamily, str] = {
    CapacityFamily.RESERVED_INSTANCE: "cost-aware-ri",
    CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN: "cost-aware-ec2-sp",
    CapacityFamily.COMPUTE_SAVINGS_PLAN: "cost-aware-compute-sp",
}


@dataclass(frozen=True)
class Decision:
    name: str
    capacity_type: CapacityFamily
    should_exist: bool
    reason: str
    weight: int
    price: str = PLACEHOLDER_PRICE
    instance_family: str = ""
    instance_type: str = ""
    region: str = ""
    utilization_percent: Optional[float] = None
    remaining_capacity: float = 0.0
    count: int = 0


def _as_family_map(values: Optional[Dict], defaults: Dict[CapacityFamily, object]) -> Dict[CapacityFamily, object]:
    merged = dict(defaults)
    for key, value in (values or {}).items():
        merged[CapacityFamily(key)] = value
    return merged


class DecisionEngine:
    """Evaluate aggregated capacity against the utilization threshold.

    Args:
        threshold: Utilization percent at or above which overlays are removed
        weights: Overlay weight per capacity family (family or family value as key)
        prefixes: Overlay name prefix per capacity family
    """

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        weights: Optional[Dict] = None,
        prefixes: Optional[Dict] = None,
    ):
        self.threshold = float(threshold)
        self.weights = _as_family_map(weights, DEFAULT_WEIGHTS)
        self.prefixes = _as_family_map(prefixes, DEFAULT_PREFIXES)

    @classmethod
    def from_settings(cls, settings) -> "DecisionEngine":
        """Build an engine from config.OverlaySettings"""
        return cls(
            threshold=settings.utilization_threshold,
            weights=settings.weights,
            prefixes=settings.prefixes,
        )

    def overlay_name(self, family: CapacityFamily, key: Tuple[str, str]) -> str:
        prefix = self.prefixes[family]
        if family is CapacityFamily.COMPUTE_SAVINGS_PLAN:
            return f"{prefix}-global"
        scope, region = key
        return f"{prefix}-{scope}-{region}".lower()

    def _threshold_decision(self, name: str, agg: AggregatedCapacity, **scope) -> Decision:
        utilization = agg.utilization_percent if agg.utilization_percent is not None else 0.0
        if utilization >= self.threshold:
            should_exist = False
            reason = f"utilization {utilization:.1f}% at/above threshold {self.threshold:.1f}%"
        elif agg.remaining_capacity <= 0:
            # Negative remaining capacity (over-commitment) is treated as none
            should_exist = False
            reason = "no remaining capacity"
        else:
            should_exist = True
            reason = f"utilization {utilization:.1f}% below threshold {self.threshold:.1f}%, capacity available"

        return Decision(
            name=name,
            capacity_type=agg.family,
            should_exist=should_exist,
            reason=reason,
            weight=self.weights[agg.family],
            utilization_percent=utilization,
            remaining_capacity=agg.remaining_capacity,
            **scope,
        )

    def analyze_global(self, agg: AggregatedCapacity) -> Decision:
        """Decide the single global overlay for compute savings plans"""
        family = CapacityFamily.COMPUTE_SAVINGS_PLAN
        return self._threshold_decision(
            self.overlay_name(family, GLOBAL_KEY),
            AggregatedCapacity(
                family=family,
                key=GLOBAL_KEY,
                remaining_capacity=agg.remaining_capacity,
                utilization_percent=agg.utilization_percent,
                sample_count=agg.sample_count,
            ),
        )

    def analyze_regional(self, key: Tuple[str, str], agg: AggregatedCapacity) -> Decision:
        """Decide the overlay for one (instance family, region) savings plan key"""
        family = CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN
        instance_family, region = key
        return self._threshold_decision(
            self.overlay_name(family, key),
            AggregatedCapacity(
                family=family,
                key=key,
                remaining_capacity=agg.remaining_capacity,
                utilization_percent=agg.utilization_percent,
                sample_count=agg.sample_count,
            ),
            instance_family=instance_family,
            region=region,
        )

    def analyze_reserved_count(self, key: Tuple[str, str], count: int) -> Decision:
        """Decide the overlay for one (instance type, region) reserved instance key"""
        family = CapacityFamily.RESERVED_INSTANCE
        instance_type, region = key
        if count > 0:
            should_exist = True
            reason = f"{count} reserved instances available"
        else:
            should_exist = False
            reason = "no reserved instances available"
        return Decision(
            name=self.overlay_name(family, key),
            capacity_type=family,
            should_exist=should_exist,
            reason=reason,
            weight=self.weights[family],
            instance_type=instance_type,
            region=region,
            count=count,
        )

    def analyze(
        self,
        family: CapacityFamily,
        aggregated: Dict[Tuple[str, str], AggregatedCapacity],
    ) -> List[Decision]:
        """Decide every aggregated key of a family, ordered by overlay name"""
        decisions = []
        for key, agg in aggregated.items():
            if family is CapacityFamily.COMPUTE_SAVINGS_PLAN:
                decision = self.analyze_global(agg)
            elif family is CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN:
                decision = self.analyze_regional(key, agg)
            else:
                decision = self.analyze_reserved_count(key, agg.count)
            logger.debug(
                f"Decision {decision.name}: should_exist={decision.should_exist} ({decision.reason})"
            )
            decisions.append(decision)
        return sorted(decisions, key=lambda d: d.name)
