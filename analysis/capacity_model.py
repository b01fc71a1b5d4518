"""Capacity records shared by the metrics queries, the aggregator and the decision engine."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class CapacityFamily(str, Enum):
    """Kinds of pre-paid capacity. Values double as overlay capacity-type labels."""
    COMPUTE_SAVINGS_PLAN = "compute-savings-plan"
    EC2_INSTANCE_SAVINGS_PLAN = "ec2-instance-savings-plan"
    RESERVED_INSTANCE = "reserved-instance"

    @property
    def is_savings_plan(self) -> bool:
        return self is not CapacityFamily.RESERVED_INSTANCE


class SampleMetric(str, Enum):
    REMAINING_CAPACITY = "remaining_capacity"    # $/hour
    UTILIZATION_PERCENT = "utilization_percent"  # 0-100+
    RESERVED_COUNT = "reserved_count"


# Grouping key used for globally scoped capacity
GLOBAL_KEY: Tuple[str, str] = ("", "")


@dataclass(frozen=True)
class CapacitySample:
    """One observed data point for a capacity family."""
    family: CapacityFamily
    metric: SampleMetric
    value: float
    timestamp: float = 0.0
    instance_family: str = ""
    instance_type: str = ""
    region: str = ""
    availability_zone: str = ""
    source_id: str = ""  # savings plan ARN or reservation id, for logs only


@dataclass(frozen=True)
class AggregatedCapacity:
    """Summary of every sample sharing a grouping key.

    Utilization above 100 is legal and means the commitment is exhausted and
    usage spills over to on-demand rates.
    """
    family: CapacityFamily
    key: Tuple[str, str]
    remaining_capacity: float = 0.0
    utilization_percent: Optional[float] = None
    count: int = 0
    sample_count: int = 0

    @property
    def instance_family(self) -> str:
        if self.family is CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN:
            return self.key[0]
        return ""

    @property
    def instance_type(self) -> str:
        if self.family is CapacityFamily.RESERVED_INSTANCE:
            return self.key[0]
        return ""

    @property
    def region(self) -> str:
        return self.key[1]
