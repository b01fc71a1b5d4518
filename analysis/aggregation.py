"""
Capacity aggregation: collapse raw capacity samples into one row per grouping key.

Several savings plans may cover the same key (or the same reserved instance
type may be bought in several availability zones); without aggregation they
would produce duplicate overlay names.
"""
import logging
from collections import OrderedDict
from typing import Dict, Iterable, Tuple

from analysis.capacity_model import (
    AggregatedCapacity,
    CapacityFamily,
    CapacitySample,
    SampleMetric,
    GLOBAL_KEY,
)

logger = logging.getLogger(__name__)


def capacity_key(sample: CapacitySample) -> Tuple[str, str]:
    """Grouping key for a sample: global, (family, region) or (instance type, region)"""
    if sample.family is CapacityFamily.COMPUTE_SAVINGS_PLAN:
        return GLOBAL_KEY
    if sample.family is CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN:
        return (sample.instance_family, sample.region)
    return (sample.instance_type, sample.region)


def _is_complete_key(family: CapacityFamily, key: Tuple[str, str]) -> bool:
    if family is CapacityFamily.COMPUTE_SAVINGS_PLAN:
        return True
    return bool(key[0]) and bool(key[1])


def aggregate_capacity(
    samples: Iterable[CapacitySample],
    family: CapacityFamily,
) -> Dict[Tuple[str, str], AggregatedCapacity]:
    """Aggregate samples of one capacity family by grouping key.

    Remaining capacity and reserved counts are summed. Utilization is taken
    from the utilization sample of the key; if several are present the most
    recent one wins, and on equal timestamps the higher value wins.

    Savings-plan keys that never received a utilization sample are left out:
    without utilization the threshold rule cannot be evaluated.

    Args:
        samples: Raw samples, possibly mixed with other families
        family: The capacity family to aggregate

    Returns:
        Mapping of grouping key to AggregatedCapacity (empty for no samples)
    """
    remaining: Dict[Tuple[str, str], float] = OrderedDict()
    counts: Dict[Tuple[str, str], float] = {}
    sample_counts: Dict[Tuple[str, str], int] = {}
    utilization: Dict[Tuple[str, str], CapacitySample] = {}

    for sample in samples:
        if sample.family is not family:
            continue
        key = capacity_key(sample)
        if not _is_complete_key(family, key):
            logger.warning(
                f"Ignoring {family.value} sample with incomplete key {key} "
                f"(source={sample.source_id or 'unknown'})"
            )
            continue

        remaining.setdefault(key, 0.0)
        sample_counts[key] = sample_counts.get(key, 0) + 1

        if sample.metric is SampleMetric.REMAINING_CAPACITY:
            remaining[key] += sample.value
        elif sample.metric is SampleMetric.RESERVED_COUNT:
            counts[key] = counts.get(key, 0.0) + sample.value
        elif sample.metric is SampleMetric.UTILIZATION_PERCENT:
            current = utilization.get(key)
            if current is None or (sample.timestamp, sample.value) > (current.timestamp, current.value):
                utilization[key] = sample

    result: Dict[Tuple[str, str], AggregatedCapacity] = {}
    for key, total_remaining in remaining.items():
        if family is CapacityFamily.RESERVED_INSTANCE:
            result[key] = AggregatedCapacity(
                family=family,
                key=key,
                count=int(round(counts.get(key, 0.0))),
                sample_count=sample_counts[key],
            )
            continue

        util_sample = utilization.get(key)
        if util_sample is None:
            logger.debug(f"No utilization sample for {family.value} key {key}, skipping")
            continue
        result[key] = AggregatedCapacity(
            family=family,
            key=key,
            remaining_capacity=total_remaining,
            utilization_percent=util_sample.value,
            sample_count=sample_counts[key],
        )

    return result
