"""
Typed queries for the capacity metrics exported by Lumina.

Compute savings plans are global and are never filtered by account or
region. EC2 instance savings plans and reserved instances only count when
they belong to the configured account and region.

Only the hourly-commitment series carries the instance_family and region
labels of a savings plan, so remaining capacity and utilization are joined
to it through the savings plan ARN.
"""
import logging
from typing import Dict, List

from analysis.capacity_model import CapacityFamily, CapacitySample, SampleMetric
from metrics.prometheus_client import PrometheusClient, PrometheusQueryError, parse_vector_sample

logger = logging.getLogger(__name__)

METRIC_HOURLY_COMMITMENT = "savings_plan_hourly_commitment"
METRIC_REMAINING_CAPACITY = "savings_plan_remaining_capacity"
METRIC_UTILIZATION_PERCENT = "savings_plan_utilization_percent"
METRIC_RESERVED_INSTANCE = "ec2_reserved_instance"
METRIC_DATA_FRESHNESS = "lumina_data_freshness_seconds"

LABEL_TYPE = "type"
LABEL_ARN = "savings_plan_arn"
LABEL_ACCOUNT_ID = "account_id"
LABEL_REGION = "region"
LABEL_INSTANCE_FAMILY = "instance_family"
LABEL_INSTANCE_TYPE = "instance_type"
LABEL_AVAILABILITY_ZONE = "availability_zone"
LABEL_DATA_TYPE = "data_type"

SP_TYPE_COMPUTE = "compute"
SP_TYPE_EC2_INSTANCE = "ec2_instance"

# data_type label of the freshness series feeding each family
FRESHNESS_DATA_TYPES: Dict[CapacityFamily, str] = {
    CapacityFamily.COMPUTE_SAVINGS_PLAN: "savings_plans",
    CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN: "savings_plans",
    CapacityFamily.RESERVED_INSTANCE: "reserved_instances",
}


def _selector(metric: str, **labels: str) -> str:
    if not labels:
        return metric
    matchers = ", ".join(f'{key}="{value}"' for key, value in labels.items())
    return f"{metric}{{{matchers}}}"


class CapacityQueries:
    """Capacity queries scoped to one AWS account and region."""

    def __init__(self, client: PrometheusClient, account_id: str, region: str):
        self.client = client
        self.account_id = account_id
        self.region = region

    def query_capacity(self, family: CapacityFamily) -> List[CapacitySample]:
        if family is CapacityFamily.COMPUTE_SAVINGS_PLAN:
            return self.query_compute_savings_plans()
        if family is CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN:
            return self.query_ec2_instance_savings_plans()
        return self.query_reserved_instances()

    def query_compute_savings_plans(self) -> List[CapacitySample]:
        return self._query_savings_plans(
            CapacityFamily.COMPUTE_SAVINGS_PLAN,
            commitment=_selector(METRIC_HOURLY_COMMITMENT, type=SP_TYPE_COMPUTE),
            remaining=_selector(METRIC_REMAINING_CAPACITY, type=SP_TYPE_COMPUTE),
            utilization=_selector(METRIC_UTILIZATION_PERCENT, type=SP_TYPE_COMPUTE),
        )

    def query_ec2_instance_savings_plans(self) -> List[CapacitySample]:
        return self._query_savings_plans(
            CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN,
            commitment=_selector(
                METRIC_HOURLY_COMMITMENT,
                type=SP_TYPE_EC2_INSTANCE,
                account_id=self.account_id,
                region=self.region,
            ),
            # Remaining capacity and utilization have no region label; the
            # ARN join against the commitment series applies the region scope.
            remaining=_selector(
                METRIC_REMAINING_CAPACITY, type=SP_TYPE_EC2_INSTANCE, account_id=self.account_id
            ),
            utilization=_selector(
                METRIC_UTILIZATION_PERCENT, type=SP_TYPE_EC2_INSTANCE, account_id=self.account_id
            ),
        )

    def _query_savings_plans(
        self,
        family: CapacityFamily,
        commitment: str,
        remaining: str,
        utilization: str,
    ) -> List[CapacitySample]:
        plans: Dict[str, Dict[str, str]] = {}
        for raw in self.client.query_instant(commitment):
            labels, _, _ = parse_vector_sample(raw)
            arn = labels.get(LABEL_ARN, "")
            if not arn:
                logger.warning(f"Skipping {METRIC_HOURLY_COMMITMENT} series without {LABEL_ARN}: {labels}")
                continue
            plans[arn] = labels

        samples: List[CapacitySample] = []
        for query, metric in (
            (remaining, SampleMetric.REMAINING_CAPACITY),
            (utilization, SampleMetric.UTILIZATION_PERCENT),
        ):
            for raw in self.client.query_instant(query):
                labels, ts, value = parse_vector_sample(raw)
                arn = labels.get(LABEL_ARN, "")
                plan = plans.get(arn)
                if plan is None:
                    logger.debug(f"No {family.value} commitment matches {arn!r} for {metric.value}, ignoring")
                    continue
                region = "" if family is CapacityFamily.COMPUTE_SAVINGS_PLAN else plan.get(LABEL_REGION, "")
                instance_family = "" if family is CapacityFamily.COMPUTE_SAVINGS_PLAN else plan.get(LABEL_INSTANCE_FAMILY, "")
                samples.append(CapacitySample(
                    family=family,
                    metric=metric,
                    value=value,
                    timestamp=ts,
                    instance_family=instance_family,
                    region=region,
                    source_id=arn,
                ))

        logger.debug(f"{family.value}: {len(plans)} plan(s), {len(samples)} sample(s)")
        return samples

    def query_reserved_instances(self) -> List[CapacitySample]:
        query = _selector(METRIC_RESERVED_INSTANCE, account_id=self.account_id, region=self.region)
        samples = []
        for raw in self.client.query_instant(query):
            labels, ts, value = parse_vector_sample(raw)
            samples.append(CapacitySample(
                family=CapacityFamily.RESERVED_INSTANCE,
                metric=SampleMetric.RESERVED_COUNT,
                value=value,
                timestamp=ts,
                instance_type=labels.get(LABEL_INSTANCE_TYPE, ""),
                region=labels.get(LABEL_REGION, self.region),
                availability_zone=labels.get(LABEL_AVAILABILITY_ZONE, ""),
            ))
        return samples

    def query_data_freshness(self, family: CapacityFamily) -> float:
        """
        Age in seconds of the data backing a capacity family.

        Series labelled with the family's data_type are preferred; otherwise
        the oldest unlabelled series is used.

        Raises:
            PrometheusError: If the query fails or no freshness series exists
        """
        results = [parse_vector_sample(raw) for raw in self.client.query_instant(METRIC_DATA_FRESHNESS)]
        data_type = FRESHNESS_DATA_TYPES[family]
        matching = [value for labels, _, value in results if labels.get(LABEL_DATA_TYPE) == data_type]
        if not matching:
            matching = [value for labels, _, value in results if not labels.get(LABEL_DATA_TYPE)]
        if not matching:
            raise PrometheusQueryError(f"no {METRIC_DATA_FRESHNESS} series for {family.value}")
        return max(matching)
