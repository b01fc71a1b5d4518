"""Structured NodePool preferences parsed from annotations."""
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Tuple

# Annotation keys look like overlay-controller.io/preference.<N>
PREFERENCE_ANNOTATION_PREFIX = "overlay-controller.io/preference."

# Node labels a preference may match on
SUPPORTED_LABELS: FrozenSet[str] = frozenset({
    "karpenter.k8s.aws/instance-family",
    "karpenter.k8s.aws/instance-category",
    "karpenter.k8s.aws/instance-generation",
    "karpenter.k8s.aws/instance-size",
    "karpenter.k8s.aws/instance-cpu",
    "karpenter.k8s.aws/instance-cpu-manufacturer",
    "karpenter.k8s.aws/instance-memory",
    "kubernetes.io/arch",
    "karpenter.sh/capacity-type",
    "node.kubernetes.io/instance-type",
})


class MatchOperator(str, Enum):
    IN = "In"
    NOT_IN = "NotIn"
    GT = "Gt"
    LT = "Lt"

    @property
    def is_numeric(self) -> bool:
        return self in (MatchOperator.GT, MatchOperator.LT)


@dataclass(frozen=True)
class LabelMatcher:
    key: str
    operator: MatchOperator
    values: Tuple[str, ...]


@dataclass(frozen=True)
class Preference:
    """One parsed preference annotation.

    ``number`` orders processing and doubles as the overlay weight.
    ``adjustment`` is a signed percentage, e.g. -10.0 for a 10% discount.
    """
    number: int
    nodepool_name: str
    matchers: Tuple[LabelMatcher, ...]
    adjustment: float
    annotation_key: str = ""
