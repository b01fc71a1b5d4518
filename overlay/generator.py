"""
Render decisions and preferences into NodeOverlay specs.

Decision overlays pin a placeholder price for the capacity they describe;
preference overlays apply a percentage adjustment to the nodes of one
NodePool. In disabled mode both kinds are still created but can never
match a node.
"""
import logging
import re
from dataclasses import replace
from typing import Iterable, List, Optional, Union

import yaml

from analysis.capacity_model import CapacityFamily
from analysis.decision import Decision
from overlay.model import (
    CAPACITY_TYPE_LABEL,
    CAPACITY_TYPE_REQUIREMENT_KEY,
    DISABLED_LABEL,
    DISABLED_REQUIREMENT_KEY,
    INSTANCE_FAMILY_LABEL,
    INSTANCE_FAMILY_REQUIREMENT_KEY,
    INSTANCE_TYPE_LABEL,
    INSTANCE_TYPE_REQUIREMENT_KEY,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    NODEPOOL_REQUIREMENT_KEY,
    PREFERENCE_NUMBER_LABEL,
    REASON_LABEL,
    REGION_LABEL,
    SOURCE_LABEL,
    TYPE_LABEL,
    GeneratedOverlay,
    OverlayType,
    Requirement,
    RequirementOperator,
)
from preference.model import Preference
from preference.parser import format_price_adjustment

logger = logging.getLogger(__name__)

MAX_LABEL_VALUE_LENGTH = 63
DEFAULT_REASON_LABEL = "capacity-available"

_INVALID_LABEL_CHARS = re.compile(r"[^A-Za-z0-9\-_.]+")


def sanitize_label_value(value: str, default: str = DEFAULT_REASON_LABEL) -> str:
    """Squash free text into a valid Kubernetes label value"""
    sanitized = _INVALID_LABEL_CHARS.sub("-", value)
    while "--" in sanitized:
        sanitized = sanitized.replace("--", "-")
    sanitized = sanitized.strip("-_.")
    if len(sanitized) > MAX_LABEL_VALUE_LENGTH:
        sanitized = sanitized[:MAX_LABEL_VALUE_LENGTH].rstrip("-_.")
    return sanitized or default


def preference_overlay_name(nodepool_name: str, number: int) -> str:
    return f"pref-{nodepool_name}-{number}"


_ON_DEMAND = Requirement(CAPACITY_TYPE_REQUIREMENT_KEY, RequirementOperator.IN, ("on-demand",))


class OverlayGenerator:
    """Build GeneratedOverlay values, optionally in disabled mode."""

    def __init__(self, disabled: bool = False):
        self.disabled = disabled

    def generate(self, source: Union[Decision, Preference]) -> Optional[GeneratedOverlay]:
        if isinstance(source, Decision):
            return self.from_decision(source)
        if isinstance(source, Preference):
            return self.from_preference(source)
        raise TypeError(f"cannot generate an overlay from {type(source).__name__}")

    def generate_all(self, sources: Iterable[Union[Decision, Preference]]) -> List[GeneratedOverlay]:
        overlays = []
        for source in sources:
            overlay = self.generate(source)
            if overlay is not None:
                overlays.append(overlay)
        return overlays

    def from_decision(self, decision: Decision) -> Optional[GeneratedOverlay]:
        """Render a decision, or None when the overlay should not exist"""
        if not decision.should_exist:
            return None

        family = decision.capacity_type
        labels = {
            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
            TYPE_LABEL: OverlayType.COST_DECISION.value,
            SOURCE_LABEL: family.value,
            CAPACITY_TYPE_LABEL: family.value,
            REASON_LABEL: sanitize_label_value(decision.reason),
        }
        if family is CapacityFamily.COMPUTE_SAVINGS_PLAN:
            scope = Requirement(INSTANCE_FAMILY_REQUIREMENT_KEY, RequirementOperator.EXISTS)
        elif family is CapacityFamily.EC2_INSTANCE_SAVINGS_PLAN:
            scope = Requirement(
                INSTANCE_FAMILY_REQUIREMENT_KEY, RequirementOperator.IN, (decision.instance_family,)
            )
            labels[INSTANCE_FAMILY_LABEL] = decision.instance_family
            labels[REGION_LABEL] = decision.region
        else:
            scope = Requirement(
                INSTANCE_TYPE_REQUIREMENT_KEY, RequirementOperator.IN, (decision.instance_type,)
            )
            labels[INSTANCE_TYPE_LABEL] = decision.instance_type
            labels[REGION_LABEL] = decision.region

        overlay = GeneratedOverlay(
            name=decision.name,
            labels=labels,
            requirements=(scope, _ON_DEMAND),
            weight=decision.weight,
            price=decision.price,
        )
        return self._finalize(overlay)

    def from_preference(self, preference: Preference) -> GeneratedOverlay:
        requirements = [
            Requirement(NODEPOOL_REQUIREMENT_KEY, RequirementOperator.IN, (preference.nodepool_name,))
        ]
        for matcher in preference.matchers:
            requirements.append(Requirement(
                matcher.key, RequirementOperator(matcher.operator.value), tuple(matcher.values)
            ))

        overlay = GeneratedOverlay(
            name=preference_overlay_name(preference.nodepool_name, preference.number),
            labels={
                MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                TYPE_LABEL: OverlayType.PREFERENCE.value,
                SOURCE_LABEL: preference.nodepool_name,
                PREFERENCE_NUMBER_LABEL: str(preference.number),
            },
            requirements=tuple(requirements),
            weight=preference.number,
            price_adjustment=format_price_adjustment(preference.adjustment),
        )
        return self._finalize(overlay)

    def _finalize(self, overlay: GeneratedOverlay) -> GeneratedOverlay:
        """Apply disabled mode: identical for decision and preference overlays"""
        if not self.disabled:
            return overlay
        impossible = Requirement(DISABLED_REQUIREMENT_KEY, RequirementOperator.IN, ("true",))
        return replace(
            overlay,
            labels={**overlay.labels, DISABLED_LABEL: "true"},
            requirements=(impossible,) + overlay.requirements,
        )


def format_overlay_yaml(overlay: GeneratedOverlay) -> str:
    """Render an overlay manifest as YAML for debug output"""
    return yaml.safe_dump(overlay.to_manifest(), sort_keys=False, default_flow_style=False)
