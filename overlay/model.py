"""
Generated overlay objects and their mapping to Karpenter NodeOverlay manifests.

The controller works on GeneratedOverlay values. Conversion to and from
Kubernetes dictionaries happens only at the object-store boundary.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

OVERLAY_API_GROUP = "karpenter.sh"
OVERLAY_API_VERSION = "v1alpha1"
OVERLAY_KIND = "NodeOverlay"
OVERLAY_PLURAL = "nodeoverlays"

NODEPOOL_API_VERSION = "v1"
NODEPOOL_PLURAL = "nodepools"

# =============================================================================
# Labels
# =============================================================================
LABEL_PREFIX = "overlay-controller.io"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "overlay-controller"

TYPE_LABEL = f"{LABEL_PREFIX}/type"
SOURCE_LABEL = f"{LABEL_PREFIX}/source"
CAPACITY_TYPE_LABEL = f"{LABEL_PREFIX}/capacity-type"
PREFERENCE_NUMBER_LABEL = f"{LABEL_PREFIX}/preference-number"
INSTANCE_FAMILY_LABEL = f"{LABEL_PREFIX}/instance-family"
INSTANCE_TYPE_LABEL = f"{LABEL_PREFIX}/instance-type"
REGION_LABEL = f"{LABEL_PREFIX}/region"
REASON_LABEL = f"{LABEL_PREFIX}/optimization-reason"
DISABLED_LABEL = f"{LABEL_PREFIX}/disabled"

# Scheduling-side labels used in requirements
NODEPOOL_REQUIREMENT_KEY = "karpenter.sh/nodepool"
CAPACITY_TYPE_REQUIREMENT_KEY = "karpenter.sh/capacity-type"
INSTANCE_FAMILY_REQUIREMENT_KEY = "karpenter.k8s.aws/instance-family"
INSTANCE_TYPE_REQUIREMENT_KEY = "node.kubernetes.io/instance-type"
# No node carries this label, so a requirement on it never matches
DISABLED_REQUIREMENT_KEY = DISABLED_LABEL


class OverlayType(str, Enum):
    COST_DECISION = "cost-decision"
    PREFERENCE = "preference"


class RequirementOperator(str, Enum):
    IN = "In"
    NOT_IN = "NotIn"
    GT = "Gt"
    LT = "Lt"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: RequirementOperator
    values: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"key": self.key, "operator": self.operator.value}
        if self.values:
            data["values"] = list(self.values)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Requirement":
        return cls(
            key=data.get("key", ""),
            operator=RequirementOperator(data.get("operator")),
            values=tuple(data.get("values") or ()),
        )


def owner_reference(api_version: str, kind: str, name: str, uid: str, controller: bool = False) -> Dict[str, Any]:
    ref = {"apiVersion": api_version, "kind": kind, "name": name, "uid": uid}
    if controller:
        ref["controller"] = True
        ref["blockOwnerDeletion"] = True
    return ref


@dataclass(frozen=True)
class GeneratedOverlay:
    """A desired (or observed) NodeOverlay.

    Exactly one of ``price`` and ``price_adjustment`` is set. ``resource_version``
    is only present on objects read back from the store.
    """
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    requirements: Tuple[Requirement, ...] = ()
    weight: int = 1
    price: Optional[str] = None
    price_adjustment: Optional[str] = None
    owner_references: Tuple[Dict[str, Any], ...] = ()
    resource_version: Optional[str] = None

    @property
    def overlay_type(self) -> Optional[OverlayType]:
        value = self.labels.get(TYPE_LABEL)
        try:
            return OverlayType(value)
        except ValueError:
            return None

    @property
    def is_managed(self) -> bool:
        return self.labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE

    @property
    def source(self) -> str:
        return self.labels.get(SOURCE_LABEL, "")

    def with_owner_references(self, *refs: Dict[str, Any]) -> "GeneratedOverlay":
        existing = {r.get("uid") for r in self.owner_references}
        added = tuple(r for r in refs if r and r.get("uid") not in existing)
        return replace(self, owner_references=self.owner_references + added)

    def with_resource_version(self, resource_version: Optional[str]) -> "GeneratedOverlay":
        return replace(self, resource_version=resource_version)

    def to_manifest(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name, "labels": dict(self.labels)}
        if self.owner_references:
            metadata["ownerReferences"] = [dict(r) for r in self.owner_references]
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version

        spec: Dict[str, Any] = {
            "requirements": [r.to_dict() for r in self.requirements],
            "weight": self.weight,
        }
        if self.price is not None:
            spec["price"] = self.price
        if self.price_adjustment is not None:
            spec["priceAdjustment"] = self.price_adjustment

        return {
            "apiVersion": f"{OVERLAY_API_GROUP}/{OVERLAY_API_VERSION}",
            "kind": OVERLAY_KIND,
            "metadata": metadata,
            "spec": spec,
        }

    @classmethod
    def from_manifest(cls, obj: Dict[str, Any]) -> "GeneratedOverlay":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            labels=dict(metadata.get("labels") or {}),
            requirements=tuple(Requirement.from_dict(r) for r in spec.get("requirements") or ()),
            weight=int(spec.get("weight") or 0),
            price=spec.get("price"),
            price_adjustment=spec.get("priceAdjustment"),
            owner_references=tuple(dict(r) for r in metadata.get("ownerReferences") or ()),
            resource_version=metadata.get("resourceVersion"),
        )


def is_preference_overlay(overlay: GeneratedOverlay) -> bool:
    return overlay.is_managed and overlay.overlay_type is OverlayType.PREFERENCE


def source_nodepool(overlay: GeneratedOverlay) -> Optional[str]:
    """Name of the NodePool a preference overlay was generated from"""
    if not is_preference_overlay(overlay):
        return None
    return overlay.source or None


def preference_number(overlay: GeneratedOverlay) -> Optional[int]:
    value = overlay.labels.get(PREFERENCE_NUMBER_LABEL, "")
    return int(value) if value.isdigit() else None
