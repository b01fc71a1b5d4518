"""Field-by-field comparison of an observed overlay against the desired one."""
from typing import List

from overlay.model import GeneratedOverlay


def overlay_differences(existing: GeneratedOverlay, desired: GeneratedOverlay) -> List[str]:
    """Names of the fields that must change for ``existing`` to match ``desired``.

    Labels only need to contain the desired labels; extra labels on the
    existing object are ignored. Owner references only need to contain the
    desired references (matched by uid).
    """
    diffs = []
    if tuple(existing.requirements) != tuple(desired.requirements):
        diffs.append("requirements")
    if existing.weight != desired.weight:
        diffs.append("weight")
    if existing.price != desired.price:
        diffs.append("price")
    if existing.price_adjustment != desired.price_adjustment:
        diffs.append("priceAdjustment")
    for key, value in desired.labels.items():
        if existing.labels.get(key) != value:
            diffs.append(f"labels[{key}]")
    existing_uids = {r.get("uid") for r in existing.owner_references}
    if any(r.get("uid") not in existing_uids for r in desired.owner_references):
        diffs.append("ownerReferences")
    return diffs


def overlay_needs_update(existing: GeneratedOverlay, desired: GeneratedOverlay) -> bool:
    return bool(overlay_differences(existing, desired))
