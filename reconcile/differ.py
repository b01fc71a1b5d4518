"""
Reconciliation differ/applier: bring the overlays matching a label selector
in line with a desired set.

A failed list aborts the pass (ReconciliationError). Every other failure is
per object: it is logged and counted, and the remaining operations still run.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from kube.store import NotFoundError, OverlayStore, StoreError
from overlay.compare import overlay_differences
from overlay.generator import format_overlay_yaml
from overlay.model import GeneratedOverlay
from overlay.validation import OverlayValidationError, ensure_valid

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """The pass could not start (existing overlays could not be listed)"""
    pass


class ReconciliationCancelled(Exception):
    """The stop signal was set while the pass was running"""
    pass


@dataclass
class ReconciliationPlan:
    create: List[GeneratedOverlay] = field(default_factory=list)
    update: List[Tuple[GeneratedOverlay, GeneratedOverlay]] = field(default_factory=list)  # (existing, desired)
    delete: List[GeneratedOverlay] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.create or self.update or self.delete)


@dataclass
class ReconciliationResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted

    def merge(self, other: "ReconciliationResult") -> "ReconciliationResult":
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted
        self.unchanged += other.unchanged
        self.errors += other.errors
        self.error_messages.extend(other.error_messages)
        return self

    def to_dict(self) -> Dict[str, object]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "errors": self.errors,
            "error_messages": list(self.error_messages),
        }


def plan_reconciliation(
    desired: Sequence[GeneratedOverlay],
    existing: Sequence[GeneratedOverlay],
) -> ReconciliationPlan:
    """Compute the operations that turn ``existing`` into ``desired``.

    Overlays only present in ``existing`` are deleted only while they still
    carry the managed-by label.
    """
    plan = ReconciliationPlan()
    existing_by_name = {o.name: o for o in existing}
    desired_names = set()

    for overlay in desired:
        if overlay.name in desired_names:
            logger.warning(f"Duplicate desired overlay {overlay.name}, keeping the first")
            continue
        desired_names.add(overlay.name)

        current = existing_by_name.get(overlay.name)
        if current is None:
            plan.create.append(overlay)
            continue
        diffs = overlay_differences(current, overlay)
        if diffs:
            logger.debug(f"Overlay {overlay.name} differs in {', '.join(diffs)}")
            plan.update.append((current, overlay))
        else:
            plan.unchanged.append(overlay.name)

    for current in existing:
        if current.name in desired_names:
            continue
        if not current.is_managed:
            logger.warning(f"Overlay {current.name} lost its managed-by label, leaving it alone")
            continue
        plan.delete.append(current)

    return plan


def _check_stop(stop_event: Optional[threading.Event]) -> None:
    if stop_event is not None and stop_event.is_set():
        raise ReconciliationCancelled("stop requested")


def apply_plan(
    store: OverlayStore,
    plan: ReconciliationPlan,
    source: str,
    recorder=None,
    stop_event: Optional[threading.Event] = None,
) -> ReconciliationResult:
    """Execute a plan; each operation succeeds or fails on its own.

    Raises:
        ReconciliationCancelled: If stop_event is set between operations
    """
    result = ReconciliationResult(unchanged=len(plan.unchanged))

    def _failed(operation: str, name: str, error: Exception) -> None:
        logger.error(f"[{source}] Failed to {operation} overlay {name}: {error}")
        result.errors += 1
        result.error_messages.append(f"{operation} {name}: {error}")
        if recorder is not None:
            recorder.record_overlay_error(operation, type(error).__name__)

    def _succeeded(operation: str) -> None:
        if recorder is not None:
            recorder.record_overlay_operation(operation, source)

    for overlay in plan.create:
        _check_stop(stop_event)
        logger.debug(f"[{source}] Creating overlay:\n{format_overlay_yaml(overlay)}")
        try:
            ensure_valid(overlay)
            store.create_overlay(overlay)
        except (OverlayValidationError, StoreError) as e:
            _failed("create", overlay.name, e)
            continue
        logger.info(f"[{source}] Created overlay {overlay.name}")
        result.created += 1
        _succeeded("create")

    for current, overlay in plan.update:
        _check_stop(stop_event)
        try:
            ensure_valid(overlay)
            store.update_overlay(overlay.with_resource_version(current.resource_version))
        except (OverlayValidationError, StoreError) as e:
            _failed("update", overlay.name, e)
            continue
        logger.info(f"[{source}] Updated overlay {overlay.name}")
        result.updated += 1
        _succeeded("update")

    for overlay in plan.delete:
        _check_stop(stop_event)
        try:
            store.delete_overlay(overlay.name)
        except NotFoundError:
            logger.debug(f"[{source}] Overlay {overlay.name} already gone")
            continue
        except StoreError as e:
            _failed("delete", overlay.name, e)
            continue
        logger.info(f"[{source}] Deleted overlay {overlay.name}")
        result.deleted += 1
        _succeeded("delete")

    return result


def reconcile_overlays(
    store: OverlayStore,
    desired: Sequence[GeneratedOverlay],
    selector: Dict[str, str],
    source: str,
    recorder=None,
    stop_event: Optional[threading.Event] = None,
) -> ReconciliationResult:
    """List the overlays matching ``selector`` and reconcile them against ``desired``.

    Raises:
        ReconciliationError: If the existing overlays cannot be listed
        ReconciliationCancelled: If stop_event is set during the pass
    """
    _check_stop(stop_event)
    try:
        existing = store.list_overlays(selector)
    except StoreError as e:
        raise ReconciliationError(f"[{source}] listing overlays failed: {e}") from e

    plan = plan_reconciliation(desired, existing)
    if plan.is_empty:
        logger.debug(f"[{source}] {len(plan.unchanged)} overlay(s) up to date")
    result = apply_plan(store, plan, source, recorder=recorder, stop_event=stop_event)
    logger.info(
        f"[{source}] Reconciled overlays: created={result.created} updated={result.updated} "
        f"deleted={result.deleted} unchanged={result.unchanged} errors={result.errors}"
    )
    return result
