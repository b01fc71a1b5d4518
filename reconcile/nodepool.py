"""
Preference-path loop: NodePool annotations -> preference overlays.

Every NodePool owns the overlays generated from its annotations (owner
reference plus the source label). When a NodePool disappears its overlays
are removed, either by the API server's garbage collector or by the
cleanup performed here.

Events are partitioned by NodePool name onto single-threaded workers, so
two events for the same NodePool never run concurrently.
"""
import logging
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional

from kube.store import (
    NotFoundError,
    OverlayStore,
    StoreError,
    object_annotations,
    object_name,
    object_uid,
)
from overlay.generator import OverlayGenerator
from overlay.model import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    NODEPOOL_API_VERSION,
    OVERLAY_API_GROUP,
    SOURCE_LABEL,
    TYPE_LABEL,
    OverlayType,
    owner_reference,
    source_nodepool,
)
from preference.parser import parse_nodepool_preferences
from reconcile.differ import (
    ReconciliationCancelled,
    ReconciliationError,
    ReconciliationResult,
    reconcile_overlays,
)

logger = logging.getLogger(__name__)

LOOP_NAME = "nodepool"
SOURCE = OverlayType.PREFERENCE.value


def preference_selector(nodepool_name: Optional[str] = None) -> Dict[str, str]:
    selector = {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        TYPE_LABEL: OverlayType.PREFERENCE.value,
    }
    if nodepool_name:
        selector[SOURCE_LABEL] = nodepool_name
    return selector


def nodepool_owner_reference(nodepool: Dict[str, Any]) -> Dict[str, Any]:
    return owner_reference(
        f"{OVERLAY_API_GROUP}/{NODEPOOL_API_VERSION}",
        "NodePool",
        object_name(nodepool),
        object_uid(nodepool),
        controller=True,
    )


class NodePoolReconciler:
    """Reconcile the preference overlays of NodePools.

    Args:
        store: Object store holding NodePools and overlays
        generator: Overlay generator (disabled mode)
        recorder: MetricsRecorder
        controller_owner: Optional owner reference to the controller Deployment
        status: Optional ControllerStatus
    """

    def __init__(
        self,
        store: OverlayStore,
        generator: OverlayGenerator,
        recorder,
        controller_owner: Optional[Dict[str, Any]] = None,
        status=None,
    ):
        self.store = store
        self.generator = generator
        self.recorder = recorder
        self.controller_owner = controller_owner
        self.status = status

    def reconcile(self, name: str, stop_event: Optional[threading.Event] = None) -> ReconciliationResult:
        """Fetch a NodePool by name and reconcile it; a missing NodePool is cleaned up"""
        try:
            nodepool = self.store.get_nodepool(name)
        except NotFoundError:
            logger.info(f"NodePool {name} not found, cleaning up its overlays")
            return self.cleanup(name, stop_event)
        return self.reconcile_nodepool(nodepool, stop_event)

    def reconcile_nodepool(
        self,
        nodepool: Dict[str, Any],
        stop_event: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        """
        Raises:
            ReconciliationError: If the NodePool's overlays cannot be listed
            ReconciliationCancelled: If stop_event is set during the pass
        """
        name = object_name(nodepool)
        started = time.monotonic()

        preferences, errors = parse_nodepool_preferences(object_annotations(nodepool), name)
        for error in errors:
            logger.warning(f"NodePool {name}: {error}")
            self.recorder.record_preference_parse_error(name)

        owners = [nodepool_owner_reference(nodepool)]
        if self.controller_owner:
            owners.append(self.controller_owner)
        desired = [
            overlay.with_owner_references(*owners)
            for overlay in self.generator.generate_all(preferences)
        ]

        result = reconcile_overlays(
            self.store, desired, preference_selector(name), SOURCE,
            recorder=self.recorder, stop_event=stop_event,
        )
        self.recorder.record_reconciliation(
            LOOP_NAME, "success" if result.errors == 0 else "error", time.monotonic() - started
        )
        if self.status is not None:
            self.status.record_nodepool(name, {
                "preferences": len(preferences),
                "parse_errors": [str(e) for e in errors],
                **result.to_dict(),
            })
        return result

    def cleanup(self, name: str, stop_event: Optional[threading.Event] = None) -> ReconciliationResult:
        """Delete every preference overlay generated from NodePool ``name``"""
        result = reconcile_overlays(
            self.store, [], preference_selector(name), SOURCE,
            recorder=self.recorder, stop_event=stop_event,
        )
        if self.status is not None:
            self.status.forget_nodepool(name)
        return result

    def orphaned_sources(self, live_nodepools: List[str]) -> List[str]:
        """NodePool names referenced by preference overlays but absent from ``live_nodepools``

        Raises:
            ReconciliationError: If the overlays cannot be listed
        """
        try:
            overlays = self.store.list_overlays(preference_selector())
        except StoreError as e:
            raise ReconciliationError(f"[{SOURCE}] listing overlays failed: {e}") from e
        self.recorder.set_active_overlays(SOURCE, len(overlays))

        live = set(live_nodepools)
        sources = {source_nodepool(o) for o in overlays}
        return sorted(name for name in sources if name and name not in live)

    def resync(self, stop_event: Optional[threading.Event] = None) -> ReconciliationResult:
        """Reconcile every NodePool in turn, then sweep orphaned overlays.

        Orphans are re-checked by name, so a NodePool created after the
        listing keeps its overlays.

        Raises:
            StoreError: If NodePools cannot be listed
            ReconciliationError: If preference overlays cannot be listed
        """
        nodepools = self.store.list_nodepools()
        total = ReconciliationResult()
        for nodepool in nodepools:
            if stop_event is not None and stop_event.is_set():
                raise ReconciliationCancelled("stop requested")
            try:
                total.merge(self.reconcile_nodepool(nodepool, stop_event))
            except ReconciliationError as e:
                logger.error(str(e))
                total.errors += 1
        for name in self.orphaned_sources([object_name(np) for np in nodepools]):
            logger.info(f"Overlays reference missing NodePool {name}, re-checking")
            total.merge(self.reconcile(name, stop_event))
        logger.info(f"Resynced {len(nodepools)} NodePool(s): {total.changes} change(s), {total.errors} error(s)")
        return total

    def handle_event(self, event: Dict[str, Any], stop_event: Optional[threading.Event] = None) -> None:
        """Process one watch event; failures are logged and retried on the next event or resync

        ``RESYNC`` events carry only a name and re-read the NodePool first.
        """
        event_type = event.get("type")
        obj = event.get("object") or {}
        name = object_name(obj)
        if not name:
            return
        try:
            if event_type == "DELETED":
                logger.info(f"NodePool {name} deleted")
                self.cleanup(name, stop_event)
            elif event_type in ("ADDED", "MODIFIED"):
                self.reconcile_nodepool(obj, stop_event)
            elif event_type == "RESYNC":
                self.reconcile(name, stop_event)
        except ReconciliationCancelled:
            logger.debug(f"Reconciliation of NodePool {name} cancelled")
        except Exception as e:
            logger.error(f"Reconciliation of NodePool {name} failed: {e}")
            self.recorder.record_reconciliation(LOOP_NAME, "error", 0.0)


class NodePoolController:
    """Watch NodePools and dispatch their events to partitioned workers.

    Args:
        reconciler: NodePoolReconciler doing the work
        workers: Number of single-threaded partitions
        resync_interval: Seconds between full resyncs
        watch_timeout: Server-side watch timeout in seconds
        retry_backoff: Seconds to wait after a failed watch or resync
    """

    def __init__(
        self,
        reconciler: NodePoolReconciler,
        workers: int = 4,
        resync_interval: float = 600.0,
        watch_timeout: int = 300,
        retry_backoff: float = 5.0,
    ):
        self.reconciler = reconciler
        self.workers = max(1, workers)
        self.resync_interval = resync_interval
        self.watch_timeout = watch_timeout
        self.retry_backoff = retry_backoff
        self._executors: List[ThreadPoolExecutor] = []

    def _partition(self, name: str) -> ThreadPoolExecutor:
        return self._executors[zlib.crc32(name.encode("utf-8")) % len(self._executors)]

    def dispatch(self, event: Dict[str, Any], stop_event: threading.Event):
        name = object_name(event.get("object") or {})
        return self._partition(name).submit(self.reconciler.handle_event, event, stop_event)

    def _resync(self, stop_event: threading.Event) -> bool:
        """Queue every NodePool and every orphaned overlay source on its partition"""
        try:
            nodepools = self.reconciler.store.list_nodepools()
            futures = [self.dispatch({"type": "MODIFIED", "object": np}, stop_event) for np in nodepools]
            orphans = self.reconciler.orphaned_sources([object_name(np) for np in nodepools])
        except Exception as e:
            logger.error(f"NodePool resync failed: {e}")
            return False

        futures.extend(
            self.dispatch({"type": "RESYNC", "object": {"metadata": {"name": name}}}, stop_event)
            for name in orphans
        )
        wait(futures)
        logger.info(f"Resynced {len(nodepools)} NodePool(s), {len(orphans)} orphaned source(s)")
        return True

    def run(self, stop_event: threading.Event) -> None:
        logger.info(f"NodePool controller started (workers={self.workers})")
        self._executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"nodepool-{i}")
            for i in range(self.workers)
        ]
        try:
            while not stop_event.is_set() and not self._resync(stop_event):
                stop_event.wait(self.retry_backoff)
            last_resync = time.monotonic()

            while not stop_event.is_set():
                try:
                    for event in self.reconciler.store.watch_nodepools(stop_event, self.watch_timeout):
                        self.dispatch(event, stop_event)
                        if time.monotonic() - last_resync >= self.resync_interval:
                            break
                except Exception as e:
                    logger.error(f"NodePool watch failed, restarting in {self.retry_backoff:.0f}s: {e}")
                    stop_event.wait(self.retry_backoff)
                    continue

                if not stop_event.is_set() and time.monotonic() - last_resync >= self.resync_interval:
                    if self._resync(stop_event):
                        last_resync = time.monotonic()
        finally:
            for executor in self._executors:
                executor.shutdown(wait=True)
            logger.info("NodePool controller stopped")
