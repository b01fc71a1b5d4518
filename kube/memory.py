"""
In-memory object store for local runs and tests.

Mirrors the API server behaviour the controller relies on: label-selector
listing, resource versions checked on update, and garbage collection of
overlays owned by a deleted NodePool.
"""
import copy
import itertools
import queue
import threading
import time
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kube.store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OverlayStore,
    matches_selector,
    object_name,
)
from overlay.model import GeneratedOverlay

# Queue poll interval; bounds how long a stop request waits for an idle watch
WATCH_POLL_SECONDS = 0.1


class InMemoryOverlayStore(OverlayStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._overlays: Dict[str, GeneratedOverlay] = {}
        self._nodepools: Dict[str, Dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._events: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._failures: Dict[Tuple[str, str], Exception] = {}
        self.calls: List[Tuple[str, str]] = []

    def inject_failure(self, operation: str, name: str, error: Exception) -> None:
        """Make the next ``operation`` on ``name`` raise ``error`` (name "*" matches any)"""
        with self._lock:
            self._failures[(operation, name)] = error

    def _check_failure(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        for key in ((operation, name), (operation, "*")):
            error = self._failures.pop(key, None)
            if error is not None:
                raise error

    def _next_version(self) -> str:
        return str(next(self._versions))

    # -------------------------------------------------------------------------
    # NodeOverlays
    # -------------------------------------------------------------------------
    def list_overlays(self, selector: Dict[str, str]) -> List[GeneratedOverlay]:
        with self._lock:
            self._check_failure("list", "*")
            return sorted(
                (o for o in self._overlays.values() if matches_selector(o.labels, selector)),
                key=lambda o: o.name,
            )

    def get_overlay(self, name: str) -> GeneratedOverlay:
        with self._lock:
            self._check_failure("get", name)
            if name not in self._overlays:
                raise NotFoundError(f"nodeoverlay {name}: not found")
            return self._overlays[name]

    def create_overlay(self, overlay: GeneratedOverlay) -> GeneratedOverlay:
        with self._lock:
            self._check_failure("create", overlay.name)
            if overlay.name in self._overlays:
                raise AlreadyExistsError(f"nodeoverlay {overlay.name}: already exists")
            stored = overlay.with_resource_version(self._next_version())
            self._overlays[overlay.name] = stored
            return stored

    def update_overlay(self, overlay: GeneratedOverlay) -> GeneratedOverlay:
        with self._lock:
            self._check_failure("update", overlay.name)
            current = self._overlays.get(overlay.name)
            if current is None:
                raise NotFoundError(f"nodeoverlay {overlay.name}: not found")
            if overlay.resource_version and overlay.resource_version != current.resource_version:
                raise ConflictError(
                    f"nodeoverlay {overlay.name}: resource version {overlay.resource_version} "
                    f"is stale (current {current.resource_version})"
                )
            stored = overlay.with_resource_version(self._next_version())
            self._overlays[overlay.name] = stored
            return stored

    def delete_overlay(self, name: str) -> None:
        with self._lock:
            self._check_failure("delete", name)
            if self._overlays.pop(name, None) is None:
                raise NotFoundError(f"nodeoverlay {name}: not found")

    def overlay_names(self) -> List[str]:
        with self._lock:
            return sorted(self._overlays)

    # -------------------------------------------------------------------------
    # NodePools
    # -------------------------------------------------------------------------
    def add_nodepool(self, name: str, annotations: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create or update a NodePool and emit the matching watch event"""
        with self._lock:
            existing = self._nodepools.get(name)
            metadata = {
                "name": name,
                "uid": existing["metadata"]["uid"] if existing else str(uuid.uuid4()),
                "annotations": dict(annotations or {}),
                "resourceVersion": self._next_version(),
            }
            nodepool = {
                "apiVersion": "karpenter.sh/v1",
                "kind": "NodePool",
                "metadata": metadata,
                "spec": {},
            }
            self._nodepools[name] = nodepool
            self._events.put({"type": "MODIFIED" if existing else "ADDED", "object": copy.deepcopy(nodepool)})
            return copy.deepcopy(nodepool)

    def delete_nodepool(self, name: str) -> None:
        """Delete a NodePool and cascade to the overlays it owns"""
        with self._lock:
            nodepool = self._nodepools.pop(name, None)
            if nodepool is None:
                raise NotFoundError(f"nodepool {name}: not found")
            uid = nodepool["metadata"]["uid"]
            for overlay_name, overlay in list(self._overlays.items()):
                if any(ref.get("uid") == uid for ref in overlay.owner_references):
                    del self._overlays[overlay_name]
            self._events.put({"type": "DELETED", "object": copy.deepcopy(nodepool)})

    def get_nodepool(self, name: str) -> Dict[str, Any]:
        with self._lock:
            self._check_failure("get_nodepool", name)
            if name not in self._nodepools:
                raise NotFoundError(f"nodepool {name}: not found")
            return copy.deepcopy(self._nodepools[name])

    def list_nodepools(self) -> List[Dict[str, Any]]:
        with self._lock:
            self._check_failure("list_nodepools", "*")
            return [copy.deepcopy(np) for np in sorted(self._nodepools.values(), key=object_name)]

    def watch_nodepools(
        self,
        stop_event: threading.Event,
        timeout_seconds: int = 300,
    ) -> Iterator[Dict[str, Any]]:
        """Yield queued events until stop is set or the queue stays empty for timeout_seconds"""
        self._check_failure("watch_nodepools", "*")
        idle_since = time.monotonic()
        while not stop_event.is_set():
            try:
                event = self._events.get(timeout=WATCH_POLL_SECONDS)
            except queue.Empty:
                if time.monotonic() - idle_since >= timeout_seconds:
                    return
                continue
            yield event
            idle_since = time.monotonic()
