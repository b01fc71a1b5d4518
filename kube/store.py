"""
Object-store interface used by the reconcilers.

NodePools are handled as plain Kubernetes dictionaries; overlays as
GeneratedOverlay values. Watch streams yield ``{"type": ..., "object": ...}``
events like kubernetes.watch.Watch.
"""
import threading
from typing import Any, Dict, Iterator, List, Optional

from overlay.model import GeneratedOverlay


class StoreError(Exception):
    pass


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    """The object changed since it was read (stale resource version)"""
    pass


class AlreadyExistsError(StoreError):
    pass


def format_label_selector(selector: Dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def matches_selector(labels: Optional[Dict[str, str]], selector: Dict[str, str]) -> bool:
    labels = labels or {}
    return all(labels.get(key) == value for key, value in selector.items())


def object_name(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def object_uid(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("uid", "")


def object_annotations(obj: Dict[str, Any]) -> Dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


class OverlayStore:
    """Verbs the controller needs from the cluster API."""

    def list_overlays(self, selector: Dict[str, str]) -> List[GeneratedOverlay]:
        raise NotImplementedError

    def get_overlay(self, name: str) -> GeneratedOverlay:
        raise NotImplementedError

    def create_overlay(self, overlay: GeneratedOverlay) -> GeneratedOverlay:
        raise NotImplementedError

    def update_overlay(self, overlay: GeneratedOverlay) -> GeneratedOverlay:
        raise NotImplementedError

    def delete_overlay(self, name: str) -> None:
        raise NotImplementedError

    def get_nodepool(self, name: str) -> Dict[str, Any]:
        raise NotImplementedError

    def list_nodepools(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def watch_nodepools(
        self,
        stop_event: threading.Event,
        timeout_seconds: int = 300,
    ) -> Iterator[Dict[str, Any]]:
        raise NotImplementedError
