"""
Tests for NodePool preference reconciliation and the watch controller
"""
import threading
import time

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kube.store import StoreError
from overlay.generator import OverlayGenerator
from overlay.model import GeneratedOverlay, owner_reference
from reconcile.differ import ReconciliationError
from reconcile.nodepool import (
    NodePoolController,
    NodePoolReconciler,
    nodepool_owner_reference,
    preference_selector,
)
from reconcile.status import ControllerStatus

DEPLOYMENT_OWNER = owner_reference("apps/v1", "Deployment", "overlay-controller", "deploy-uid")


@pytest.fixture
def status():
    return ControllerStatus()


@pytest.fixture
def reconciler(store, generator, recorder, status):
    return NodePoolReconciler(store, generator, recorder, controller_owner=DEPLOYMENT_OWNER, status=status)


class TestSelectors:
    def test_preference_selector(self):
        assert preference_selector() == {
            "app.kubernetes.io/managed-by": "overlay-controller",
            "overlay-controller.io/type": "preference",
        }
        assert preference_selector("general")["overlay-controller.io/source"] == "general"

    def test_owner_reference(self):
        ref = nodepool_owner_reference({"metadata": {"name": "general", "uid": "u-1"}})
        assert ref == {
            "apiVersion": "karpenter.sh/v1",
            "kind": "NodePool",
            "name": "general",
            "uid": "u-1",
            "controller": True,
            "blockOwnerDeletion": True,
        }


class TestReconcileNodePool:
    """Tests for NodePoolReconciler"""

    def test_creates_one_overlay_per_valid_preference(self, store, reconciler, recorder, sample_annotations, status):
        nodepool = store.add_nodepool("general", sample_annotations)

        result = reconciler.reconcile("general")

        assert result.created == 2
        assert store.overlay_names() == ["pref-general-10", "pref-general-2"]
        overlay = store.get_overlay("pref-general-2")
        assert overlay.weight == 2
        assert overlay.price_adjustment == "-20%"
        assert [r["uid"] for r in overlay.owner_references] == [nodepool["metadata"]["uid"], "deploy-uid"]
        assert recorder.get("preference_parse_errors_total", nodepool="general") == 1
        summary = status.snapshot()["nodepools"]["general"]
        assert summary["preferences"] == 2
        assert len(summary["parse_errors"]) == 1

    def test_annotation_change_updates_and_deletes(self, store, reconciler):
        store.add_nodepool("general", {
            "overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%",
            "overlay-controller.io/preference.2": "karpenter.sh/capacity-type=spot adjust=-5%",
        })
        reconciler.reconcile("general")

        store.add_nodepool("general", {
            "overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-25%",
        })
        result = reconciler.reconcile("general")

        assert (result.updated, result.deleted) == (1, 1)
        assert store.overlay_names() == ["pref-general-1"]
        assert store.get_overlay("pref-general-1").price_adjustment == "-25%"

    def test_preference_turning_invalid_removes_its_overlay(self, store, reconciler):
        store.add_nodepool("general", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})
        reconciler.reconcile("general")

        store.add_nodepool("general", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64"})
        reconciler.reconcile("general")

        assert store.overlay_names() == []

    def test_other_nodepools_untouched(self, store, reconciler):
        store.add_nodepool("a", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})
        store.add_nodepool("b", {"overlay-controller.io/preference.1": "kubernetes.io/arch=amd64 adjust=+10%"})
        reconciler.reconcile("a")
        reconciler.reconcile("b")

        store.add_nodepool("a", {})
        reconciler.reconcile("a")

        assert store.overlay_names() == ["pref-b-1"]

    def test_missing_nodepool_cleans_up(self, store, reconciler, status):
        store.add_nodepool("general", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})
        reconciler.reconcile("general")
        # Simulate a NodePool removed without garbage collection of its overlays
        store._nodepools.pop("general")

        result = reconciler.reconcile("general")

        assert result.deleted == 1
        assert store.overlay_names() == []
        assert "general" not in status.snapshot()["nodepools"]

    def test_disabled_mode(self, store, recorder):
        reconciler = NodePoolReconciler(store, OverlayGenerator(disabled=True), recorder)
        store.add_nodepool("general", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})

        reconciler.reconcile("general")

        overlay = store.get_overlay("pref-general-1")
        assert overlay.labels["overlay-controller.io/disabled"] == "true"
        assert len(overlay.owner_references) == 1


class TestOrphansAndResync:
    def _orphan(self, store, source):
        store.create_overlay(GeneratedOverlay(
            name=f"pref-{source}-1",
            labels={
                "app.kubernetes.io/managed-by": "overlay-controller",
                "overlay-controller.io/type": "preference",
                "overlay-controller.io/source": source,
            },
            price_adjustment="-10%",
        ))

    def test_orphaned_sources(self, store, reconciler, recorder):
        self._orphan(store, "gone")
        store.add_nodepool("live", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})
        reconciler.reconcile("live")

        assert reconciler.orphaned_sources(["live"]) == ["gone"]
        assert recorder.get("overlays_active", source="preference") == 2

    def test_orphaned_sources_list_failure(self, store, reconciler):
        store.inject_failure("list", "*", StoreError("down"))
        with pytest.raises(ReconciliationError):
            reconciler.orphaned_sources([])

    def test_resync_reconciles_all_and_sweeps_orphans(self, store, reconciler):
        self._orphan(store, "gone")
        store.add_nodepool("a", {"overlay-controller.io/preference.3": "kubernetes.io/arch=arm64 adjust=-10%"})
        store.add_nodepool("b", {"overlay-controller.io/preference.1": "karpenter.sh/capacity-type=spot adjust=-5%"})

        result = reconciler.resync()

        assert result.created == 2
        assert result.deleted == 1
        assert store.overlay_names() == ["pref-a-3", "pref-b-1"]


class TestHandleEvent:
    def test_added_and_deleted_events(self, store, reconciler):
        nodepool = store.add_nodepool("general", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})

        reconciler.handle_event({"type": "ADDED", "object": nodepool})
        assert store.overlay_names() == ["pref-general-1"]

        reconciler.handle_event({"type": "DELETED", "object": nodepool})
        assert store.overlay_names() == []

    def test_failures_are_contained(self, store, reconciler, recorder):
        nodepool = store.add_nodepool("general", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})
        store.inject_failure("list", "*", StoreError("down"))

        reconciler.handle_event({"type": "MODIFIED", "object": nodepool})

        assert store.overlay_names() == []
        assert recorder.get("reconciliation_total", loop="nodepool", status="error") == 1

    def test_nameless_event_ignored(self, store, reconciler):
        reconciler.handle_event({"type": "ADDED", "object": {}})
        assert store.calls == []


class TestNodePoolController:
    """Tests for the watch loop and event dispatch"""

    def test_initial_resync_and_watch(self, store, reconciler):
        store.add_nodepool("a", {"overlay-controller.io/preference.1": "kubernetes.io/arch=arm64 adjust=-10%"})
        controller = NodePoolController(reconciler, workers=2, resync_interval=60, watch_timeout=0.05, retry_backoff=0.01)
        stop = threading.Event()

        thread = threading.Thread(target=controller.run, args=(stop,))
        thread.start()
        try:
            store.add_nodepool("b", {"overlay-controller.io/preference.2": "kubernetes.io/arch=amd64 adjust=+5%"})
            for _ in range(300):
                if store.overlay_names() == ["pref-a-1", "pref-b-2"]:
                    break
                time.sleep(0.01)
        finally:
            stop.set()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert store.overlay_names() == ["pref-a-1", "pref-b-2"]

    def test_same_nodepool_always_same_partition(self, reconciler):
        controller = NodePoolController(reconciler, workers=4)
        controller._executors = [object(), object(), object(), object()]

        assert controller._partition("general") is controller._partition("general")
