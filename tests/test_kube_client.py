"""
Tests for the Kubernetes-backed object store
"""
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError, ReadTimeoutError

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kube.client import WATCH_POLL_SECONDS, KubernetesOverlayStore, _translate, discover_controller_owner
from kube.store import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from overlay.model import GeneratedOverlay, Requirement, RequirementOperator
from reconcile.differ import reconcile_overlays


def overlay_manifest(name, rv="5"):
    return {
        "apiVersion": "karpenter.sh/v1alpha1",
        "kind": "NodeOverlay",
        "metadata": {
            "name": name,
            "resourceVersion": rv,
            "labels": {"app.kubernetes.io/managed-by": "overlay-controller"},
        },
        "spec": {
            "requirements": [{"key": "karpenter.sh/nodepool", "operator": "In", "values": ["general"]}],
            "weight": 1,
            "priceAdjustment": "-10%",
        },
    }


def desired_overlay(name, nodepool="np"):
    return GeneratedOverlay(
        name=name,
        labels={"app.kubernetes.io/managed-by": "overlay-controller"},
        requirements=(Requirement("karpenter.sh/nodepool", RequirementOperator.IN, (nodepool,)),),
        price_adjustment="-10%",
    )


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def kube_store(api):
    return KubernetesOverlayStore(api=api)


class TestTranslate:
    @pytest.mark.parametrize("status,reason,expected", [
        (404, "Not Found", NotFoundError),
        (409, "AlreadyExists", AlreadyExistsError),
        (409, "Conflict", ConflictError),
        (500, "Internal Server Error", StoreError),
    ])
    def test_status_mapping(self, status, reason, expected):
        error = _translate(ApiException(status=status, reason=reason), "op")
        assert type(error) is expected


class TestOverlayVerbs:
    """Tests for NodeOverlay CRUD through CustomObjectsApi"""

    def test_list_uses_label_selector(self, api, kube_store):
        api.list_cluster_custom_object.return_value = {"items": [overlay_manifest("pref-general-1")]}

        overlays = kube_store.list_overlays({"b": "2", "a": "1"})

        api.list_cluster_custom_object.assert_called_once_with(
            "karpenter.sh", "v1alpha1", "nodeoverlays", label_selector="a=1,b=2"
        )
        assert overlays[0].name == "pref-general-1"
        assert overlays[0].resource_version == "5"
        assert overlays[0].price_adjustment == "-10%"

    def test_list_keeps_unreadable_items_as_placeholders(self, api, kube_store):
        bad = overlay_manifest("broken")
        bad["spec"]["requirements"][0]["operator"] = "Sometimes"
        api.list_cluster_custom_object.return_value = {"items": [bad, overlay_manifest("ok")]}

        overlays = kube_store.list_overlays({})

        assert [o.name for o in overlays] == ["broken", "ok"]
        assert overlays[0].requirements == ()
        assert overlays[0].is_managed
        assert overlays[0].resource_version == "5"

    def test_unreadable_overlay_is_replaced_not_recreated(self, api, kube_store):
        bad = overlay_manifest("pref-np-1")
        bad["spec"]["requirements"] = "garbage"
        api.list_cluster_custom_object.return_value = {"items": [bad]}
        api.replace_cluster_custom_object.side_effect = lambda group, version, plural, name, body: body

        result = reconcile_overlays(kube_store, [desired_overlay("pref-np-1")], {}, "preference")

        assert (result.created, result.updated, result.errors) == (0, 1, 0)
        api.create_cluster_custom_object.assert_not_called()
        body = api.replace_cluster_custom_object.call_args.args[4]
        assert body["metadata"]["resourceVersion"] == "5"

    def test_list_error_translated(self, api, kube_store):
        api.list_cluster_custom_object.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(StoreError):
            kube_store.list_overlays({})

    def test_create_strips_resource_version(self, api, kube_store):
        api.create_cluster_custom_object.return_value = overlay_manifest("pref-general-1", rv="1")
        overlay = GeneratedOverlay(
            name="pref-general-1",
            requirements=(Requirement("karpenter.sh/nodepool", RequirementOperator.IN, ("general",)),),
            price_adjustment="-10%",
            resource_version="99",
        )

        stored = kube_store.create_overlay(overlay)

        body = api.create_cluster_custom_object.call_args.args[3]
        assert "resourceVersion" not in body["metadata"]
        assert stored.resource_version == "1"

    def test_create_conflict(self, api, kube_store):
        api.create_cluster_custom_object.side_effect = ApiException(status=409, reason="AlreadyExists")

        with pytest.raises(AlreadyExistsError):
            kube_store.create_overlay(GeneratedOverlay(name="x", price="0.00"))

    def test_update_sends_resource_version(self, api, kube_store):
        api.replace_cluster_custom_object.return_value = overlay_manifest("x", rv="6")

        kube_store.update_overlay(GeneratedOverlay(name="x", price="0.00", resource_version="5"))

        args = api.replace_cluster_custom_object.call_args.args
        assert args[3] == "x"
        assert args[4]["metadata"]["resourceVersion"] == "5"

    def test_stale_update_conflicts(self, api, kube_store):
        api.replace_cluster_custom_object.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(ConflictError):
            kube_store.update_overlay(GeneratedOverlay(name="x", price="0.00", resource_version="1"))

    def test_delete_not_found(self, api, kube_store):
        api.delete_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(NotFoundError):
            kube_store.delete_overlay("x")


class TestTransportErrors:
    """Network failures surface as StoreError so callers isolate them per object"""

    def test_list_connection_error(self, api, kube_store):
        api.list_cluster_custom_object.side_effect = ProtocolError("Connection aborted.")

        with pytest.raises(StoreError):
            kube_store.list_overlays({})

    def test_delete_socket_error(self, api, kube_store):
        api.delete_cluster_custom_object.side_effect = ConnectionResetError("reset by peer")

        with pytest.raises(StoreError):
            kube_store.delete_overlay("x")

    def test_get_nodepool_connection_error(self, api, kube_store):
        api.get_cluster_custom_object.side_effect = MaxRetryError(None, "/apis/karpenter.sh", "refused")

        with pytest.raises(StoreError):
            kube_store.get_nodepool("general")

    def test_failed_create_does_not_stop_the_batch(self, api, kube_store):
        calls = []

        def create(group, version, plural, body):
            calls.append(body["metadata"]["name"])
            if body["metadata"]["name"] == "pref-np-1":
                raise MaxRetryError(None, "/apis/karpenter.sh", "connection refused")
            return body

        api.list_cluster_custom_object.return_value = {"items": []}
        api.create_cluster_custom_object.side_effect = create

        result = reconcile_overlays(
            kube_store, [desired_overlay("pref-np-1"), desired_overlay("pref-np-2")], {}, "preference",
        )

        assert calls == ["pref-np-1", "pref-np-2"]
        assert (result.created, result.errors) == (1, 1)
        assert "pref-np-1" in result.error_messages[0]


class TestNodePoolVerbs:
    def test_get_and_list(self, api, kube_store):
        nodepool = {"metadata": {"name": "general", "uid": "u"}}
        api.get_cluster_custom_object.return_value = nodepool
        api.list_cluster_custom_object.return_value = {"items": [nodepool]}

        assert kube_store.get_nodepool("general") == nodepool
        assert kube_store.list_nodepools() == [nodepool]
        api.get_cluster_custom_object.assert_called_once_with("karpenter.sh", "v1", "nodepools", "general")

    @patch("kube.client.watch.Watch")
    def test_watch_streams_events(self, mock_watch, api, kube_store):
        events = [{"type": "ADDED", "object": {"metadata": {"name": "a"}}}]
        mock_watch.return_value.stream.return_value = iter(events)

        received = list(kube_store.watch_nodepools(threading.Event(), timeout_seconds=30))

        assert received == events
        _, kwargs = mock_watch.return_value.stream.call_args
        assert kwargs["timeout_seconds"] == 30
        assert kwargs["_request_timeout"] == WATCH_POLL_SECONDS
        mock_watch.return_value.stop.assert_called_once()

    @patch("kube.client.watch.Watch")
    def test_watch_resumes_after_idle_read_timeout(self, mock_watch, api, kube_store):
        first = {"type": "ADDED", "object": {"metadata": {"name": "a", "resourceVersion": "7"}}}
        second = {"type": "MODIFIED", "object": {"metadata": {"name": "a", "resourceVersion": "8"}}}

        def idle_after_first(*args, **kwargs):
            yield first
            raise ReadTimeoutError(None, "/apis/karpenter.sh", "Read timed out.")

        mock_watch.return_value.stream.side_effect = [idle_after_first(), iter([second])]

        received = list(kube_store.watch_nodepools(threading.Event(), timeout_seconds=30))

        assert received == [first, second]
        _, kwargs = mock_watch.return_value.stream.call_args
        assert kwargs["resource_version"] == "7"

    @patch("kube.client.watch.Watch")
    def test_stop_ends_idle_watch(self, mock_watch, api, kube_store):
        stop = threading.Event()

        def idle(*args, **kwargs):
            stop.set()
            raise ReadTimeoutError(None, "/apis/karpenter.sh", "Read timed out.")

        mock_watch.return_value.stream.side_effect = idle

        assert list(kube_store.watch_nodepools(stop, timeout_seconds=300)) == []
        assert mock_watch.return_value.stream.call_count == 1

    @patch("kube.client.watch.Watch")
    def test_watch_connection_error(self, mock_watch, api, kube_store):
        mock_watch.return_value.stream.side_effect = ProtocolError("Connection broken")

        with pytest.raises(StoreError):
            list(kube_store.watch_nodepools(threading.Event()))


class TestDiscoverControllerOwner:
    """Tests for the Pod -> ReplicaSet -> Deployment walk"""

    def _apis(self, pod_owners, rs_owners):
        core = MagicMock()
        apps = MagicMock()
        core.read_namespaced_pod.return_value = SimpleNamespace(
            metadata=SimpleNamespace(owner_references=pod_owners)
        )
        apps.read_namespaced_replica_set.return_value = SimpleNamespace(
            metadata=SimpleNamespace(owner_references=rs_owners)
        )
        return core, apps

    def test_finds_deployment(self):
        core, apps = self._apis(
            [SimpleNamespace(kind="ReplicaSet", name="overlay-controller-abc", uid="rs-uid")],
            [SimpleNamespace(kind="Deployment", name="overlay-controller", uid="deploy-uid")],
        )

        ref = discover_controller_owner("karpenter", "overlay-controller-abc-xyz", core, apps)

        assert ref == {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "name": "overlay-controller",
            "uid": "deploy-uid",
        }
        apps.read_namespaced_replica_set.assert_called_once_with("overlay-controller-abc", "karpenter")

    def test_bare_pod(self):
        core, apps = self._apis(None, [])
        assert discover_controller_owner("karpenter", "pod", core, apps) is None

    def test_missing_env(self):
        assert discover_controller_owner(None, None, MagicMock(), MagicMock()) is None

    def test_api_error_is_not_fatal(self):
        core = MagicMock()
        core.read_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")
        assert discover_controller_owner("karpenter", "pod", core, MagicMock()) is None

    def test_connection_error_is_not_fatal(self):
        core = MagicMock()
        core.read_namespaced_pod.side_effect = MaxRetryError(None, "/api/v1", "refused")
        assert discover_controller_owner("karpenter", "pod", core, MagicMock()) is None
