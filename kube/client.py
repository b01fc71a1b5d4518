"""
Kubernetes-backed object store (official ``kubernetes`` client).

NodeOverlays and NodePools are cluster-scoped Karpenter custom resources
served through the CustomObjectsApi.
"""
import logging
import math
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError, ReadTimeoutError

from kube.store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OverlayStore,
    StoreError,
    format_label_selector,
)
from overlay.model import (
    NODEPOOL_API_VERSION,
    NODEPOOL_PLURAL,
    OVERLAY_API_GROUP,
    OVERLAY_API_VERSION,
    OVERLAY_PLURAL,
    GeneratedOverlay,
    owner_reference,
)

logger = logging.getLogger(__name__)

# Client-side read timeout of a watch connection; bounds how long a stop
# request waits for an idle stream.
WATCH_POLL_SECONDS = 5

# Network failures raised by the client below ApiException
TRANSPORT_ERRORS = (HTTPError, OSError)


def load_kube_config() -> None:
    """Use the in-cluster service account, falling back to ~/.kube/config"""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded Kubernetes configuration from kubeconfig")


def _translate(e: ApiException, what: str) -> StoreError:
    if e.status == 404:
        return NotFoundError(f"{what}: not found")
    if e.status == 409:
        if e.reason == "AlreadyExists" or "already exists" in str(e.body or ""):
            return AlreadyExistsError(f"{what}: already exists")
        return ConflictError(f"{what}: conflict: {e.reason}")
    return StoreError(f"{what}: API error {e.status}: {e.reason}")


@contextmanager
def _api_errors(what: str):
    """Raise every client failure inside the block as a StoreError"""
    try:
        yield
    except ApiException as e:
        raise _translate(e, what) from e
    except TRANSPORT_ERRORS as e:
        raise StoreError(f"{what}: connection error: {e}") from e


def _overlay_placeholder(item: Dict[str, Any]) -> GeneratedOverlay:
    """Name, labels and resource version of an overlay whose spec cannot be read.

    Keeps the object visible to the differ, which then replaces or deletes it.
    """
    metadata = item.get("metadata") or {}
    labels = metadata.get("labels")
    return GeneratedOverlay(
        name=metadata.get("name", ""),
        labels={str(k): str(v) for k, v in labels.items()} if isinstance(labels, dict) else {},
        resource_version=metadata.get("resourceVersion"),
    )


class KubernetesOverlayStore(OverlayStore):
    def __init__(self, api: Optional[client.CustomObjectsApi] = None):
        self.api = api or client.CustomObjectsApi()

    # -------------------------------------------------------------------------
    # NodeOverlays
    # -------------------------------------------------------------------------
    def list_overlays(self, selector: Dict[str, str]) -> List[GeneratedOverlay]:
        with _api_errors("list nodeoverlays"):
            response = self.api.list_cluster_custom_object(
                OVERLAY_API_GROUP, OVERLAY_API_VERSION, OVERLAY_PLURAL,
                label_selector=format_label_selector(selector),
            )

        overlays = []
        for item in response.get("items", []):
            try:
                overlays.append(GeneratedOverlay.from_manifest(item))
            except (AttributeError, TypeError, ValueError) as e:
                placeholder = _overlay_placeholder(item)
                logger.warning(f"NodeOverlay {placeholder.name} has an unreadable spec, it will be replaced: {e}")
                overlays.append(placeholder)
        return overlays

    def get_overlay(self, name: str) -> GeneratedOverlay:
        with _api_errors(f"get nodeoverlay {name}"):
            obj = self.api.get_cluster_custom_object(
                OVERLAY_API_GROUP, OVERLAY_API_VERSION, OVERLAY_PLURAL, name
            )
        return GeneratedOverlay.from_manifest(obj)

    def create_overlay(self, overlay: GeneratedOverlay) -> GeneratedOverlay:
        body = overlay.with_resource_version(None).to_manifest()
        with _api_errors(f"create nodeoverlay {overlay.name}"):
            obj = self.api.create_cluster_custom_object(
                OVERLAY_API_GROUP, OVERLAY_API_VERSION, OVERLAY_PLURAL, body
            )
        return GeneratedOverlay.from_manifest(obj)

    def update_overlay(self, overlay: GeneratedOverlay) -> GeneratedOverlay:
        with _api_errors(f"update nodeoverlay {overlay.name}"):
            obj = self.api.replace_cluster_custom_object(
                OVERLAY_API_GROUP, OVERLAY_API_VERSION, OVERLAY_PLURAL, overlay.name,
                overlay.to_manifest(),
            )
        return GeneratedOverlay.from_manifest(obj)

    def delete_overlay(self, name: str) -> None:
        with _api_errors(f"delete nodeoverlay {name}"):
            self.api.delete_cluster_custom_object(
                OVERLAY_API_GROUP, OVERLAY_API_VERSION, OVERLAY_PLURAL, name
            )

    # -------------------------------------------------------------------------
    # NodePools
    # -------------------------------------------------------------------------
    def get_nodepool(self, name: str) -> Dict[str, Any]:
        with _api_errors(f"get nodepool {name}"):
            return self.api.get_cluster_custom_object(
                OVERLAY_API_GROUP, NODEPOOL_API_VERSION, NODEPOOL_PLURAL, name
            )

    def list_nodepools(self) -> List[Dict[str, Any]]:
        with _api_errors("list nodepools"):
            response = self.api.list_cluster_custom_object(
                OVERLAY_API_GROUP, NODEPOOL_API_VERSION, NODEPOOL_PLURAL
            )
        return response.get("items", [])

    def watch_nodepools(
        self,
        stop_event: threading.Event,
        timeout_seconds: int = 300,
    ) -> Iterator[Dict[str, Any]]:
        """Stream NodePool events until the server closes the watch or stop is set.

        The connection uses a short read timeout. When it fires on an idle
        stream the stop event is checked and the watch resumes from the last
        resource version seen.
        """
        deadline = time.monotonic() + timeout_seconds
        resource_version = None
        while not stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            kwargs: Dict[str, Any] = {
                "timeout_seconds": math.ceil(remaining),
                "_request_timeout": WATCH_POLL_SECONDS,
            }
            if resource_version:
                kwargs["resource_version"] = resource_version

            w = watch.Watch()
            try:
                for event in w.stream(
                    self.api.list_cluster_custom_object,
                    OVERLAY_API_GROUP, NODEPOOL_API_VERSION, NODEPOOL_PLURAL,
                    **kwargs,
                ):
                    if stop_event.is_set():
                        return
                    obj = event.get("object")
                    if isinstance(obj, dict):
                        resource_version = (obj.get("metadata") or {}).get("resourceVersion") or resource_version
                    yield event
                return
            except ReadTimeoutError:
                continue
            except ApiException as e:
                raise _translate(e, "watch nodepools") from e
            except TRANSPORT_ERRORS as e:
                raise StoreError(f"watch nodepools: connection error: {e}") from e
            finally:
                w.stop()


def discover_controller_owner(
    namespace: Optional[str],
    pod_name: Optional[str],
    core_api: Optional[client.CoreV1Api] = None,
    apps_api: Optional[client.AppsV1Api] = None,
) -> Optional[Dict[str, Any]]:
    """Owner reference to the Deployment running this pod (Pod -> ReplicaSet -> Deployment).

    Best effort: returns None outside a cluster or when any hop is missing.
    """
    if not namespace or not pod_name:
        logger.info("POD_NAMESPACE/POD_NAME not set, overlays will not reference the controller")
        return None

    core_api = core_api or client.CoreV1Api()
    apps_api = apps_api or client.AppsV1Api()
    try:
        pod = core_api.read_namespaced_pod(pod_name, namespace)
        replica_set = next(
            (r for r in pod.metadata.owner_references or [] if r.kind == "ReplicaSet"), None
        )
        if replica_set is None:
            logger.info(f"Pod {namespace}/{pod_name} is not owned by a ReplicaSet")
            return None

        rs = apps_api.read_namespaced_replica_set(replica_set.name, namespace)
        deployment = next(
            (r for r in rs.metadata.owner_references or [] if r.kind == "Deployment"), None
        )
        if deployment is None:
            logger.info(f"ReplicaSet {namespace}/{replica_set.name} is not owned by a Deployment")
            return None
    except ApiException as e:
        logger.warning(f"Could not discover controller Deployment: {e.status} {e.reason}")
        return None
    except TRANSPORT_ERRORS as e:
        logger.warning(f"Could not discover controller Deployment: {e}")
        return None

    logger.info(f"Controller Deployment discovered: {namespace}/{deployment.name}")
    return owner_reference("apps/v1", "Deployment", deployment.name, deployment.uid)
