"""Controller entry point: wire config, collaborators and both reconciliation loops.

    python controller.py [--config config.yaml] [--overlay-disabled] [--once]

--once runs a single capacity pass and a single NodePool resync, then exits.
"""
import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml
from kubernetes.config import ConfigException

from config import (
    setup_logging, validate_config, load_config, overlay_settings, parse_duration,
    get_config_value, ConfigValidationError,
    VERSION, SERVER_HOST, SERVER_PORT, POD_NAMESPACE, POD_NAME,
    NODEPOOL_WORKERS, WATCH_TIMEOUT_SECONDS,
)
from analysis.decision import DecisionEngine
from kube.client import KubernetesOverlayStore, discover_controller_owner, load_kube_config
from kube.store import OverlayStore
from metrics.capacity_queries import CapacityQueries
from metrics.prometheus_client import PrometheusClient
from metrics.recorder import MetricsRecorder
from overlay.generator import OverlayGenerator
from reconcile.capacity import CapacityReconciler
from reconcile.nodepool import NodePoolController, NodePoolReconciler
from reconcile.status import ControllerStatus
from server import create_app, start_server

logger = logging.getLogger(__name__)


@dataclass
class Components:
    recorder: MetricsRecorder
    status: ControllerStatus
    capacity: CapacityReconciler
    nodepools: NodePoolReconciler
    nodepool_controller: NodePoolController


def build_components(
    config: Dict[str, Any],
    store: OverlayStore,
    controller_owner: Optional[Dict[str, Any]] = None,
    prometheus: Optional[PrometheusClient] = None,
) -> Components:
    """Assemble the reconcilers from a validated configuration"""
    settings = overlay_settings(config)
    recorder = MetricsRecorder()
    recorder.set_info(VERSION, settings.disabled, settings.utilization_threshold)
    status = ControllerStatus()
    generator = OverlayGenerator(disabled=settings.disabled)

    prometheus = prometheus or PrometheusClient(get_config_value(config, "prometheusUrl"))
    queries = CapacityQueries(
        prometheus,
        account_id=get_config_value(config, "aws", "accountId"),
        region=get_config_value(config, "aws", "region"),
    )
    owners: List[Dict[str, Any]] = [controller_owner] if controller_owner else []

    capacity = CapacityReconciler(
        queries=queries,
        store=store,
        engine=DecisionEngine.from_settings(settings),
        generator=generator,
        recorder=recorder,
        freshness_ceilings=settings.freshness_seconds,
        owner_references=owners,
        interval=parse_duration(get_config_value(config, "reconcileInterval")),
        status=status,
    )
    nodepools = NodePoolReconciler(
        store=store,
        generator=generator,
        recorder=recorder,
        controller_owner=controller_owner,
        status=status,
    )
    nodepool_controller = NodePoolController(
        nodepools,
        workers=NODEPOOL_WORKERS,
        resync_interval=parse_duration(get_config_value(config, "nodePoolResync")),
        watch_timeout=WATCH_TIMEOUT_SECONDS,
    )
    return Components(recorder, status, capacity, nodepools, nodepool_controller)


def run_once(components: Components) -> int:
    """Single capacity pass plus NodePool resync; 0 when both succeeded"""
    failed_count = 0

    try:
        result = components.capacity.reconcile_once()
        if not result.ok:
            failed_count += 1
    except Exception as e:
        logger.error(f"Capacity pass failed: {e}")
        failed_count += 1

    try:
        result = components.nodepools.resync()
        if result.errors:
            failed_count += 1
    except Exception as e:
        logger.error(f"NodePool resync failed: {e}")
        failed_count += 1

    logger.info("=" * 60)
    logger.info(f"Single pass complete: {2 - failed_count} succeeded, {failed_count} failed")
    logger.info("=" * 60)
    return 0 if failed_count == 0 else 1


def run_forever(components: Components, stop_event: threading.Event) -> None:
    """Run both loops and the ops server until stop_event is set"""
    server, _ = start_server(create_app(components.recorder, components.status), SERVER_HOST, SERVER_PORT)
    threads = [
        threading.Thread(target=components.capacity.run, args=(stop_event,), name="capacity-loop"),
        threading.Thread(target=components.nodepool_controller.run, args=(stop_event,), name="nodepool-loop"),
    ]
    for t in threads:
        t.start()
    try:
        stop_event.wait()
    finally:
        logger.info("Shutting down")
        for t in threads:
            t.join()
        server.shutdown()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Karpenter NodeOverlay cost controller")
    parser.add_argument("--config", default=None, help="path to the YAML config file (default: $CONFIG_PATH)")
    parser.add_argument("--overlay-disabled", action="store_true",
                        help="create overlays that never match any node")
    parser.add_argument("--once", action="store_true",
                        help="run one reconciliation of each loop and exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    # Setup logging first
    setup_logging()

    try:
        config = load_config(args.config)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Could not load configuration: {e}")
        return 1
    if args.overlay_disabled:
        config["overlays"]["disabled"] = True

    # Validate configuration
    try:
        validate_config(config)
        logger.info("Configuration validated successfully")
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        load_kube_config()
    except ConfigException as e:
        logger.error(f"Kubernetes configuration unavailable: {e}")
        return 1
    store = KubernetesOverlayStore()
    components = build_components(
        config, store, controller_owner=discover_controller_owner(POD_NAMESPACE, POD_NAME)
    )

    settings = overlay_settings(config)
    logger.info(
        f"Starting overlay controller {VERSION} "
        f"(threshold={settings.utilization_threshold:g}%, disabled={settings.disabled})"
    )
    if args.once:
        return run_once(components)

    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, stopping")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    run_forever(components, stop_event)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
