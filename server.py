#!/usr/bin/env python3
"""
Ops HTTP server for the overlay controller.

Endpoints:
- /healthz     liveness, always 200 while the process serves requests
- /readyz      readiness, 503 until the first capacity pass has finished
- /metrics     controller metrics in the Prometheus text format
- /api/status  latest capacity pass and NodePool reconciliations as JSON
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Tuple

from flask import Flask, jsonify, Response
from werkzeug.serving import make_server

from metrics.recorder import MetricsRecorder
from reconcile.status import ControllerStatus

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def create_app(recorder: MetricsRecorder, status: ControllerStatus) -> Flask:
    """Build the Flask app serving health, readiness, metrics and status"""
    app = Flask(__name__)

    @app.route('/healthz')
    def health():
        """Health check endpoint for liveness probes"""
        return jsonify({
            "status": "healthy",
            "timestamp": _timestamp()
        })

    @app.route('/readyz')
    def ready():
        """Readiness check endpoint - ready after the first capacity pass"""
        if status.ready:
            return jsonify({
                "status": "ready",
                "timestamp": _timestamp()
            })
        return jsonify({
            "status": "not_ready",
            "reason": "Capacity reconciliation has not completed yet",
            "timestamp": _timestamp()
        }), 503

    @app.route('/metrics')
    def metrics():
        """Prometheus metrics endpoint for self-monitoring"""
        return Response(recorder.render(), mimetype='text/plain')

    @app.route('/api/status')
    def api_status():
        """Latest reconciliation outcomes"""
        return jsonify({**status.snapshot(), "timestamp": _timestamp()})

    return app


def start_server(app: Flask, host: str, port: int) -> Tuple[object, threading.Thread]:
    """Serve ``app`` from a daemon thread; call ``server.shutdown()`` to stop"""
    server = make_server(host, port, app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="ops-server", daemon=True)
    thread.start()
    logger.info(f"Ops server listening on http://{host}:{port} (/healthz, /readyz, /metrics, /api/status)")
    return server, thread
