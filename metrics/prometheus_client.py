import math
import time
import logging
from typing import List, Dict, Any, Optional, Tuple

import requests

from config import (
    PROMETHEUS_TIMEOUT_SECONDS,
    PROMETHEUS_RETRY_COUNT,
    PROMETHEUS_RETRY_BACKOFF_BASE,
)

logger = logging.getLogger(__name__)


class PrometheusError(Exception):
    pass


class PrometheusConnectionError(PrometheusError):
    """Prometheus could not be reached after all retries"""
    pass


class PrometheusQueryError(PrometheusError):
    """Prometheus answered but rejected the query or returned garbage"""
    pass


class PrometheusClient:
    """Minimal client for the Prometheus instant-query HTTP API.

    Connection failures and timeouts are retried with exponential backoff;
    query errors (non-200 responses, error payloads) are not.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = PROMETHEUS_TIMEOUT_SECONDS,
        retry_count: int = PROMETHEUS_RETRY_COUNT,
        backoff_base: int = PROMETHEUS_RETRY_BACKOFF_BASE,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retry_count = max(1, retry_count)
        self.backoff_base = backoff_base

    def _get(self, path: str, params: Dict[str, Any]) -> requests.Response:
        url = f"{self.base_url}{path}"
        last_error: Optional[Exception] = None
        for attempt in range(self.retry_count):
            try:
                return requests.get(url, params=params, timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                last_error = e
                if attempt < self.retry_count - 1:
                    delay = self.backoff_base * (2 ** attempt)
                    logger.warning(
                        f"Prometheus request failed (attempt {attempt + 1}/{self.retry_count}), "
                        f"retrying in {delay}s: {e}"
                    )
                    time.sleep(delay)
            except requests.RequestException as e:
                raise PrometheusConnectionError(f"request failed: {e}")
        raise PrometheusConnectionError(
            f"request failed after {self.retry_count} attempts: {last_error}"
        )

    def query_instant(self, promql: str) -> List[Dict[str, Any]]:
        """
        Query Prometheus `/api/v1/query` and return the `data.result` list.
        Each element is a vector sample: {"metric": {...}, "value": [ts, "val"]}.
        """
        logger.debug(f"Executing Prometheus query: {promql}")
        r = self._get("/api/v1/query", {"query": promql})
        if r.status_code != 200:
            raise PrometheusQueryError(f"prometheus returned status {r.status_code}: {r.text}")
        try:
            data = r.json()
        except ValueError as e:
            raise PrometheusQueryError(f"invalid JSON response: {e}")
        if data.get("status") != "success":
            raise PrometheusQueryError(f"prometheus error: {data.get('error', data)}")
        result = data.get("data", {})
        if result.get("resultType", "vector") != "vector":
            raise PrometheusQueryError(f"unexpected result type: {result.get('resultType')}")
        return result.get("result", [])


def parse_vector_sample(sample: Dict[str, Any]) -> Tuple[Dict[str, str], float, float]:
    """
    Parse one vector sample into (labels, timestamp, value).

    Raises:
        PrometheusQueryError: If the sample value is missing, not numeric, NaN or infinite
    """
    labels = sample.get("metric", {}) or {}
    value = sample.get("value") or []
    try:
        ts_str, val_str = value
        ts, val = float(ts_str), float(val_str)
    except (TypeError, ValueError) as e:
        raise PrometheusQueryError(f"malformed sample {sample!r}: {e}")
    if not math.isfinite(val):
        raise PrometheusQueryError(f"non-finite sample value {val_str!r} for {labels}")
    return labels, ts, val
