"""
Test fixtures and configuration for pytest
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import DEFAULT_CONFIG, _deep_merge
from analysis.decision import DecisionEngine
from kube.memory import InMemoryOverlayStore
from metrics.recorder import MetricsRecorder
from overlay.generator import OverlayGenerator


def vector_sample(value, ts=1704355200, **labels):
    """One Prometheus instant-vector sample as returned by /api/v1/query"""
    return {"metric": dict(labels), "value": [ts, str(value)]}


@pytest.fixture
def valid_config():
    """Complete controller configuration that passes validation"""
    return _deep_merge(DEFAULT_CONFIG, {
        "prometheusUrl": "http://prometheus:9090",
        "aws": {"accountId": "123456789012", "region": "us-west-2"},
    })


@pytest.fixture
def recorder():
    return MetricsRecorder()


@pytest.fixture
def store():
    return InMemoryOverlayStore()


@pytest.fixture
def generator():
    return OverlayGenerator()


@pytest.fixture
def engine():
    return DecisionEngine()


@pytest.fixture
def mock_prometheus_response():
    """Mock Prometheus instant query response"""
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                vector_sample(
                    42.5,
                    type="compute",
                    savings_plan_arn="arn:aws:savingsplans::123456789012:savingsplan/sp-1",
                )
            ]
        }
    }


@pytest.fixture
def sample_annotations():
    """NodePool annotations with two valid preferences, one bad one and an unrelated key"""
    return {
        "overlay-controller.io/preference.10": "karpenter.k8s.aws/instance-family=c7g,c7i adjust=-10%",
        "overlay-controller.io/preference.2": "kubernetes.io/arch=arm64 adjust=-20%",
        "overlay-controller.io/preference.5": "karpenter.k8s.aws/instance-cpu>=4 adjust=+5%",
        "kubectl.kubernetes.io/last-applied-configuration": "{}",
    }
