import os
import re
import copy
import logging
import sys
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse

import yaml


VERSION: str = "0.1.0"


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def setup_logging():
    """Configure application-wide logging"""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


# =============================================================================
# Process Configuration (environment)
# =============================================================================
CONFIG_PATH: str = os.getenv("CONFIG_PATH", "config.yaml")
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8080"))

PROMETHEUS_TIMEOUT_SECONDS: int = int(os.getenv("PROMETHEUS_TIMEOUT_SECONDS", "30"))
PROMETHEUS_RETRY_COUNT: int = int(os.getenv("PROMETHEUS_RETRY_COUNT", "3"))
PROMETHEUS_RETRY_BACKOFF_BASE: int = int(os.getenv("PROMETHEUS_RETRY_BACKOFF_BASE", "1"))

# Downward API values used to find the Deployment running this controller
POD_NAMESPACE: Optional[str] = os.getenv("POD_NAMESPACE")
POD_NAME: Optional[str] = os.getenv("POD_NAME")

NODEPOOL_WORKERS: int = int(os.getenv("NODEPOOL_WORKERS", "4"))
WATCH_TIMEOUT_SECONDS: int = int(os.getenv("WATCH_TIMEOUT_SECONDS", "300"))

# Prefix for environment variables that override values from the config file
ENV_PREFIX: str = "OVERLAY_CONTROLLER_"


# =============================================================================
# Controller Configuration (overridden by config.yaml)
# =============================================================================
DEFAULT_CONFIG: Dict[str, Any] = {
    "prometheusUrl": "http://localhost:9090",
    "aws": {
        "accountId": "",
        "region": "",
    },
    "reconcileInterval": "5m",
    "nodePoolResync": "10m",
    "overlays": {
        "disabled": False,
        "utilizationThreshold": 95.0,
        "weights": {
            "reservedInstance": 30,
            "ec2InstanceSavingsPlan": 20,
            "computeSavingsPlan": 10,
        },
        "naming": {
            "reservedInstancePrefix": "cost-aware-ri",
            "ec2InstanceSavingsPlanPrefix": "cost-aware-ec2-sp",
            "computeSavingsPlanPrefix": "cost-aware-compute-sp",
        },
        # Maximum acceptable age of the capacity data per family
        "freshness": {
            "reservedInstance": "2h",
            "ec2InstanceSavingsPlan": "2h",
            "computeSavingsPlan": "2h",
        },
    },
}

# Config keys per capacity family, in the order families are reconciled
FAMILY_CONFIG_KEYS: Dict[str, str] = {
    "compute-savings-plan": "computeSavingsPlan",
    "ec2-instance-savings-plan": "ec2InstanceSavingsPlan",
    "reserved-instance": "reservedInstance",
}

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([smhd]?)$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> float:
    """Convert a duration such as ``30s``, ``5m``, ``2h`` or ``90`` to seconds.

    Raises:
        ValueError: If the value is not a recognised duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value).strip().lower())
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


# =============================================================================
# Configuration Loading & Helpers
# =============================================================================
def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    prometheus_url = os.getenv(f"{ENV_PREFIX}PROMETHEUS_URL")
    if prometheus_url:
        config["prometheusUrl"] = prometheus_url
    account_id = os.getenv(f"{ENV_PREFIX}AWS_ACCOUNT_ID")
    if account_id:
        config["aws"]["accountId"] = account_id
    region = os.getenv(f"{ENV_PREFIX}AWS_REGION")
    if region:
        config["aws"]["region"] = region
    if os.getenv(f"{ENV_PREFIX}OVERLAY_DISABLED") is not None:
        config["overlays"]["disabled"] = _env_bool(f"{ENV_PREFIX}OVERLAY_DISABLED", False)
    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML configuration file and merge with defaults

    A missing file is not an error: the defaults (plus environment overrides)
    are returned so the controller can run from environment alone.

    Raises:
        yaml.YAMLError: If the file exists but is not valid YAML
    """
    config_path = config_path or CONFIG_PATH
    file_config: Dict[str, Any] = {}
    try:
        with open(config_path, 'r') as f:
            file_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logging.getLogger(__name__).info(
            f"Configuration file {config_path} not found, using defaults"
        )
    if not isinstance(file_config, dict):
        raise yaml.YAMLError(f"{config_path}: top-level document must be a mapping")
    return _apply_env_overrides(_deep_merge(DEFAULT_CONFIG, file_config))


def get_config_value(config: Dict[str, Any], *keys, default=None):
    """Safely get nested config value with default fallback"""
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


@dataclass(frozen=True)
class OverlaySettings:
    """Typed view of the ``overlays`` section consumed by the decision path."""
    disabled: bool = False
    utilization_threshold: float = 95.0
    weights: Dict[str, int] = field(default_factory=dict)
    prefixes: Dict[str, str] = field(default_factory=dict)
    freshness_seconds: Dict[str, float] = field(default_factory=dict)


def overlay_settings(config: Dict[str, Any]) -> OverlaySettings:
    """Build OverlaySettings keyed by capacity family name"""
    overlays = get_config_value(config, "overlays", default={})
    weights = {}
    prefixes = {}
    freshness = {}
    for family, key in FAMILY_CONFIG_KEYS.items():
        weights[family] = int(get_config_value(overlays, "weights", key, default=0))
        prefixes[family] = str(get_config_value(overlays, "naming", f"{key}Prefix", default=""))
        freshness[family] = parse_duration(get_config_value(overlays, "freshness", key, default="2h"))
    return OverlaySettings(
        disabled=bool(get_config_value(overlays, "disabled", default=False)),
        utilization_threshold=float(get_config_value(overlays, "utilizationThreshold", default=95.0)),
        weights=weights,
        prefixes=prefixes,
        freshness_seconds=freshness,
    )


__all__ = [
    "VERSION",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "setup_logging",
    "CONFIG_PATH",
    "SERVER_HOST",
    "SERVER_PORT",
    "PROMETHEUS_TIMEOUT_SECONDS",
    "PROMETHEUS_RETRY_COUNT",
    "PROMETHEUS_RETRY_BACKOFF_BASE",
    "POD_NAMESPACE",
    "POD_NAME",
    "NODEPOOL_WORKERS",
    "WATCH_TIMEOUT_SECONDS",
    "DEFAULT_CONFIG",
    "FAMILY_CONFIG_KEYS",
    "parse_duration",
    "load_config",
    "get_config_value",
    "OverlaySettings",
    "overlay_settings",
    "ConfigValidationError",
    "validate_config",
]


# =============================================================================
# Configuration Validation
# =============================================================================
class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except Exception as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_duration(name: str, value: Any) -> None:
    try:
        seconds = parse_duration(value)
    except ValueError as e:
        raise ConfigValidationError(f"{name}: {e}")
    if seconds <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_account_id(value: str) -> None:
    if not re.match(r"^\d{12}$", str(value)):
        raise ConfigValidationError(
            f"aws.accountId must be a 12-digit AWS account ID, got '{value}'"
        )


def validate_config(config: Dict[str, Any]) -> None:
    """Validate all configuration values on startup

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors = []

    for name, value in (
        ("PROMETHEUS_TIMEOUT_SECONDS", PROMETHEUS_TIMEOUT_SECONDS),
        ("PROMETHEUS_RETRY_COUNT", PROMETHEUS_RETRY_COUNT),
        ("SERVER_PORT", SERVER_PORT),
        ("NODEPOOL_WORKERS", NODEPOOL_WORKERS),
    ):
        try:
            _validate_positive_int(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    try:
        _validate_url("prometheusUrl", str(get_config_value(config, "prometheusUrl", default="")))
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_account_id(get_config_value(config, "aws", "accountId", default=""))
    except ConfigValidationError as e:
        errors.append(str(e))

    if not get_config_value(config, "aws", "region", default=""):
        errors.append("aws.region is required")

    for key in ("reconcileInterval", "nodePoolResync"):
        try:
            _validate_duration(key, get_config_value(config, key))
        except ConfigValidationError as e:
            errors.append(str(e))

    threshold = get_config_value(config, "overlays", "utilizationThreshold")
    try:
        threshold = float(threshold)
        if not 0 <= threshold <= 100:
            errors.append(f"overlays.utilizationThreshold must be between 0 and 100, got {threshold}")
    except (TypeError, ValueError):
        errors.append(f"overlays.utilizationThreshold must be a number, got {threshold!r}")

    for family_key in FAMILY_CONFIG_KEYS.values():
        weight = get_config_value(config, "overlays", "weights", family_key)
        if isinstance(weight, bool) or not isinstance(weight, int) or not 1 <= weight <= 10000:
            errors.append(f"overlays.weights.{family_key} must be an integer between 1 and 10000, got {weight!r}")

        prefix = get_config_value(config, "overlays", "naming", f"{family_key}Prefix")
        if not prefix or not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", str(prefix)):
            errors.append(f"overlays.naming.{family_key}Prefix must be a lowercase DNS label, got {prefix!r}")

        try:
            _validate_duration(
                f"overlays.freshness.{family_key}",
                get_config_value(config, "overlays", "freshness", family_key),
            )
        except ConfigValidationError as e:
            errors.append(str(e))

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )
