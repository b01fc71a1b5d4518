"""Client-side checks applied to every overlay before it is written."""
import re
from typing import List

from overlay.model import GeneratedOverlay, RequirementOperator

MAX_NAME_LENGTH = 253
MAX_LABEL_KEY_LENGTH = 253
MAX_LABEL_VALUE_LENGTH = 63
MIN_WEIGHT = 1
MAX_WEIGHT = 10000

_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
_LABEL_VALUE_RE = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")
_PRICE_RE = re.compile(r"^\d+(\.\d+)?$")
_PRICE_ADJUSTMENT_RE = re.compile(r"^[+-]?\d+(\.\d+)?%$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")


class OverlayValidationError(Exception):
    def __init__(self, name: str, errors: List[str]):
        self.name = name
        self.errors = errors
        super().__init__(f"overlay {name!r} is invalid: " + "; ".join(errors))


def validate_overlay(overlay: GeneratedOverlay) -> List[str]:
    """Return every problem found in the overlay (empty when valid)"""
    errors = []

    if not overlay.name:
        errors.append("name is required")
    elif len(overlay.name) > MAX_NAME_LENGTH:
        errors.append(f"name exceeds {MAX_NAME_LENGTH} characters")
    elif not _NAME_RE.match(overlay.name):
        errors.append(f"name {overlay.name!r} is not a valid DNS subdomain")

    for key, value in overlay.labels.items():
        if not key or len(key) > MAX_LABEL_KEY_LENGTH:
            errors.append(f"label key {key!r} must be 1-{MAX_LABEL_KEY_LENGTH} characters")
        if len(value) > MAX_LABEL_VALUE_LENGTH:
            errors.append(f"label {key!r} value exceeds {MAX_LABEL_VALUE_LENGTH} characters")
        elif not _LABEL_VALUE_RE.match(value):
            errors.append(f"label {key!r} has invalid value {value!r}")

    if not overlay.requirements:
        errors.append("at least one requirement is required")
    for i, req in enumerate(overlay.requirements):
        if not req.key:
            errors.append(f"requirement {i}: key is required")
        if not isinstance(req.operator, RequirementOperator):
            errors.append(f"requirement {i}: invalid operator {req.operator!r}")
            continue
        if req.operator in (RequirementOperator.IN, RequirementOperator.NOT_IN) and not req.values:
            errors.append(f"requirement {i}: operator {req.operator.value} requires values")
        if req.operator in (RequirementOperator.GT, RequirementOperator.LT):
            if len(req.values) != 1 or not _INTEGER_RE.match(req.values[0]):
                errors.append(f"requirement {i}: operator {req.operator.value} requires one integer value")
        if req.operator in (RequirementOperator.EXISTS, RequirementOperator.DOES_NOT_EXIST) and req.values:
            errors.append(f"requirement {i}: operator {req.operator.value} takes no values")

    if overlay.price is None and overlay.price_adjustment is None:
        errors.append("one of price or priceAdjustment is required")
    elif overlay.price is not None and overlay.price_adjustment is not None:
        errors.append("price and priceAdjustment are mutually exclusive")
    if overlay.price is not None and not _PRICE_RE.match(overlay.price):
        errors.append(f"price {overlay.price!r} is not a decimal number")
    if overlay.price_adjustment is not None and not _PRICE_ADJUSTMENT_RE.match(overlay.price_adjustment):
        errors.append(f"priceAdjustment {overlay.price_adjustment!r} is not a signed percentage")

    if not MIN_WEIGHT <= overlay.weight <= MAX_WEIGHT:
        errors.append(f"weight must be between {MIN_WEIGHT} and {MAX_WEIGHT}, got {overlay.weight}")

    return errors


def ensure_valid(overlay: GeneratedOverlay) -> None:
    """
    Raises:
        OverlayValidationError: If validate_overlay reports any problem
    """
    errors = validate_overlay(overlay)
    if errors:
        raise OverlayValidationError(overlay.name, errors)
