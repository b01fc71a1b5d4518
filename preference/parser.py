"""
Parser for NodePool preference annotations.

Annotation:
    overlay-controller.io/preference.<N>: "<token> <token> ..."

Each whitespace-separated token is either a label matcher
``key<op>value[,value...]`` with op one of ``=``, ``!=``, ``>``, ``<``, or the
price adjustment ``adjust=[+-]N[.N]%``. Exactly one adjustment and at least
one matcher are required, e.g.:

    karpenter.k8s.aws/instance-family=c7g,c7i kubernetes.io/arch!=amd64 adjust=-10%
"""
import re
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from preference.model import (
    PREFERENCE_ANNOTATION_PREFIX,
    SUPPORTED_LABELS,
    LabelMatcher,
    MatchOperator,
    Preference,
)


# Checked in order: two-character operators must win over their one-character prefixes
_OPERATOR_TABLE: Tuple[Tuple[str, Optional[MatchOperator]], ...] = (
    ("!=", MatchOperator.NOT_IN),
    (">=", None),
    ("<=", None),
    (">", MatchOperator.GT),
    ("<", MatchOperator.LT),
    ("=", MatchOperator.IN),
)

_ADJUST_RE = re.compile(r"^adjust=([+-]?\d+(?:\.\d+)?)%$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_PREFERENCE_NUMBER_RE = re.compile(r"^\d+$")


class PreferenceParseError(Exception):
    """A single preference annotation could not be parsed"""

    def __init__(self, annotation_key: str, message: str):
        self.annotation_key = annotation_key
        self.message = message
        super().__init__(f'annotation "{annotation_key}": {message}')


def parse_label_matcher(token: str) -> LabelMatcher:
    """
    Parse ``key<op>values`` into a LabelMatcher.

    Raises:
        ValueError: If the token is malformed or uses an unsupported key/operator
    """
    for symbol, operator in _OPERATOR_TABLE:
        idx = token.find(symbol)
        if idx < 0:
            continue
        if operator is None:
            raise ValueError(f"unsupported operator {symbol!r} in {token!r} (use > or <)")
        key = token[:idx].strip()
        raw_values = token[idx + len(symbol):]
        break
    else:
        raise ValueError(f"no operator in {token!r}")

    if not key:
        raise ValueError(f"missing label key in {token!r}")
    if key not in SUPPORTED_LABELS:
        raise ValueError(f"unsupported label key {key!r}")

    values = tuple(v.strip() for v in raw_values.split(","))
    if not raw_values.strip() or any(not v for v in values):
        raise ValueError(f"empty value in {token!r}")

    if operator.is_numeric:
        if len(values) != 1:
            raise ValueError(f"operator {symbol!r} takes exactly one value in {token!r}")
        if not _INTEGER_RE.match(values[0]):
            raise ValueError(f"operator {symbol!r} requires an integer value, got {values[0]!r}")

    return LabelMatcher(key=key, operator=operator, values=values)


def parse_adjustment(token: str) -> float:
    match = _ADJUST_RE.match(token)
    if not match:
        raise ValueError(f"invalid adjustment {token!r} (expected adjust=[+-]N%)")
    return float(match.group(1))


def parse_preference(value: str, number: int, nodepool_name: str, annotation_key: str = "") -> Preference:
    """
    Parse one annotation value.

    Raises:
        PreferenceParseError: If the value does not form a valid preference
    """
    matchers: List[LabelMatcher] = []
    adjustment: Optional[float] = None

    tokens = value.split()
    if not tokens:
        raise PreferenceParseError(annotation_key, "empty preference")

    for token in tokens:
        try:
            if token.startswith("adjust"):
                if adjustment is not None:
                    raise ValueError("multiple adjust tokens")
                adjustment = parse_adjustment(token)
            else:
                matchers.append(parse_label_matcher(token))
        except ValueError as e:
            raise PreferenceParseError(annotation_key, str(e))

    if adjustment is None:
        raise PreferenceParseError(annotation_key, "missing adjust=[+-]N% token")
    if not matchers:
        raise PreferenceParseError(annotation_key, "at least one label matcher is required")

    return Preference(
        number=number,
        nodepool_name=nodepool_name,
        matchers=tuple(matchers),
        adjustment=adjustment,
        annotation_key=annotation_key,
    )


def preference_number(annotation_key: str) -> int:
    """
    Extract N from ``overlay-controller.io/preference.<N>``.

    Raises:
        PreferenceParseError: If N is not a positive integer
    """
    suffix = annotation_key[len(PREFERENCE_ANNOTATION_PREFIX):]
    if not _PREFERENCE_NUMBER_RE.match(suffix):
        raise PreferenceParseError(annotation_key, f"preference number {suffix!r} is not an integer")
    number = int(suffix)
    if number < 1:
        raise PreferenceParseError(annotation_key, "preference number must be >= 1")
    return number


def parse_nodepool_preferences(
    annotations: Optional[Dict[str, str]],
    nodepool_name: str,
) -> Tuple[List[Preference], List[PreferenceParseError]]:
    """Parse every preference annotation of a NodePool.

    A bad annotation never prevents the others from being parsed; its error
    is returned alongside the successful preferences.

    Args:
        annotations: NodePool metadata.annotations (may be None)
        nodepool_name: Name of the owning NodePool

    Returns:
        (preferences sorted ascending by number, parse errors)
    """
    preferences: List[Preference] = []
    errors: List[PreferenceParseError] = []

    for key, value in (annotations or {}).items():
        if not key.startswith(PREFERENCE_ANNOTATION_PREFIX):
            continue
        try:
            number = preference_number(key)
            preferences.append(parse_preference(value or "", number, nodepool_name, key))
        except PreferenceParseError as e:
            errors.append(e)

    preferences.sort(key=lambda p: p.number)
    return preferences, errors


def format_price_adjustment(adjustment: float) -> str:
    """Render a signed percentage: 10 -> "+10%", -12.5 -> "-12.5%", 0 -> "0%"."""
    if adjustment == 0:
        return "0%"
    # repr keeps every significant digit; Decimal expands exponent notation
    magnitude = format(Decimal(repr(abs(adjustment))), "f")
    if "." in magnitude:
        magnitude = magnitude.rstrip("0").rstrip(".")
    sign = "+" if adjustment > 0 else "-"
    return f"{sign}{magnitude}%"
