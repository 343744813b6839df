"""
Typed comparison of desired and observed values.

Probes always return the raw text a host exposes (``"268435456"``,
``"4096\\t87380\\t16777216"``, ``"on"``). Comparing that text to a desired
value goes through ``normalize`` so that equivalent spellings do not register
as drift.
"""

import hashlib
import re
from typing import Any, Dict, Tuple

from host_reconciler.models import DesiredValue, ObservedValue

KINDS = ("string", "integer", "size", "bool", "list", "record", "file")

TRUE_WORDS = frozenset({"on", "yes", "true", "1"})
FALSE_WORDS = frozenset({"off", "no", "false", "0"})

# Redis conventions: single-letter suffixes are decimal, "b" suffixes binary.
SIZE_UNITS: Dict[str, int] = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1024,
    "m": 1000 ** 2,
    "mb": 1024 ** 2,
    "g": 1000 ** 3,
    "gb": 1024 ** 3,
}

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([a-z]*)\s*$", re.IGNORECASE)
_INT_RE = re.compile(r"^[+-]?\d+$")


def infer_kind(value: Any) -> str:
    """Pick a comparison kind for a value loaded from a catalog."""
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (list, tuple)):
        return "list"
    if isinstance(value, dict):
        return "record"
    return "string"


def parse_size(raw: Any) -> int:
    """Convert ``256mb`` / ``1g`` / ``1024`` to a byte count."""
    if isinstance(raw, bool):
        raise ValueError(f"not a size: {raw!r}")
    if isinstance(raw, int):
        return raw
    match = _SIZE_RE.match(str(raw))
    if not match:
        raise ValueError(f"not a size: {raw!r}")
    number, unit = match.groups()
    unit = unit.lower()
    if unit not in SIZE_UNITS:
        raise ValueError(f"unknown size unit {unit!r} in {raw!r}")
    return int(number) * SIZE_UNITS[unit]


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    word = str(raw).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _token(raw: Any) -> Any:
    text = str(raw).strip()
    return int(text) if _INT_RE.match(text) else text


def _tokens(raw: Any) -> Tuple[Any, ...]:
    if isinstance(raw, (list, tuple)):
        return tuple(_token(item) for item in raw)
    return tuple(_token(item) for item in str(raw).split())


def _record(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return {str(k): _token(v) for k, v in raw.items()}
    fields: Dict[str, Any] = {}
    for part in str(raw).split():
        key, sep, value = part.partition("=")
        if not sep:
            raise ValueError(f"record field without '=': {part!r}")
        fields[key] = _token(value)
    return fields


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize(kind: str, raw: Any) -> Any:
    """
    Reduce a value to a canonical, comparable form for its kind.

    Raises ValueError when the raw value cannot be read as that kind.
    """
    if kind == "integer":
        if isinstance(raw, bool):
            return int(raw)
        return int(str(raw).strip())
    if kind == "size":
        return parse_size(raw)
    if kind == "bool":
        return parse_bool(raw)
    if kind == "list":
        return _tokens(raw)
    if kind == "record":
        return _record(raw)
    if kind == "string":
        return " ".join(str(raw).split())
    if kind == "file":
        # desired file values carry the rendered text, observed ones the digest
        return raw
    raise ValueError(f"unknown value kind: {kind!r}")


def comparable(desired: DesiredValue) -> Any:
    """Canonical form of a desired value."""
    if desired.kind == "file":
        return sha256_text(desired.value)
    return normalize(desired.kind, desired.value)


def matches(desired: DesiredValue, observed: ObservedValue) -> bool:
    """
    Structural equality between desired and observed.

    Absent and failed observations never match; neither does an observed value
    that cannot be parsed as the desired kind.
    """
    if not observed.is_present:
        return False
    try:
        return comparable(desired) == normalize(desired.kind, observed.value)
    except ValueError:
        return False


def render(desired: DesiredValue, true_word: str = "1", false_word: str = "0") -> str:
    """Textual form written to the host for a desired value."""
    value = desired.value
    if desired.kind == "bool":
        return true_word if parse_bool(value) else false_word
    if desired.kind == "list":
        return " ".join(str(item) for item in _tokens(value))
    if desired.kind == "record":
        return " ".join(f"{k}={v}" for k, v in _record(value).items())
    if isinstance(value, bool):
        return true_word if value else false_word
    return str(value)
