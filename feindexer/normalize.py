import re
from typing import Any, Callable, List, Mapping, Optional, Tuple

_DIGIT_RUN_RE = re.compile(r"(\d+)")


def coerce_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        try:
            return int(trimmed)
        except ValueError:
            return None
    return None


def flag_bit(value: Any) -> str:
    """Render a nullable 0/1 column as ``"1"``/``"0"``, and null as ``"-1"``."""
    if value is None:
        return "-1"
    if str(value).strip() in ("1", "True", "true"):
        return "1"
    return "0"


def canonical_label(mapping: Mapping[str, str]) -> Callable[[Any], Any]:
    """Build a transform that collapses raw labels onto canonical ones.

    Labels missing from ``mapping`` pass through unchanged.
    """

    def transform(value: Any) -> Any:
        if value is None:
            return None
        return mapping.get(value, value)

    return transform


def numeric_sort_key(prefix: str) -> Callable[[Any], Optional[int]]:
    """Build a transform turning ``"J:12345"``-style IDs into ``12345``."""

    def transform(value: Any) -> Optional[int]:
        if value is None:
            return None
        text = str(value).strip()
        if not text.startswith(prefix):
            return None
        return coerce_int(text[len(prefix):])

    return transform


def smart_alpha_key(value: Any) -> Tuple[Any, ...]:
    """Case-insensitive natural sort key: ``"Abc2"`` sorts before ``"abc10"``."""
    if value is None:
        return ()
    parts = _DIGIT_RUN_RE.split(str(value).lower())
    key: List[Any] = []
    for part in parts:
        if not part:
            continue
        if part.isdigit():
            key.append((0, int(part), part))
        else:
            key.append((1, 0, part))
    return tuple(key)
