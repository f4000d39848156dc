from __future__ import annotations

import math
from typing import Any, Dict, Optional

_WORDS: Dict[str, bool] = {
    "1": True, "true": True, "yes": True, "y": True, "on": True, "enabled": True,
    "0": False, "false": False, "no": False, "n": False, "off": False, "disabled": False,
}


def _as_number(value: Any) -> Optional[float]:
    """Finite float for numbers and numeric strings, else None (bools excluded)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
    try:
        v = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return v if math.isfinite(v) else None


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Read a switch from settings.yaml, the environment or a legacy store.

    "false" and "0" mean False; anything unrecognised keeps `default`.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _WORDS:
            return _WORDS[word]
    n = _as_number(value)
    if n is None:
        return bool(default)
    return n != 0.0


def coerce_float(value: Any, *, default: float, minimum: float = 0.0) -> float:
    n = _as_number(value)
    return max(minimum, float(default) if n is None else n)


def coerce_int(value: Any, *, default: int, minimum: int = 0) -> int:
    n = _as_number(value)
    return max(minimum, int(default) if n is None else int(n))
