from __future__ import annotations

import math
from typing import Any, List

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Coerce a loosely-typed value into a boolean.

    settings.yaml is hand-edited, so values may arrive as strings like
    "false"/"0". Unknown strings fall back to `default` rather than to
    bool("false") == True.
    """
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, float):
        if math.isnan(value):
            return bool(default)
        return value != 0.0
    if isinstance(value, str):
        s = value.strip().lower()
        if not s:
            return bool(default)
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        try:
            return int(s) != 0
        except ValueError:
            return bool(default)
    return bool(value)


def coerce_int(value: Any, *, default: int, minimum: int = 0) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        v = int(default)
    return max(minimum, v)


def coerce_str_list(value: Any) -> List[str]:
    """Accept a YAML list or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [s.strip() for s in value.split(",") if s.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value).strip()] if str(value).strip() else []
