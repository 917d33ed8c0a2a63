from typing import Any, Dict, Mapping, Optional

Filters = Mapping[str, Any]

RESERVED_PARAMS = {"order", "limit", "events", "select"}
_MULTI_VALUE_TYPES = (list, tuple, set, frozenset)


def as_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def row_matches(row: Mapping[str, Any], filters: Optional[Filters]) -> bool:
    for key, expected in (filters or {}).items():
        actual = as_text(row.get(key))
        if isinstance(expected, _MULTI_VALUE_TYPES):
            if actual not in {as_text(item) for item in expected}:
                return False
        elif actual != as_text(expected):
            return False
    return True


def to_query_params(filters: Optional[Filters]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for key, value in (filters or {}).items():
        if isinstance(value, _MULTI_VALUE_TYPES):
            params[key] = f"in.({','.join(as_text(item) for item in value)})"
        else:
            params[key] = f"eq.{as_text(value)}"
    return params


def parse_query_params(params: Mapping[str, str]) -> Dict[str, Any]:
    """Read `col=eq.value` and `col=in.(a,b)` query filters."""
    filters: Dict[str, Any] = {}
    for key, raw in params.items():
        if key in RESERVED_PARAMS:
            continue
        if raw.startswith("eq."):
            filters[key] = raw[3:]
        elif raw.startswith("in.(") and raw.endswith(")"):
            filters[key] = [item for item in raw[4:-1].split(",") if item]
        else:
            raise ValueError(f"Unsupported filter for {key}: {raw}")
    return filters
