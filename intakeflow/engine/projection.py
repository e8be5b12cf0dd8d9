"""Project collected/derived session state onto an external record shape.

Driven by the flow's ``configMappings``; consulted only when an activation
node is reached.  Each mapping reads one value, runs it through a named
transform and writes it at a dotted ``targetPath``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from intakeflow.flows.predicates import MISSING, resolve_path

if TYPE_CHECKING:
    from intakeflow.engine.session import SessionState
    from intakeflow.flows.models import ConfigMapping


def _direct(value: Any, params: Mapping[str, Any]) -> Any:
    return value


def _parse_number(value: Any, params: Mapping[str, Any]) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0
        return int(number) if number.is_integer() else number
    return 0


def _parse_boolean(value: Any, params: Mapping[str, Any]) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1")
    return False


def _split_list(value: Any, params: Mapping[str, Any]) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        separator = params.get("separator")
        if not isinstance(separator, str) or not separator:
            separator = ","
        return [part.strip() for part in value.split(separator) if part.strip()]
    return []


def _array_contains(value: Any, params: Mapping[str, Any]) -> bool:
    if isinstance(value, (list, tuple)) and "checkValue" in params:
        return params["checkValue"] in value
    return False


def _map_value(value: Any, params: Mapping[str, Any]) -> Any:
    table = params.get("map")
    if not isinstance(table, Mapping):
        table = {}
    if isinstance(value, (list, tuple)):
        return [_lookup(table, item, params.get("default", item)) for item in value]
    return _lookup(table, value, params.get("default", value))


def _lookup(table: Mapping[Any, Any], value: Any, default: Any) -> Any:
    try:
        return table.get(value, default)
    except TypeError:
        # unhashable
        return default


TRANSFORMS: dict[str, Callable[[Any, Mapping[str, Any]], Any]] = {
    "direct": _direct,
    "parseNumber": _parse_number,
    "parseBoolean": _parse_boolean,
    "splitList": _split_list,
    "arrayContains": _array_contains,
    "mapValue": _map_value,
}


def set_nested(target: dict[str, Any], path: str, value: Any) -> None:
    """Assign *value* at dotted *path*, creating intermediate mappings."""
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def project_record(
    mappings: Iterable[ConfigMapping], session: SessionState,
) -> dict[str, Any]:
    """Apply *mappings* to the session; values that are absent are skipped."""
    scopes = session.scopes()
    record: dict[str, Any] = {}
    for mapping in mappings:
        value = resolve_path(mapping.source_path, scopes)
        if value is MISSING:
            continue
        transform = TRANSFORMS[mapping.transform]
        set_nested(record, mapping.target_path, transform(value, mapping.transform_params))
    return record
