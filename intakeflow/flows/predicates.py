"""The ``when`` predicate language used by transitions and follow-ups.

A predicate is either one of the catch-all strings (``always``, ``else``,
``default``, ``true``) or a mapping::

    {field: collected.timeline, equals: asap}
    {field: derived.urgency, in: [high, medium]}
    {field: collected.services_requested, contains: cleanup}
    {field: derived.address_confidence, gte: 0.8}
    {field: collected.notes, exists: true}
    {all: [...]}, {any: [...]}, {not: {...}}

``field`` is a dotted path into the session (``collected.``, ``derived.``,
``scheduling.``), the word ``answer`` for the current node's value, or a bare
name which is read from ``collected``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

CATCH_ALL = frozenset({"always", "else", "default", "true"})
COMPARISONS = ("equals", "notEquals", "in", "contains", "exists", "gt", "gte", "lt", "lte")
COMBINATORS = ("all", "any", "not")

MISSING = object()

Lookup = Callable[[str], Any]


def check_predicate(predicate: Any) -> list[str]:
    """Return a list of problems with *predicate* (empty when well-formed)."""
    if predicate is None or predicate is True:
        return []
    if isinstance(predicate, str):
        if predicate.strip().lower() in CATCH_ALL:
            return []
        return [f"unknown predicate {predicate!r}"]
    if not isinstance(predicate, Mapping):
        return [f"predicate must be a string or mapping, got {type(predicate).__name__}"]

    combinators = [k for k in COMBINATORS if k in predicate]
    comparisons = [k for k in COMPARISONS if k in predicate]

    if combinators:
        if len(predicate) != 1:
            return [f"{combinators[0]!r} must be the only key in its predicate"]
        key = combinators[0]
        value = predicate[key]
        if key == "not":
            return check_predicate(value)
        if not isinstance(value, list) or not value:
            return [f"{key!r} needs a non-empty list of predicates"]
        problems: list[str] = []
        for sub in value:
            problems.extend(check_predicate(sub))
        return problems

    if "field" not in predicate or not isinstance(predicate["field"], str):
        return ["predicate is missing a 'field' path"]
    if len(comparisons) != 1:
        return [f"predicate on {predicate['field']!r} needs exactly one of {', '.join(COMPARISONS)}"]
    if comparisons[0] == "in" and not isinstance(predicate["in"], list):
        return [f"'in' on {predicate['field']!r} needs a list"]
    if comparisons[0] == "contains" and isinstance(predicate["contains"], (list, Mapping)):
        return [f"'contains' on {predicate['field']!r} needs a single value"]
    return []


def evaluate(predicate: Any, lookup: Lookup) -> bool:
    """Evaluate a well-formed predicate against values resolved by *lookup*."""
    if predicate is None or predicate is True:
        return True
    if isinstance(predicate, str):
        return predicate.strip().lower() in CATCH_ALL

    if "all" in predicate:
        return all(evaluate(p, lookup) for p in predicate["all"])
    if "any" in predicate:
        return any(evaluate(p, lookup) for p in predicate["any"])
    if "not" in predicate:
        return not evaluate(predicate["not"], lookup)

    value = lookup(predicate["field"])

    if "exists" in predicate:
        present = value is not MISSING and value is not None
        return present == bool(predicate["exists"])
    if value is MISSING:
        return False
    if "equals" in predicate:
        return value == predicate["equals"]
    if "notEquals" in predicate:
        return value != predicate["notEquals"]
    if "in" in predicate:
        return value in predicate["in"]
    if "contains" in predicate:
        operand = predicate["contains"]
        if isinstance(value, str):
            return isinstance(operand, str) and operand in value
        if isinstance(value, (list, tuple, set, frozenset)):
            return any(item == operand for item in value)
        return False
    return _compare(value, predicate)


def _compare(value: Any, predicate: Mapping[str, Any]) -> bool:
    try:
        if "gt" in predicate:
            return value > predicate["gt"]
        if "gte" in predicate:
            return value >= predicate["gte"]
        if "lt" in predicate:
            return value < predicate["lt"]
        if "lte" in predicate:
            return value <= predicate["lte"]
    except TypeError:
        return False
    return False


def resolve_path(
    path: str,
    scopes: Mapping[str, Mapping[str, Any]],
    *,
    default_scope: str = "collected",
) -> Any:
    """Resolve a dotted *path* against named *scopes*, or ``MISSING``."""
    parts = path.split(".")
    if parts[0] in scopes:
        current: Any = scopes[parts[0]]
        parts = parts[1:]
    else:
        current = scopes.get(default_scope, {})
    for part in parts:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current
