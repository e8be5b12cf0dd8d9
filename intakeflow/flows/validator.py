"""Structural validation of flow definitions.

``validate`` inspects a raw (already parsed) flow document and either returns
an immutable ``FlowGraph`` or the complete list of defects.  Checks never stop
at the first failure so a single run surfaces everything an author has to fix.

Reference checks are direct only: every ``next``/``defaultNext``/transition/
follow-up target must name an existing node.  Reachability from the start node
is reported as a warning by default and becomes an error with
``require_reachable=True``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from intakeflow.errors import StructuralValidationError
from intakeflow.flows.models import (
    INPUT_TYPES,
    NODE_TYPES,
    SELECT_INPUT_TYPES,
    FlowDefinition,
    FlowGraph,
)
from intakeflow.flows.predicates import check_predicate
from intakeflow.engine.projection import TRANSFORMS

logger = logging.getLogger(__name__)


class ErrorKind(StrEnum):
    INVALID_DOCUMENT = "invalid_document"
    MISSING_FIELD = "missing_field"
    INVALID_MAX_QUESTIONS = "invalid_max_questions"
    MISSING_NODES = "missing_nodes"
    MISSING_NODE_ID = "missing_node_id"
    DUPLICATE_NODE_ID = "duplicate_node_id"
    MISSING_TYPE = "missing_type"
    UNKNOWN_TYPE = "unknown_type"
    MISSING_QUESTION_TEXT = "missing_question_text"
    MISSING_INPUT_TYPE = "missing_input_type"
    UNKNOWN_INPUT_TYPE = "unknown_input_type"
    MISSING_OPTIONS = "missing_options"
    UNKNOWN_ENUM = "unknown_enum"
    MISSING_MESSAGE_TEXT = "missing_message_text"
    UNKNOWN_START_NODE = "unknown_start_node"
    DANGLING_REFERENCE = "dangling_reference"
    INVALID_PREDICATE = "invalid_predicate"
    INVALID_PATTERN = "invalid_pattern"
    INVALID_MAPPING = "invalid_mapping"
    SCHEMA = "schema"
    UNREACHABLE_NODE = "unreachable_node"
    MESSAGE_CYCLE = "message_cycle"
    # Warnings
    TOO_MANY_QUESTIONS = "too_many_questions"


@dataclass(frozen=True)
class ValidationIssue:
    kind: ErrorKind
    message: str
    node_id: str | None = None


@dataclass(frozen=True)
class ValidationResult:
    graph: FlowGraph | None
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def ok(self) -> bool:
        return self.graph is not None and not self.errors


@dataclass
class _Issues:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def error(self, kind: ErrorKind, message: str, node_id: str | None = None) -> None:
        self.errors.append(ValidationIssue(kind, message, node_id))

    def warn(self, kind: ErrorKind, message: str, node_id: str | None = None) -> None:
        self.warnings.append(ValidationIssue(kind, message, node_id))


# ── Public API ───────────────────────────────────────────────────────


def validate(definition: Any, *, require_reachable: bool = False) -> ValidationResult:
    """Validate a parsed flow document.  Never raises, never mutates input."""
    issues = _Issues()
    if not isinstance(definition, Mapping):
        issues.error(ErrorKind.INVALID_DOCUMENT, "Flow definition must be a mapping")
        return ValidationResult(None, tuple(issues.errors))

    flow = definition.get("flow")
    _check_flow_meta(flow, issues)

    enums = definition.get("enums") or {}
    if not isinstance(enums, Mapping):
        issues.error(ErrorKind.SCHEMA, '"enums" must be a mapping of name to values')
        enums = {}

    nodes = _check_nodes(definition.get("nodes"), enums, issues)
    node_ids = set(nodes)

    start = flow.get("startNodeId") if isinstance(flow, Mapping) else None
    if not isinstance(start, str):
        start = None
    if start and start not in node_ids:
        issues.error(
            ErrorKind.UNKNOWN_START_NODE,
            f'startNodeId "{start}" not found in nodes',
        )

    for node_id, node in nodes.items():
        _check_references(node_id, node, node_ids, issues)

    _check_config_mappings(definition.get("configMappings"), node_ids, issues)
    _check_message_cycles(nodes, issues)

    if start in node_ids:
        _check_reachability(start, nodes, issues, require_reachable)

    max_questions = flow.get("maxQuestions") if isinstance(flow, Mapping) else None
    question_count = sum(1 for n in nodes.values() if n.get("type") == "question")
    if isinstance(max_questions, int) and question_count > max_questions >= 1:
        issues.warn(
            ErrorKind.TOO_MANY_QUESTIONS,
            f"{question_count} questions exceeds maxQuestions ({max_questions})",
        )

    if issues.errors:
        return ValidationResult(None, tuple(issues.errors), tuple(issues.warnings))

    try:
        model = FlowDefinition.model_validate(definition)
    except PydanticValidationError as exc:
        for err in exc.errors():
            loc = ".".join(str(p) for p in err["loc"])
            issues.error(ErrorKind.SCHEMA, f"{loc}: {err['msg']}")
        return ValidationResult(None, tuple(issues.errors), tuple(issues.warnings))

    graph = FlowGraph.from_definition(
        model, warnings=tuple(w.message for w in issues.warnings),
    )
    logger.debug(
        "Validated flow %s: %d nodes, %d warning(s)",
        graph.version_key, len(graph.nodes), len(issues.warnings),
    )
    return ValidationResult(graph, (), tuple(issues.warnings))


def build_graph(definition: Any, *, require_reachable: bool = False) -> FlowGraph:
    """Like ``validate`` but raises ``StructuralValidationError`` on failure."""
    result = validate(definition, require_reachable=require_reachable)
    if not result.ok:
        raise StructuralValidationError(list(result.errors))
    return result.graph


# ── Individual checks ────────────────────────────────────────────────


def _check_flow_meta(flow: Any, issues: _Issues) -> None:
    if not isinstance(flow, Mapping):
        issues.error(ErrorKind.MISSING_FIELD, 'Missing "flow" object')
        return
    for name in ("id", "name", "version", "startNodeId"):
        if not flow.get(name):
            issues.error(ErrorKind.MISSING_FIELD, f"Missing flow.{name}")
    start = flow.get("startNodeId")
    if start and not isinstance(start, str):
        issues.error(ErrorKind.SCHEMA, "flow.startNodeId must be a node id string")
    max_questions = flow.get("maxQuestions")
    if isinstance(max_questions, bool) or not isinstance(max_questions, int) or max_questions < 1:
        issues.error(ErrorKind.INVALID_MAX_QUESTIONS, "flow.maxQuestions must be at least 1")


def _check_nodes(
    nodes: Any, enums: Mapping[str, Any], issues: _Issues,
) -> dict[str, Mapping[str, Any]]:
    """Check per-node shape.  Returns the well-identified nodes by id."""
    if not isinstance(nodes, list) or not nodes:
        issues.error(ErrorKind.MISSING_NODES, 'Missing or empty "nodes" array')
        return {}

    seen: dict[str, Mapping[str, Any]] = {}
    for index, node in enumerate(nodes):
        if not isinstance(node, Mapping):
            issues.error(ErrorKind.SCHEMA, f"Node #{index} must be a mapping")
            continue
        node_id = node.get("id")
        if not node_id or not isinstance(node_id, str):
            issues.error(ErrorKind.MISSING_NODE_ID, f"Node #{index} missing id")
            continue
        if node_id in seen:
            issues.error(ErrorKind.DUPLICATE_NODE_ID, f"Duplicate node id: {node_id}", node_id)
        else:
            seen[node_id] = node

        node_type = node.get("type")
        if not node_type:
            issues.error(ErrorKind.MISSING_TYPE, f"Node {node_id} missing type", node_id)
        elif not isinstance(node_type, str) or node_type not in NODE_TYPES:
            issues.error(
                ErrorKind.UNKNOWN_TYPE,
                f"Node {node_id} has unknown type {node_type!r}",
                node_id,
            )
        elif node_type == "question":
            _check_question(node_id, node, enums, issues)
        elif node_type == "message" and not node.get("text"):
            issues.error(ErrorKind.MISSING_MESSAGE_TEXT, f"Message node {node_id} missing text", node_id)
    return seen


def _check_question(
    node_id: str, node: Mapping[str, Any], enums: Mapping[str, Any], issues: _Issues,
) -> None:
    if not node.get("question") and not node.get("text"):
        issues.error(
            ErrorKind.MISSING_QUESTION_TEXT,
            f"Question node {node_id} missing question text",
            node_id,
        )

    input_type = node.get("inputType")
    if not input_type:
        issues.error(
            ErrorKind.MISSING_INPUT_TYPE, f"Question node {node_id} missing inputType", node_id,
        )
    elif not isinstance(input_type, str) or input_type not in INPUT_TYPES:
        issues.error(
            ErrorKind.UNKNOWN_INPUT_TYPE,
            f"Question node {node_id} has unknown inputType {input_type!r}",
            node_id,
        )

    options_from = node.get("optionsFrom")
    if options_from is not None and not isinstance(options_from, str):
        issues.error(
            ErrorKind.SCHEMA, f"Question node {node_id} optionsFrom must be an enum name", node_id,
        )
    elif options_from is not None and options_from not in enums:
        issues.error(
            ErrorKind.UNKNOWN_ENUM,
            f"Question node {node_id} references unknown enum {options_from!r}",
            node_id,
        )
    elif (
        isinstance(input_type, str)
        and input_type in SELECT_INPUT_TYPES
        and not options_from
        and not node.get("options")
    ):
        issues.error(ErrorKind.MISSING_OPTIONS, f"Select node {node_id} missing options", node_id)

    validation = node.get("validation")
    if isinstance(validation, Mapping) and validation.get("pattern"):
        try:
            re.compile(validation["pattern"])
        except (re.error, TypeError) as exc:
            issues.error(
                ErrorKind.INVALID_PATTERN,
                f"Question node {node_id} has invalid validation.pattern: {exc}",
                node_id,
            )


def _check_references(
    node_id: str, node: Mapping[str, Any], node_ids: set[str], issues: _Issues,
) -> None:
    for attr in ("next", "defaultNext"):
        target = node.get(attr)
        if target is not None and not isinstance(target, str):
            issues.error(
                ErrorKind.SCHEMA, f"Node {node_id} {attr} must be a node id string", node_id,
            )
        elif target and target not in node_ids:
            issues.error(
                ErrorKind.DANGLING_REFERENCE,
                f"Node {node_id} references unknown {attr} node: {target}",
                node_id,
            )

    for attr, target_key in (("transitions", "next"), ("followUps", "ask")):
        entries = node.get(attr)
        if entries is None:
            continue
        if not isinstance(entries, list):
            issues.error(ErrorKind.SCHEMA, f"Node {node_id} {attr} must be a list", node_id)
            continue
        label = "transition" if attr == "transitions" else "followUp"
        for entry in entries:
            if not isinstance(entry, Mapping):
                issues.error(ErrorKind.SCHEMA, f"Node {node_id} has a malformed {label}", node_id)
                continue
            target = entry.get(target_key)
            if not isinstance(target, str) or target not in node_ids:
                issues.error(
                    ErrorKind.DANGLING_REFERENCE,
                    f"Node {node_id} {label} references unknown node: {target}",
                    node_id,
                )
            for problem in check_predicate(entry.get("when", "always")):
                issues.error(
                    ErrorKind.INVALID_PREDICATE,
                    f"Node {node_id} {label} has invalid predicate: {problem}",
                    node_id,
                )


def _check_config_mappings(mappings: Any, node_ids: set[str], issues: _Issues) -> None:
    if mappings is None:
        return
    if not isinstance(mappings, list):
        issues.error(ErrorKind.INVALID_MAPPING, '"configMappings" must be a list')
        return
    for index, mapping in enumerate(mappings):
        if not isinstance(mapping, Mapping) or not mapping.get("targetPath"):
            issues.error(ErrorKind.INVALID_MAPPING, f"configMappings[{index}] missing targetPath")
            continue
        target = mapping["targetPath"]
        source_node = mapping.get("sourceNodeId")
        if not mapping.get("source") and not source_node:
            issues.error(ErrorKind.INVALID_MAPPING, f"Mapping {target} needs source or sourceNodeId")
        elif source_node and (not isinstance(source_node, str) or source_node not in node_ids):
            issues.error(
                ErrorKind.INVALID_MAPPING,
                f"Mapping {target} references unknown node: {source_node}",
            )
        transform = mapping.get("transform", "direct")
        if not isinstance(transform, str) or transform not in TRANSFORMS:
            issues.error(ErrorKind.INVALID_MAPPING, f"Mapping {target} has unknown transform {transform!r}")


def _check_message_cycles(nodes: Mapping[str, Mapping[str, Any]], issues: _Issues) -> None:
    """Message nodes never wait for input; a loop made only of them never ends."""
    reported: set[frozenset[str]] = set()
    for node_id, node in nodes.items():
        if node.get("type") != "message":
            continue
        path: list[str] = []
        current: Any = node_id
        while isinstance(current, str) and nodes.get(current, {}).get("type") == "message":
            if current in path:
                cycle = frozenset(path[path.index(current):])
                if cycle not in reported:
                    reported.add(cycle)
                    issues.error(
                        ErrorKind.MESSAGE_CYCLE,
                        f"Message nodes form a cycle: {' -> '.join(path[path.index(current):] + [current])}",
                        current,
                    )
                break
            path.append(current)
            current = nodes[current].get("next") or nodes[current].get("defaultNext")


def _edges(node: Mapping[str, Any]) -> list[str]:
    targets = [node.get("next"), node.get("defaultNext")]
    for attr, key in (("transitions", "next"), ("followUps", "ask")):
        entries = node.get(attr)
        if isinstance(entries, list):
            targets.extend(e.get(key) for e in entries if isinstance(e, Mapping))
    return [t for t in targets if isinstance(t, str) and t]


def _check_reachability(
    start: str,
    nodes: Mapping[str, Mapping[str, Any]],
    issues: _Issues,
    require_reachable: bool,
) -> None:
    reachable = {start}
    frontier = [start]
    while frontier:
        for target in _edges(nodes[frontier.pop()]):
            if target in nodes and target not in reachable:
                reachable.add(target)
                frontier.append(target)

    for node_id in nodes:
        if node_id in reachable:
            continue
        message = f"Node {node_id} is not reachable from the start node"
        if require_reachable:
            issues.error(ErrorKind.UNREACHABLE_NODE, message, node_id)
        else:
            issues.warn(ErrorKind.UNREACHABLE_NODE, message, node_id)
