"""Flow compilation and the in-process registry of validated flow versions.

Authors write flows in YAML (or JSON).  Compiling validates the document and
emits the normalized JSON artifact that the runtime loads.  The CLI exits
non-zero and prints every error, one per line, when a flow is invalid.

Usage:
    intakeflow-compile flows/lawn_intake.yaml -o build/lawn_intake.json
    intakeflow-compile flows/lawn_intake.yaml --require-reachable
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

import yaml

from intakeflow.errors import FlowNotFoundError, StructuralValidationError
from intakeflow.flows.models import FlowGraph
from intakeflow.flows.validator import ErrorKind, ValidationIssue, ValidationResult, validate

logger = logging.getLogger(__name__)

FLOW_SUFFIXES = (".yaml", ".yml", ".json")


# ── Loading ──────────────────────────────────────────────────────────


def load_source(path: str | Path) -> Any:
    """Parse a flow source file.  JSON for ``.json``, YAML otherwise."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def compile_file(path: str | Path, *, require_reachable: bool = False) -> ValidationResult:
    """Load and validate *path*.  Unreadable files become a single issue."""
    try:
        document = load_source(path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        issue = ValidationIssue(ErrorKind.INVALID_DOCUMENT, f"Cannot read {path}: {exc}")
        return ValidationResult(None, (issue,))
    return validate(document, require_reachable=require_reachable)


def compile_flow(document: Any, *, require_reachable: bool = False) -> dict[str, Any]:
    """Validate *document* and return its normalized form.

    Raises ``StructuralValidationError`` with every defect on failure.
    """
    result = validate(document, require_reachable=require_reachable)
    if not result.ok:
        raise StructuralValidationError(list(result.errors))
    return result.graph.to_document()


# ── Registry ─────────────────────────────────────────────────────────


class FlowRegistry:
    """Validated graphs keyed by ``id@version``.

    Graphs are immutable once registered and shared read-only by every
    session of that version.  ``get("id")`` resolves to the version
    registered most recently for that flow id.
    """

    def __init__(self) -> None:
        self._graphs: dict[str, FlowGraph] = {}
        self._latest: dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, graph: FlowGraph) -> str:
        key = graph.version_key
        with self._lock:
            if key in self._graphs:
                logger.warning("Flow %s registered twice; keeping the newer graph", key)
            self._graphs[key] = graph
            self._latest[graph.meta.id] = key
        logger.info("Registered flow %s (%d nodes)", key, len(graph.nodes))
        return key

    def get(self, key: str) -> FlowGraph:
        with self._lock:
            if "@" not in key:
                key = self._latest.get(key, key)
            graph = self._graphs.get(key)
        if graph is None:
            raise FlowNotFoundError(f"No flow registered as {key!r}")
        return graph

    def versions(self) -> list[str]:
        with self._lock:
            return sorted(self._graphs)

    def __len__(self) -> int:
        return len(self._graphs)

    @classmethod
    def from_directory(
        cls, directory: str | Path, *, require_reachable: bool = False,
    ) -> FlowRegistry:
        """Compile every flow file in *directory*.  Any invalid file is fatal."""
        registry = cls()
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("Flows directory %s does not exist; registry is empty", directory)
            return registry
        for path in sorted(directory.iterdir()):
            if path.suffix not in FLOW_SUFFIXES:
                continue
            result = compile_file(path, require_reachable=require_reachable)
            if not result.ok:
                logger.error("Flow %s failed validation", path)
                raise StructuralValidationError(list(result.errors))
            for warning in result.warnings:
                logger.warning("%s: %s", path.name, warning.message)
            registry.register(result.graph)
        return registry


# ── CLI ──────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    """Compile one flow source; exit status 1 when it is invalid."""
    parser = argparse.ArgumentParser(description="Validate and compile an IntakeFlow definition")
    parser.add_argument("source", help="Flow definition (.yaml, .yml or .json)")
    parser.add_argument("-o", "--output", help="Write the normalized JSON here (default: stdout)")
    parser.add_argument(
        "--require-reachable", action="store_true",
        help="Treat nodes unreachable from the start node as errors",
    )
    args = parser.parse_args(argv)

    result = compile_file(args.source, require_reachable=args.require_reachable)
    if not result.ok:
        print(f"{args.source}: {len(result.errors)} error(s)", file=sys.stderr)
        for issue in result.errors:
            print(f"  - {issue.message}", file=sys.stderr)
        return 1

    graph = result.graph
    rendered = json.dumps(graph.to_document(), indent=2, ensure_ascii=False)
    report = sys.stdout
    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(rendered + "\n", encoding="utf-8")
    else:
        print(rendered)
        report = sys.stderr

    print(
        f"Compiled {graph.version_key}: {len(graph.nodes)} nodes, "
        f"{graph.question_count} questions",
        file=report,
    )
    for warning in result.warnings:
        print(f"warning: {warning.message}", file=report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
