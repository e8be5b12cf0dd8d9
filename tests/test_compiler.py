"""Tests for flow compilation, the registry and the compile CLI."""

from __future__ import annotations

import json

import pytest
import yaml

from conftest import FLOWS_DIR, LAWN_FLOW_PATH
from intakeflow.errors import FlowNotFoundError, StructuralValidationError
from intakeflow.flows.compiler import FlowRegistry, compile_file, compile_flow, main
from intakeflow.flows.validator import ErrorKind, build_graph, validate


def _write(path, document, *, as_json=False):
    path.write_text(json.dumps(document) if as_json else yaml.safe_dump(document), encoding="utf-8")
    return path


class TestCompileFlow:
    def test_normalized_document_validates_again(self, lawn_document):
        compiled = compile_flow(lawn_document)
        assert compiled["flow"]["startNodeId"] == "welcome"
        assert compiled["nodes"][1]["inputType"] == "multi_select"
        again = validate(compiled)
        assert again.ok
        assert again.graph.version_key == "lawn_intake@1.0"

    def test_raises_structural_error(self, make_flow):
        with pytest.raises(StructuralValidationError):
            compile_flow(make_flow([{"id": "q1", "type": "question"}]))

    def test_unreadable_file(self, tmp_path):
        result = compile_file(tmp_path / "missing.yaml")
        assert not result.ok
        assert result.errors[0].kind is ErrorKind.INVALID_DOCUMENT

    def test_broken_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("flow: [unclosed", encoding="utf-8")
        assert compile_file(path).errors[0].kind is ErrorKind.INVALID_DOCUMENT

    def test_non_utf8_source(self, tmp_path):
        path = tmp_path / "latin.yaml"
        path.write_bytes(b"\xff\xfe flow: x")
        result = compile_file(path)
        assert not result.ok
        assert result.errors[0].kind is ErrorKind.INVALID_DOCUMENT

    def test_json_source(self, tmp_path, lawn_document):
        path = _write(tmp_path / "lawn.json", lawn_document, as_json=True)
        assert compile_file(path).ok


class TestFlowRegistry:
    def test_from_directory(self):
        registry = FlowRegistry.from_directory(FLOWS_DIR)
        assert registry.versions() == ["lawn_intake@1.0"]
        assert registry.get("lawn_intake").version_key == "lawn_intake@1.0"

    def test_bare_id_resolves_to_latest(self, lawn_document):
        registry = FlowRegistry()
        registry.register(build_graph(lawn_document))
        lawn_document["flow"]["version"] = "2.0"
        registry.register(build_graph(lawn_document))

        assert registry.get("lawn_intake").meta.version == "2.0"
        assert registry.get("lawn_intake@1.0").meta.version == "1.0"
        assert len(registry) == 2

    def test_unknown_version(self):
        with pytest.raises(FlowNotFoundError):
            FlowRegistry().get("lawn_intake@9")

    def test_invalid_file_is_fatal(self, tmp_path, make_flow):
        _write(tmp_path / "bad.yaml", make_flow([{"id": "q1", "type": "question"}]))
        with pytest.raises(StructuralValidationError):
            FlowRegistry.from_directory(tmp_path)

    def test_missing_directory_is_empty(self, tmp_path):
        assert len(FlowRegistry.from_directory(tmp_path / "nope")) == 0

    def test_ignores_other_files(self, tmp_path):
        (tmp_path / "README.md").write_text("# flows", encoding="utf-8")
        assert FlowRegistry.from_directory(tmp_path).versions() == []


class TestCompileCli:
    def test_writes_output_and_reports(self, tmp_path, capsys):
        out = tmp_path / "build" / "lawn.json"
        assert main([str(LAWN_FLOW_PATH), "-o", str(out)]) == 0

        compiled = json.loads(out.read_text(encoding="utf-8"))
        assert compiled["flow"]["id"] == "lawn_intake"
        assert "Compiled lawn_intake@1.0: 10 nodes, 7 questions" in capsys.readouterr().out

    def test_stdout_is_the_artifact(self, capsys):
        assert main([str(LAWN_FLOW_PATH)]) == 0
        captured = capsys.readouterr()
        assert json.loads(captured.out)["flow"]["version"] == "1.0"
        assert "Compiled" in captured.err

    def test_invalid_flow_exits_non_zero(self, tmp_path, capsys, make_flow):
        path = _write(tmp_path / "bad.yaml", make_flow([
            {"id": "q1", "type": "question", "question": "?", "inputType": "free_text", "next": "gone"},
            {"id": "q2", "type": "message"},
        ]))
        assert main([str(path)]) == 1
        err = capsys.readouterr().err
        assert f"{path}: 2 error(s)" in err
        assert "  - Node q1 references unknown next node: gone" in err
        assert "  - Message node q2 missing text" in err

    def test_non_utf8_source_exits_non_zero(self, tmp_path, capsys):
        path = tmp_path / "latin.yaml"
        path.write_bytes(b"\xff\xfe flow: x")
        assert main([str(path)]) == 1
        assert "Cannot read" in capsys.readouterr().err

    def test_require_reachable_flag(self, tmp_path, make_flow):
        path = _write(tmp_path / "orphan.yaml", make_flow([
            {"id": "q1", "type": "question", "question": "?", "inputType": "free_text"},
            {"id": "q2", "type": "question", "question": "?", "inputType": "free_text"},
        ]))
        assert main([str(path)]) == 0
        assert main([str(path), "--require-reachable"]) == 1
