"""Tests for the branchflow command line."""

import json
import logging
from pathlib import Path

import pytest

from branchflow import config
from branchflow.cli import _parse_input, main

LINEAR_WORKFLOW = {
    "id": "linear",
    "name": "Linear",
    "nodes": [
        {"id": "start", "type": "start"},
        {"id": "shout", "type": "process", "config": {"transform": "uppercase"}},
        {"id": "end", "type": "end"},
    ],
    "connections": [{"from": "start", "to": "shout"}, {"from": "shout", "to": "end"}],
}


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch):
    """No user configuration; root logging restored after main() reconfigures it."""
    monkeypatch.setattr(config, "BRANCHFLOW_CONFIG_FILE", tmp_path / "missing.json")
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def workflow_file(tmp_path: Path) -> Path:
    path = tmp_path / "linear.json"
    path.write_text(json.dumps(LINEAR_WORKFLOW), encoding="utf-8")
    return path


def test_parse_input():
    assert _parse_input(None) == {}
    assert _parse_input('{"input": 1}') == {"input": 1}
    assert _parse_input("hello") == {"input": "hello"}


class TestRun:
    def test_run_prints_the_record(self, workflow_file, capsys):
        exit_code = main(["run", str(workflow_file), "--input", "hello"])

        record = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert record["status"] == "completed"
        assert record["result"] == {"completed": True, "result": {"output": "HELLO"}}
        assert record["workflow_id"] == "linear"

    def test_run_with_branching(self, workflow_file, capsys):
        exit_code = main(["run", str(workflow_file), "--branching", "-i", '{"input": "x"}'])

        record = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert [b["name"] for b in record["branches"]] == ["Main Branch"]

    def test_linear_run(self, workflow_file, capsys):
        exit_code = main(["run", str(workflow_file), "--linear", "--input", "abc"])

        output = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert output == {
            "status": "completed",
            "result": {"completed": True, "result": {"output": "ABC"}},
            "error": None,
        }

    def test_failed_run_exits_1(self, tmp_path: Path, capsys):
        path = tmp_path / "bad.json"
        path.write_text(
            json.dumps({"id": "bad", "name": "Bad", "nodes": [{"id": "a", "type": "nope"}]}),
            encoding="utf-8",
        )

        exit_code = main(["run", str(path)])

        assert exit_code == 1
        assert json.loads(capsys.readouterr().out)["status"] == "failed"

    def test_missing_file_exits_2(self, tmp_path: Path, capsys):
        assert main(["run", str(tmp_path / "nope.json")]) == 2
        assert "Cannot load workflow" in capsys.readouterr().err


class TestValidate:
    def test_valid(self, workflow_file, capsys):
        assert main(["validate", str(workflow_file)]) == 0
        assert capsys.readouterr().out.strip() == "Valid: linear (start -> shout -> end)"

    def test_invalid(self, tmp_path: Path, capsys):
        path = tmp_path / "cycle.json"
        path.write_text(
            json.dumps(
                {
                    "id": "cycle",
                    "name": "Cycle",
                    "nodes": [{"id": "a", "type": "process"}, {"id": "b", "type": "process"}],
                    "connections": [{"from": "a", "to": "b"}, {"from": "b", "to": "a"}],
                }
            ),
            encoding="utf-8",
        )

        assert main(["validate", str(path)]) == 1
        assert "Invalid:" in capsys.readouterr().err

    def test_malformed_json_exits_2(self, tmp_path: Path):
        path = tmp_path / "broken.json"
        path.write_text("{", encoding="utf-8")

        assert main(["validate", str(path)]) == 2


def test_plugins_lists_builtin_node_types(capsys):
    assert main(["plugins"]) == 0

    out = capsys.readouterr().out
    for node_type in ("start", "process", "branch", "token-budget", "end"):
        assert node_type in out
