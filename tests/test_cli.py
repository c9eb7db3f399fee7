"""
Tests for the flowengine CLI: validate, order, run, show and list.
"""

import json
import logging

import pytest
from click.testing import CliRunner

from flowengine.cli import main

WORKFLOW = {
    "id": "wf_cli",
    "nodes": [
        {"id": "in", "name": "Input", "type": "INPUT", "config": {"fields": [{"name": "topic", "required": True}]}},
        {"id": "writer", "name": "Writer", "type": "PROCESS", "config": {"user_prompt": "Write about {{Input.topic}}"}},
        {"id": "out", "name": "Output", "type": "OUTPUT", "config": {"template": "Final: {{Writer.result}}"}},
    ],
    "edges": [
        {"id": "e1", "source": "in", "target": "writer"},
        {"id": "e2", "source": "writer", "target": "out"},
    ],
}


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    monkeypatch.delenv("FLOWENGINE_EVENT_WEBHOOK", raising=False)
    monkeypatch.delenv("FLOWENGINE_DATA_DIR", raising=False)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def workflow_file(tmp_path):
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(WORKFLOW), encoding="utf-8")
    return path


def parse(result):
    return json.loads(result.stdout)


def run_workflow(tmp_path, workflow_file, *args):
    return CliRunner().invoke(
        main,
        ["run", str(workflow_file), "--data-dir", str(tmp_path / "data"), "--log-level", "CRITICAL", *args],
    )


def test_validate_reports_valid_workflow(workflow_file):
    result = CliRunner().invoke(main, ["validate", str(workflow_file)])

    assert result.exit_code == 0
    assert parse(result) == {"workflow_id": "wf_cli", "valid": True, "errors": []}


def test_validate_reports_cycles(tmp_path):
    cyclic = {
        "nodes": [{"id": "a", "name": "A", "type": "PROCESS"}, {"id": "b", "name": "B", "type": "PROCESS"}],
        "edges": [{"id": "ab", "source": "a", "target": "b"}, {"id": "ba", "source": "b", "target": "a"}],
    }
    path = tmp_path / "cyclic.json"
    path.write_text(json.dumps(cyclic), encoding="utf-8")

    result = CliRunner().invoke(main, ["validate", str(path)])

    assert result.exit_code == 1
    data = parse(result)
    assert data["workflow_id"] == "cyclic"
    assert data["valid"] is False
    assert "cycle" in data["errors"][0]


def test_order_and_layers(workflow_file):
    flat = CliRunner().invoke(main, ["order", str(workflow_file)])
    layered = CliRunner().invoke(main, ["order", str(workflow_file), "--layers"])

    assert [n["id"] for n in parse(flat)] == ["in", "writer", "out"]
    assert [[n["id"] for n in layer] for layer in parse(layered)] == [["in"], ["writer"], ["out"]]


def test_run_echoes_resolved_prompts(tmp_path, workflow_file):
    result = run_workflow(tmp_path, workflow_file, "--input", '{"topic": "tea"}')

    assert result.exit_code == 0
    data = parse(result)
    assert data["status"] == "COMPLETED"
    assert data["output"] == {"result": "Final: Write about tea"}
    assert (tmp_path / "data" / data["execution_id"] / "execution.json").exists()


def test_run_exits_non_zero_on_failure(tmp_path, workflow_file):
    result = run_workflow(tmp_path, workflow_file)

    assert result.exit_code == 1
    data = parse(result)
    assert data["status"] == "FAILED"
    assert "topic" in data["error"]


def test_run_rejects_non_object_input(tmp_path, workflow_file):
    result = run_workflow(tmp_path, workflow_file, "--input", "[1, 2]")

    assert result.exit_code == 2
    assert "JSON object" in result.output


def test_show_and_list_stored_executions(tmp_path, workflow_file):
    run_result = run_workflow(tmp_path, workflow_file, "--input", '{"topic": "tea"}')
    execution_id = parse(run_result)["execution_id"]
    data_dir = str(tmp_path / "data")

    shown = CliRunner().invoke(main, ["show", execution_id, "--data-dir", data_dir])
    listed = CliRunner().invoke(main, ["list", "--data-dir", data_dir, "--workflow-id", "wf_cli"])

    assert shown.exit_code == 0
    shown_data = parse(shown)
    assert shown_data["execution"]["id"] == execution_id
    assert "checkpoint" not in shown_data["execution"]
    assert [log["node_id"] for log in shown_data["node_logs"]] == ["in", "writer", "out"]

    assert listed.exit_code == 0
    assert [(r["id"], r["status"]) for r in parse(listed)] == [(execution_id, "COMPLETED")]


def test_show_unknown_execution(tmp_path):
    result = CliRunner().invoke(main, ["show", "exec_missing", "--data-dir", str(tmp_path)])

    assert result.exit_code == 1
    assert "Execution not found: exec_missing" in result.output
