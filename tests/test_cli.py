from __future__ import annotations

import json
import textwrap
from pathlib import Path

import yaml
from typer.testing import CliRunner

from conftest import intent_step, plan_of
from taskplan.cli import DEFAULT_CONFIG_TEMPLATE, app

SNAPSHOT = {
    "data": {
        "tasks": [
            {
                "id": "t1",
                "title": "Report task",
                "status": "todo",
                "priority": "medium",
                "tags": [],
                "createdAt": "2024-05-01T09:00:00.000Z",
                "updatedAt": "2024-05-01T09:00:00.000Z",
            }
        ]
    },
    "state": {"viewMode": "kanban"},
}


def _write_json(path: Path, payload) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_validate_reports_errors(tmp_path) -> None:
    plan_path = _write_json(tmp_path / "plan.json", {"version": 1, "goal": "x", "steps": [{"kind": "loop"}]})

    result = CliRunner().invoke(app, ["validate", str(plan_path)])

    assert result.exit_code == 1
    assert 'error: steps[0]: unknown step kind "loop"' in result.output


def test_validate_accepts_yaml_plans(tmp_path) -> None:
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(
        textwrap.dedent(
            """
            version: 1
            goal: switch to table
            steps:
              - kind: intent
                skeleton:
                  kind: ChangeView
                  viewMode: table
                  confidence: 0.9
                  source: human
            """
        ).lstrip(),
        encoding="utf-8",
    )

    result = CliRunner().invoke(app, ["validate", str(plan_path)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert "Plan is valid." in result.output


def test_risk_prints_assessment(tmp_path) -> None:
    plan_path = _write_json(tmp_path / "plan.json", plan_of(intent_step("DeleteTask", targetHint="Report")))
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(DEFAULT_CONFIG_TEMPLATE), encoding="utf-8")

    result = CliRunner().invoke(
        app, ["risk", str(plan_path), "--config", str(config_path)], catch_exceptions=False
    )

    assert result.exit_code == 0, result.output
    assert "Risk: high" in result.output
    assert "warning: [DESTRUCTIVE_WITHOUT_CONFIRM]" in result.output
    assert "Confirmation steps would be injected" in result.output


def test_run_with_approval_writes_outcome(tmp_path) -> None:
    plan_path = _write_json(tmp_path / "plan.json", plan_of(intent_step("DeleteTask", targetHint="Report")))
    snapshot_path = _write_json(tmp_path / "snapshot.json", SNAPSHOT)
    output_path = tmp_path / "out" / "outcome.json"

    result = CliRunner().invoke(
        app,
        ["run", str(plan_path), "--snapshot", str(snapshot_path), "--approve", "--output", str(output_path)],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    assert "Outcome: completed" in result.output
    outcome = json.loads(output_path.read_text(encoding="utf-8"))
    assert outcome["status"] == "completed"
    assert outcome["snapshot"]["data"]["tasks"][0]["deletedAt"]
    assert outcome["diff"]["tasksDeleted"] == ["t1"]


def test_run_without_answer_stops_at_confirmation(tmp_path) -> None:
    plan_path = _write_json(tmp_path / "plan.json", plan_of(intent_step("DeleteTask", targetHint="Report")))
    snapshot_path = _write_json(tmp_path / "snapshot.json", SNAPSHOT)
    output_path = tmp_path / "outcome.json"

    result = CliRunner().invoke(
        app,
        ["run", str(plan_path), "-s", str(snapshot_path), "-o", str(output_path)],
        catch_exceptions=False,
    )

    assert result.exit_code == 0, result.output
    outcome = json.loads(output_path.read_text(encoding="utf-8"))
    assert outcome["status"] == "confirm_required"
    assert outcome["confirmMessage"] == 'Delete "Report"?'
    assert "snapshot" not in outcome


def test_run_needing_clarification_exits_2(tmp_path) -> None:
    plan_path = _write_json(tmp_path / "plan.json", plan_of(intent_step("SelectTask", targetHint="Dentist")))
    snapshot_path = _write_json(tmp_path / "snapshot.json", SNAPSHOT)
    output_path = tmp_path / "outcome.json"

    result = CliRunner().invoke(
        app, ["run", str(plan_path), "-s", str(snapshot_path), "-o", str(output_path)]
    )

    assert result.exit_code == 2
    outcome = json.loads(output_path.read_text(encoding="utf-8"))
    assert outcome["clarification"]["reason"] == "NOT_FOUND"
    assert outcome["clarification"]["question"] == "Which task would you like to view?"


def test_init_config_refuses_to_overwrite(tmp_path) -> None:
    config_path = tmp_path / "config.yaml"
    runner = CliRunner()

    first = runner.invoke(app, ["init-config", str(config_path)], catch_exceptions=False)
    second = runner.invoke(app, ["init-config", str(config_path)])

    assert first.exit_code == 0, first.output
    assert yaml.safe_load(config_path.read_text(encoding="utf-8")) == DEFAULT_CONFIG_TEMPLATE
    assert second.exit_code == 1
    assert "already exists" in second.output
