from __future__ import annotations

from conftest import intent_step, make_snapshot, plan_of
from taskplan.planning.plan import parse_plan
from taskplan.planning.preflight import (
    BoundConfirmStep,
    BoundIfStep,
    BoundIntentStep,
    ClarificationReason,
    PreflightFailure,
    PreflightSuccess,
    run_preflight,
    snapshot_version,
    verify_snapshot_version,
)
from taskplan.policy.gate import PolicyConfig


def test_ambiguous_delete_needs_clarification(report_snapshot) -> None:
    plan = parse_plan(plan_of(intent_step("DeleteTask", targetHint="Report")))

    result = run_preflight(plan, report_snapshot)

    assert isinstance(result, PreflightFailure)
    request = result.needs_clarification
    assert request.reason == ClarificationReason.AMBIGUOUS_TARGET
    assert len(request.candidates) == 2
    assert request.failed_skeleton.target_hint == "Report"
    # the injected confirm occupies index 0
    assert request.failed_step_index == 1
    assert result.resolver_error.type == "ambiguous"
    assert [warning.code for warning in result.warnings] == ["DESTRUCTIVE_WITHOUT_CONFIRM"]


def test_destructive_step_is_bound_inside_injected_confirm() -> None:
    snapshot = make_snapshot([{"id": "t1", "title": "Report task"}])
    plan = parse_plan(plan_of(intent_step("DeleteTask", targetHint="Report")))

    result = run_preflight(plan, snapshot)

    assert isinstance(result, PreflightSuccess)
    assert [warning.code for warning in result.warnings] == ["DESTRUCTIVE_WITHOUT_CONFIRM"]
    bound = result.executable.bound_steps
    assert bound[0].kind == "confirm"
    assert isinstance(bound[0], BoundConfirmStep)
    inner = bound[0].on_approve[0]
    assert isinstance(inner, BoundIntentStep)
    assert inner.intent.task_id == "t1"
    assert inner.resolved_task.title == "Report task"
    assert inner.original_skeleton.target_hint == "Report"
    assert result.executable.risk.has_destructive


def test_resolution_failure_inside_branch_reports_flat_index(report_snapshot) -> None:
    plan = parse_plan(
        plan_of(
            {"kind": "query", "query": {"kind": "countTasks"}, "assign": "count"},
            {
                "kind": "if",
                "cond": {"op": "gt", "left": {"var": "count"}, "right": 0},
                "then": [
                    intent_step("SelectTask", targetHint="Buy milk"),
                    intent_step("ChangeStatus", targetHint="Dentist", toStatus="done"),
                ],
            },
        )
    )

    result = run_preflight(plan, report_snapshot)

    assert isinstance(result, PreflightFailure)
    request = result.needs_clarification
    assert request.reason == ClarificationReason.NOT_FOUND
    assert request.failed_step_index == 3
    assert request.candidates is None
    assert request.question == "Which task would you like to change?"


def test_policy_errors_block_before_resolution(report_snapshot) -> None:
    plan = parse_plan(plan_of(*[{"kind": "note", "text": str(index)} for index in range(3)]))

    result = run_preflight(plan, report_snapshot, PolicyConfig(max_steps=2))

    assert isinstance(result, PreflightFailure)
    request = result.needs_clarification
    assert request.reason == ClarificationReason.TOO_MANY_STEPS
    assert request.question == "This plan has too many steps. Would you like to simplify it?"
    assert result.resolver_error is None


def test_destructive_without_confirm_blocks_when_injection_disabled(report_snapshot) -> None:
    plan = parse_plan(plan_of(intent_step("DeleteTask", targetHint="Buy milk")))

    result = run_preflight(plan, report_snapshot, PolicyConfig(auto_inject_confirm=False))

    assert isinstance(result, PreflightFailure)
    assert result.needs_clarification.reason == ClarificationReason.POLICY_CONFIRM_REQUIRED


def test_branches_are_bound_recursively(report_snapshot) -> None:
    plan = parse_plan(
        plan_of(
            {
                "kind": "if",
                "cond": {"op": "exists", "var": {"var": "x"}},
                "then": [intent_step("SelectTask", targetHint="Report B")],
                "else": [intent_step("ChangeView", viewMode="table")],
            }
        )
    )

    result = run_preflight(plan, report_snapshot)

    assert isinstance(result, PreflightSuccess)
    step = result.executable.bound_steps[0]
    assert isinstance(step, BoundIfStep)
    assert step.then[0].intent.task_id == "t2"
    assert step.else_[0].intent.view_mode == "table"
    assert result.executable.to_dict()["boundSteps"][0]["else"][0]["kind"] == "intent"


def test_snapshot_version_tracks_count_and_latest_update() -> None:
    empty = make_snapshot([])
    one = make_snapshot([{"title": "A", "updatedAt": "2024-05-01T00:00:01.234Z"}])

    assert snapshot_version(empty) == 0
    expected_ms = 1714521601234 % 1_000_000
    assert snapshot_version(one) == 1_000_000 + expected_ms


def test_unparseable_update_stamp_counts_as_zero() -> None:
    snapshot = make_snapshot(
        [
            {"title": "Imported", "updatedAt": "not-a-date"},
            {"title": "Edited", "updatedAt": "2024-05-01T00:00:01.5Z"},
        ]
    )

    result = run_preflight(parse_plan(plan_of(intent_step("ChangeView", viewMode="table"))), snapshot)

    assert isinstance(result, PreflightSuccess)
    assert result.executable.snapshot_version == 2_000_000 + 1714521601500 % 1_000_000
    assert snapshot_version(make_snapshot([{"title": "Imported", "updatedAt": ""}])) == 1_000_000


def test_version_conflict_detected_after_snapshot_changes(report_snapshot) -> None:
    plan = parse_plan(plan_of(intent_step("ChangeView", viewMode="table")))
    result = run_preflight(plan, report_snapshot)
    assert isinstance(result, PreflightSuccess)

    assert verify_snapshot_version(result.executable, report_snapshot) is None

    changed = report_snapshot.clone()
    changed.data.tasks.pop()
    conflict = verify_snapshot_version(result.executable, changed)

    assert conflict is not None
    assert conflict.reason == ClarificationReason.VERSION_CONFLICT
    assert conflict.to_dict()["reason"] == "VERSION_CONFLICT"
