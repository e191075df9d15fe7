from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import make_snapshot, skeleton
from taskplan.effects import (
    PatchKind,
    PatchOp,
    SnapshotPatchEffect,
    SnapshotUndoEffect,
    StateField,
    TaskField,
    effect_from_dict,
    generate_effect_id,
)
from taskplan.planning.intent import parse_intent
from taskplan.runtime import calculate_snapshot_diff, execute_intent, generate_effects
from taskplan.tools.patch import apply_effects

NOW = datetime(2024, 5, 3, 12, 0, tzinfo=timezone.utc)


def _ops(result):
    assert result.success, result.error
    (effect,) = result.effects
    return [op.to_dict() for op in effect.ops]


def test_change_view_sets_state_path(report_snapshot) -> None:
    result = execute_intent(skeleton("ChangeView", viewMode="table"), report_snapshot)

    assert _ops(result) == [{"op": "set", "path": "state.viewMode", "value": "table"}]


def test_create_task_appends_with_defaults(report_snapshot) -> None:
    result = execute_intent(
        skeleton("CreateTask", tasks=[{"title": "Plan sprint"}, {"title": "Ship", "priority": "high"}]),
        report_snapshot,
        now=NOW,
    )

    ops = _ops(result)
    assert [op["op"] for op in ops] == ["append", "append"]
    first = ops[0]["value"]
    assert ops[0]["path"] == "data.tasks"
    assert first["title"] == "Plan sprint"
    assert first["status"] == "todo"
    assert first["priority"] == "medium"
    assert first["tags"] == []
    assert first["createdAt"] == first["updatedAt"] == "2024-05-03T12:00:00.000Z"
    assert first["id"].startswith("task-")
    assert ops[1]["value"]["priority"] == "high"


def test_update_task_sets_each_change_then_timestamp(report_snapshot) -> None:
    result = execute_intent(
        skeleton("UpdateTask", taskId="t1", changes={"title": "Report A v2", "dueDate": "2024-06-01"}),
        report_snapshot,
        now=NOW,
    )

    assert _ops(result) == [
        {"op": "set", "path": "data.tasks.id:t1.title", "value": "Report A v2"},
        {"op": "set", "path": "data.tasks.id:t1.dueDate", "value": "2024-06-01"},
        {"op": "set", "path": "data.tasks.id:t1.updatedAt", "value": "2024-05-03T12:00:00.000Z"},
    ]


def test_change_status_on_unknown_task_fails(report_snapshot) -> None:
    result = execute_intent(skeleton("ChangeStatus", taskId="missing", toStatus="done"), report_snapshot)

    assert not result.success
    assert result.error == "Task not found: missing"
    assert result.effects == []


def test_invalid_intent_is_reported_not_raised(report_snapshot) -> None:
    result = execute_intent({"kind": "ChangeView", "confidence": 2, "source": "human"}, report_snapshot)

    assert not result.success
    assert result.error.startswith("Intent validation failed:")


def test_bulk_delete_removes_every_id(report_snapshot) -> None:
    result = execute_intent(skeleton("DeleteTask", taskIds=["t1", "t2"]), report_snapshot)

    assert _ops(result) == [
        {"op": "remove", "path": "data.tasks", "value": "t1"},
        {"op": "remove", "path": "data.tasks", "value": "t2"},
    ]


def test_read_only_intents_produce_no_effects(report_snapshot) -> None:
    query = execute_intent(skeleton("QueryTasks", query="what is due?"), report_snapshot)

    assert query.success
    assert query.effects == []


def test_undo_emits_undo_effect(report_snapshot) -> None:
    effects = generate_effects(parse_intent(skeleton("Undo")), report_snapshot)

    assert len(effects) == 1
    assert isinstance(effects[0], SnapshotUndoEffect)
    assert effects[0].to_dict()["type"] == "snapshot.undo"


def test_apply_effects_updates_snapshot_in_place(report_snapshot) -> None:
    working = report_snapshot.clone()
    intents = [
        skeleton("ChangeStatus", taskId="t1", toStatus="done"),
        skeleton("DeleteTask", taskId="t2"),
        skeleton("SelectTask", taskId="t3"),
        skeleton("SetDateFilter", filter={"field": "dueDate", "type": "week"}),
        skeleton("ToggleAssistant", open=True),
    ]

    for raw in intents:
        result = execute_intent(raw, working, now=NOW)
        assert result.success, result.error
        apply_effects(working, result.effects, now=NOW)

    assert working.find_task("t1").status == "done"
    assert working.find_task("t2").deleted_at == "2024-05-03T12:00:00.000Z"
    assert working.state.selected_task_id == "t3"
    assert working.state.date_filter.type == "week"
    assert working.state.assistant_open is True
    # the source snapshot is never touched
    assert report_snapshot.find_task("t1").status == "todo"
    assert report_snapshot.find_task("t2").deleted_at is None

    diff = calculate_snapshot_diff(report_snapshot, working)
    assert diff.tasks_deleted == ["t2"]
    assert diff.selected_task_changed == {"from": None, "to": "t3"}
    assert diff.date_filter_changed["to"] == {"field": "dueDate", "type": "week"}
    assert [entry["taskId"] for entry in diff.tasks_updated] == ["t1", "t2"]


def test_restore_clears_deleted_at() -> None:
    snapshot = make_snapshot([{"title": "Old", "deletedAt": "2024-05-02T10:00:00.000Z"}])

    result = execute_intent(skeleton("RestoreTask", taskId="t1"), snapshot)
    apply_effects(snapshot, result.effects)

    assert snapshot.find_task("t1").deleted_at is None
    assert calculate_snapshot_diff(make_snapshot([]), snapshot).tasks_added[0].id == "t1"


def test_set_on_unknown_task_is_ignored_when_applied(report_snapshot) -> None:
    effect = SnapshotPatchEffect(
        id=generate_effect_id(),
        ops=[PatchOp.set_task("ghost", TaskField.TITLE, "Boo")],
    )

    apply_effects(report_snapshot, [effect])

    assert [task.title for task in report_snapshot.data.tasks] == ["Report A", "Report B", "Buy milk"]


def test_patch_op_round_trips_through_wire_form() -> None:
    task_op = PatchOp.from_dict({"op": "set", "path": "data.tasks.id:task-1.x.dueDate", "value": "2024-06-01"})
    state_op = PatchOp.from_dict({"op": "set", "path": "state.assistantOpen", "value": False})

    assert task_op.task_id == "task-1.x"
    assert task_op.task_field is TaskField.DUE_DATE
    assert state_op.state_field is StateField.ASSISTANT_OPEN
    assert PatchOp.from_dict({"op": "restore", "path": "data.tasks", "value": "t1"}).op is PatchKind.RESTORE


@pytest.mark.parametrize(
    "payload",
    [
        {"op": "move", "path": "data.tasks"},
        {"op": "remove", "path": "state.viewMode", "value": "t1"},
        {"op": "set", "path": "data.tasks.id:t1.createdAt"},
        {"op": "set", "path": "state.theme"},
        {"op": "set", "path": "meta.version"},
    ],
)
def test_patch_op_rejects_malformed_paths(payload) -> None:
    with pytest.raises(ValueError):
        PatchOp.from_dict(payload)


def test_effect_from_dict_parses_patch_effects() -> None:
    effect = effect_from_dict(
        {
            "type": "snapshot.patch",
            "id": "effect-1",
            "ops": [{"op": "set", "path": "state.viewMode", "value": "todo"}],
        }
    )

    assert isinstance(effect, SnapshotPatchEffect)
    assert effect.ops[0].path == "state.viewMode"
    with pytest.raises(ValueError):
        effect_from_dict({"type": "snapshot.replace"})
