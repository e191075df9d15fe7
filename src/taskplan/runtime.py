"""Intent execution: deterministic translation of intents into effects.

The runtime never interprets an intent; it validates the shape, rejects
references to unknown tasks and emits the patch operations each kind maps to.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .effects import (
    Effect,
    EffectGenerationError,
    PatchOp,
    SnapshotPatchEffect,
    SnapshotUndoEffect,
    StateField,
    TaskField,
    generate_effect_id,
    generate_task_id,
)
from .memory.schema import Snapshot, Task, TaskStatus, isoformat_utc
from .planning.intent import is_read_only_intent, parse_intent, validate_intent
from .planning.validation import PlanValidationError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of executing a single intent."""

    success: bool
    intent: Any
    effects: List[Effect] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "effects": [effect.to_dict() for effect in self.effects],
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


def execute_intent(intent: Any, snapshot: Snapshot, *, now: datetime | None = None) -> ExecutionResult:
    """Validate ``intent`` and generate its effects against ``snapshot``.

    Failures are reported through :class:`ExecutionResult`, never raised.
    """
    if isinstance(intent, Mapping):
        try:
            intent = parse_intent(intent)
        except PlanValidationError as error:
            return ExecutionResult(
                success=False,
                intent=intent,
                error=f"Intent validation failed: {', '.join(error.errors)}",
            )
    else:
        report = validate_intent(intent)
        if not report.valid:
            return ExecutionResult(
                success=False,
                intent=intent,
                error=f"Intent validation failed: {', '.join(report.errors)}",
            )

    if is_read_only_intent(intent):
        return ExecutionResult(success=True, intent=intent)

    try:
        effects = generate_effects(intent, snapshot, now=now)
    except EffectGenerationError as error:
        LOGGER.debug("Effect generation failed for %s: %s", intent.kind, error)
        return ExecutionResult(success=False, intent=intent, error=str(error))
    return ExecutionResult(success=True, intent=intent, effects=effects)


def generate_effects(intent: Any, snapshot: Snapshot, *, now: datetime | None = None) -> List[Effect]:
    """Map ``intent`` to zero or one patch effect (or a single undo effect)."""
    kind = intent.kind
    if kind == "Undo":
        return [SnapshotUndoEffect(id=generate_effect_id())]

    timestamp = isoformat_utc(now)
    ops: List[PatchOp]
    if kind == "ChangeView":
        ops = [PatchOp.set_state(StateField.VIEW_MODE, intent.view_mode)]
    elif kind == "SetDateFilter":
        ops = [PatchOp.set_state(StateField.DATE_FILTER, intent.filter)]
    elif kind == "CreateTask":
        ops = _create_task_ops(intent, timestamp)
    elif kind == "UpdateTask":
        ops = _update_task_ops(intent, snapshot, timestamp)
    elif kind == "ChangeStatus":
        _require_task(snapshot, intent.task_id)
        ops = [
            PatchOp.set_task(intent.task_id, TaskField.STATUS, intent.to_status),
            PatchOp.set_task(intent.task_id, TaskField.UPDATED_AT, timestamp),
        ]
    elif kind == "DeleteTask":
        ops = [PatchOp.remove_task(task_id) for task_id in intent.target_ids()]
    elif kind == "RestoreTask":
        ops = [PatchOp.restore_task(intent.task_id)]
    elif kind == "SelectTask":
        ops = [PatchOp.set_state(StateField.SELECTED_TASK_ID, intent.task_id)]
    elif kind == "ToggleAssistant":
        ops = [PatchOp.set_state(StateField.ASSISTANT_OPEN, intent.open)]
    elif kind in ("QueryTasks", "RequestClarification"):
        ops = []
    else:
        raise EffectGenerationError(f"Unsupported intent kind: {kind}", details={"kind": kind})

    if not ops:
        return []
    return [SnapshotPatchEffect(id=generate_effect_id(), ops=ops)]


def _require_task(snapshot: Snapshot, task_id: str) -> Task:
    task = snapshot.find_task(task_id)
    if task is None:
        raise EffectGenerationError(f"Task not found: {task_id}", details={"task_id": task_id})
    return task


def _create_task_ops(intent: Any, timestamp: str) -> List[PatchOp]:
    ops: List[PatchOp] = []
    for index, draft in enumerate(intent.tasks):
        task = Task(
            id=generate_task_id(index),
            title=draft.title,
            description=draft.description,
            status=TaskStatus.TODO,
            priority=draft.priority or "medium",
            tags=list(draft.tags or []),
            due_date=draft.due_date,
            created_at=timestamp,
            updated_at=timestamp,
        )
        ops.append(PatchOp.append_task(task))
    return ops


def _update_task_ops(intent: Any, snapshot: Snapshot, timestamp: str) -> List[PatchOp]:
    _require_task(snapshot, intent.task_id)
    ops = [
        PatchOp.set_task(intent.task_id, TaskField.from_attribute(name), value)
        for name, value in intent.changes.model_dump(exclude_unset=True).items()
    ]
    if ops:
        ops.append(PatchOp.set_task(intent.task_id, TaskField.UPDATED_AT, timestamp))
    return ops


@dataclass(slots=True)
class SnapshotDiff:
    """Human-facing summary of what changed between two snapshots."""

    view_mode_changed: Optional[Dict[str, Any]] = None
    date_filter_changed: Optional[Dict[str, Any]] = None
    selected_task_changed: Optional[Dict[str, Any]] = None
    tasks_added: List[Task] = field(default_factory=list)
    tasks_updated: List[Dict[str, Any]] = field(default_factory=list)
    tasks_deleted: List[str] = field(default_factory=list)
    tasks_restored: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.view_mode_changed
            or self.date_filter_changed
            or self.selected_task_changed
            or self.tasks_added
            or self.tasks_updated
            or self.tasks_deleted
            or self.tasks_restored
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.view_mode_changed:
            payload["viewModeChanged"] = self.view_mode_changed
        if self.date_filter_changed:
            payload["dateFilterChanged"] = self.date_filter_changed
        if self.selected_task_changed:
            payload["selectedTaskChanged"] = self.selected_task_changed
        if self.tasks_added:
            payload["tasksAdded"] = [task.to_dict() for task in self.tasks_added]
        if self.tasks_updated:
            payload["tasksUpdated"] = list(self.tasks_updated)
        if self.tasks_deleted:
            payload["tasksDeleted"] = list(self.tasks_deleted)
        if self.tasks_restored:
            payload["tasksRestored"] = list(self.tasks_restored)
        return payload


def calculate_snapshot_diff(before: Snapshot, after: Snapshot) -> SnapshotDiff:
    diff = SnapshotDiff()

    if before.state.view_mode != after.state.view_mode:
        diff.view_mode_changed = {"from": before.state.view_mode, "to": after.state.view_mode}

    before_filter = before.state.date_filter.to_dict() if before.state.date_filter else None
    after_filter = after.state.date_filter.to_dict() if after.state.date_filter else None
    if before_filter != after_filter:
        diff.date_filter_changed = {"from": before_filter, "to": after_filter}

    if before.state.selected_task_id != after.state.selected_task_id:
        diff.selected_task_changed = {
            "from": before.state.selected_task_id,
            "to": after.state.selected_task_id,
        }

    before_by_id = {task.id: task for task in before.data.tasks}
    diff.tasks_added = [task for task in after.data.tasks if task.id not in before_by_id]

    before_deleted = {task.id for task in before.data.tasks if task.is_deleted}
    after_deleted = {task.id for task in after.data.tasks if task.is_deleted}
    diff.tasks_deleted = [task.id for task in after.data.tasks if task.id in after_deleted - before_deleted]
    diff.tasks_restored = [task.id for task in before.data.tasks if task.id in before_deleted - after_deleted]

    for task in after.data.tasks:
        previous = before_by_id.get(task.id)
        if previous is None:
            continue
        old, new = previous.to_dict(), task.to_dict()
        changes = {key: value for key, value in new.items() if old.get(key) != value}
        if changes:
            diff.tasks_updated.append({"taskId": task.id, "changes": changes})

    return diff


__all__ = [
    "ExecutionResult",
    "SnapshotDiff",
    "calculate_snapshot_diff",
    "execute_intent",
    "generate_effects",
]
