"""Apply effects to a private snapshot copy."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Iterable

from ..effects import Effect, PatchKind, PatchOp, SnapshotPatchEffect, StateField
from ..memory.schema import DateFilter, Snapshot, Task, isoformat_utc

LOGGER = logging.getLogger(__name__)


class PatchError(RuntimeError):
    """Raised when a patch operation cannot be applied to a snapshot."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


def apply_effects(snapshot: Snapshot, effects: Iterable[Effect], *, now: datetime | None = None) -> Snapshot:
    """Apply ``effects`` to ``snapshot`` in place and return it.

    Callers pass a snapshot they own; the engine never hands the caller's
    original here.  Undo effects are left to the history owner.
    """
    for effect in effects:
        if isinstance(effect, SnapshotPatchEffect):
            for op in effect.ops:
                apply_patch_op(snapshot, op, now=now)
        else:
            LOGGER.debug("Skipping %s effect %s; history is managed externally", effect.type, effect.id)
    return snapshot


def apply_patch_op(snapshot: Snapshot, op: PatchOp, *, now: datetime | None = None) -> None:
    kind = PatchKind(op.op)
    if kind is PatchKind.SET:
        _apply_set(snapshot, op)
    elif kind is PatchKind.APPEND:
        snapshot.data.tasks.append(_coerce_task(op.value))
    elif kind is PatchKind.REMOVE:
        task = snapshot.find_task(str(op.value))
        if task is not None:
            task.deleted_at = isoformat_utc(now)
    elif kind is PatchKind.RESTORE:
        task = snapshot.find_task(str(op.value))
        if task is not None:
            task.deleted_at = None


def _apply_set(snapshot: Snapshot, op: PatchOp) -> None:
    if op.state_field is not None:
        value = op.value
        if op.state_field is StateField.DATE_FILTER and isinstance(value, Mapping):
            value = DateFilter.model_validate(value)
        elif isinstance(value, DateFilter):
            value = value.model_copy()
        elif isinstance(value, list):
            value = list(value)
        setattr(snapshot.state, op.state_field.attribute, value)
        return

    if op.task_id is None or op.task_field is None:
        raise PatchError("set operation has no target", details={"path": op.path})

    task = snapshot.find_task(op.task_id)
    if task is None:
        # Generation already rejected unknown ids for updates.
        LOGGER.debug("Ignoring %s for unknown task", op.path)
        return
    value = list(op.value) if isinstance(op.value, list) else op.value
    setattr(task, op.task_field.attribute, value)


def _coerce_task(value: Any) -> Task:
    if isinstance(value, Task):
        return value.model_copy(deep=True)
    if isinstance(value, Mapping):
        return Task.model_validate(value)
    raise PatchError("append operation requires a task", details={"value": repr(value)})


__all__ = ["PatchError", "apply_effects", "apply_patch_op"]
