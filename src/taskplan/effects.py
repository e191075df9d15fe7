"""Typed effect records describing every state change a plan makes.

Patch operations address either a snapshot state field or a single field of
one task; the dotted wire path (``state.viewMode``,
``data.tasks.id:<taskId>.<field>``) is derived from those typed fields and only
parsed back in :meth:`PatchOp.from_dict`.
"""

from __future__ import annotations

import random
import string
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Union

TASKS_PATH = "data.tasks"
_TASK_PATH_PREFIX = "data.tasks.id:"
_STATE_PATH_PREFIX = "state."
_ID_ALPHABET = string.ascii_lowercase + string.digits


class EffectGenerationError(RuntimeError):
    """Raised when an intent cannot be turned into effects."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class PatchKind(str, Enum):
    SET = "set"
    APPEND = "append"
    REMOVE = "remove"
    RESTORE = "restore"


class StateField(str, Enum):
    """UI state fields addressable by ``set`` operations."""

    VIEW_MODE = "viewMode"
    DATE_FILTER = "dateFilter"
    SELECTED_TASK_ID = "selectedTaskId"
    LAST_CREATED_TASK_IDS = "lastCreatedTaskIds"
    LAST_MODIFIED_TASK_ID = "lastModifiedTaskId"
    ASSISTANT_OPEN = "assistantOpen"

    @property
    def attribute(self) -> str:
        return _snake(self.value)


class TaskField(str, Enum):
    """Task fields addressable by ``set`` operations."""

    TITLE = "title"
    DESCRIPTION = "description"
    STATUS = "status"
    PRIORITY = "priority"
    ASSIGNEE = "assignee"
    TAGS = "tags"
    DUE_DATE = "dueDate"
    UPDATED_AT = "updatedAt"

    @property
    def attribute(self) -> str:
        return _snake(self.value)

    @classmethod
    def from_attribute(cls, name: str) -> "TaskField":
        for member in cls:
            if member.attribute == name:
                return member
        raise ValueError(f"Unknown task field: {name}")


def _snake(name: str) -> str:
    return "".join(f"_{char.lower()}" if char.isupper() else char for char in name)


def _wire_value(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_wire_value(item) for item in value]
    return value


@dataclass(slots=True)
class PatchOp:
    """One typed mutation of the snapshot."""

    op: PatchKind
    value: Any = None
    state_field: StateField | None = None
    task_id: str | None = None
    task_field: TaskField | None = None

    @classmethod
    def set_state(cls, state_field: StateField, value: Any) -> "PatchOp":
        return cls(op=PatchKind.SET, state_field=StateField(state_field), value=value)

    @classmethod
    def set_task(cls, task_id: str, task_field: TaskField, value: Any) -> "PatchOp":
        return cls(op=PatchKind.SET, task_id=task_id, task_field=TaskField(task_field), value=value)

    @classmethod
    def append_task(cls, task: Any) -> "PatchOp":
        return cls(op=PatchKind.APPEND, value=task)

    @classmethod
    def remove_task(cls, task_id: str) -> "PatchOp":
        return cls(op=PatchKind.REMOVE, value=task_id)

    @classmethod
    def restore_task(cls, task_id: str) -> "PatchOp":
        return cls(op=PatchKind.RESTORE, value=task_id)

    @property
    def path(self) -> str:
        if self.state_field is not None:
            return f"{_STATE_PATH_PREFIX}{self.state_field.value}"
        if self.task_id is not None and self.task_field is not None:
            return f"{_TASK_PATH_PREFIX}{self.task_id}.{self.task_field.value}"
        return TASKS_PATH

    def to_dict(self) -> Dict[str, Any]:
        return {"op": PatchKind(self.op).value, "path": self.path, "value": _wire_value(self.value)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PatchOp":
        """Parse the wire form ``{op, path, value}``."""
        try:
            kind = PatchKind(payload.get("op"))
        except ValueError as error:
            raise ValueError(f"Unknown patch op: {payload.get('op')!r}") from error
        path = payload.get("path")
        if not isinstance(path, str) or not path:
            raise ValueError("Patch op requires a path")
        value = payload.get("value")

        if kind is not PatchKind.SET:
            if path != TASKS_PATH:
                raise ValueError(f"{kind.value} ops must target {TASKS_PATH}, got {path!r}")
            return cls(op=kind, value=value)

        if path.startswith(_TASK_PATH_PREFIX):
            task_id, separator, field_name = path[len(_TASK_PATH_PREFIX) :].rpartition(".")
            if not separator or not task_id:
                raise ValueError(f"Malformed task path: {path!r}")
            try:
                task_field = TaskField(field_name)
            except ValueError as error:
                raise ValueError(f"Unknown task field in path {path!r}") from error
            return cls(op=kind, task_id=task_id, task_field=task_field, value=value)

        if path.startswith(_STATE_PATH_PREFIX):
            try:
                state_field = StateField(path[len(_STATE_PATH_PREFIX) :])
            except ValueError as error:
                raise ValueError(f"Unknown state field in path {path!r}") from error
            return cls(op=kind, state_field=state_field, value=value)

        raise ValueError(f"Unsupported patch path: {path!r}")


@dataclass(slots=True)
class SnapshotPatchEffect:
    id: str
    ops: List[PatchOp] = field(default_factory=list)

    @property
    def type(self) -> str:
        return "snapshot.patch"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "ops": [op.to_dict() for op in self.ops]}


@dataclass(slots=True)
class SnapshotUndoEffect:
    """Requests a history pop; the history itself lives outside the engine."""

    id: str

    @property
    def type(self) -> str:
        return "snapshot.undo"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id}


Effect = Union[SnapshotPatchEffect, SnapshotUndoEffect]


def effect_from_dict(payload: Mapping[str, Any]) -> Effect:
    effect_type = payload.get("type")
    effect_id = str(payload.get("id") or generate_effect_id())
    if effect_type == "snapshot.undo":
        return SnapshotUndoEffect(id=effect_id)
    if effect_type == "snapshot.patch":
        ops = payload.get("ops") or []
        if not isinstance(ops, list):
            raise ValueError("snapshot.patch ops must be a list")
        return SnapshotPatchEffect(id=effect_id, ops=[PatchOp.from_dict(item) for item in ops])
    raise ValueError(f"Unknown effect type: {effect_type!r}")


def _random_suffix(length: int) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=length))


def epoch_ms() -> int:
    return int(time.time() * 1000)


def generate_effect_id() -> str:
    return f"effect-{epoch_ms()}-{_random_suffix(7)}"


def generate_task_id(index: int = 0) -> str:
    return f"task-{epoch_ms()}-{index}-{_random_suffix(5)}"


__all__ = [
    "Effect",
    "EffectGenerationError",
    "PatchKind",
    "PatchOp",
    "SnapshotPatchEffect",
    "SnapshotUndoEffect",
    "StateField",
    "TASKS_PATH",
    "TaskField",
    "effect_from_dict",
    "epoch_ms",
    "generate_effect_id",
    "generate_task_id",
]
