"""Skeleton IR: the planner's pre-resolution description of a single action.

Task-referencing skeletons carry a ``target_hint`` (free user text) and never a
task identifier.  Identifiers only appear once the resolver has bound a hint
to a concrete task and produced an :mod:`~taskplan.planning.intent`.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import ConfigDict, Field, TypeAdapter, ValidationError

from ..memory.schema import (
    DATE_FILTER_FIELDS,
    DATE_FILTER_TYPES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    VIEW_MODES,
    DateFilter,
    RecordModel,
    TaskPriority,
    TaskStatus,
    ViewMode,
)
from .validation import PlanValidationError, ValidationReport, is_confidence, is_non_empty_str

SkeletonSource = Literal["human", "agent"]

SKELETON_KINDS: tuple[str, ...] = (
    "ChangeStatus",
    "UpdateTask",
    "DeleteTask",
    "RestoreTask",
    "SelectTask",
    "CreateTask",
    "ChangeView",
    "SetDateFilter",
    "QueryTasks",
    "ToggleAssistant",
    "Undo",
)
TASK_REF_KINDS: frozenset[str] = frozenset(
    {"ChangeStatus", "UpdateTask", "DeleteTask", "RestoreTask", "SelectTask"}
)
DESTRUCTIVE_KINDS: frozenset[str] = frozenset({"DeleteTask", "RestoreTask"})
WRITE_KINDS: frozenset[str] = frozenset(
    {"CreateTask", "UpdateTask", "ChangeStatus", "DeleteTask", "RestoreTask"}
)
READ_ONLY_KINDS: frozenset[str] = frozenset(
    {"QueryTasks", "SelectTask", "ChangeView", "SetDateFilter", "ToggleAssistant"}
)

# Keys that would smuggle a concrete identifier past the resolver.
_IDENTIFIER_KEYS: tuple[str, ...] = ("taskId", "taskIds", "task_id", "task_ids")


class PlannerModel(RecordModel):
    """Planner-facing model.

    Planners routinely attach commentary such as ``reasoning`` or ``notes``;
    unknown keys are dropped so that anything :func:`validate_skeleton` and
    ``validate_plan`` accept also parses.
    """

    model_config = ConfigDict(extra="ignore")


class TaskChanges(PlannerModel):
    """Field updates requested for an existing task."""

    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    tags: Optional[List[str]] = None
    due_date: Optional[str] = None
    assignee: Optional[str] = None


class TaskDraft(PlannerModel):
    """Definition of a task to be created."""

    title: str
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    tags: Optional[List[str]] = None
    due_date: Optional[str] = None


class SkeletonBase(PlannerModel):
    confidence: float
    source: SkeletonSource


class ChangeStatusSkeleton(SkeletonBase):
    kind: Literal["ChangeStatus"] = "ChangeStatus"
    target_hint: Optional[str] = None
    to_status: TaskStatus


class UpdateTaskSkeleton(SkeletonBase):
    kind: Literal["UpdateTask"] = "UpdateTask"
    target_hint: Optional[str] = None
    changes: TaskChanges


class DeleteTaskSkeleton(SkeletonBase):
    kind: Literal["DeleteTask"] = "DeleteTask"
    target_hint: Optional[str] = None


class RestoreTaskSkeleton(SkeletonBase):
    kind: Literal["RestoreTask"] = "RestoreTask"
    target_hint: Optional[str] = None


class SelectTaskSkeleton(SkeletonBase):
    kind: Literal["SelectTask"] = "SelectTask"
    target_hint: Optional[str] = None


class CreateTaskSkeleton(SkeletonBase):
    kind: Literal["CreateTask"] = "CreateTask"
    tasks: List[TaskDraft]


class ChangeViewSkeleton(SkeletonBase):
    kind: Literal["ChangeView"] = "ChangeView"
    view_mode: ViewMode


class SetDateFilterSkeleton(SkeletonBase):
    kind: Literal["SetDateFilter"] = "SetDateFilter"
    filter: Optional[DateFilter]


class QueryTasksSkeleton(SkeletonBase):
    kind: Literal["QueryTasks"] = "QueryTasks"
    query: str


class ToggleAssistantSkeleton(SkeletonBase):
    kind: Literal["ToggleAssistant"] = "ToggleAssistant"
    open: bool


class UndoSkeleton(SkeletonBase):
    kind: Literal["Undo"] = "Undo"


TaskRefSkeleton = Union[
    ChangeStatusSkeleton,
    UpdateTaskSkeleton,
    DeleteTaskSkeleton,
    RestoreTaskSkeleton,
    SelectTaskSkeleton,
]

Skeleton = Annotated[
    Union[
        ChangeStatusSkeleton,
        UpdateTaskSkeleton,
        DeleteTaskSkeleton,
        RestoreTaskSkeleton,
        SelectTaskSkeleton,
        CreateTaskSkeleton,
        ChangeViewSkeleton,
        SetDateFilterSkeleton,
        QueryTasksSkeleton,
        ToggleAssistantSkeleton,
        UndoSkeleton,
    ],
    Field(discriminator="kind"),
]

SKELETON_ADAPTER: TypeAdapter[Any] = TypeAdapter(Skeleton)


def requires_task_resolution(skeleton: Any) -> bool:
    """Return True when ``skeleton`` references a task through a hint."""
    return getattr(skeleton, "kind", None) in TASK_REF_KINDS


def has_target_hint(skeleton: Any) -> bool:
    return is_non_empty_str(getattr(skeleton, "target_hint", None))


def is_destructive(skeleton: Any) -> bool:
    return getattr(skeleton, "kind", None) in DESTRUCTIVE_KINDS


def _as_mapping(raw: Any) -> Any:
    if isinstance(raw, RecordModel):
        data = raw.model_dump(mode="json", by_alias=True, exclude_unset=True)
        if hasattr(raw, "kind"):
            data["kind"] = raw.kind
        return data
    return raw


def validate_skeleton(raw: Any) -> ValidationReport:
    """Check the shape of a raw skeleton without mutating or completing it."""
    report = ValidationReport()
    data = _as_mapping(raw)
    if not isinstance(data, Mapping):
        report.errors.append("Skeleton must be an object")
        return report

    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        report.errors.append('Skeleton must have a "kind" field')
    elif kind not in SKELETON_KINDS:
        report.errors.append(f"Unknown skeleton kind: {kind}")

    if not is_confidence(data.get("confidence")):
        report.errors.append('Skeleton must have a valid "confidence" field (0-1)')

    if data.get("source") not in ("human", "agent"):
        report.errors.append('Skeleton must have a valid "source" field')

    if kind in TASK_REF_KINDS:
        for key in _IDENTIFIER_KEYS:
            if key in data:
                report.errors.append(
                    f"{kind}: skeletons must reference tasks through targetHint, not {key}"
                )
        hint = data.get("targetHint")
        if hint is not None and not isinstance(hint, str):
            report.errors.append(f"{kind}: targetHint must be a string")

    if not report.errors:
        report.errors.extend(_validate_by_kind(kind, data))
    return report


def _validate_by_kind(kind: Any, data: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []

    if kind == "ChangeStatus":
        if data.get("toStatus") not in TASK_STATUSES:
            errors.append("ChangeStatus: invalid toStatus")
    elif kind == "UpdateTask":
        if not isinstance(data.get("changes"), Mapping):
            errors.append("UpdateTask: changes is required")
    elif kind == "CreateTask":
        errors.extend(validate_task_drafts(data.get("tasks")))
    elif kind == "ChangeView":
        if data.get("viewMode") not in VIEW_MODES:
            errors.append("ChangeView: invalid viewMode")
    elif kind == "SetDateFilter":
        errors.extend(validate_date_filter(data))
    elif kind == "QueryTasks":
        if not is_non_empty_str(data.get("query")):
            errors.append("QueryTasks: query is required")
    elif kind == "ToggleAssistant":
        if not isinstance(data.get("open"), bool):
            errors.append("ToggleAssistant: open must be a boolean")

    return errors


def validate_task_drafts(tasks: Any) -> List[str]:
    """Validate the ``tasks`` array shared by CreateTask skeletons and intents."""
    if not isinstance(tasks, list) or not tasks:
        return ["CreateTask: tasks array is required and must not be empty"]
    errors: List[str] = []
    for index, task in enumerate(tasks):
        if not isinstance(task, Mapping) or not is_non_empty_str(task.get("title")):
            errors.append(f"CreateTask: tasks[{index}].title is required")
            continue
        priority = task.get("priority")
        if priority is not None and priority not in TASK_PRIORITIES:
            errors.append(f"CreateTask: tasks[{index}].priority is invalid")
    return errors


def validate_date_filter(data: Mapping[str, Any]) -> List[str]:
    """Validate the ``filter`` key shared by SetDateFilter skeletons and intents."""
    if "filter" not in data:
        return ["SetDateFilter: filter is required (use null to clear)"]
    value = data.get("filter")
    if value is None:
        return []
    if not isinstance(value, Mapping):
        return ["SetDateFilter: filter must be an object or null"]
    errors: List[str] = []
    if value.get("field") not in DATE_FILTER_FIELDS:
        errors.append("SetDateFilter: invalid filter.field")
    if value.get("type") not in DATE_FILTER_TYPES:
        errors.append("SetDateFilter: invalid filter.type")
    return errors


def parse_skeleton(raw: Any) -> Any:
    """Validate ``raw`` and build the typed skeleton it describes."""
    report = validate_skeleton(raw)
    if not report.valid:
        raise PlanValidationError(report.errors)
    try:
        return SKELETON_ADAPTER.validate_python(_as_mapping(raw))
    except ValidationError as error:
        raise PlanValidationError([f"Skeleton did not validate: {error}"]) from error


__all__ = [
    "ChangeStatusSkeleton",
    "ChangeViewSkeleton",
    "CreateTaskSkeleton",
    "DESTRUCTIVE_KINDS",
    "DeleteTaskSkeleton",
    "PlannerModel",
    "QueryTasksSkeleton",
    "READ_ONLY_KINDS",
    "RestoreTaskSkeleton",
    "SKELETON_KINDS",
    "SelectTaskSkeleton",
    "SetDateFilterSkeleton",
    "Skeleton",
    "TASK_REF_KINDS",
    "TaskChanges",
    "TaskDraft",
    "TaskRefSkeleton",
    "ToggleAssistantSkeleton",
    "UndoSkeleton",
    "UpdateTaskSkeleton",
    "WRITE_KINDS",
    "has_target_hint",
    "is_destructive",
    "parse_skeleton",
    "requires_task_resolution",
    "validate_date_filter",
    "validate_skeleton",
    "validate_task_drafts",
]
