"""Resolved, executable intents.

An intent is the post-resolution twin of a skeleton: the same kinds, but
task-referencing variants carry real identifiers instead of hints.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from ..memory.schema import TASK_STATUSES, VIEW_MODES, DateFilter, RecordModel, TaskStatus, ViewMode
from .skeleton import (
    SKELETON_KINDS,
    PlannerModel,
    TaskChanges,
    TaskDraft,
    validate_date_filter,
    validate_task_drafts,
)
from .validation import PlanValidationError, ValidationReport, is_confidence, is_non_empty_str

IntentSource = Literal["human", "agent", "ui"]

INTENT_KINDS: tuple[str, ...] = (*SKELETON_KINDS, "RequestClarification")
READ_ONLY_INTENT_KINDS: frozenset[str] = frozenset({"QueryTasks", "RequestClarification"})

CLARIFICATION_HINTS: tuple[str, ...] = (
    "which_task",
    "missing_title",
    "ambiguous_action",
    "missing_date",
    "multiple_matches",
    "missing_info",
    "unknown",
)


class IntentBase(PlannerModel):
    confidence: float
    source: IntentSource


class ChangeStatusIntent(IntentBase):
    kind: Literal["ChangeStatus"] = "ChangeStatus"
    task_id: str
    to_status: TaskStatus
    from_status: Optional[TaskStatus] = None


class UpdateTaskIntent(IntentBase):
    kind: Literal["UpdateTask"] = "UpdateTask"
    task_id: str
    changes: TaskChanges


class DeleteTaskIntent(IntentBase):
    kind: Literal["DeleteTask"] = "DeleteTask"
    task_id: Optional[str] = None
    task_ids: Optional[List[str]] = None

    def target_ids(self) -> List[str]:
        if self.task_ids is not None:
            return list(self.task_ids)
        return [self.task_id] if self.task_id else []


class RestoreTaskIntent(IntentBase):
    kind: Literal["RestoreTask"] = "RestoreTask"
    task_id: str


class SelectTaskIntent(IntentBase):
    kind: Literal["SelectTask"] = "SelectTask"
    task_id: Optional[str] = None


class CreateTaskIntent(IntentBase):
    kind: Literal["CreateTask"] = "CreateTask"
    tasks: List[TaskDraft]


class ChangeViewIntent(IntentBase):
    kind: Literal["ChangeView"] = "ChangeView"
    view_mode: ViewMode


class SetDateFilterIntent(IntentBase):
    kind: Literal["SetDateFilter"] = "SetDateFilter"
    filter: Optional[DateFilter]


class QueryTasksIntent(IntentBase):
    kind: Literal["QueryTasks"] = "QueryTasks"
    query: str


class ToggleAssistantIntent(IntentBase):
    kind: Literal["ToggleAssistant"] = "ToggleAssistant"
    open: bool


class UndoIntent(IntentBase):
    kind: Literal["Undo"] = "Undo"


class RequestClarificationIntent(IntentBase):
    """Upstream request to ask the user a question; never changes state."""

    kind: Literal["RequestClarification"] = "RequestClarification"
    reason: str
    question: str
    original_input: str
    candidates: Optional[List[str]] = None
    partial_understanding: Optional[Dict[str, Any]] = None


Intent = Annotated[
    Union[
        ChangeStatusIntent,
        UpdateTaskIntent,
        DeleteTaskIntent,
        RestoreTaskIntent,
        SelectTaskIntent,
        CreateTaskIntent,
        ChangeViewIntent,
        SetDateFilterIntent,
        QueryTasksIntent,
        ToggleAssistantIntent,
        UndoIntent,
        RequestClarificationIntent,
    ],
    Field(discriminator="kind"),
]

INTENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(Intent)


def _as_mapping(raw: Any) -> Any:
    if isinstance(raw, RecordModel):
        data = raw.model_dump(mode="json", by_alias=True, exclude_unset=True)
        if hasattr(raw, "kind"):
            data["kind"] = raw.kind
        return data
    return raw


def validate_intent(raw: Any) -> ValidationReport:
    """Check the shape of an intent (raw mapping or typed model)."""
    report = ValidationReport()
    data = _as_mapping(raw)
    if not isinstance(data, Mapping):
        report.errors.append("Intent must be an object")
        return report

    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        report.errors.append('Intent must have a "kind" field')
    elif kind not in INTENT_KINDS:
        report.errors.append(f"Unknown intent kind: {kind}")

    if not is_confidence(data.get("confidence")):
        report.errors.append('Intent must have a valid "confidence" field (0-1)')

    if data.get("source") not in ("human", "agent", "ui"):
        report.errors.append('Intent must have a valid "source" field')

    if not report.errors:
        report.errors.extend(_validate_by_kind(kind, data))
    return report


def _validate_by_kind(kind: Any, data: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []

    if kind == "ChangeView":
        if data.get("viewMode") not in VIEW_MODES:
            errors.append("ChangeView: invalid viewMode")
    elif kind == "SetDateFilter":
        errors.extend(validate_date_filter(data))
    elif kind == "CreateTask":
        errors.extend(validate_task_drafts(data.get("tasks")))
    elif kind == "ChangeStatus":
        if not is_non_empty_str(data.get("taskId")):
            errors.append("ChangeStatus: taskId is required")
        if data.get("toStatus") not in TASK_STATUSES:
            errors.append("ChangeStatus: invalid toStatus")
    elif kind == "UpdateTask":
        if not is_non_empty_str(data.get("taskId")):
            errors.append("UpdateTask: taskId is required")
        if not isinstance(data.get("changes"), Mapping):
            errors.append("UpdateTask: changes is required")
    elif kind == "DeleteTask":
        task_ids = data.get("taskIds")
        if task_ids is not None:
            if not isinstance(task_ids, list) or not all(is_non_empty_str(item) for item in task_ids):
                errors.append("DeleteTask: taskIds must be a list of ids")
        elif not is_non_empty_str(data.get("taskId")):
            errors.append("DeleteTask: taskId is required")
    elif kind == "RestoreTask":
        if not is_non_empty_str(data.get("taskId")):
            errors.append("RestoreTask: taskId is required")
    elif kind == "SelectTask":
        task_id = data.get("taskId")
        if task_id is not None and not isinstance(task_id, str):
            errors.append("SelectTask: taskId must be string or null")
    elif kind == "QueryTasks":
        if not is_non_empty_str(data.get("query")):
            errors.append("QueryTasks: query is required")
    elif kind == "ToggleAssistant":
        if not isinstance(data.get("open"), bool):
            errors.append("ToggleAssistant: open must be a boolean")
    elif kind == "RequestClarification":
        reason = data.get("reason")
        if not is_non_empty_str(reason):
            errors.append("RequestClarification: reason is required")
        elif reason not in CLARIFICATION_HINTS:
            errors.append("RequestClarification: invalid reason")
        if not is_non_empty_str(data.get("question")):
            errors.append("RequestClarification: question is required")
        if not is_non_empty_str(data.get("originalInput")):
            errors.append("RequestClarification: originalInput is required")
        candidates = data.get("candidates")
        if candidates is not None and not isinstance(candidates, list):
            errors.append("RequestClarification: candidates must be an array")

    return errors


def parse_intent(raw: Any) -> Any:
    """Validate ``raw`` and build the typed intent it describes."""
    report = validate_intent(raw)
    if not report.valid:
        raise PlanValidationError(report.errors)
    try:
        return INTENT_ADAPTER.validate_python(_as_mapping(raw))
    except ValidationError as error:
        raise PlanValidationError([f"Intent did not validate: {error}"]) from error


def intent_from_skeleton(skeleton: Any, **overrides: Any) -> Any:
    """Carry a skeleton over to its intent counterpart, applying ``overrides``.

    Overrides use field names (``task_id``), not wire aliases.
    """
    payload = skeleton.model_dump(exclude_unset=True)
    payload["kind"] = skeleton.kind
    payload.pop("target_hint", None)
    if "changes" in payload:
        # keep the original model so explicitly-null fields stay distinguishable
        payload["changes"] = skeleton.changes
    payload.update(overrides)
    return INTENT_ADAPTER.validate_python(payload)


def is_read_only_intent(intent: Any) -> bool:
    return getattr(intent, "kind", None) in READ_ONLY_INTENT_KINDS


__all__ = [
    "CLARIFICATION_HINTS",
    "ChangeStatusIntent",
    "ChangeViewIntent",
    "CreateTaskIntent",
    "DeleteTaskIntent",
    "INTENT_KINDS",
    "Intent",
    "QueryTasksIntent",
    "RequestClarificationIntent",
    "RestoreTaskIntent",
    "SelectTaskIntent",
    "SetDateFilterIntent",
    "ToggleAssistantIntent",
    "UndoIntent",
    "UpdateTaskIntent",
    "intent_from_skeleton",
    "is_read_only_intent",
    "parse_intent",
    "validate_intent",
]
