"""Typed records describing the application snapshot a plan acts on."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Seconds fraction; older interpreters only take exactly 3 or 6 digits.
_FRACTION = re.compile(r"(?<=\d{2}:\d{2}:\d{2})\.(\d+)")


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def isoformat_utc(moment: datetime | None = None) -> str:
    """Render ``moment`` (default: now) as a millisecond ISO 8601 string with a ``Z`` suffix."""
    value = moment or utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    rendered = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return rendered.replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp, accepting the ``Z`` suffix emitted by browsers.

    Fractional seconds of any precision are accepted.  Returns ``None`` for
    empty or unparseable input so callers can skip such values.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecordModel(BaseModel):
    """Base Pydantic model speaking the camelCase wire format of the UI."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )


class TaskStatus(str, Enum):
    """Workflow column a task sits in."""

    TODO = "todo"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, Enum):
    """Relative urgency of a task."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ViewMode(str, Enum):
    """Layouts the task board can render."""

    KANBAN = "kanban"
    TABLE = "table"
    TODO = "todo"


TASK_STATUSES: tuple[str, ...] = tuple(item.value for item in TaskStatus)
TASK_PRIORITIES: tuple[str, ...] = tuple(item.value for item in TaskPriority)
VIEW_MODES: tuple[str, ...] = tuple(item.value for item in ViewMode)
DATE_FILTER_FIELDS: tuple[str, ...] = ("dueDate", "createdAt")
DATE_FILTER_TYPES: tuple[str, ...] = ("today", "week", "month", "custom")


class Task(RecordModel):
    """Single task; deletion is soft and signalled by ``deleted_at``."""

    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    due_date: Optional[str] = None
    created_at: str = Field(default_factory=isoformat_utc)
    updated_at: str = Field(default_factory=isoformat_utc)
    deleted_at: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return bool(self.deleted_at)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DateFilter(RecordModel):
    """Date window applied to the board."""

    field: Literal["dueDate", "createdAt"]
    type: Literal["today", "week", "month", "custom"]
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SnapshotState(RecordModel):
    """UI state carried alongside the task data."""

    view_mode: ViewMode = ViewMode.KANBAN
    date_filter: Optional[DateFilter] = None
    selected_task_id: Optional[str] = None
    last_created_task_ids: Optional[List[str]] = None
    last_modified_task_id: Optional[str] = None
    assistant_open: Optional[bool] = None


class SnapshotData(RecordModel):
    """Persistent data portion of the snapshot."""

    tasks: List[Task] = Field(default_factory=list)


class Snapshot(RecordModel):
    """The mutable world a plan acts on."""

    data: SnapshotData = Field(default_factory=SnapshotData)
    state: SnapshotState = Field(default_factory=SnapshotState)

    def clone(self) -> "Snapshot":
        """Return a deep, unaliased copy."""
        return self.model_copy(deep=True)

    def find_task(self, task_id: str) -> Task | None:
        for task in self.data.tasks:
            if task.id == task_id:
                return task
        return None

    def active_tasks(self) -> List[Task]:
        return [task for task in self.data.tasks if not task.is_deleted]

    def deleted_tasks(self) -> List[Task]:
        return [task for task in self.data.tasks if task.is_deleted]

    def to_dict(self) -> Dict[str, Any]:
        state = self.state.model_dump(mode="json", by_alias=True)
        if self.state.date_filter is not None:
            state["dateFilter"] = self.state.date_filter.to_dict()
        for optional_key in ("lastCreatedTaskIds", "lastModifiedTaskId", "assistantOpen"):
            if state.get(optional_key) is None:
                state.pop(optional_key, None)
        return {
            "data": {"tasks": [task.to_dict() for task in self.data.tasks]},
            "state": state,
        }


__all__ = [
    "DATE_FILTER_FIELDS",
    "DATE_FILTER_TYPES",
    "DateFilter",
    "RecordModel",
    "Snapshot",
    "SnapshotData",
    "SnapshotState",
    "TASK_PRIORITIES",
    "TASK_STATUSES",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "VIEW_MODES",
    "ViewMode",
    "isoformat_utc",
    "parse_timestamp",
    "utc_now",
]
