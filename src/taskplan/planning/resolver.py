"""Symbol resolver: bind a skeleton's ``target_hint`` to a concrete task.

This is the only place where task identifiers enter a plan.  Matching is
tiered and stops at the first tier that yields anything:

1. exact, case-insensitive title equality;
2. substring containment in either direction;
3. any shared whitespace-delimited token longer than one character.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Sequence, Union

from ..memory.schema import Snapshot, Task
from .intent import intent_from_skeleton
from .skeleton import has_target_hint, requires_task_resolution

LOGGER = logging.getLogger(__name__)

ResolverErrorType = Literal["not_found", "ambiguous", "deleted", "invalid_state"]

_QUESTIONS: Dict[str, str] = {
    "SelectTask": "Which task would you like to view?",
    "UpdateTask": "Which task would you like to modify?",
    "DeleteTask": "Which task would you like to delete?",
    "RestoreTask": "Which task would you like to restore?",
    "ChangeStatus": "Which task would you like to change?",
}


@dataclass(slots=True)
class ResolverSuccess:
    """A skeleton bound to an executable intent."""

    intent: Any
    resolved_task: Task | None = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True)
class ResolverError:
    """Why a hint could not be bound, plus the question to ask the user."""

    type: ResolverErrorType
    message: str
    hint: str
    suggested_question: str
    candidates: List[Task] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "hint": self.hint,
            "suggestedQuestion": self.suggested_question,
            "candidates": [{"id": task.id, "title": task.title} for task in self.candidates],
        }


ResolverResult = Union[ResolverSuccess, ResolverError]


def question_for_kind(kind: str) -> str:
    return _QUESTIONS.get(kind, "Which task do you mean?")


def find_matching_tasks(hint: str, tasks: Sequence[Task]) -> List[Task]:
    """Return the tasks matched by the first non-empty tier."""
    needle = hint.strip().lower()
    if not needle:
        return []

    exact = [task for task in tasks if task.title.lower() == needle]
    if exact:
        return exact

    substring = [
        task
        for task in tasks
        if needle in task.title.lower() or task.title.lower() in needle
    ]
    if substring:
        return substring

    words = [word for word in needle.split() if len(word) > 1]
    if not words:
        return []
    return [
        task
        for task in tasks
        if any(word in task.title.lower().split() for word in words)
    ]


def resolve_skeleton(skeleton: Any, snapshot: Snapshot) -> ResolverResult:
    """Bind ``skeleton`` against ``snapshot``; never raises for lookup failures."""
    if not requires_task_resolution(skeleton):
        return ResolverSuccess(intent=intent_from_skeleton(skeleton))

    kind = skeleton.kind
    if not has_target_hint(skeleton):
        if kind == "SelectTask":
            return ResolverSuccess(intent=intent_from_skeleton(skeleton, task_id=None))
        return ResolverError(
            type="not_found",
            message="Could not determine which task",
            hint="",
            suggested_question=question_for_kind(kind),
        )

    hint = skeleton.target_hint
    pool = snapshot.deleted_tasks() if kind == "RestoreTask" else snapshot.active_tasks()
    matches = find_matching_tasks(hint, pool)

    if not matches:
        LOGGER.debug("No %s candidate for hint %r among %d tasks", kind, hint, len(pool))
        return ResolverError(
            type="not_found",
            message=f'No task found matching "{hint}"',
            hint=hint,
            suggested_question=question_for_kind(kind),
        )

    if len(matches) > 1:
        titles = " or ".join(f'"{task.title}"' for task in matches)
        return ResolverError(
            type="ambiguous",
            message=f'Multiple tasks match "{hint}"',
            hint=hint,
            suggested_question=f"Which one: {titles}?",
            candidates=matches,
        )

    task = matches[0]
    return ResolverSuccess(intent=intent_from_skeleton(skeleton, task_id=task.id), resolved_task=task)


def resolve_skeleton_with_task_id(skeleton: Any, task_id: str, snapshot: Snapshot) -> ResolverResult:
    """Bind ``skeleton`` to an explicitly chosen task, e.g. after a clarification."""
    task = snapshot.find_task(task_id)
    if task is None:
        return ResolverError(
            type="not_found",
            message=f"Task {task_id} not found",
            hint=task_id,
            suggested_question="Task not found.",
        )
    return ResolverSuccess(intent=intent_from_skeleton(skeleton, task_id=task_id), resolved_task=task)


__all__ = [
    "ResolverError",
    "ResolverErrorType",
    "ResolverResult",
    "ResolverSuccess",
    "find_matching_tasks",
    "question_for_kind",
    "resolve_skeleton",
    "resolve_skeleton_with_task_id",
]
