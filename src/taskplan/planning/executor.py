"""Transaction executor for bound plans.

The executor walks an :class:`~taskplan.planning.preflight.ExecutablePlan`
against a private deep copy of the caller's snapshot.  A run ends in one of
three ways:

``TransactionSuccess``
    every step ran; the accumulated effects and the final snapshot copy are
    returned.
``TransactionFailure``
    a step failed; *all* effects of the run are discarded, only the trace is
    kept for diagnostics.
``ConfirmPending``
    a ``confirm`` step was reached.  The in-progress context and the steps
    that would follow are handed back so :func:`continue_after_confirm` can
    resume once the user answers.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..effects import Effect, EffectGenerationError, epoch_ms
from ..memory.schema import DateFilter, Snapshot, Task, parse_timestamp, utc_now
from ..runtime import execute_intent
from ..tools.patch import PatchError, apply_effects
from .plan import FilterSpec, VarRef
from .preflight import BoundStep, ExecutablePlan

LOGGER = logging.getLogger(__name__)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class StepExecutionError(RuntimeError):
    """Raised when a step fails; converted to a failure at the transaction boundary."""

    def __init__(self, message: str, *, failed_at: int, step_kind: str) -> None:
        super().__init__(message)
        self.failed_at = failed_at
        self.step_kind = step_kind


@dataclass(slots=True)
class StepTrace:
    """Timing and outcome of one executed step.

    Trace order is completion order: an ``if`` entry is appended after the
    entries of the branch it ran.  Branch steps are numbered from the ``if``
    index plus one, so their indexes can repeat those of later top-level
    siblings; ``failed_at`` is such an index, not a position in ``trace``.
    """

    index: int
    kind: str
    start_time: int
    end_time: Optional[int] = None
    success: bool = False
    error: Optional[str] = None
    effect_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "index": self.index,
            "kind": self.kind,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "success": self.success,
            "effectCount": self.effect_count,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class TransactionContext:
    """Mutable state of one run; owns its snapshot copy."""

    snapshot: Snapshot
    variables: Dict[str, Any] = field(default_factory=dict)
    effects: List[Effect] = field(default_factory=list)
    trace: List[StepTrace] = field(default_factory=list)


@dataclass(slots=True)
class TransactionSuccess:
    effects: List[Effect]
    final_snapshot: Snapshot
    trace: List[StepTrace]
    variables: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True)
class TransactionFailure:
    failed_at: int
    step_kind: str
    error: str
    trace: List[StepTrace]
    rolled_back: bool = True
    partial_effects: List[Effect] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return False


@dataclass(slots=True)
class ConfirmPending:
    """A suspended transaction waiting for a yes/no answer."""

    message: str
    on_approve: List[BoundStep]
    on_reject: Optional[List[BoundStep]]
    current_context: TransactionContext
    remaining_steps: List[BoundStep] = field(default_factory=list)
    resumed: bool = False

    @property
    def kind(self) -> str:
        return "confirm_pending"


TransactionResult = Union[TransactionSuccess, TransactionFailure]
ExecutionOutcome = Union[TransactionSuccess, TransactionFailure, ConfirmPending]


async def execute_transaction(executable: ExecutablePlan, initial_snapshot: Snapshot) -> ExecutionOutcome:
    """Run ``executable`` against a deep copy of ``initial_snapshot``."""
    context = TransactionContext(snapshot=initial_snapshot.clone())
    try:
        pending = await _run_steps(executable.bound_steps, context, 0)
    except StepExecutionError as error:
        return _failure(context, error.failed_at, error.step_kind, str(error))

    if pending is not None:
        LOGGER.debug("Transaction suspended on confirm: %s", pending.message)
        return pending
    return _success(context)


async def continue_after_confirm(pending: ConfirmPending, approved: bool) -> TransactionResult:
    """Resume a suspended transaction with the user's answer."""
    if pending.resumed:
        raise RuntimeError("Confirmation has already been resumed")
    pending.resumed = True

    context = pending.current_context
    branch = pending.on_approve if approved else (pending.on_reject or [])
    try:
        nested = await _run_steps(branch, context, len(context.trace))
        if nested is not None:
            return _failure(context, len(context.trace), "confirm", "Nested confirm not supported")
        if pending.remaining_steps:
            again = await _run_steps(pending.remaining_steps, context, len(context.trace))
            if again is not None:
                return _failure(context, len(context.trace), "confirm", "Multiple confirms not supported")
    except StepExecutionError as error:
        return _failure(context, error.failed_at, error.step_kind, str(error))
    return _success(context)


def _success(context: TransactionContext) -> TransactionSuccess:
    LOGGER.debug("Transaction completed with %d effects", len(context.effects))
    return TransactionSuccess(
        effects=list(context.effects),
        final_snapshot=context.snapshot,
        trace=context.trace,
        variables=dict(context.variables),
    )


def _failure(context: TransactionContext, failed_at: int, step_kind: str, error: str) -> TransactionFailure:
    LOGGER.warning(
        "Transaction rolled back at step %d (%s): %s; discarded %d effects",
        failed_at,
        step_kind,
        error,
        len(context.effects),
    )
    return TransactionFailure(failed_at=failed_at, step_kind=step_kind, error=error, trace=context.trace)


async def _run_steps(
    steps: Sequence[BoundStep], context: TransactionContext, start_index: int
) -> ConfirmPending | None:
    for offset, step in enumerate(steps):
        pending = await _run_step(step, context, start_index + offset)
        if pending is not None:
            pending.remaining_steps = [*pending.remaining_steps, *steps[offset + 1 :]]
            return pending
    return None


async def _run_step(step: BoundStep, context: TransactionContext, index: int) -> ConfirmPending | None:
    trace = StepTrace(index=index, kind=step.kind, start_time=epoch_ms())
    effects_before = len(context.effects)
    pending: ConfirmPending | None = None
    try:
        if step.kind == "intent":
            _run_intent(step, context)
        elif step.kind == "query":
            result = evaluate_query(step.query, context.snapshot)
            if step.assign:
                context.variables[step.assign] = result
        elif step.kind == "if":
            branch = step.then if evaluate_condition(step.cond, context.variables) else step.else_
            if branch:
                pending = await _run_steps(branch, context, index + 1)
        elif step.kind == "confirm":
            pending = ConfirmPending(
                message=step.message,
                on_approve=step.on_approve,
                on_reject=step.on_reject,
                current_context=context,
            )
    except StepExecutionError as error:
        _record(trace, context, effects_before, error=str(error))
        raise
    except (EffectGenerationError, PatchError, ValueError) as error:
        _record(trace, context, effects_before, error=str(error))
        raise StepExecutionError(str(error), failed_at=index, step_kind=step.kind) from error

    _record(trace, context, effects_before)
    return pending


def _record(trace: StepTrace, context: TransactionContext, effects_before: int, *, error: str | None = None) -> None:
    trace.end_time = epoch_ms()
    trace.success = error is None
    trace.error = error
    trace.effect_count = len(context.effects) - effects_before
    context.trace.append(trace)


def _run_intent(step: Any, context: TransactionContext) -> None:
    result = execute_intent(step.intent, context.snapshot)
    if not result.success:
        raise EffectGenerationError(result.error or "Intent execution failed")
    context.effects.extend(result.effects)
    apply_effects(context.snapshot, result.effects)


# ---------------------------------------------------------------------------
# Queries


def evaluate_query(query: Any, snapshot: Snapshot, *, now: datetime | None = None) -> Any:
    """Evaluate a query against the snapshot's active tasks."""
    active = snapshot.active_tasks()
    if query.kind == "countTasks":
        return len(_apply_filter(active, query.filter, now=now))
    if query.kind == "findTask":
        hint = query.hint.lower()
        for task in active:
            if hint in task.title.lower():
                return task
        return None
    if query.kind == "listTasks":
        tasks = _apply_filter(active, query.filter, now=now)
        if query.limit:
            tasks = tasks[: query.limit]
        return tasks
    return None


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else [value]


def _apply_filter(tasks: List[Task], spec: FilterSpec | None, *, now: datetime | None = None) -> List[Task]:
    if spec is None:
        return tasks
    result = tasks
    if spec.status:
        statuses = _as_list(spec.status)
        result = [task for task in result if task.status in statuses]
    if spec.priority:
        priorities = _as_list(spec.priority)
        result = [task for task in result if task.priority in priorities]
    if spec.tags:
        wanted = set(spec.tags)
        result = [task for task in result if wanted.intersection(task.tags)]
    if spec.deleted is not None:
        result = [task for task in result if task.is_deleted == spec.deleted]
    if spec.date_filter is not None:
        window = date_window(spec.date_filter, now=now)
        if window is not None:
            result = [task for task in result if _within(task, spec.date_filter, window)]
    return result


def date_window(date_filter: DateFilter, *, now: datetime | None = None) -> Tuple[datetime, datetime] | None:
    """Return the inclusive UTC window selected by ``date_filter``.

    ``None`` means no filtering: a custom window with a missing or unparseable
    bound.  A date-only custom ``endDate`` covers that whole day.
    """
    if date_filter.type == "custom":
        start = parse_timestamp(date_filter.start_date)
        end = parse_timestamp(date_filter.end_date)
        if start is None or end is None:
            return None
        if _DATE_ONLY.match(date_filter.end_date.strip()):
            end += timedelta(days=1) - timedelta(microseconds=1)
        return start, end

    moment = (now or utc_now()).astimezone(timezone.utc)
    start_of_day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if date_filter.type == "today":
        start = start_of_day
        end = start + timedelta(days=1)
    elif date_filter.type == "week":
        # Weeks start on Sunday.
        start = start_of_day - timedelta(days=(start_of_day.weekday() + 1) % 7)
        end = start + timedelta(days=7)
    else:
        start = start_of_day.replace(day=1)
        end = (start + timedelta(days=32)).replace(day=1)
    return start, end - timedelta(microseconds=1)


def _within(task: Task, date_filter: DateFilter, window: Tuple[datetime, datetime]) -> bool:
    value = task.due_date if date_filter.field == "dueDate" else task.created_at
    moment = parse_timestamp(value)
    if moment is None:
        return False
    return window[0] <= moment <= window[1]


# ---------------------------------------------------------------------------
# Conditions


def evaluate_condition(cond: Any, variables: Mapping[str, Any]) -> bool:
    op = cond.op
    if op in ("lt", "lte", "gt", "gte", "eq", "neq"):
        return compare_values(op, _resolve_operand(cond.left, variables), _resolve_operand(cond.right, variables))
    if op == "exists":
        return variables.get(cond.var.var) is not None
    if op == "notExists":
        return variables.get(cond.var.var) is None
    if op == "and":
        return all(evaluate_condition(item, variables) for item in cond.items)
    if op == "or":
        return any(evaluate_condition(item, variables) for item in cond.items)
    if op == "not":
        return not cond.items or not evaluate_condition(cond.items[0], variables)
    return False


def _resolve_operand(value: Any, variables: Mapping[str, Any]) -> Any:
    if isinstance(value, VarRef):
        return variables.get(value.var)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare_values(op: str, left: Any, right: Any) -> bool:
    """Compare two operands; ordering is only defined for numbers and strings."""
    if _is_number(left) and _is_number(right):
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
    elif isinstance(left, str) and isinstance(right, str):
        if op not in ("eq", "neq"):
            # every ordering op means "sorts before"
            return left < right

    if op == "eq":
        return _strict_equal(left, right)
    if op == "neq":
        return not _strict_equal(left, right)
    return False


def _strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


__all__ = [
    "ConfirmPending",
    "ExecutionOutcome",
    "StepExecutionError",
    "StepTrace",
    "TransactionContext",
    "TransactionFailure",
    "TransactionResult",
    "TransactionSuccess",
    "compare_values",
    "continue_after_confirm",
    "date_window",
    "evaluate_condition",
    "evaluate_query",
]
