"""Plan IR produced by the planner and consumed once by preflight.

A plan is an ordered list of steps; ``if`` and ``confirm`` steps nest further
step lists inside their branches.  :func:`validate_plan` checks raw planner
output structurally, :func:`parse_plan` turns it into typed models.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from ..memory.schema import DateFilter, TaskPriority, TaskStatus
from .skeleton import DESTRUCTIVE_KINDS, PlannerModel, Skeleton, validate_skeleton
from .validation import PlanValidationError, ValidationReport, is_non_empty_str


class RiskLevel(str, Enum):
    """Ordered risk ladder used by the policy gate."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


RISK_LEVELS: tuple[str, ...] = tuple(item.value for item in RiskLevel)
STEP_KINDS: tuple[str, ...] = ("intent", "query", "if", "confirm", "note")
QUERY_KINDS: tuple[str, ...] = ("countTasks", "findTask", "listTasks")
COMPARE_OPS: tuple[str, ...] = ("lt", "lte", "gt", "gte", "eq", "neq")
EXISTS_OPS: tuple[str, ...] = ("exists", "notExists")
LOGICAL_OPS: tuple[str, ...] = ("and", "or", "not")


# ---------------------------------------------------------------------------
# Queries


class FilterSpec(PlannerModel):
    status: Optional[Union[TaskStatus, List[TaskStatus]]] = None
    priority: Optional[Union[TaskPriority, List[TaskPriority]]] = None
    date_filter: Optional[DateFilter] = None
    tags: Optional[List[str]] = None
    deleted: Optional[bool] = None


class CountTasksQuery(PlannerModel):
    kind: Literal["countTasks"] = "countTasks"
    filter: Optional[FilterSpec] = None


class FindTaskQuery(PlannerModel):
    kind: Literal["findTask"] = "findTask"
    hint: str


class ListTasksQuery(PlannerModel):
    kind: Literal["listTasks"] = "listTasks"
    filter: Optional[FilterSpec] = None
    limit: Optional[int] = None


QuerySpec = Annotated[
    Union[CountTasksQuery, FindTaskQuery, ListTasksQuery],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Conditions


class VarRef(PlannerModel):
    var: str


Operand = Union[VarRef, bool, int, float, str, None]


class CompareCondition(PlannerModel):
    op: Literal["lt", "lte", "gt", "gte", "eq", "neq"]
    left: Operand
    right: Operand


class ExistsCondition(PlannerModel):
    op: Literal["exists", "notExists"]
    var: VarRef


class LogicalCondition(PlannerModel):
    op: Literal["and", "or", "not"]
    items: List["Condition"]


Condition = Annotated[
    Union[CompareCondition, ExistsCondition, LogicalCondition],
    Field(discriminator="op"),
]


# ---------------------------------------------------------------------------
# Steps


class IntentStep(PlannerModel):
    kind: Literal["intent"] = "intent"
    skeleton: Skeleton


class QueryStep(PlannerModel):
    kind: Literal["query"] = "query"
    query: QuerySpec
    assign: Optional[str] = None


class IfStep(PlannerModel):
    kind: Literal["if"] = "if"
    cond: Condition
    then: List["PlanStep"]
    else_: Optional[List["PlanStep"]] = Field(default=None, alias="else")


class ConfirmStep(PlannerModel):
    kind: Literal["confirm"] = "confirm"
    message: str
    on_approve: List["PlanStep"]
    on_reject: Optional[List["PlanStep"]] = None


class NoteStep(PlannerModel):
    kind: Literal["note"] = "note"
    text: str


PlanStep = Annotated[
    Union[IntentStep, QueryStep, IfStep, ConfirmStep, NoteStep],
    Field(discriminator="kind"),
]

LogicalCondition.model_rebuild()
IfStep.model_rebuild()
ConfirmStep.model_rebuild()


class Plan(PlannerModel):
    """Top-level planner output."""

    version: Literal[1] = 1
    goal: str
    steps: List[PlanStep]
    risk: Optional[RiskLevel] = None
    locale: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


PLAN_ADAPTER: TypeAdapter[Plan] = TypeAdapter(Plan)


# ---------------------------------------------------------------------------
# Traversal


def child_branches(step: Any) -> List[List[Any]]:
    """Return the nested step lists of ``step`` in evaluation order."""
    kind = getattr(step, "kind", None)
    if kind == "if":
        return [step.then] + ([step.else_] if step.else_ is not None else [])
    if kind == "confirm":
        return [step.on_approve] + ([step.on_reject] if step.on_reject is not None else [])
    return []


def iter_steps(steps: Sequence[Any]) -> Iterator[Any]:
    """Yield every step depth-first, left-to-right, parents before children."""
    for step in steps:
        yield step
        for branch in child_branches(step):
            yield from iter_steps(branch)


def extract_all_intent_steps(plan: Plan) -> List[IntentStep]:
    return [step for step in iter_steps(plan.steps) if step.kind == "intent"]


def count_total_steps(plan: Plan) -> int:
    return sum(1 for _ in iter_steps(plan.steps))


def has_destructive_intent(plan: Plan) -> bool:
    return any(step.skeleton.kind in DESTRUCTIVE_KINDS for step in extract_all_intent_steps(plan))


def has_confirm_step(plan: Plan) -> bool:
    return any(step.kind == "confirm" for step in iter_steps(plan.steps))


def unguarded_destructive_steps(steps: Sequence[Any], *, guarded: bool = False) -> List[IntentStep]:
    """Return destructive intent steps not nested inside any ``confirm.on_approve``."""
    found: List[IntentStep] = []
    for step in steps:
        if step.kind == "intent":
            if not guarded and step.skeleton.kind in DESTRUCTIVE_KINDS:
                found.append(step)
        elif step.kind == "if":
            for branch in child_branches(step):
                found.extend(unguarded_destructive_steps(branch, guarded=guarded))
        elif step.kind == "confirm":
            found.extend(unguarded_destructive_steps(step.on_approve, guarded=True))
            if step.on_reject is not None:
                found.extend(unguarded_destructive_steps(step.on_reject, guarded=guarded))
    return found


# ---------------------------------------------------------------------------
# Validation


def validate_plan(raw: Any) -> ValidationReport:
    """Recursively check the shape of raw planner output."""
    report = ValidationReport()
    if not isinstance(raw, Mapping):
        report.errors.append("Plan must be an object")
        return report

    if raw.get("version") != 1 or isinstance(raw.get("version"), bool):
        report.errors.append("Plan.version must be 1")

    if not is_non_empty_str(raw.get("goal")):
        report.errors.append("Plan.goal is required and must be a string")

    steps = raw.get("steps")
    if not isinstance(steps, list):
        report.errors.append("Plan.steps must be an array")
    elif not steps:
        report.errors.append("Plan.steps must not be empty")
    else:
        for index, step in enumerate(steps):
            report.errors.extend(_validate_step(step, f"steps[{index}]"))

    risk = raw.get("risk")
    if risk is not None and risk not in RISK_LEVELS:
        report.warnings.append('Plan.risk should be "low", "medium", or "high"')

    return report


def _validate_branch(value: Any, path: str, *, required: bool) -> List[str]:
    if value is None and not required:
        return []
    if not isinstance(value, list):
        return [f"{path}: must be an array"]
    errors: List[str] = []
    for index, step in enumerate(value):
        errors.extend(_validate_step(step, f"{path}[{index}]"))
    return errors


def _validate_step(step: Any, path: str) -> List[str]:
    if not isinstance(step, Mapping):
        return [f"{path}: must be an object"]

    kind = step.get("kind")
    if not isinstance(kind, str) or not kind:
        return [f'{path}: must have a "kind" field']

    errors: List[str] = []
    if kind == "intent":
        skeleton = step.get("skeleton")
        if not isinstance(skeleton, Mapping):
            errors.append(f'{path}: intent step must have a "skeleton" object')
        else:
            errors.extend(f"{path}.skeleton: {message}" for message in validate_skeleton(skeleton).errors)
    elif kind == "query":
        query = step.get("query")
        if not isinstance(query, Mapping):
            errors.append(f'{path}: query step must have a "query" object')
        else:
            errors.extend(_validate_query(query, f"{path}.query"))
        assign = step.get("assign")
        if assign is not None and not is_non_empty_str(assign):
            errors.append(f'{path}: "assign" must be a non-empty string')
    elif kind == "if":
        cond = step.get("cond")
        if not isinstance(cond, Mapping):
            errors.append(f'{path}: if step must have a "cond" object')
        else:
            errors.extend(_validate_condition(cond, f"{path}.cond"))
        if not isinstance(step.get("then"), list):
            errors.append(f'{path}: if step must have a "then" array')
        else:
            errors.extend(_validate_branch(step.get("then"), f"{path}.then", required=True))
        errors.extend(_validate_branch(step.get("else"), f"{path}.else", required=False))
    elif kind == "confirm":
        if not is_non_empty_str(step.get("message")):
            errors.append(f'{path}: confirm step must have a "message" string')
        if not isinstance(step.get("onApprove"), list):
            errors.append(f'{path}: confirm step must have an "onApprove" array')
        else:
            errors.extend(_validate_branch(step.get("onApprove"), f"{path}.onApprove", required=True))
        errors.extend(_validate_branch(step.get("onReject"), f"{path}.onReject", required=False))
    elif kind == "note":
        if not is_non_empty_str(step.get("text")):
            errors.append(f'{path}: note step must have a "text" string')
    else:
        errors.append(f'{path}: unknown step kind "{kind}"')

    return errors


def _validate_query(query: Mapping[str, Any], path: str) -> List[str]:
    kind = query.get("kind")
    if kind not in QUERY_KINDS:
        return [f'{path}: unknown query kind "{kind}"']
    errors: List[str] = []
    if kind == "findTask" and not is_non_empty_str(query.get("hint")):
        errors.append(f'{path}: findTask query must have a "hint" string')
    if kind == "listTasks":
        limit = query.get("limit")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
            errors.append(f'{path}: "limit" must be a non-negative integer')
    query_filter = query.get("filter")
    if query_filter is not None and not isinstance(query_filter, Mapping):
        errors.append(f'{path}: "filter" must be an object')
    return errors


def _validate_condition(cond: Mapping[str, Any], path: str) -> List[str]:
    op = cond.get("op")
    if op in COMPARE_OPS:
        missing = [key for key in ("left", "right") if key not in cond]
        if missing:
            return [f"{path}: comparison requires {', '.join(missing)}"]
        return []
    if op in EXISTS_OPS:
        ref = cond.get("var")
        if not isinstance(ref, Mapping) or not is_non_empty_str(ref.get("var")):
            return [f'{path}: {op} requires a "var" reference']
        return []
    if op in LOGICAL_OPS:
        items = cond.get("items")
        if not isinstance(items, list) or not items:
            return [f'{path}: {op} requires a non-empty "items" array']
        errors: List[str] = []
        for index, item in enumerate(items):
            if not isinstance(item, Mapping):
                errors.append(f"{path}.items[{index}]: must be an object")
            else:
                errors.extend(_validate_condition(item, f"{path}.items[{index}]"))
        return errors
    return [f'{path}: unknown condition op "{op}"']


def parse_plan(raw: Any) -> Plan:
    """Validate raw planner output and build the typed :class:`Plan`.

    An out-of-range ``risk`` self-assessment is only a warning, so it is dropped
    rather than rejected.
    """
    if isinstance(raw, Plan):
        return raw
    report = validate_plan(raw)
    if not report.valid:
        raise PlanValidationError(report.errors)
    payload = dict(raw)
    if payload.get("risk") is not None and payload.get("risk") not in RISK_LEVELS:
        payload.pop("risk")
    try:
        return PLAN_ADAPTER.validate_python(payload)
    except ValidationError as error:
        raise PlanValidationError([f"Plan did not validate: {error}"]) from error


__all__ = [
    "COMPARE_OPS",
    "CompareCondition",
    "Condition",
    "ConfirmStep",
    "CountTasksQuery",
    "ExistsCondition",
    "FilterSpec",
    "FindTaskQuery",
    "IfStep",
    "IntentStep",
    "ListTasksQuery",
    "LogicalCondition",
    "NoteStep",
    "Plan",
    "PlanStep",
    "QueryStep",
    "QuerySpec",
    "RISK_LEVELS",
    "RiskLevel",
    "VarRef",
    "child_branches",
    "count_total_steps",
    "extract_all_intent_steps",
    "has_confirm_step",
    "has_destructive_intent",
    "iter_steps",
    "parse_plan",
    "unguarded_destructive_steps",
    "validate_plan",
]
