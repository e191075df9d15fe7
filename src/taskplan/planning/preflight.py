"""Preflight: policy gate followed by symbol resolution of every step.

Preflight is the last point at which a plan may be rejected without side
effects.  It either returns an :class:`ExecutablePlan` whose intent steps all
carry resolved task identifiers, or a :class:`ClarificationRequest` explaining
what the user must answer first.  No partially bound plan is ever returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from ..memory.schema import Snapshot, Task, parse_timestamp
from ..policy.gate import (
    DEFAULT_POLICY_CONFIG,
    PolicyConfig,
    PolicyViolation,
    RiskAssessment,
    validate_policy,
)
from .plan import Condition, Plan, QuerySpec
from .resolver import ResolverError, resolve_skeleton

LOGGER = logging.getLogger(__name__)


class ClarificationReason(str, Enum):
    AMBIGUOUS_TARGET = "AMBIGUOUS_TARGET"
    NOT_FOUND = "NOT_FOUND"
    POLICY_CONFIRM_REQUIRED = "POLICY_CONFIRM_REQUIRED"
    TOO_MANY_STEPS = "TOO_MANY_STEPS"
    VERSION_CONFLICT = "VERSION_CONFLICT"


_POLICY_REASONS: Dict[str, ClarificationReason] = {
    "TOO_MANY_STEPS": ClarificationReason.TOO_MANY_STEPS,
    "TOO_MANY_WRITE_STEPS": ClarificationReason.TOO_MANY_STEPS,
    "DESTRUCTIVE_WITHOUT_CONFIRM": ClarificationReason.POLICY_CONFIRM_REQUIRED,
}

_POLICY_QUESTIONS: Dict[str, str] = {
    "TOO_MANY_STEPS": "This plan has too many steps. Would you like to simplify it?",
    "TOO_MANY_WRITE_STEPS": "This plan has too many write operations. Would you like to reduce them?",
    "DESTRUCTIVE_WITHOUT_CONFIRM": "This plan includes destructive operations. Please confirm to proceed.",
}


@dataclass(slots=True)
class PreflightWarning:
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


@dataclass(slots=True)
class ClarificationRequest:
    """A policy or resolution failure phrased as a question for the user."""

    reason: ClarificationReason
    message: str
    question: str
    candidates: Optional[List[Dict[str, str]]] = None
    failed_skeleton: Any = None
    failed_step_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "reason": ClarificationReason(self.reason).value,
            "message": self.message,
            "question": self.question,
        }
        if self.candidates is not None:
            payload["candidates"] = [dict(candidate) for candidate in self.candidates]
        if self.failed_skeleton is not None:
            payload["failedSkeleton"] = self.failed_skeleton.model_dump(
                mode="json", by_alias=True, exclude_none=True
            )
        if self.failed_step_index is not None:
            payload["failedStepIndex"] = self.failed_step_index
        return payload


# ---------------------------------------------------------------------------
# Bound steps


@dataclass(slots=True)
class BoundIntentStep:
    intent: Any
    original_skeleton: Any
    resolved_task: Task | None = None

    @property
    def kind(self) -> str:
        return "intent"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "intent": self.intent.model_dump(mode="json", by_alias=True, exclude_none=True),
            "originalSkeleton": self.original_skeleton.model_dump(mode="json", by_alias=True, exclude_none=True),
        }
        if self.resolved_task is not None:
            payload["resolvedTask"] = self.resolved_task.to_dict()
        return payload


@dataclass(slots=True)
class BoundQueryStep:
    query: QuerySpec
    assign: Optional[str] = None

    @property
    def kind(self) -> str:
        return "query"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "query": self.query.model_dump(mode="json", by_alias=True, exclude_none=True),
        }
        if self.assign is not None:
            payload["assign"] = self.assign
        return payload


@dataclass(slots=True)
class BoundIfStep:
    cond: Condition
    then: List["BoundStep"]
    else_: Optional[List["BoundStep"]] = None

    @property
    def kind(self) -> str:
        return "if"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "cond": self.cond.model_dump(mode="json", by_alias=True),
            "then": [step.to_dict() for step in self.then],
        }
        if self.else_ is not None:
            payload["else"] = [step.to_dict() for step in self.else_]
        return payload


@dataclass(slots=True)
class BoundConfirmStep:
    message: str
    on_approve: List["BoundStep"]
    on_reject: Optional[List["BoundStep"]] = None

    @property
    def kind(self) -> str:
        return "confirm"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "onApprove": [step.to_dict() for step in self.on_approve],
        }
        if self.on_reject is not None:
            payload["onReject"] = [step.to_dict() for step in self.on_reject]
        return payload


@dataclass(slots=True)
class BoundNoteStep:
    text: str

    @property
    def kind(self) -> str:
        return "note"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "text": self.text}


BoundStep = Union[BoundIntentStep, BoundQueryStep, BoundIfStep, BoundConfirmStep, BoundNoteStep]


@dataclass(slots=True)
class ExecutablePlan:
    """A fully bound plan, consumed once by the executor."""

    plan: Plan
    bound_steps: List[BoundStep]
    snapshot_version: int
    risk: RiskAssessment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "boundSteps": [step.to_dict() for step in self.bound_steps],
            "snapshotVersion": self.snapshot_version,
            "risk": self.risk.to_dict(),
        }


@dataclass(slots=True)
class PreflightSuccess:
    executable: ExecutablePlan
    warnings: List[PreflightWarning] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True)
class PreflightFailure:
    needs_clarification: ClarificationRequest
    warnings: List[PreflightWarning] = field(default_factory=list)
    resolver_error: ResolverError | None = None

    @property
    def ok(self) -> bool:
        return False


PreflightResult = Union[PreflightSuccess, PreflightFailure]


class _ResolutionFailed(Exception):
    def __init__(self, error: ResolverError, skeleton: Any, index: int) -> None:
        super().__init__(error.message)
        self.error = error
        self.skeleton = skeleton
        self.index = index


class _StepBinder:
    """Binds a step tree depth-first, numbering steps in visit order."""

    def __init__(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot
        self.index = 0

    def bind_steps(self, steps: Sequence[Any]) -> List[BoundStep]:
        return [self.bind_step(step) for step in steps]

    def bind_step(self, step: Any) -> BoundStep:
        index = self.index
        self.index += 1

        if step.kind == "intent":
            result = resolve_skeleton(step.skeleton, self.snapshot)
            if isinstance(result, ResolverError):
                raise _ResolutionFailed(result, step.skeleton, index)
            return BoundIntentStep(
                intent=result.intent,
                original_skeleton=step.skeleton,
                resolved_task=result.resolved_task,
            )
        if step.kind == "query":
            return BoundQueryStep(query=step.query, assign=step.assign)
        if step.kind == "if":
            then = self.bind_steps(step.then)
            otherwise = self.bind_steps(step.else_) if step.else_ is not None else None
            return BoundIfStep(cond=step.cond, then=then, else_=otherwise)
        if step.kind == "confirm":
            approve = self.bind_steps(step.on_approve)
            reject = self.bind_steps(step.on_reject) if step.on_reject is not None else None
            return BoundConfirmStep(message=step.message, on_approve=approve, on_reject=reject)
        if step.kind == "note":
            return BoundNoteStep(text=step.text)
        raise ValueError(f"Unknown step kind: {step.kind}")


def run_preflight(
    plan: Plan,
    snapshot: Snapshot,
    config: PolicyConfig = DEFAULT_POLICY_CONFIG,
) -> PreflightResult:
    """Gate ``plan`` through policy, then bind every step against ``snapshot``."""
    policy = validate_policy(plan, config)
    warnings = [PreflightWarning(code=item.code, message=item.message) for item in policy.warnings]
    for warning in warnings:
        LOGGER.info("Policy warning %s: %s", warning.code, warning.message)

    if policy.errors:
        violation = policy.errors[0]
        request = ClarificationRequest(
            reason=policy_violation_reason(violation),
            message=violation.message,
            question=policy_question(violation),
        )
        LOGGER.info("Preflight blocked by policy: %s", violation.code)
        return PreflightFailure(needs_clarification=request, warnings=warnings)

    working_plan = policy.normalized_plan or plan
    binder = _StepBinder(snapshot)
    try:
        bound_steps = binder.bind_steps(working_plan.steps)
    except _ResolutionFailed as failure:
        error = failure.error
        request = ClarificationRequest(
            reason=resolver_error_reason(error),
            message=error.message,
            question=error.suggested_question,
            candidates=[{"id": task.id, "title": task.title} for task in error.candidates] or None,
            failed_skeleton=failure.skeleton,
            failed_step_index=failure.index,
        )
        LOGGER.info("Preflight needs clarification at step %d: %s", failure.index, error.message)
        return PreflightFailure(needs_clarification=request, warnings=warnings, resolver_error=error)

    executable = ExecutablePlan(
        plan=working_plan,
        bound_steps=bound_steps,
        snapshot_version=snapshot_version(snapshot),
        risk=policy.risk,
    )
    LOGGER.debug("Preflight bound %d steps at version %d", binder.index, executable.snapshot_version)
    return PreflightSuccess(executable=executable, warnings=warnings)


def policy_violation_reason(violation: PolicyViolation) -> ClarificationReason:
    return _POLICY_REASONS.get(violation.code, ClarificationReason.POLICY_CONFIRM_REQUIRED)


def policy_question(violation: PolicyViolation) -> str:
    return _POLICY_QUESTIONS.get(violation.code, "Please confirm this operation.")


def resolver_error_reason(error: ResolverError) -> ClarificationReason:
    if error.type == "ambiguous":
        return ClarificationReason.AMBIGUOUS_TARGET
    return ClarificationReason.NOT_FOUND


def snapshot_version(snapshot: Snapshot) -> int:
    """Cheap fingerprint of the task list; not collision-proof.

    Unparseable ``updatedAt`` values count as 0.
    """
    tasks = snapshot.data.tasks
    stamps = (parse_timestamp(task.updated_at) for task in tasks)
    latest = max((round(stamp.timestamp() * 1000) for stamp in stamps if stamp is not None), default=0)
    return len(tasks) * 1_000_000 + (max(latest, 0) % 1_000_000)


def verify_snapshot_version(executable: ExecutablePlan, snapshot: Snapshot) -> ClarificationRequest | None:
    """Return a ``VERSION_CONFLICT`` request when ``snapshot`` moved since preflight."""
    current = snapshot_version(snapshot)
    if current == executable.snapshot_version:
        return None
    LOGGER.info("Snapshot version changed from %d to %d", executable.snapshot_version, current)
    return ClarificationRequest(
        reason=ClarificationReason.VERSION_CONFLICT,
        message=f"Snapshot changed since the plan was prepared ({executable.snapshot_version} != {current})",
        question="Your tasks changed while this plan was pending. Would you like to run it again?",
    )


__all__ = [
    "BoundConfirmStep",
    "BoundIfStep",
    "BoundIntentStep",
    "BoundNoteStep",
    "BoundQueryStep",
    "BoundStep",
    "ClarificationReason",
    "ClarificationRequest",
    "ExecutablePlan",
    "PreflightFailure",
    "PreflightResult",
    "PreflightSuccess",
    "PreflightWarning",
    "policy_question",
    "policy_violation_reason",
    "resolver_error_reason",
    "run_preflight",
    "snapshot_version",
    "verify_snapshot_version",
]
