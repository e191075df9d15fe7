"""Policy gate: risk assessment, step ceilings and mandatory confirmation.

The gate runs before symbol resolution and decides whether a plan may be
executed at all.  It exposes three public abstractions:

``POLICY_RULES``
    Registry listing the rules the gate enforces with human readable
    descriptions.  Used for documentation and when surfacing violations.

``assess_risk``
    Derives a :class:`RiskAssessment` for a plan.  The assessment is never
    stored; it is recomputed on demand.

``validate_policy``
    Evaluates the rules against a plan under a :class:`PolicyConfig` and
    returns structured :class:`PolicyViolation` instances.  When destructive
    steps lack a confirmation and auto-injection is enabled, a normalised plan
    wrapping each such step in its own ``confirm`` step is returned as well.

Violations with severity ``error`` block execution; ``warning`` violations
are reported but the (normalised) plan may proceed.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Sequence

from ..planning.plan import (
    ConfirmStep,
    Plan,
    RiskLevel,
    count_total_steps,
    extract_all_intent_steps,
    unguarded_destructive_steps,
)
from ..planning.skeleton import DESTRUCTIVE_KINDS, READ_ONLY_KINDS, WRITE_KINDS

LOGGER = logging.getLogger(__name__)

Severity = Literal["error", "warning"]

SKELETON_RISK_LEVELS: Dict[str, RiskLevel] = {
    "DeleteTask": RiskLevel.HIGH,
    "RestoreTask": RiskLevel.HIGH,
    "ChangeStatus": RiskLevel.MEDIUM,
    "UpdateTask": RiskLevel.MEDIUM,
    "CreateTask": RiskLevel.MEDIUM,
    # Undo can revert important changes.
    "Undo": RiskLevel.MEDIUM,
    "SelectTask": RiskLevel.LOW,
    "ChangeView": RiskLevel.LOW,
    "SetDateFilter": RiskLevel.LOW,
    "QueryTasks": RiskLevel.LOW,
    "ToggleAssistant": RiskLevel.LOW,
}

_RISK_ORDER: Dict[str, int] = {RiskLevel.LOW.value: 0, RiskLevel.MEDIUM.value: 1, RiskLevel.HIGH.value: 2}


def _escalate(current: RiskLevel, candidate: RiskLevel) -> RiskLevel:
    if _RISK_ORDER[RiskLevel(candidate).value] > _RISK_ORDER[RiskLevel(current).value]:
        return RiskLevel(candidate)
    return RiskLevel(current)


@dataclass(slots=True)
class PolicyConfig:
    """Tunable limits enforced by the gate."""

    max_steps: int = 8
    max_write_steps: int = 4
    require_confirm_for_destructive: bool = True
    auto_inject_confirm: bool = True

    @classmethod
    def from_config(cls, config_data: Mapping[str, Any]) -> "PolicyConfig":
        """Build a config from the ``policy`` section of ``config.yaml``."""
        section = config_data.get("policy") or {}
        if not isinstance(section, Mapping):
            raise ValueError("Config section 'policy' must be a mapping")
        defaults = cls()
        values: Dict[str, Any] = {}
        for name, expected in (
            ("max_steps", int),
            ("max_write_steps", int),
            ("require_confirm_for_destructive", bool),
            ("auto_inject_confirm", bool),
        ):
            value = section.get(name, getattr(defaults, name))
            if expected is int and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                raise ValueError(f"policy.{name} must be a non-negative integer")
            if expected is bool and not isinstance(value, bool):
                raise ValueError(f"policy.{name} must be a boolean")
            values[name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxSteps": self.max_steps,
            "maxWriteSteps": self.max_write_steps,
            "requireConfirmForDestructive": self.require_confirm_for_destructive,
            "autoInjectConfirm": self.auto_inject_confirm,
        }


DEFAULT_POLICY_CONFIG = PolicyConfig()


@dataclass(slots=True)
class RuleDefinition:
    """Metadata describing a policy rule."""

    code: str
    title: str
    detail: str


POLICY_RULES: Dict[str, RuleDefinition] = {
    "TOO_MANY_STEPS": RuleDefinition(
        code="TOO_MANY_STEPS",
        title="Step ceiling",
        detail="The flattened step count, branch bodies included, must not exceed policy.max_steps.",
    ),
    "TOO_MANY_WRITE_STEPS": RuleDefinition(
        code="TOO_MANY_WRITE_STEPS",
        title="Write ceiling",
        detail="Create/update/status/delete/restore intents must not exceed policy.max_write_steps.",
    ),
    "DESTRUCTIVE_WITHOUT_CONFIRM": RuleDefinition(
        code="DESTRUCTIVE_WITHOUT_CONFIRM",
        title="Destructive confirmation",
        detail="DeleteTask and RestoreTask must only run from a confirm step's approval branch. "
        "Missing confirmations are injected when policy.auto_inject_confirm is true.",
    ),
}


@dataclass(slots=True)
class RiskAssessment:
    """Derived risk summary for a plan."""

    level: RiskLevel
    reasons: List[str] = field(default_factory=list)
    has_destructive: bool = False
    write_step_count: int = 0
    total_step_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": RiskLevel(self.level).value,
            "reasons": list(self.reasons),
            "hasDestructive": self.has_destructive,
            "writeStepCount": self.write_step_count,
            "totalStepCount": self.total_step_count,
        }


@dataclass(slots=True)
class PolicyViolation:
    """Structured representation of a policy violation."""

    code: str
    message: str
    severity: Severity

    def to_dict(self) -> Dict[str, Any]:
        """Return a serialisable view of the violation."""

        return {"code": self.code, "message": self.message, "severity": self.severity}


@dataclass(slots=True)
class PolicyValidationResult:
    """Verdict of :func:`validate_policy`."""

    violations: List[PolicyViolation]
    risk: RiskAssessment
    normalized_plan: Plan | None = None

    @property
    def valid(self) -> bool:
        return not any(violation.severity == "error" for violation in self.violations)

    @property
    def errors(self) -> List[PolicyViolation]:
        return [violation for violation in self.violations if violation.severity == "error"]

    @property
    def warnings(self) -> List[PolicyViolation]:
        return [violation for violation in self.violations if violation.severity == "warning"]


def assess_risk(plan: Plan) -> RiskAssessment:
    """Compute the risk level of ``plan``, branch bodies included."""
    intents = extract_all_intent_steps(plan)
    kinds = [step.skeleton.kind for step in intents]
    total_steps = count_total_steps(plan)
    has_destructive = any(kind in DESTRUCTIVE_KINDS for kind in kinds)
    write_step_count = sum(1 for kind in kinds if kind in WRITE_KINDS)

    level = RiskLevel.LOW
    reasons: List[str] = []

    if has_destructive:
        level = RiskLevel.HIGH
        reasons.append("Contains destructive operation (DeleteTask or RestoreTask)")

    if write_step_count > 3:
        level = _escalate(level, RiskLevel.MEDIUM)
        reasons.append(f"Multiple write operations ({write_step_count})")

    if sum(1 for kind in kinds if kind == "CreateTask") > 2:
        level = _escalate(level, RiskLevel.MEDIUM)
        reasons.append("Multiple task creations")

    for kind in kinds:
        level = _escalate(level, SKELETON_RISK_LEVELS.get(kind, RiskLevel.LOW))

    if total_steps > 5:
        level = _escalate(level, RiskLevel.MEDIUM)
        reasons.append(f"Many steps ({total_steps})")

    if not reasons:
        reasons.append("Simple operation" if level == RiskLevel.LOW else "Standard operation")

    return RiskAssessment(
        level=level,
        reasons=reasons,
        has_destructive=has_destructive,
        write_step_count=write_step_count,
        total_step_count=total_steps,
    )


def validate_policy(plan: Plan, config: PolicyConfig = DEFAULT_POLICY_CONFIG) -> PolicyValidationResult:
    """Evaluate the policy rules against ``plan``."""
    violations: List[PolicyViolation] = []
    risk = assess_risk(plan)

    if risk.total_step_count > config.max_steps:
        violations.append(
            PolicyViolation(
                code="TOO_MANY_STEPS",
                message=f"Plan has {risk.total_step_count} steps, max allowed is {config.max_steps}",
                severity="error",
            )
        )

    if risk.write_step_count > config.max_write_steps:
        violations.append(
            PolicyViolation(
                code="TOO_MANY_WRITE_STEPS",
                message=(
                    f"Plan has {risk.write_step_count} write steps, "
                    f"max allowed is {config.max_write_steps}"
                ),
                severity="error",
            )
        )

    normalized: Plan | None = None
    if config.require_confirm_for_destructive and risk.has_destructive:
        if unguarded_destructive_steps(plan.steps):
            if config.auto_inject_confirm:
                violations.append(
                    PolicyViolation(
                        code="DESTRUCTIVE_WITHOUT_CONFIRM",
                        message="Destructive operation without confirmation - auto-injecting confirm step",
                        severity="warning",
                    )
                )
                normalized = inject_confirm_for_destructive(plan)
            else:
                violations.append(
                    PolicyViolation(
                        code="DESTRUCTIVE_WITHOUT_CONFIRM",
                        message="Destructive operation requires confirmation",
                        severity="error",
                    )
                )

    for violation in violations:
        LOGGER.debug("Policy %s [%s]: %s", violation.code, violation.severity, violation.message)

    return PolicyValidationResult(violations=violations, risk=risk, normalized_plan=normalized)


def inject_confirm_for_destructive(plan: Plan) -> Plan:
    """Wrap every unguarded destructive intent in its own confirm step."""
    return plan.model_copy(update={"steps": _inject_steps(plan.steps)})


def _inject_steps(steps: Sequence[Any]) -> List[Any]:
    wrapped: List[Any] = []
    for step in steps:
        if step.kind == "intent" and step.skeleton.kind in DESTRUCTIVE_KINDS:
            wrapped.append(
                ConfirmStep(message=confirm_message_for(step.skeleton), on_approve=[step])
            )
        elif step.kind == "if":
            update: Dict[str, Any] = {"then": _inject_steps(step.then)}
            if step.else_ is not None:
                update["else_"] = _inject_steps(step.else_)
            wrapped.append(step.model_copy(update=update))
        elif step.kind == "confirm" and step.on_reject is not None:
            # on_approve is already guarded; on_reject is not.
            wrapped.append(step.model_copy(update={"on_reject": _inject_steps(step.on_reject)}))
        else:
            wrapped.append(step)
    return wrapped


def confirm_message_for(skeleton: Any) -> str:
    hint = getattr(skeleton, "target_hint", None) or "the task"
    if skeleton.kind == "DeleteTask":
        return f'Delete "{hint}"?'
    if skeleton.kind == "RestoreTask":
        return f'Restore "{hint}"?'
    return "Proceed with this operation?"


def is_read_only_operation(skeleton: Any) -> bool:
    return getattr(skeleton, "kind", None) in READ_ONLY_KINDS


def is_plan_read_only(plan: Plan) -> bool:
    return all(is_read_only_operation(step.skeleton) for step in extract_all_intent_steps(plan))


__all__ = [
    "DEFAULT_POLICY_CONFIG",
    "POLICY_RULES",
    "PolicyConfig",
    "PolicyValidationResult",
    "PolicyViolation",
    "RiskAssessment",
    "RuleDefinition",
    "SKELETON_RISK_LEVELS",
    "assess_risk",
    "confirm_message_for",
    "inject_confirm_for_destructive",
    "is_plan_read_only",
    "is_read_only_operation",
    "validate_policy",
]
