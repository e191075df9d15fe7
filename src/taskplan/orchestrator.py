"""End-to-end coordination of plan validation, preflight, execution and sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Protocol, Union

from .effects import Effect
from .memory.schema import Snapshot
from .memory.sessions import SessionStore, build_clarification_context
from .planning.executor import (
    ConfirmPending,
    ExecutionOutcome,
    StepTrace,
    TransactionSuccess,
    continue_after_confirm,
    execute_transaction,
)
from .planning.plan import Plan, parse_plan
from .planning.preflight import (
    ClarificationRequest,
    ExecutablePlan,
    PreflightFailure,
    PreflightResult,
    PreflightWarning,
    run_preflight,
    verify_snapshot_version,
)
from .planning.validation import PlanValidationError
from .policy.gate import DEFAULT_POLICY_CONFIG, PolicyConfig, RiskAssessment
from .runtime import SnapshotDiff, calculate_snapshot_diff

LOGGER = logging.getLogger(__name__)

OutcomeStatus = Literal[
    "invalid",
    "needs_clarification",
    "confirm_required",
    "completed",
    "rolled_back",
    "expired",
]


class Planner(Protocol):
    """Turns a natural-language instruction into a raw plan mapping."""

    def create_plan(self, instruction: str, snapshot: Snapshot) -> Mapping[str, Any]: ...


@dataclass(slots=True)
class PreparedPlan:
    plan: Plan
    preflight: PreflightResult


@dataclass(slots=True)
class PlanRunOutcome:
    """Result of one pass through the pipeline, ready to surface to a user."""

    status: OutcomeStatus
    plan: Plan | None = None
    errors: List[str] = field(default_factory=list)
    warnings: List[PreflightWarning] = field(default_factory=list)
    risk: RiskAssessment | None = None
    clarification: ClarificationRequest | None = None
    session_id: str | None = None
    confirm_message: str | None = None
    effects: List[Effect] = field(default_factory=list)
    snapshot: Snapshot | None = None
    diff: SnapshotDiff | None = None
    trace: List[StepTrace] = field(default_factory=list)
    failed_step_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status}
        if self.errors:
            payload["errors"] = list(self.errors)
        if self.warnings:
            payload["warnings"] = [warning.to_dict() for warning in self.warnings]
        if self.risk is not None:
            payload["risk"] = self.risk.to_dict()
        if self.clarification is not None:
            payload["clarification"] = self.clarification.to_dict()
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        if self.confirm_message is not None:
            payload["confirmMessage"] = self.confirm_message
        if self.status in ("completed", "rolled_back"):
            payload["effects"] = [effect.to_dict() for effect in self.effects]
            payload["trace"] = [entry.to_dict() for entry in self.trace]
        if self.failed_step_kind is not None:
            payload["failedStepKind"] = self.failed_step_kind
        if self.diff is not None:
            payload["diff"] = self.diff.to_dict()
        if self.snapshot is not None:
            payload["snapshot"] = self.snapshot.to_dict()
        return payload


class PlanOrchestrator:
    """Drives raw planner output through validation, preflight and execution."""

    def __init__(
        self,
        *,
        policy: PolicyConfig | None = None,
        sessions: SessionStore | None = None,
    ) -> None:
        self.policy = policy or DEFAULT_POLICY_CONFIG
        self.sessions = sessions or SessionStore()

    @classmethod
    def from_config(cls, config_data: Mapping[str, Any]) -> "PlanOrchestrator":
        return cls(
            policy=PolicyConfig.from_config(config_data),
            sessions=SessionStore.from_config(config_data),
        )

    def prepare(self, raw_plan: Any, snapshot: Snapshot) -> PreparedPlan:
        """Validate ``raw_plan`` and run preflight; raises :class:`PlanValidationError`."""
        plan = parse_plan(raw_plan)
        return PreparedPlan(plan=plan, preflight=run_preflight(plan, snapshot, self.policy))

    async def commit(
        self, executable: ExecutablePlan, snapshot: Snapshot
    ) -> Union[ExecutionOutcome, ClarificationRequest]:
        """Execute ``executable`` unless ``snapshot`` changed since it was prepared."""
        conflict = verify_snapshot_version(executable, snapshot)
        if conflict is not None:
            return conflict
        return await execute_transaction(executable, snapshot)

    async def handle_plan(self, raw_plan: Any, snapshot: Snapshot, instruction: str = "") -> PlanRunOutcome:
        try:
            prepared = self.prepare(raw_plan, snapshot)
        except PlanValidationError as error:
            LOGGER.info("Rejected invalid plan: %s", "; ".join(error.errors))
            return PlanRunOutcome(status="invalid", errors=list(error.errors))

        preflight = prepared.preflight
        if isinstance(preflight, PreflightFailure):
            return self._clarify(prepared.plan, preflight, snapshot, instruction)

        executable = preflight.executable
        outcome = await self.commit(executable, snapshot)
        base = PlanRunOutcome(
            status="completed",
            plan=executable.plan,
            warnings=list(preflight.warnings),
            risk=executable.risk,
        )
        if isinstance(outcome, ClarificationRequest):
            base.status = "needs_clarification"
            base.clarification = outcome
            return base
        if isinstance(outcome, ConfirmPending):
            base.status = "confirm_required"
            base.confirm_message = outcome.message
            base.session_id = self.sessions.create_confirm_session(
                outcome, instruction, snapshot, executable.plan
            )
            LOGGER.info("Awaiting confirmation in session %s", base.session_id)
            return base
        return self._finish(base, outcome, snapshot)

    async def resume_confirmation(self, session_id: str, approved: bool) -> PlanRunOutcome:
        session = self.sessions.get_confirm_session(session_id)
        if session is None:
            LOGGER.info("Confirmation session %s is unknown or expired", session_id)
            return PlanRunOutcome(status="expired", errors=[f"Session {session_id} not found or expired"])
        self.sessions.delete_confirm_session(session_id)

        result = await continue_after_confirm(session.pending, approved)
        base = PlanRunOutcome(status="completed", plan=session.plan)
        return self._finish(base, result, session.snapshot)

    async def answer_clarification(
        self,
        session_id: str,
        response: str,
        snapshot: Snapshot,
        planner: Planner,
    ) -> PlanRunOutcome:
        """Re-plan with the user's answer to an earlier clarification question."""
        session = self.sessions.get_clarification_session(session_id)
        if session is None:
            return PlanRunOutcome(status="expired", errors=[f"Session {session_id} not found or expired"])
        self.sessions.delete_clarification_session(session_id)
        instruction = build_clarification_context(session, response)
        LOGGER.debug("Clarified instruction: %s", instruction)
        return await self.run_instruction(instruction, snapshot, planner)

    async def run_instruction(self, instruction: str, snapshot: Snapshot, planner: Planner) -> PlanRunOutcome:
        raw_plan = planner.create_plan(instruction, snapshot)
        return await self.handle_plan(raw_plan, snapshot, instruction)

    def _clarify(
        self,
        plan: Plan,
        failure: PreflightFailure,
        snapshot: Snapshot,
        instruction: str,
    ) -> PlanRunOutcome:
        request = failure.needs_clarification
        outcome = PlanRunOutcome(
            status="needs_clarification",
            plan=plan,
            warnings=list(failure.warnings),
            clarification=request,
        )
        if failure.resolver_error is not None and request.failed_skeleton is not None:
            outcome.session_id = self.sessions.create_clarification_session(
                request.failed_skeleton, snapshot, instruction, failure.resolver_error
            )
        return outcome

    def _finish(self, base: PlanRunOutcome, result: Any, before: Snapshot) -> PlanRunOutcome:
        base.trace = list(result.trace)
        if isinstance(result, TransactionSuccess):
            base.status = "completed"
            base.effects = list(result.effects)
            base.snapshot = result.final_snapshot
            base.diff = calculate_snapshot_diff(before, result.final_snapshot)
            return base
        base.status = "rolled_back"
        base.failed_step_kind = result.step_kind
        base.errors = [result.error]
        return base


__all__ = [
    "OutcomeStatus",
    "PlanOrchestrator",
    "PlanRunOutcome",
    "Planner",
    "PreparedPlan",
]
