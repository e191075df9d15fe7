from __future__ import annotations

import pytest

from conftest import intent_step, plan_of
from taskplan.planning.plan import ConfirmStep, IfStep, RiskLevel, parse_plan, unguarded_destructive_steps
from taskplan.policy.gate import (
    POLICY_RULES,
    PolicyConfig,
    assess_risk,
    confirm_message_for,
    is_plan_read_only,
    validate_policy,
)


def test_read_only_plan_is_low_risk() -> None:
    plan = parse_plan(plan_of(intent_step("ChangeView", viewMode="table")))

    risk = assess_risk(plan)

    assert risk.level == RiskLevel.LOW
    assert risk.reasons == ["Simple operation"]
    assert not risk.has_destructive
    assert is_plan_read_only(plan)


def test_write_plan_is_medium_risk() -> None:
    plan = parse_plan(plan_of(intent_step("CreateTask", tasks=[{"title": "Write report"}])))

    risk = assess_risk(plan)

    assert risk.level == RiskLevel.MEDIUM
    assert risk.reasons == ["Standard operation"]
    assert risk.write_step_count == 1
    assert not is_plan_read_only(plan)


def test_destructive_step_nested_in_branch_is_high_risk() -> None:
    plan = parse_plan(
        plan_of(
            {"kind": "query", "query": {"kind": "countTasks"}, "assign": "count"},
            {
                "kind": "if",
                "cond": {"op": "gt", "left": {"var": "count"}, "right": 3},
                "then": [{"kind": "note", "text": "busy"}],
                "else": [intent_step("RestoreTask", targetHint="Report")],
            },
        )
    )

    risk = assess_risk(plan)

    assert risk.level == RiskLevel.HIGH
    assert risk.has_destructive
    assert risk.reasons[0] == "Contains destructive operation (DeleteTask or RestoreTask)"


def test_many_steps_escalate_to_medium() -> None:
    plan = parse_plan(plan_of(*[{"kind": "note", "text": f"n{index}"} for index in range(6)]))

    risk = assess_risk(plan)

    assert risk.level == RiskLevel.MEDIUM
    assert risk.reasons == ["Many steps (6)"]


def test_step_ceilings_are_hard_errors() -> None:
    plan = parse_plan(
        plan_of(*[intent_step("CreateTask", tasks=[{"title": f"Task {index}"}]) for index in range(5)])
    )

    result = validate_policy(plan, PolicyConfig(max_steps=4, max_write_steps=4))

    assert not result.valid
    assert [violation.code for violation in result.errors] == ["TOO_MANY_STEPS", "TOO_MANY_WRITE_STEPS"]
    assert result.errors[0].message == "Plan has 5 steps, max allowed is 4"


def test_unconfirmed_destructive_step_is_wrapped_with_a_warning() -> None:
    plan = parse_plan(plan_of(intent_step("DeleteTask", targetHint="Report")))

    result = validate_policy(plan)

    assert result.valid
    assert [violation.code for violation in result.warnings] == ["DESTRUCTIVE_WITHOUT_CONFIRM"]
    normalized = result.normalized_plan
    assert normalized is not None
    wrapper = normalized.steps[0]
    assert isinstance(wrapper, ConfirmStep)
    assert wrapper.message == 'Delete "Report"?'
    assert wrapper.on_approve[0].skeleton.kind == "DeleteTask"
    assert wrapper.on_reject is None
    # the input plan is left untouched
    assert plan.steps[0].kind == "intent"


def test_injection_is_idempotent() -> None:
    plan = parse_plan(
        plan_of(
            intent_step("DeleteTask", targetHint="Report A"),
            {
                "kind": "if",
                "cond": {"op": "exists", "var": {"var": "x"}},
                "then": [intent_step("RestoreTask", targetHint="Report B")],
            },
        )
    )

    first = validate_policy(plan)
    second = validate_policy(first.normalized_plan)

    assert [violation.code for violation in first.violations] == ["DESTRUCTIVE_WITHOUT_CONFIRM"]
    assert second.violations == []
    assert second.normalized_plan is None
    assert unguarded_destructive_steps(first.normalized_plan.steps) == []
    branch = first.normalized_plan.steps[1]
    assert isinstance(branch, IfStep)
    assert branch.then[0].message == 'Restore "Report B"?'


def test_each_destructive_step_gets_its_own_confirm() -> None:
    plan = parse_plan(
        plan_of(
            intent_step("DeleteTask", targetHint="Report A"),
            intent_step("DeleteTask", targetHint="Report B"),
        )
    )

    normalized = validate_policy(plan).normalized_plan

    assert [step.kind for step in normalized.steps] == ["confirm", "confirm"]


def test_on_reject_branch_is_not_treated_as_guarded() -> None:
    plan = parse_plan(
        plan_of(
            {
                "kind": "confirm",
                "message": "Archive everything?",
                "onApprove": [{"kind": "note", "text": "ok"}],
                "onReject": [intent_step("DeleteTask", targetHint="Report")],
            }
        )
    )

    normalized = validate_policy(plan).normalized_plan

    assert normalized is not None
    assert normalized.steps[0].on_reject[0].kind == "confirm"


def test_without_auto_inject_destructive_plans_are_blocked() -> None:
    plan = parse_plan(plan_of(intent_step("DeleteTask", targetHint="Report")))

    result = validate_policy(plan, PolicyConfig(auto_inject_confirm=False))

    assert not result.valid
    assert result.errors[0].code == "DESTRUCTIVE_WITHOUT_CONFIRM"
    assert result.normalized_plan is None


def test_confirmation_rule_can_be_disabled() -> None:
    plan = parse_plan(plan_of(intent_step("DeleteTask", targetHint="Report")))

    result = validate_policy(plan, PolicyConfig(require_confirm_for_destructive=False))

    assert result.violations == []
    assert result.risk.level == RiskLevel.HIGH


def test_confirm_message_without_hint() -> None:
    plan = parse_plan(plan_of(intent_step("DeleteTask")))

    assert confirm_message_for(plan.steps[0].skeleton) == 'Delete "the task"?'


def test_policy_config_from_config_sections() -> None:
    config = PolicyConfig.from_config({"policy": {"max_steps": 12, "auto_inject_confirm": False}})

    assert config.max_steps == 12
    assert config.max_write_steps == 4
    assert config.auto_inject_confirm is False
    assert PolicyConfig.from_config({}) == PolicyConfig()
    assert config.to_dict()["maxSteps"] == 12


@pytest.mark.parametrize(
    "section",
    [
        {"max_steps": "8"},
        {"max_write_steps": True},
        {"auto_inject_confirm": "yes"},
        {"max_steps": -1},
    ],
)
def test_policy_config_rejects_bad_types(section) -> None:
    with pytest.raises(ValueError):
        PolicyConfig.from_config({"policy": section})


def test_rule_registry_lists_every_violation_code() -> None:
    assert set(POLICY_RULES) == {"TOO_MANY_STEPS", "TOO_MANY_WRITE_STEPS", "DESTRUCTIVE_WITHOUT_CONFIRM"}
