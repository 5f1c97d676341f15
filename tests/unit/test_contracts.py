"""Tests for automation definition parsing."""

import pytest

from flowmail.contracts import (
    ActionStep,
    ConditionStep,
    LeadScoreCondition,
    SendEmailAction,
    TriggerKind,
    TriggerStep,
    UpdateFieldAction,
    WaitStep,
    load_automation,
)
from flowmail.errors import DefinitionError


def _automation(steps, **extra):
    return load_automation({"id": "a1", "name": "Test", "steps": steps, **extra})


def test_builder_format_is_normalized():
    automation = _automation(
        [
            {
                "id": "t1",
                "type": "trigger",
                "config": {"kind": "trigger.link_click", "urlContains": "pricing", "next": "c1"},
            },
            {
                "id": "c1",
                "type": "condition",
                "config": {"kind": "condition.lead_score", "value": 70, "nextYes": "w1", "nextNo": ""},
            },
            {"id": "w1", "type": "wait", "config": {"days": 2, "next": "s1"}},
            {"id": "s1", "type": "action", "config": {"kind": "action.send_email"}},
        ]
    )

    trigger = automation.get_step("t1")
    assert isinstance(trigger, TriggerStep)
    assert trigger.config.kind == TriggerKind.LINK_CLICK
    assert trigger.config.url_contains == "pricing"
    assert trigger.next == "c1"

    condition = automation.get_step("c1")
    assert isinstance(condition, ConditionStep)
    assert isinstance(condition.config, LeadScoreCondition)
    assert condition.config.op == ">"
    assert condition.next_yes == "w1"
    assert condition.next_no is None

    wait = automation.get_step("w1")
    assert isinstance(wait, WaitStep)
    assert wait.config.whole_days == 2

    action = automation.get_step("s1")
    assert isinstance(action, ActionStep)
    assert isinstance(action.config, SendEmailAction)
    assert action.config.subject == "Hello"
    assert action.next is None


def test_wait_kind_on_action_type_becomes_wait_step():
    automation = _automation([{"id": 7, "type": "Action", "config": {"kind": "wait", "days": 1.9}}])
    step = automation.get_step("7")
    assert isinstance(step, WaitStep)
    assert step.config.whole_days == 1


def test_unknown_step_type_is_definition_error():
    with pytest.raises(DefinitionError):
        _automation([{"id": "x", "type": "teleport", "config": {}}])


def test_unknown_action_kind_is_definition_error():
    with pytest.raises(DefinitionError):
        _automation([{"id": "x", "type": "action", "config": {"kind": "action.fax"}}])


def test_add_on_scalar_field_is_definition_error():
    with pytest.raises(DefinitionError):
        _automation(
            [
                {
                    "id": "x",
                    "type": "action",
                    "config": {"kind": "action.update_field", "field": "temperature", "op": "add"},
                }
            ]
        )


def test_set_on_tag_field_is_accepted():
    automation = _automation(
        [
            {
                "id": "x",
                "type": "action",
                "config": {"kind": "action.update_field", "field": "tag", "value": "vip"},
            }
        ]
    )
    config = automation.get_step("x").config
    assert isinstance(config, UpdateFieldAction)
    assert config.op == "set"


def test_duplicate_step_ids_rejected():
    with pytest.raises(DefinitionError):
        _automation(
            [
                {"id": "s", "type": "wait", "config": {}},
                {"id": "s", "type": "wait", "config": {}},
            ]
        )


def test_dangling_reference_raises_definition_error():
    automation = _automation([{"id": "w", "type": "wait", "config": {"next": "missing"}}])
    with pytest.raises(DefinitionError, match="missing"):
        automation.get_step("missing")


def test_entry_step_prefers_trigger_next():
    automation = _automation(
        [
            {"id": "s0", "type": "wait", "config": {}},
            {"id": "t1", "type": "trigger", "config": {"kind": "trigger.purchase", "next": "s1"}},
            {"id": "s1", "type": "action", "config": {"kind": "action.send_email"}},
        ]
    )
    assert automation.entry_step_id() == "s1"


def test_entry_step_falls_back_to_first_step():
    automation = _automation(
        [
            {"id": "t1", "type": "trigger", "config": {"kind": "trigger.purchase"}},
            {"id": "s1", "type": "action", "config": {"kind": "action.send_email"}},
        ]
    )
    assert automation.entry_step_id() == "t1"
    assert _automation([]).entry_step_id() is None


def test_paused_status_parsed():
    automation = _automation([], status="Paused")
    assert not automation.is_running
