"""
Tests for step condition validation, evaluation and selection order
"""

import pytest
from datetime import datetime, timezone

from asset_workflows.conditions import (
    StepCondition, ConditionType, ConditionOperator, ConditionAction,
    ScalarValue, ListValue, NoValue, validate_condition, condition_matches,
    select_condition, order_conditions
)
from asset_workflows.errors import InvalidCondition


NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def make_condition(id="c1", operator="equals", field_name="priority", value="high",
                   action="complete_workflow", priority=0, condition_type="field_value",
                   target_step_id=None, required_role=None):
    ctype, caction, coperator, cvalue = validate_condition(
        condition_type, action, operator=operator, field_name=field_name, value=value,
        target_step_id=target_step_id, required_role=required_role
    )
    return StepCondition(
        id=id, created_at=NOW, updated_at=NOW, step_id="step-1", template_id="tpl-1",
        condition_type=ctype, action=caction, priority=priority, field_name=field_name,
        operator=coperator, value=cvalue, target_step_id=target_step_id,
        required_role=required_role
    )


class TestConditionValidation:

    def test_unknown_operator_rejected(self):
        """Test that an operator outside the fixed set is rejected at write time"""
        with pytest.raises(InvalidCondition) as exc_info:
            validate_condition("field_value", "complete_workflow", operator="matches_regex",
                               field_name="title", value="x")
        assert "matches_regex" in exc_info.value.message

    def test_unknown_action_rejected(self):
        """Test that unknown actions are rejected"""
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "escalate", operator="equals",
                               field_name="priority", value="high")

    def test_list_operator_requires_list(self):
        """Test value shape for in / not_in"""
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", operator="in",
                               field_name="priority", value="high")
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", operator="in",
                               field_name="priority", value=[])

        _, _, _, value = validate_condition("field_value", "complete_workflow", operator="in",
                                            field_name="priority", value=["high", "critical"])
        assert value == ListValue(("high", "critical"))

    def test_scalar_operator_rejects_containers(self):
        """Test that equality operators need a scalar"""
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", operator="equals",
                               field_name="priority", value={"a": 1})
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", operator="equals",
                               field_name="priority", value=None)

    def test_ordered_operator_rejects_booleans(self):
        """Test that greater_than cannot compare against a boolean"""
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", operator="greater_than",
                               field_name="cost", value=True)

    def test_is_set_takes_no_value(self):
        """Test that is_set rejects an operand"""
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", operator="is_set",
                               field_name="asset_id", value="x")
        _, _, _, value = validate_condition("field_value", "complete_workflow",
                                            operator="is_set", field_name="asset_id")
        assert value == NoValue()

    def test_field_value_requires_field_and_operator(self):
        """Test required parts of a field_value condition"""
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", operator="equals", value="x")
        with pytest.raises(InvalidCondition):
            validate_condition("field_value", "complete_workflow", field_name="x", value="x")

    def test_always_condition_shape(self):
        """Test that always conditions take no field, operator or value"""
        ctype, _, operator, value = validate_condition("always", "complete_workflow")
        assert ctype == ConditionType.ALWAYS
        assert operator is None
        assert value == NoValue()

        with pytest.raises(InvalidCondition):
            validate_condition("always", "complete_workflow", field_name="priority")

    def test_action_arguments(self):
        """Test target and role requirements per action"""
        with pytest.raises(InvalidCondition):
            validate_condition("always", "skip_to_step")
        with pytest.raises(InvalidCondition):
            validate_condition("always", "complete_workflow", target_step_id="s2")
        with pytest.raises(InvalidCondition):
            validate_condition("always", "require_additional_approval")

        _, action, _, _ = validate_condition("always", "require_additional_approval",
                                             required_role="safety_officer")
        assert action == ConditionAction.REQUIRE_ADDITIONAL_APPROVAL


class TestConditionEvaluation:

    def test_equals_and_not_equals(self):
        """Test equality operators"""
        equals = make_condition(operator="equals", value="high")
        not_equals = make_condition(operator="not_equals", value="high")

        assert condition_matches(equals, {"priority": "high"})
        assert not condition_matches(equals, {"priority": "low"})
        assert condition_matches(not_equals, {"priority": "low"})

    def test_numeric_comparisons(self):
        """Test ordered operators on numbers"""
        gt = make_condition(field_name="estimated_cost", operator="greater_than", value=5000)
        lte = make_condition(field_name="estimated_cost", operator="less_than_or_equal", value=5000)

        assert condition_matches(gt, {"estimated_cost": 7500.5})
        assert not condition_matches(gt, {"estimated_cost": 5000})
        assert condition_matches(lte, {"estimated_cost": 5000})

    def test_iso_date_comparison(self):
        """Test ordered operators on ISO date strings"""
        before = make_condition(field_name="due_date", operator="less_than", value="2024-06-01")
        assert condition_matches(before, {"due_date": "2024-05-15"})
        assert not condition_matches(before, {"due_date": "2024-07-01"})

    def test_mismatched_types_never_match(self):
        """Test that comparing a string field to a number is false, not an error"""
        gt = make_condition(field_name="estimated_cost", operator="greater_than", value=5000)
        assert not condition_matches(gt, {"estimated_cost": "lots"})

    def test_in_and_not_in(self):
        """Test list membership operators"""
        is_in = make_condition(operator="in", value=["high", "critical"])
        not_in = make_condition(operator="not_in", value=["high", "critical"])

        assert condition_matches(is_in, {"priority": "critical"})
        assert not condition_matches(is_in, {"priority": "low"})
        assert condition_matches(not_in, {"priority": "low"})

    def test_contains(self):
        """Test contains on strings and lists"""
        contains = make_condition(field_name="tags", operator="contains", value="hazmat")
        assert condition_matches(contains, {"tags": ["electrical", "hazmat"]})
        assert condition_matches(contains, {"tags": "hazmat spill"})
        assert not condition_matches(contains, {"tags": ["electrical"]})

    def test_is_set(self):
        """Test presence checks"""
        is_set = make_condition(field_name="asset_id", operator="is_set", value=None)
        assert condition_matches(is_set, {"asset_id": "A-1"})
        assert not condition_matches(is_set, {"asset_id": ""})
        assert not condition_matches(is_set, {"asset_id": None})
        assert not condition_matches(is_set, {})

    def test_missing_field_never_matches(self):
        """Test that absent fields match nothing, including negative operators"""
        not_equals = make_condition(operator="not_equals", value="high")
        not_in = make_condition(operator="not_in", value=["high"])
        assert not condition_matches(not_equals, {})
        assert not condition_matches(not_in, {"other": 1})

    def test_always_matches(self):
        """Test unconditional conditions"""
        always = make_condition(condition_type="always", operator=None, field_name=None, value=None)
        assert condition_matches(always, {})


class TestConditionSelection:

    def test_lower_priority_value_wins(self):
        """Test that priority 1 is chosen over priority 2 when both match"""
        second = make_condition(id="a", priority=2, action="complete_workflow")
        first = make_condition(id="b", priority=1, action="require_additional_approval",
                               required_role="manager")

        selected = select_condition([second, first], {"priority": "high"})
        assert selected.id == "b"

    def test_ties_broken_by_lowest_id(self):
        """Test deterministic order for equal priorities"""
        conditions = [make_condition(id="c9"), make_condition(id="c2"), make_condition(id="c5")]
        assert [c.id for c in order_conditions(conditions)] == ["c2", "c5", "c9"]
        assert select_condition(conditions, {"priority": "high"}).id == "c2"

    def test_first_matching_condition_is_used(self):
        """Test that non-matching higher-priority conditions are skipped"""
        low = make_condition(id="a", priority=0, value="low")
        high = make_condition(id="b", priority=5, value="high")
        assert select_condition([low, high], {"priority": "high"}).id == "b"

    def test_no_match(self):
        """Test that no match returns None"""
        assert select_condition([make_condition()], {"priority": "low"}) is None
        assert select_condition([], {"priority": "low"}) is None


class TestConditionSerialization:

    def test_condition_survives_storage_format(self):
        """Test that the tagged value is preserved in the stored dict"""
        condition = make_condition(operator="in", value=["high", "critical"], priority=3)
        restored = StepCondition.from_dict(condition.to_dict())

        assert restored.value == ListValue(("high", "critical"))
        assert restored.operator == ConditionOperator.IN
        assert restored.priority == 3
        assert condition_matches(restored, {"priority": "high"})

    def test_scalar_value_tag(self):
        """Test scalar values are tagged"""
        condition = make_condition(value=42, field_name="downtime_hours", operator="greater_than")
        assert condition.value == ScalarValue(42)
        assert condition.to_dict()['value'] == {'kind': 'scalar', 'value': 42}
