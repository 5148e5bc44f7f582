"""
Tests for publish-time template graph validation
"""

import pytest

from asset_workflows.storage import InMemoryStorage
from asset_workflows.templates import TemplateManager, WorkflowModule, ApprovalType
from asset_workflows.validation import validate_template


@pytest.fixture
def manager():
    return TemplateManager(InMemoryStorage())


@pytest.fixture
def template(manager):
    return manager.create_template(WorkflowModule.SAFETY_INCIDENTS, "Incident Review")


def report_for(manager, template):
    steps = manager.get_steps(template.id)
    return validate_template(template, steps, manager.get_template_conditions(template.id),
                             {s.id: manager.get_role_assignments(s.id) for s in steps})


class TestTemplateValidation:

    def test_linear_template_is_valid(self, manager, template):
        """Test a plain three-step template"""
        for order, name in enumerate(["Report", "Investigate", "Close"], start=1):
            step = manager.add_step(template.id, name, order)
            manager.assign_role(step.id, "safety_officer", can_approve=True)

        report = report_for(manager, template)
        assert report.valid
        assert report.warnings == []
        assert report.unreachable_steps == []

    def test_empty_template(self, manager, template):
        report = report_for(manager, template)
        assert not report.valid
        assert report.errors == ["Template has no steps"]

    def test_unreachable_step_after_always_skip(self, manager, template):
        """Test that a step shadowed by an unconditional skip is unreachable"""
        first = manager.add_step(template.id, "Report", 1)
        hidden = manager.add_step(template.id, "Investigate", 2)
        last = manager.add_step(template.id, "Close", 3)
        manager.add_condition(first.id, "always", "skip_to_step", target_step_id=last.id)

        report = report_for(manager, template)
        assert not report.valid
        assert report.unreachable_steps == [hidden.id]

    def test_conditional_skip_keeps_default_path(self, manager, template):
        """Test that a field condition leaves the default edge reachable"""
        first = manager.add_step(template.id, "Report", 1)
        manager.add_step(template.id, "Investigate", 2)
        last = manager.add_step(template.id, "Close", 3)
        manager.add_condition(first.id, "field_value", "skip_to_step", operator="equals",
                              field_name="severity", value="low", target_step_id=last.id)

        assert report_for(manager, template).unreachable_steps == []

    def test_forward_loop_detected(self, manager, template):
        """Test that a skip back to an earlier step is reported as a loop"""
        first = manager.add_step(template.id, "Report", 1)
        second = manager.add_step(template.id, "Investigate", 2)
        manager.add_step(template.id, "Close", 3)
        manager.add_condition(second.id, "field_value", "skip_to_step", operator="equals",
                              field_name="severity", value="critical", target_step_id=first.id)

        report = report_for(manager, template)
        assert not report.valid
        assert report.cycles
        assert any("loop" in e for e in report.errors)

    def test_reject_targets_may_loop(self, manager, template):
        """Test that reject edges back to earlier steps are allowed"""
        first = manager.add_step(template.id, "Report", 1)
        manager.add_step(template.id, "Investigate", 2, reject_target_step_id=first.id)

        report = report_for(manager, template)
        assert report.cycles == []

    def test_missing_approver_is_a_warning(self, manager, template):
        """Test that steps without approvers warn but do not block"""
        manager.add_step(template.id, "Report", 1)
        manager.add_step(template.id, "Acknowledge", 2, approval_type=ApprovalType.NONE)

        report = report_for(manager, template)
        assert report.valid
        assert len(report.warnings) == 1
        assert "Report" in report.warnings[0]

    def test_report_to_dict(self, manager, template):
        data = report_for(manager, template).to_dict()
        assert data['template_id'] == template.id
        assert data['valid'] is False
