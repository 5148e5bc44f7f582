"""
Tests for the workflow progress projection
"""

import pytest
from datetime import datetime, timedelta, timezone

from asset_workflows.storage import InMemoryStorage
from asset_workflows.errors import NotFound
from asset_workflows.templates import TemplateManager, WorkflowModule
from asset_workflows.state import WorkflowStateStore, WorkflowStatus, new_state
from asset_workflows.sla import SLAStatus
from asset_workflows.progress import ProgressPresenter, StepProgressStatus, compute_progress


NOW = datetime(2024, 7, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def templates(storage):
    return TemplateManager(storage)


@pytest.fixture
def states(storage):
    return WorkflowStateStore(storage)


@pytest.fixture
def steps(templates):
    template = templates.create_template(WorkflowModule.SAFETY_INCIDENTS, "Incident")
    return [templates.add_step(template.id, name, order)
            for order, name in ((1, "Report"), (2, "Investigate"), (3, "Corrective Action"),
                                (4, "Close"))]


class TestComputeProgress:

    def test_statuses_around_current_step(self, steps):
        """Test completed / current / pending classification"""
        state = new_state("incident", "inc-1", steps[0].template_id, steps[2].id, None, NOW,
                          sla_due_at=NOW + timedelta(hours=2))

        progress = compute_progress(steps, state, now=NOW)

        assert progress.found
        assert progress.current_index == 2
        assert [p.status for p in progress.steps] == [
            StepProgressStatus.COMPLETED, StepProgressStatus.COMPLETED,
            StepProgressStatus.CURRENT, StepProgressStatus.PENDING
        ]
        assert progress.percent_complete == 50.0
        assert progress.sla.status == SLAStatus.AT_RISK
        assert progress.sla.label == "2h remaining"

    def test_steps_are_ordered(self, steps):
        state = new_state("incident", "inc-1", steps[0].template_id, steps[0].id, None, NOW)
        progress = compute_progress(list(reversed(steps)), state, now=NOW)
        assert [p.step.name for p in progress.steps][0] == "Report"
        assert progress.sla.label == "No SLA"

    def test_completed_workflow(self, steps):
        """Test that every step shows completed once the workflow is done"""
        state = new_state("incident", "inc-1", steps[0].template_id, steps[3].id, None, NOW)
        state.status = WorkflowStatus.COMPLETED

        progress = compute_progress(steps, state, now=NOW)
        assert progress.is_complete
        assert all(p.status == StepProgressStatus.COMPLETED for p in progress.steps)
        assert progress.percent_complete == 100.0

    def test_current_step_not_in_template(self, steps):
        """Test that a mismatched current step is reported, not shown as all pending"""
        state = new_state("incident", "inc-1", steps[0].template_id, "deleted-step", None, NOW)

        progress = compute_progress(steps, state, now=NOW)

        assert not progress.found
        assert progress.steps == []
        assert progress.current_index is None
        assert "deleted-step" in progress.reason
        assert progress.to_dict()['found'] is False


class TestProgressPresenter:

    def test_progress_for_entity(self, templates, states, steps):
        presenter = ProgressPresenter(templates, states)
        states.create_state(new_state("incident", "inc-1", steps[0].template_id, steps[1].id,
                                      None, NOW, sla_due_at=NOW - timedelta(hours=3)))

        progress = presenter.get_progress_for_entity("incident", "inc-1", now=NOW)
        assert progress.current_step.id == steps[1].id
        assert progress.sla.label == "Overdue by 3h"
        assert progress.to_dict()['steps'][1]['status'] == "current"

    def test_missing_state(self, templates, states):
        presenter = ProgressPresenter(templates, states)
        assert presenter.get_progress_for_entity("incident", "nope") is None
        with pytest.raises(NotFound):
            presenter.get_progress("nope")
