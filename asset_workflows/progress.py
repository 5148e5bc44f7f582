"""
Workflow Progress Presenter

Read-only projection of a workflow state onto its template's ordered steps:
which steps are completed, which is current and which are still pending,
together with the SLA status of the current step.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any

from .sla import SLAReport, calculate_sla_status, DEFAULT_AT_RISK_HOURS
from .state import EntityWorkflowState, WorkflowStateStore
from .templates import TemplateManager, WorkflowTemplateStep


class StepProgressStatus(Enum):
    COMPLETED = "completed"
    CURRENT = "current"
    PENDING = "pending"


@dataclass
class StepProgress:
    step: WorkflowTemplateStep
    status: StepProgressStatus


@dataclass
class WorkflowProgress:
    state_id: str
    steps: List[StepProgress] = field(default_factory=list)
    current_index: Optional[int] = None
    current_step: Optional[WorkflowTemplateStep] = None
    found: bool = True
    is_complete: bool = False
    sla: Optional[SLAReport] = None
    reason: Optional[str] = None

    @property
    def percent_complete(self) -> float:
        if not self.steps:
            return 0.0
        done = sum(1 for s in self.steps if s.status == StepProgressStatus.COMPLETED)
        return round(100.0 * done / len(self.steps), 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state_id': self.state_id,
            'found': self.found,
            'reason': self.reason,
            'is_complete': self.is_complete,
            'current_index': self.current_index,
            'current_step_id': self.current_step.id if self.current_step else None,
            'percent_complete': self.percent_complete,
            'steps': [
                {'step_id': p.step.id, 'name': p.step.name, 'step_order': p.step.step_order,
                 'status': p.status.value}
                for p in self.steps
            ],
            'sla': {
                'status': self.sla.status.value,
                'label': self.sla.label
            } if self.sla else None
        }


def compute_progress(steps: List[WorkflowTemplateStep], state: EntityWorkflowState,
                     now: Optional[datetime] = None,
                     at_risk_hours: float = DEFAULT_AT_RISK_HOURS) -> WorkflowProgress:
    """
    Classify each step as completed, current or pending by its position
    relative to the state's current step.

    A current step that is not among ``steps`` yields ``found=False`` with an
    explanation and no step statuses, rather than showing everything as
    pending.
    """
    ordered = sorted(steps, key=lambda s: s.step_order)
    index = next((i for i, s in enumerate(ordered) if s.id == state.current_step_id), None)

    if index is None:
        return WorkflowProgress(
            state_id=state.id,
            found=False,
            is_complete=state.is_completed,
            reason=(f"Current step {state.current_step_id} is not a step of "
                    f"template {state.template_id}")
        )

    if state.is_completed:
        statuses = [StepProgress(s, StepProgressStatus.COMPLETED) for s in ordered]
    else:
        statuses = []
        for i, step in enumerate(ordered):
            if i < index:
                status = StepProgressStatus.COMPLETED
            elif i == index:
                status = StepProgressStatus.CURRENT
            else:
                status = StepProgressStatus.PENDING
            statuses.append(StepProgress(step, status))

    return WorkflowProgress(
        state_id=state.id,
        steps=statuses,
        current_index=index,
        current_step=ordered[index],
        found=True,
        is_complete=state.is_completed,
        sla=calculate_sla_status(state.sla_due_at, now, at_risk_hours)
    )


class ProgressPresenter:
    """Loads a workflow state with its template steps and projects progress"""

    def __init__(self, templates: TemplateManager, states: WorkflowStateStore,
                 at_risk_hours: float = DEFAULT_AT_RISK_HOURS):
        self.templates = templates
        self.states = states
        self.at_risk_hours = at_risk_hours

    def get_progress(self, state_id: str, now: Optional[datetime] = None) -> WorkflowProgress:
        state = self.states.require_state(state_id)
        return compute_progress(self.templates.get_steps(state.template_id), state, now,
                                self.at_risk_hours)

    def get_progress_for_entity(self, entity_type: str, entity_id: str,
                                now: Optional[datetime] = None) -> Optional[WorkflowProgress]:
        state = self.states.get_state_for_entity(entity_type, entity_id)
        if state is None:
            return None
        return compute_progress(self.templates.get_steps(state.template_id), state, now,
                                self.at_risk_hours)
