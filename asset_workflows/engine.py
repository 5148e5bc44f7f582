"""
Workflow Transition Engine

Moves an entity's workflow state between steps of its template:

- advance: checks the actor may approve the current step, collects
  approvals on multi-approver steps, evaluates step conditions in priority
  order and falls back to the next higher step_order (or completion)
- reject: jumps back to the step's reject target
- reassign: changes the assignee only

Every outcome is persisted as one compare-and-swap write on the state's
revision and is followed by a history row, an audit event, a log line and a
domain event.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any, Iterable
from enum import Enum

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventPublisherMixin
from .errors import (
    WorkflowError, Unauthorized, NoRejectTarget, NoDefaultTemplate, NoStepsInTemplate,
    TemplateStepMismatch, ConcurrentModification, WorkflowCompleted
)
from .conditions import ConditionAction, select_condition
from .templates import (
    TemplateManager, WorkflowModule, WorkflowTemplateStep, StepRoleAssignment, ApprovalType
)
from .state import (
    WorkflowStateStore, EntityWorkflowState, EntityType, WorkflowStatus, ApprovalAction, new_state
)
from .sla import compute_sla_due
from .executions import ExecutionLogger
from .logging_config import get_logger, log_action


AssigneeResolver = Callable[[str, Optional[str]], Optional[str]]


class TransitionAction(Enum):
    ADVANCE = "advance"
    REJECT = "reject"
    REASSIGN = "reassign"


def module_for(entity_type: str) -> WorkflowModule:
    if EntityType(entity_type) == EntityType.WORK_ORDER:
        return WorkflowModule.WORK_ORDERS
    return WorkflowModule.SAFETY_INCIDENTS


def _holds(role_name: str, actor_roles: Iterable[str]) -> bool:
    wanted = role_name.strip().lower()
    return any(r.strip().lower() == wanted for r in actor_roles)


def _capable(assignments: List[StepRoleAssignment], actor_roles: Iterable[str],
             capability: str) -> List[StepRoleAssignment]:
    """Role assignments held by the actor that grant ``capability``"""
    actor_roles = list(actor_roles)
    return [a for a in assignments
            if getattr(a, capability) and any(a.matches_role(r) for r in actor_roles)]


@dataclass
class _Outcome:
    """What an advance resolved to before it is written"""
    history_action: ApprovalAction
    target: Optional[WorkflowTemplateStep] = None
    complete: bool = False
    stay: bool = False
    condition_id: Optional[str] = None
    auto_approved_step: Optional[WorkflowTemplateStep] = None


@dataclass
class _Call:
    """Who is acting, and when, for one transition"""
    actor_id: Optional[str]
    comments: Optional[str]
    correlation_id: Optional[str]
    now: datetime


class WorkflowEngine(EventPublisherMixin):
    """Initializes and transitions entity workflow states"""

    def __init__(self, storage: StorageInterface, templates: TemplateManager,
                 states: Optional[WorkflowStateStore] = None,
                 audit_trail: Optional[AuditTrail] = None,
                 assignee_resolver: Optional[AssigneeResolver] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 executions: Optional[ExecutionLogger] = None):
        self.storage = storage
        self.templates = templates
        self.states = states or WorkflowStateStore(storage)
        self.audit = audit_trail or templates.audit
        self.assignee_resolver = assignee_resolver
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.executions = executions or ExecutionLogger(storage, clock=self.clock)
        self.logger = get_logger("assetflow.engine")

    # Assignment

    def resolve_assignee(self, step: WorkflowTemplateStep,
                         organization_id: Optional[str]) -> Optional[str]:
        """
        Pick the assignee for a step that was just entered.

        A fixed ``user_id`` in the auto-assign rule wins; otherwise the
        primary-assignee roles, then the backup roles, are offered to the
        assignee resolver. Steps without auto-assign get no assignee.
        """
        if not step.auto_assign_enabled:
            return None
        fixed = (step.auto_assign_rule or {}).get('user_id')
        if fixed:
            return fixed
        if self.assignee_resolver is None:
            return None

        assignments = self.templates.get_role_assignments(step.id)
        for flag in ('is_primary_assignee', 'is_backup_assignee'):
            for assignment in assignments:
                if getattr(assignment, flag):
                    user_id = self.assignee_resolver(assignment.role_name, organization_id)
                    if user_id:
                        return user_id
        return None

    # Initialization

    def initialize_workflow(self, entity_id: str, entity_type: str,
                            organization_id: Optional[str] = None,
                            actor_id: Optional[str] = None,
                            correlation_id: Optional[str] = None) -> EntityWorkflowState:
        """
        Start the default workflow for a newly created entity.

        Raises NoDefaultTemplate / NoStepsInTemplate when the module is not
        configured and DuplicateRecord when the entity already has a state.
        Success and failure are both written to the execution log.
        """
        with self.executions.track("initialize", performed_by=actor_id,
                                   correlation_id=correlation_id, entity_type=entity_type,
                                   entity_id=entity_id, organization_id=organization_id) as ctx:
            entity_type = EntityType(entity_type).value
            module = module_for(entity_type)
            template = self.templates.get_default_template(module, organization_id)
            if template is None:
                raise NoDefaultTemplate(
                    f"No default workflow template for {module.value}",
                    {'module': module.value, 'organization_id': organization_id}
                )
            first = self.templates.get_first_step(template.id)
            if first is None:
                raise NoStepsInTemplate(
                    f"Default template {template.id} has no steps",
                    {'template_id': template.id}
                )

            now = self.clock()
            state = new_state(entity_type, entity_id, template.id, first.id, organization_id, now,
                              sla_due_at=compute_sla_due(now, first.sla_hours),
                              assigned_to_user_id=self.resolve_assignee(first, organization_id))
            with self.storage.atomic():
                self.states.create_state(state)
                self.states.record_approval(state, ApprovalAction.INITIALIZED, first.id,
                                            actor_id=actor_id, now=now)
            ctx.workflow_state_id = state.id
            ctx.step_id = first.id
            ctx.metadata['template_id'] = template.id

        self.audit.log_event(AuditEventType.WORKFLOW_INITIALIZED, 'workflow_state', state.id,
                             {'entity_type': entity_type, 'entity_id': entity_id,
                              'template_id': template.id, 'step_id': first.id},
                             user_id=actor_id, organization_id=organization_id)
        log_action(self.logger, "info", f"Workflow initialized for {entity_type} {entity_id}",
                   user_id=actor_id, action="initialize", resource=entity_type, entity_id=entity_id,
                   correlation_id=correlation_id)
        self.publish_event(DomainEvent.WORKFLOW_INITIALIZED, entity_type, entity_id,
                           self._event_data(state, first), organization_id)
        return state

    def try_initialize_workflow(self, entity_id: str, entity_type: str,
                                organization_id: Optional[str] = None,
                                actor_id: Optional[str] = None,
                                correlation_id: Optional[str] = None) -> Optional[EntityWorkflowState]:
        """Best-effort initialization for entity-creation flows; never raises rule errors"""
        try:
            return self.initialize_workflow(entity_id, entity_type, organization_id, actor_id,
                                            correlation_id)
        except WorkflowError as e:
            log_action(self.logger, "warning",
                       f"Workflow not initialized for {entity_type} {entity_id}: {e.message}",
                       user_id=actor_id, action="initialize", resource=entity_type,
                       entity_id=entity_id, correlation_id=correlation_id, extra={'error': e.code})
            return None

    # Transitions

    def transition(self, state_id: str, actor_roles: Iterable[str], action: TransitionAction,
                   actor_id: Optional[str] = None, target_step_id: Optional[str] = None,
                   comments: Optional[str] = None, entity_fields: Optional[Dict[str, Any]] = None,
                   expected_revision: Optional[int] = None,
                   assignee_id: Optional[str] = None,
                   correlation_id: Optional[str] = None) -> EntityWorkflowState:
        """
        Apply ``action`` to a workflow state on behalf of an actor.

        Args:
            state_id: Workflow state to transition
            actor_roles: Roles held by the actor (matched case-insensitively)
            action: advance, reject or reassign
            actor_id: Acting user, recorded in history and audit
            target_step_id: Explicit destination for advance, bypassing conditions
            comments: Free text stored in the history row
            entity_fields: Current field values of the entity, for conditions
            expected_revision: Revision the caller read; defaults to the stored one
            assignee_id: New assignee for reassign
            correlation_id: Request id carried into log lines and the execution log

        Returns:
            The updated state

        Raises:
            Unauthorized, NoRejectTarget, TemplateStepMismatch, WorkflowCompleted,
            ConcurrentModification. The stored state is unchanged on any error.
        """
        action = TransitionAction(action)
        with self.executions.track(action.value, performed_by=actor_id,
                                   correlation_id=correlation_id,
                                   workflow_state_id=state_id) as ctx:
            actor_roles = list(actor_roles)
            state = self.states.require_state(state_id)
            ctx.entity_type = state.entity_type.value
            ctx.entity_id = state.entity_id
            ctx.organization_id = state.organization_id
            ctx.step_id = state.current_step_id

            if expected_revision is None:
                expected_revision = state.revision
            elif expected_revision != state.revision:
                raise ConcurrentModification(
                    f"Workflow state {state_id} is at revision {state.revision}, not {expected_revision}",
                    {'state_id': state_id, 'expected_revision': expected_revision,
                     'current_revision': state.revision}
                )
            if state.is_completed:
                raise WorkflowCompleted(f"Workflow state {state_id} is already completed",
                                        {'state_id': state_id})

            current = self._step_in_template(state.current_step_id, state.template_id)
            assignments = self.templates.get_role_assignments(current.id)
            call = _Call(actor_id, comments, correlation_id, self.clock())

            if action == TransitionAction.REJECT:
                state = self._reject(state, current, assignments, actor_roles, call,
                                     expected_revision)
            elif action == TransitionAction.REASSIGN:
                state = self._reassign(state, current, assignments, actor_roles, call,
                                       expected_revision, assignee_id)
            else:
                state = self._advance(state, current, assignments, actor_roles, call,
                                      expected_revision, target_step_id, entity_fields or {})
            ctx.metadata = {'to_step_id': state.current_step_id, 'status': state.status.value}
            return state

    def _step_in_template(self, step_id: Optional[str], template_id: str) -> WorkflowTemplateStep:
        step = self.templates.get_step(step_id) if step_id else None
        if step is None or step.template_id != template_id:
            raise TemplateStepMismatch(
                f"Step {step_id} does not belong to template {template_id}",
                {'step_id': step_id, 'template_id': template_id}
            )
        return step

    def _enter_step(self, state: EntityWorkflowState, step: WorkflowTemplateStep,
                    now: datetime) -> None:
        state.current_step_id = step.id
        state.step_started_at = now
        state.sla_due_at = compute_sla_due(now, step.sla_hours)
        state.assigned_to_user_id = self.resolve_assignee(step, state.organization_id)
        state.pending_approval_from_role = None
        state.step_approvals = []

    def _complete(self, state: EntityWorkflowState, now: datetime) -> None:
        # current_step_id stays on the last step that was active
        state.status = WorkflowStatus.COMPLETED
        state.completed_at = now
        state.sla_due_at = None
        state.assigned_to_user_id = None
        state.pending_approval_from_role = None
        state.step_approvals = []

    def _approvals_satisfied(self, state: EntityWorkflowState, step: WorkflowTemplateStep,
                             assignments: List[StepRoleAssignment], granting: List[StepRoleAssignment],
                             actor_id: Optional[str], now: datetime) -> bool:
        """Record the actor's approval; True once the step's approval rule is met"""
        if step.approval_type not in (ApprovalType.MULTIPLE, ApprovalType.UNANIMOUS):
            return True
        if not actor_id:
            raise Unauthorized("Approvals on multi-approver steps require an actor id")

        roles = sorted({a.role_name.lower() for a in granting})
        for approval in state.step_approvals:
            if approval['actor_id'] == actor_id:
                approval['roles'] = sorted(set(approval['roles']) | set(roles))
                break
        else:
            state.step_approvals.append({'actor_id': actor_id, 'roles': roles,
                                         'approved_at': now.isoformat()})

        if step.approval_type == ApprovalType.MULTIPLE:
            return len(state.step_approvals) >= step.required_approvals

        needed = {a.role_name.lower() for a in assignments if a.can_approve}
        approved = {role for approval in state.step_approvals for role in approval['roles']}
        return needed <= approved

    def _resolve_advance(self, state: EntityWorkflowState, current: WorkflowTemplateStep,
                         target_step_id: Optional[str], entity_fields: Dict[str, Any],
                         additional_approval_given: bool) -> _Outcome:
        if target_step_id:
            return _Outcome(ApprovalAction.APPROVED,
                            target=self._step_in_template(target_step_id, state.template_id))

        if not additional_approval_given:
            condition = select_condition(self.templates.get_conditions(current.id), entity_fields)
            if condition is not None:
                if condition.action == ConditionAction.SKIP_TO_STEP:
                    return _Outcome(ApprovalAction.APPROVED, condition_id=condition.id,
                                    target=self._step_in_template(condition.target_step_id,
                                                                  state.template_id))
                if condition.action == ConditionAction.COMPLETE_WORKFLOW:
                    return _Outcome(ApprovalAction.APPROVED, complete=True, condition_id=condition.id)
                if condition.action == ConditionAction.REQUIRE_ADDITIONAL_APPROVAL:
                    state.pending_approval_from_role = condition.required_role
                    return _Outcome(ApprovalAction.APPROVED, stay=True, condition_id=condition.id)
                if condition.action == ConditionAction.AUTO_APPROVE:
                    skipped = self.templates.get_next_step(state.template_id, current.step_order)
                    if skipped is None:
                        return _Outcome(ApprovalAction.APPROVED, complete=True,
                                        condition_id=condition.id)
                    after = self.templates.get_next_step(state.template_id, skipped.step_order)
                    return _Outcome(ApprovalAction.APPROVED, target=after, complete=after is None,
                                    condition_id=condition.id, auto_approved_step=skipped)

        following = self.templates.get_next_step(state.template_id, current.step_order)
        return _Outcome(ApprovalAction.APPROVED, target=following, complete=following is None)

    def _advance(self, state: EntityWorkflowState, current: WorkflowTemplateStep,
                 assignments: List[StepRoleAssignment], actor_roles: List[str], call: _Call,
                 expected_revision: int, target_step_id: Optional[str],
                 entity_fields: Dict[str, Any]) -> EntityWorkflowState:
        now = call.now
        from_step_id = current.id
        additional_approval_given = False

        if state.pending_approval_from_role:
            if not _holds(state.pending_approval_from_role, actor_roles):
                raise Unauthorized(
                    f"Step '{current.name}' is waiting for approval from role "
                    f"'{state.pending_approval_from_role}'",
                    {'step_id': current.id, 'required_role': state.pending_approval_from_role}
                )
            additional_approval_given = True
        else:
            granting = _capable(assignments, actor_roles, 'can_approve')
            # Steps without an approval requirement advance for any actor
            if not granting and current.approval_type != ApprovalType.NONE:
                raise Unauthorized(
                    f"Roles {actor_roles} cannot approve step '{current.name}'",
                    {'step_id': current.id, 'capability': 'can_approve'}
                )
            if not self._approvals_satisfied(state, current, assignments, granting,
                                             call.actor_id, now):
                self.states.save_state(state, expected_revision, now=now)
                self._after_write(state, ApprovalAction.APPROVED, current.id, from_step_id, call,
                                  AuditEventType.WORKFLOW_APPROVAL_RECORDED,
                                  DomainEvent.APPROVAL_RECORDED, current,
                                  {'approvals': len(state.step_approvals), 'awaiting_more': True})
                return state

        outcome = self._resolve_advance(state, current, target_step_id, entity_fields,
                                        additional_approval_given)

        if outcome.stay:
            state.step_approvals = []
        elif outcome.complete:
            self._complete(state, now)
        else:
            self._enter_step(state, outcome.target, now)

        self.states.save_state(state, expected_revision, now=now)

        extra = {'condition_id': outcome.condition_id} if outcome.condition_id else {}
        if outcome.auto_approved_step is not None:
            self.states.record_approval(state, ApprovalAction.AUTO_APPROVED,
                                        outcome.auto_approved_step.id, from_step_id=from_step_id,
                                        actor_id=call.actor_id, now=now)
            extra['auto_approved_step_id'] = outcome.auto_approved_step.id
        if outcome.stay:
            extra['pending_approval_from_role'] = state.pending_approval_from_role

        if outcome.complete:
            self._after_write(state, ApprovalAction.APPROVED, current.id, from_step_id, call,
                              AuditEventType.WORKFLOW_TRANSITIONED,
                              DomainEvent.STEP_TRANSITIONED, current, extra)
            self.states.record_approval(state, ApprovalAction.COMPLETED, current.id,
                                        from_step_id=from_step_id, actor_id=call.actor_id, now=now)
            self.audit.log_event(AuditEventType.WORKFLOW_COMPLETED, 'workflow_state', state.id,
                                 {'entity_type': state.entity_type.value,
                                  'entity_id': state.entity_id},
                                 user_id=call.actor_id, organization_id=state.organization_id)
            log_action(self.logger, "info",
                       f"Workflow completed for {state.entity_type.value} {state.entity_id}",
                       user_id=call.actor_id, action="complete", resource=state.entity_type.value,
                       entity_id=state.entity_id, correlation_id=call.correlation_id)
            self.publish_event(DomainEvent.WORKFLOW_COMPLETED, state.entity_type.value,
                               state.entity_id, self._event_data(state, current),
                               state.organization_id)
            return state

        if outcome.stay:
            # The step is unchanged; only the required approver moved
            self._after_write(state, outcome.history_action, current.id, from_step_id, call,
                              AuditEventType.WORKFLOW_APPROVAL_RECORDED,
                              DomainEvent.APPROVAL_RECORDED, current, extra)
            return state

        self._after_write(state, outcome.history_action, outcome.target.id, from_step_id, call,
                          AuditEventType.WORKFLOW_TRANSITIONED,
                          DomainEvent.STEP_TRANSITIONED, outcome.target, extra)
        return state

    def _reject(self, state: EntityWorkflowState, current: WorkflowTemplateStep,
                assignments: List[StepRoleAssignment], actor_roles: List[str], call: _Call,
                expected_revision: int) -> EntityWorkflowState:
        if not _capable(assignments, actor_roles, 'can_reject'):
            raise Unauthorized(
                f"Roles {actor_roles} cannot reject step '{current.name}'",
                {'step_id': current.id, 'capability': 'can_reject'}
            )
        if not current.reject_target_step_id:
            raise NoRejectTarget(f"Step '{current.name}' has no reject target",
                                 {'step_id': current.id})

        target = self._step_in_template(current.reject_target_step_id, state.template_id)
        self._enter_step(state, target, call.now)
        self.states.save_state(state, expected_revision, now=call.now)

        self._after_write(state, ApprovalAction.REJECTED, target.id, current.id, call,
                          AuditEventType.WORKFLOW_REJECTED, DomainEvent.STEP_REJECTED, target, {})
        return state

    def _reassign(self, state: EntityWorkflowState, current: WorkflowTemplateStep,
                  assignments: List[StepRoleAssignment], actor_roles: List[str], call: _Call,
                  expected_revision: int, assignee_id: Optional[str]) -> EntityWorkflowState:
        if not _capable(assignments, actor_roles, 'can_assign'):
            raise Unauthorized(
                f"Roles {actor_roles} cannot reassign step '{current.name}'",
                {'step_id': current.id, 'capability': 'can_assign'}
            )

        previous = state.assigned_to_user_id
        # Reassignment leaves the step, its start time and its SLA alone
        state.assigned_to_user_id = assignee_id
        self.states.save_state(state, expected_revision, now=call.now)

        self._after_write(state, ApprovalAction.REASSIGNED, current.id, current.id, call,
                          AuditEventType.WORKFLOW_REASSIGNED, DomainEvent.STEP_REASSIGNED, current,
                          {'previous_assignee': previous, 'assignee_id': assignee_id})
        return state

    def _event_data(self, state: EntityWorkflowState, step: WorkflowTemplateStep) -> Dict[str, Any]:
        return {
            'state_id': state.id,
            'template_id': state.template_id,
            'step_id': step.id,
            'step_name': step.name,
            'status': state.status.value,
            'assigned_to_user_id': state.assigned_to_user_id,
            'sla_due_at': state.sla_due_at.isoformat() if state.sla_due_at else None,
            'work_order_status': step.work_order_status,
            'incident_status': step.incident_status,
            'revision': state.revision
        }

    def _after_write(self, state: EntityWorkflowState, history_action: ApprovalAction,
                     step_id: str, from_step_id: str, call: _Call, audit_type: AuditEventType,
                     event_type: DomainEvent, step: WorkflowTemplateStep,
                     extra: Dict[str, Any]) -> None:
        self.states.record_approval(state, history_action, step_id, from_step_id=from_step_id,
                                    actor_id=call.actor_id, comments=call.comments, now=call.now)
        self.audit.log_event(audit_type, 'workflow_state', state.id,
                             dict({'from_step_id': from_step_id, 'to_step_id': step_id,
                                   'revision': state.revision}, **extra),
                             user_id=call.actor_id, organization_id=state.organization_id)
        log_action(self.logger, "info",
                   f"{state.entity_type.value} {state.entity_id}: {history_action.value} "
                   f"from step {from_step_id} to {step_id}",
                   user_id=call.actor_id, action=history_action.value,
                   resource=state.entity_type.value, entity_id=state.entity_id,
                   correlation_id=call.correlation_id, extra=extra or None)
        self.publish_event(event_type, state.entity_type.value, state.entity_id,
                           dict(self._event_data(state, step), **extra), state.organization_id)

    # Queries and cleanup

    def get_state_for_entity(self, entity_type: str, entity_id: str) -> Optional[EntityWorkflowState]:
        return self.states.get_state_for_entity(entity_type, entity_id)

    def get_history(self, state_id: str):
        self.states.require_state(state_id)
        return self.states.get_history(state_id)

    def delete_workflow_for_entity(self, entity_type: str, entity_id: str,
                                   actor_id: Optional[str] = None) -> bool:
        """Drop the workflow of an entity that no longer exists"""
        state = self.states.get_state_for_entity(entity_type, entity_id)
        if state is None:
            return False
        deleted = self.states.delete_for_entity(entity_type, entity_id)
        self.audit.log_event(AuditEventType.WORKFLOW_STATE_DELETED, 'workflow_state', state.id,
                             {'entity_type': state.entity_type.value, 'entity_id': entity_id},
                             user_id=actor_id, organization_id=state.organization_id)
        log_action(self.logger, "info", f"Workflow removed for {entity_type} {entity_id}",
                   user_id=actor_id, action="delete", resource=entity_type, entity_id=entity_id)
        return deleted
