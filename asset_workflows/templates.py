"""
Workflow Template Module

Template store and step definition store: reusable multi-step workflow
definitions per module (work orders, safety incidents), their ordered steps,
per-step role capabilities and conditional branching rules.

Only one template per (module, organization) may be the default; swapping the
default happens inside a single storage transaction so readers never observe
a module with zero or two defaults.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventPublisherMixin
from .errors import NotFound, InvalidTemplate, InvalidCondition
from .conditions import StepCondition, ConditionAction, validate_condition, order_conditions
from .logging_config import get_logger, log_action
from .validation import ValidationReport, validate_template
from .state import STATES_TABLE


TEMPLATES_TABLE = "workflow_templates"
STEPS_TABLE = "workflow_template_steps"
ROLES_TABLE = "step_role_assignments"
CONDITIONS_TABLE = "step_conditions"

ROLE_NAMESPACE = uuid.UUID("6f1c2a8e-3d4b-4c5e-9a7f-0b1d2e3f4a5b")


class WorkflowModule(Enum):
    """Business modules that can run workflows"""
    WORK_ORDERS = "work_orders"
    SAFETY_INCIDENTS = "safety_incidents"

    @property
    def entity_type(self) -> str:
        return "work_order" if self is WorkflowModule.WORK_ORDERS else "incident"


class StepType(Enum):
    """Types of workflow steps"""
    STANDARD = "standard"
    APPROVAL = "approval"
    ASSIGNMENT = "assignment"
    REVIEW = "review"


class ApprovalType(Enum):
    """How many approvals a step needs before it advances"""
    NONE = "none"
    SINGLE = "single"
    MULTIPLE = "multiple"
    UNANIMOUS = "unanimous"


@dataclass
class WorkflowTemplate(StorageRecord):
    """Workflow definition for one module"""
    name: str
    module: WorkflowModule
    organization_id: Optional[str] = None
    description: str = ""
    is_default: bool = False
    is_active: bool = True
    is_published: bool = False
    version: int = 1
    created_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        data['module'] = WorkflowModule(data['module'])
        return super().from_dict(data)


@dataclass
class WorkflowTemplateStep(StorageRecord):
    """Definition of a single step within a template"""
    template_id: str
    name: str
    step_order: int
    organization_id: Optional[str] = None
    description: str = ""
    step_type: StepType = StepType.STANDARD
    sla_hours: Optional[float] = None
    approval_type: ApprovalType = ApprovalType.SINGLE
    required_approvals: int = 1
    is_required: bool = True
    auto_assign_enabled: bool = False
    auto_assign_rule: Dict[str, Any] = field(default_factory=dict)
    reject_target_step_id: Optional[str] = None
    work_order_status: Optional[str] = None
    incident_status: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplateStep':
        data['step_type'] = StepType(data['step_type'])
        data['approval_type'] = ApprovalType(data['approval_type'])
        return super().from_dict(data)


@dataclass
class StepRoleAssignment(StorageRecord):
    """Capabilities a role holds on one step"""
    step_id: str
    role_name: str
    can_approve: bool = False
    can_reject: bool = False
    can_assign: bool = False
    can_view: bool = True
    can_edit: bool = False
    is_primary_assignee: bool = False
    is_backup_assignee: bool = False
    organization_id: Optional[str] = None

    def matches_role(self, role: str) -> bool:
        return self.role_name.strip().lower() == role.strip().lower()


def _validate_order(step_order: Any) -> int:
    if isinstance(step_order, bool) or not isinstance(step_order, int) or step_order <= 0:
        raise InvalidTemplate(f"step_order must be a positive integer, got {step_order!r}")
    return step_order


def _validate_sla(sla_hours: Optional[float]) -> Optional[float]:
    if sla_hours is not None and sla_hours <= 0:
        raise InvalidTemplate(f"sla_hours must be positive, got {sla_hours!r}")
    return sla_hours


_STEP_FIELDS = {
    'name', 'description', 'step_order', 'step_type', 'sla_hours', 'approval_type',
    'required_approvals', 'is_required', 'auto_assign_enabled', 'auto_assign_rule',
    'reject_target_step_id', 'work_order_status', 'incident_status'
}

# Fields that may not be cleared with an explicit None
_REQUIRED_STEP_FIELDS = {
    'name', 'description', 'step_order', 'step_type', 'approval_type',
    'required_approvals', 'is_required', 'auto_assign_enabled'
}


def _parse_step_type(value: Any) -> StepType:
    try:
        return StepType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in StepType)
        raise InvalidTemplate(f"Unknown step type: {value!r} (expected one of: {allowed})",
                              {'step_type': value})


def _parse_approval_type(value: Any) -> ApprovalType:
    try:
        return ApprovalType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in ApprovalType)
        raise InvalidTemplate(f"Unknown approval type: {value!r} (expected one of: {allowed})",
                              {'approval_type': value})


class TemplateManager(EventPublisherMixin):
    """Manages workflow templates and their step definitions"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 default_template_repair: bool = True):
        self.storage = storage
        self.audit = audit_trail or AuditTrail(storage)
        self.default_template_repair = default_template_repair
        self.logger = get_logger("assetflow.templates")

    def _record(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                metadata: Dict[str, Any], user_id: Optional[str],
                organization_id: Optional[str], message: str) -> None:
        self.audit.log_event(event_type, entity_type, entity_id, metadata,
                             user_id=user_id, organization_id=organization_id)
        log_action(self.logger, "info", message, user_id=user_id,
                   action=event_type.value, resource=entity_type, entity_id=entity_id)

    # Template management

    def create_template(self, module: WorkflowModule, name: str,
                        organization_id: Optional[str] = None, description: str = "",
                        is_default: bool = False, is_active: bool = True,
                        created_by: Optional[str] = None) -> WorkflowTemplate:
        """Create a template; making it the default unsets the previous default"""
        module = WorkflowModule(module)
        if not name or not name.strip():
            raise InvalidTemplate("Template name is required")
        if is_default and not is_active:
            raise InvalidTemplate("An inactive template cannot be the default")

        now = datetime.now(timezone.utc)
        template = WorkflowTemplate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            module=module,
            organization_id=organization_id,
            description=description,
            is_default=is_default,
            is_active=is_active,
            created_by=created_by
        )

        with self.storage.atomic():
            if is_default:
                self._unset_defaults(module, organization_id)
            self.storage.insert(TEMPLATES_TABLE, template.id, template.to_dict())

        self._record(AuditEventType.TEMPLATE_CREATED, 'template', template.id,
                     {'name': template.name, 'module': module.value, 'is_default': is_default},
                     created_by, organization_id, f"Workflow template '{template.name}' created")
        self.publish_event(DomainEvent.TEMPLATE_CREATED, 'template', template.id,
                           {'name': template.name, 'module': module.value}, organization_id)
        return template

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        data = self.storage.load(TEMPLATES_TABLE, template_id)
        if not data:
            return None
        return WorkflowTemplate.from_dict(data)

    def require_template(self, template_id: str) -> WorkflowTemplate:
        template = self.get_template(template_id)
        if template is None:
            raise NotFound(f"Workflow template {template_id} not found", {'template_id': template_id})
        return template

    def list_templates(self, module: Optional[WorkflowModule] = None,
                       organization_id: Optional[str] = None,
                       include_inactive: bool = True) -> List[WorkflowTemplate]:
        """List templates, optionally filtered by module and organization"""
        filters: Dict[str, Any] = {}
        if module is not None:
            filters['module'] = WorkflowModule(module).value
        if organization_id is not None:
            filters['organization_id'] = organization_id
        if not include_inactive:
            filters['is_active'] = True

        templates = [WorkflowTemplate.from_dict(d) for d in self.storage.find(TEMPLATES_TABLE, filters)]
        return sorted(templates, key=lambda t: (t.name, t.id))

    def update_template(self, template_id: str, name: Optional[str] = None,
                        description: Optional[str] = None, is_active: Optional[bool] = None,
                        updated_by: Optional[str] = None) -> WorkflowTemplate:
        """Update template attributes; each update bumps the version"""
        template = self.require_template(template_id)
        changes: Dict[str, Any] = {}

        if name is not None:
            if not name.strip():
                raise InvalidTemplate("Template name is required")
            template.name = name.strip()
            changes['name'] = template.name
        if description is not None:
            template.description = description
            changes['description'] = description
        if is_active is not None:
            template.is_active = is_active
            changes['is_active'] = is_active
            if not is_active and template.is_default:
                # A deactivated template cannot stay the default
                template.is_default = False
                changes['is_default'] = False

        template.version += 1
        template.updated_at = datetime.now(timezone.utc)
        self.storage.save(TEMPLATES_TABLE, template.id, template.to_dict())

        self._record(AuditEventType.TEMPLATE_UPDATED, 'template', template.id,
                     {'changes': changes, 'version': template.version},
                     updated_by, template.organization_id,
                     f"Workflow template '{template.name}' updated to version {template.version}")
        self.publish_event(DomainEvent.TEMPLATE_UPDATED, 'template', template.id,
                           {'changes': changes, 'version': template.version}, template.organization_id)
        return template

    def delete_template(self, template_id: str, cascade: bool = False,
                        deleted_by: Optional[str] = None) -> None:
        """
        Delete a template.

        Blocked while any entity workflow state references the template. A
        template that still has steps is only deleted with ``cascade=True``,
        which also removes its steps, role assignments and conditions.
        """
        template = self.require_template(template_id)

        in_use = self.storage.find(STATES_TABLE, {'template_id': template_id})
        if in_use:
            raise InvalidTemplate(
                f"Template {template_id} is used by {len(in_use)} workflow state(s)",
                {'template_id': template_id, 'state_count': len(in_use)}
            )

        steps = self.get_steps(template_id)
        if steps and not cascade:
            raise InvalidTemplate(
                f"Template {template_id} still has {len(steps)} step(s); delete them or use cascade",
                {'template_id': template_id, 'step_count': len(steps)}
            )

        with self.storage.atomic():
            for step in steps:
                self._delete_step_children(step.id)
                self.storage.delete(STEPS_TABLE, step.id)
            self.storage.delete(TEMPLATES_TABLE, template_id)

        self._record(AuditEventType.TEMPLATE_DELETED, 'template', template_id,
                     {'name': template.name, 'steps_removed': len(steps)},
                     deleted_by, template.organization_id,
                     f"Workflow template '{template.name}' deleted")
        self.publish_event(DomainEvent.TEMPLATE_DELETED, 'template', template_id,
                           {'name': template.name}, template.organization_id)

    # Default template

    def _unset_defaults(self, module: WorkflowModule, organization_id: Optional[str],
                        keep_id: Optional[str] = None) -> List[str]:
        unset = []
        current = self.storage.find(TEMPLATES_TABLE, {
            'module': module.value,
            'organization_id': organization_id,
            'is_default': True
        })
        for data in current:
            if data['id'] == keep_id:
                continue
            data['is_default'] = False
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(TEMPLATES_TABLE, data['id'], data)
            unset.append(data['id'])
        return unset

    def _make_default(self, template: WorkflowTemplate) -> List[str]:
        with self.storage.atomic():
            previous = self._unset_defaults(template.module, template.organization_id,
                                            keep_id=template.id)
            template.is_default = True
            template.updated_at = datetime.now(timezone.utc)
            self.storage.save(TEMPLATES_TABLE, template.id, template.to_dict())
        return previous

    def set_default_template(self, template_id: str, module: WorkflowModule,
                             changed_by: Optional[str] = None) -> WorkflowTemplate:
        """Atomically make ``template_id`` the single default for its module"""
        module = WorkflowModule(module)
        template = self.require_template(template_id)
        if template.module != module:
            raise InvalidTemplate(
                f"Template {template_id} belongs to {template.module.value}, not {module.value}"
            )
        if not template.is_active:
            raise InvalidTemplate(f"Template {template_id} is inactive and cannot be the default")

        previous = self._make_default(template)

        self._record(AuditEventType.DEFAULT_TEMPLATE_CHANGED, 'template', template.id,
                     {'module': module.value, 'previous_defaults': previous},
                     changed_by, template.organization_id,
                     f"Template '{template.name}' set as default for {module.value}")
        self.publish_event(DomainEvent.TEMPLATE_UPDATED, 'template', template.id,
                           {'is_default': True, 'module': module.value}, template.organization_id)
        return template

    def get_default_template(self, module: WorkflowModule,
                             organization_id: Optional[str] = None) -> Optional[WorkflowTemplate]:
        """
        Return the default, active template for a module.

        If the module has active templates but none is the default (left over
        from an interrupted swap or a deactivated default), the most recently
        updated active template is promoted and the repair is audited.
        """
        module = WorkflowModule(module)
        active = [t for t in self.list_templates(module, include_inactive=False)
                  if t.organization_id == organization_id]
        defaults = [t for t in active if t.is_default]
        if defaults:
            return max(defaults, key=lambda t: t.updated_at)
        if not active or not self.default_template_repair:
            return None

        promoted = max(active, key=lambda t: (t.updated_at, t.id))
        self._make_default(promoted)
        self.audit.log_event(AuditEventType.DEFAULT_TEMPLATE_REPAIRED, 'template', promoted.id,
                             {'module': module.value}, organization_id=organization_id)
        log_action(self.logger, "warning",
                   f"No default template for {module.value}; promoted '{promoted.name}'",
                   action=AuditEventType.DEFAULT_TEMPLATE_REPAIRED.value,
                   resource='template', entity_id=promoted.id)
        return promoted

    # Step management

    def _touch_template(self, template_id: str) -> None:
        # Structural change: bump version and require a fresh publish
        data = self.storage.load(TEMPLATES_TABLE, template_id)
        if data:
            data['version'] = data.get('version', 1) + 1
            data['is_published'] = False
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(TEMPLATES_TABLE, template_id, data)

    def _check_reject_target(self, template_id: str, reject_target_step_id: Optional[str]) -> None:
        if reject_target_step_id is None:
            return
        target = self.get_step(reject_target_step_id)
        if target is None or target.template_id != template_id:
            raise InvalidTemplate(
                f"Reject target {reject_target_step_id} is not a step of template {template_id}"
            )

    def add_step(self, template_id: str, name: str, step_order: int,
                 sla_hours: Optional[float] = None,
                 approval_type: ApprovalType = ApprovalType.SINGLE,
                 step_type: StepType = StepType.STANDARD, description: str = "",
                 required_approvals: int = 1, is_required: bool = True,
                 auto_assign_enabled: bool = False,
                 auto_assign_rule: Optional[Dict[str, Any]] = None,
                 reject_target_step_id: Optional[str] = None,
                 work_order_status: Optional[str] = None,
                 incident_status: Optional[str] = None,
                 created_by: Optional[str] = None) -> WorkflowTemplateStep:
        """Add a step; ``step_order`` must be positive and unique within the template"""
        template = self.require_template(template_id)
        _validate_order(step_order)
        step_type = _parse_step_type(step_type)
        approval_type = _parse_approval_type(approval_type)
        _validate_sla(sla_hours)
        if required_approvals < 1:
            raise InvalidTemplate("required_approvals must be at least 1")
        self._check_reject_target(template_id, reject_target_step_id)

        now = datetime.now(timezone.utc)
        step = WorkflowTemplateStep(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            template_id=template_id,
            name=name,
            step_order=step_order,
            organization_id=template.organization_id,
            description=description,
            step_type=step_type,
            sla_hours=sla_hours,
            approval_type=approval_type,
            required_approvals=required_approvals,
            is_required=is_required,
            auto_assign_enabled=auto_assign_enabled,
            auto_assign_rule=auto_assign_rule or {},
            reject_target_step_id=reject_target_step_id,
            work_order_status=work_order_status,
            incident_status=incident_status
        )

        with self.storage.atomic():
            taken = self.storage.find(STEPS_TABLE, {'template_id': template_id, 'step_order': step_order})
            if taken:
                raise InvalidTemplate(
                    f"Step order {step_order} already used in template {template_id}",
                    {'template_id': template_id, 'step_order': step_order}
                )
            self.storage.insert(STEPS_TABLE, step.id, step.to_dict())
            self._touch_template(template_id)

        self._record(AuditEventType.STEP_ADDED, 'step', step.id,
                     {'template_id': template_id, 'name': name, 'step_order': step_order},
                     created_by, template.organization_id,
                     f"Step '{name}' added to template {template_id} at order {step_order}")
        self.publish_event(DomainEvent.TEMPLATE_UPDATED, 'template', template_id,
                           {'step_added': step.id}, template.organization_id)
        return step

    def get_steps(self, template_id: str) -> List[WorkflowTemplateStep]:
        """Steps of a template ordered by step_order"""
        steps = [WorkflowTemplateStep.from_dict(d)
                 for d in self.storage.find(STEPS_TABLE, {'template_id': template_id})]
        return sorted(steps, key=lambda s: s.step_order)

    def get_step(self, step_id: str) -> Optional[WorkflowTemplateStep]:
        data = self.storage.load(STEPS_TABLE, step_id)
        if not data:
            return None
        return WorkflowTemplateStep.from_dict(data)

    def require_step(self, step_id: str) -> WorkflowTemplateStep:
        step = self.get_step(step_id)
        if step is None:
            raise NotFound(f"Workflow step {step_id} not found", {'step_id': step_id})
        return step

    def update_step(self, step_id: str, updated_by: Optional[str] = None,
                    **changes: Any) -> WorkflowTemplateStep:
        """Update step attributes; ordering and reject-target rules are re-checked"""
        unknown = set(changes) - _STEP_FIELDS
        if unknown:
            raise InvalidTemplate(f"Unknown step fields: {', '.join(sorted(unknown))}")
        cleared = sorted(k for k in _REQUIRED_STEP_FIELDS & set(changes) if changes[k] is None)
        if cleared:
            raise InvalidTemplate(f"Step fields cannot be null: {', '.join(cleared)}",
                                  {'fields': cleared})

        step = self.require_step(step_id)
        if 'step_order' in changes:
            _validate_order(changes['step_order'])
        if 'sla_hours' in changes:
            _validate_sla(changes['sla_hours'])
        if changes.get('required_approvals') is not None and changes['required_approvals'] < 1:
            raise InvalidTemplate("required_approvals must be at least 1")
        if 'reject_target_step_id' in changes:
            self._check_reject_target(step.template_id, changes['reject_target_step_id'])
        if 'step_type' in changes:
            changes['step_type'] = _parse_step_type(changes['step_type'])
        if 'approval_type' in changes:
            changes['approval_type'] = _parse_approval_type(changes['approval_type'])
        if changes.get('auto_assign_rule') is None and 'auto_assign_rule' in changes:
            changes['auto_assign_rule'] = {}

        for key, value in changes.items():
            setattr(step, key, value)
        step.updated_at = datetime.now(timezone.utc)

        with self.storage.atomic():
            if 'step_order' in changes:
                clash = [d for d in self.storage.find(STEPS_TABLE, {
                    'template_id': step.template_id, 'step_order': step.step_order
                }) if d['id'] != step.id]
                if clash:
                    raise InvalidTemplate(
                        f"Step order {step.step_order} already used in template {step.template_id}"
                    )
            self.storage.save(STEPS_TABLE, step.id, step.to_dict())
            self._touch_template(step.template_id)

        self._record(AuditEventType.STEP_UPDATED, 'step', step.id,
                     {'template_id': step.template_id, 'changes': changes},
                     updated_by, step.organization_id, f"Step '{step.name}' updated")
        self.publish_event(DomainEvent.TEMPLATE_UPDATED, 'template', step.template_id,
                           {'step_updated': step.id}, step.organization_id)
        return step

    def _delete_step_children(self, step_id: str) -> None:
        for role in self.storage.find(ROLES_TABLE, {'step_id': step_id}):
            self.storage.delete(ROLES_TABLE, role['id'])
        for condition in self.storage.find(CONDITIONS_TABLE, {'step_id': step_id}):
            self.storage.delete(CONDITIONS_TABLE, condition['id'])

    def delete_step(self, step_id: str, deleted_by: Optional[str] = None) -> None:
        """
        Delete a step with its role assignments and conditions.

        Blocked while the step is the current step of any workflow state.
        References from sibling steps (reject targets, skip targets) are
        removed as well.
        """
        step = self.require_step(step_id)
        in_use = self.storage.find(STATES_TABLE, {'current_step_id': step_id})
        if in_use:
            raise InvalidTemplate(
                f"Step {step_id} is the current step of {len(in_use)} workflow state(s)",
                {'step_id': step_id, 'state_count': len(in_use)}
            )

        with self.storage.atomic():
            self._delete_step_children(step_id)
            for condition in self.storage.find(CONDITIONS_TABLE, {'target_step_id': step_id}):
                self.storage.delete(CONDITIONS_TABLE, condition['id'])
            for sibling in self.storage.find(STEPS_TABLE, {'reject_target_step_id': step_id}):
                sibling['reject_target_step_id'] = None
                self.storage.save(STEPS_TABLE, sibling['id'], sibling)
            self.storage.delete(STEPS_TABLE, step_id)
            self._touch_template(step.template_id)

        self._record(AuditEventType.STEP_DELETED, 'step', step_id,
                     {'template_id': step.template_id, 'name': step.name},
                     deleted_by, step.organization_id, f"Step '{step.name}' deleted")
        self.publish_event(DomainEvent.TEMPLATE_UPDATED, 'template', step.template_id,
                           {'step_deleted': step_id}, step.organization_id)

    def get_first_step(self, template_id: str) -> Optional[WorkflowTemplateStep]:
        steps = self.get_steps(template_id)
        return steps[0] if steps else None

    def get_next_step(self, template_id: str, step_order: int) -> Optional[WorkflowTemplateStep]:
        """Step with the smallest order strictly greater than ``step_order``; None means complete"""
        for step in self.get_steps(template_id):
            if step.step_order > step_order:
                return step
        return None

    # Role assignments

    def assign_role(self, step_id: str, role_name: str, can_approve: bool = False,
                    can_reject: bool = False, can_assign: bool = False,
                    can_view: bool = True, can_edit: bool = False,
                    is_primary_assignee: bool = False, is_backup_assignee: bool = False,
                    assigned_by: Optional[str] = None) -> StepRoleAssignment:
        """Create or replace the capabilities of ``role_name`` on a step"""
        step = self.require_step(step_id)
        if not role_name or not role_name.strip():
            raise InvalidTemplate("role_name is required")

        # One row per (step, role); role names compare case-insensitively
        assignment_id = str(uuid.uuid5(ROLE_NAMESPACE, f"{step_id}:{role_name.strip().lower()}"))
        existing = self.storage.load(ROLES_TABLE, assignment_id)
        now = datetime.now(timezone.utc)
        assignment = StepRoleAssignment(
            id=assignment_id,
            created_at=datetime.fromisoformat(existing['created_at']) if existing else now,
            updated_at=now,
            step_id=step_id,
            role_name=role_name.strip(),
            can_approve=can_approve,
            can_reject=can_reject,
            can_assign=can_assign,
            can_view=can_view,
            can_edit=can_edit,
            is_primary_assignee=is_primary_assignee,
            is_backup_assignee=is_backup_assignee,
            organization_id=step.organization_id
        )
        self.storage.save(ROLES_TABLE, assignment.id, assignment.to_dict())

        self._record(AuditEventType.STEP_ROLE_ASSIGNED, 'step', step_id,
                     {'role_name': assignment.role_name, 'can_approve': can_approve,
                      'can_reject': can_reject, 'can_assign': can_assign},
                     assigned_by, step.organization_id,
                     f"Role '{assignment.role_name}' assigned to step '{step.name}'")
        return assignment

    def get_role_assignments(self, step_id: str) -> List[StepRoleAssignment]:
        assignments = [StepRoleAssignment.from_dict(d)
                       for d in self.storage.find(ROLES_TABLE, {'step_id': step_id})]
        return sorted(assignments, key=lambda a: a.role_name.lower())

    # Conditions

    def add_condition(self, step_id: str, condition_type: str, action: str,
                      operator: Optional[str] = None, field_name: Optional[str] = None,
                      value: Any = None, target_step_id: Optional[str] = None,
                      required_role: Optional[str] = None, priority: int = 0,
                      created_by: Optional[str] = None) -> StepCondition:
        """Validate and store a branching condition on a step"""
        step = self.require_step(step_id)
        ctype, caction, coperator, cvalue = validate_condition(
            condition_type, action, operator=operator, field_name=field_name, value=value,
            target_step_id=target_step_id, required_role=required_role
        )

        if caction == ConditionAction.SKIP_TO_STEP:
            target = self.get_step(target_step_id)
            if target is None or target.template_id != step.template_id:
                raise InvalidCondition(
                    f"Target step {target_step_id} is not a step of template {step.template_id}"
                )
            if target.id == step.id:
                raise InvalidCondition("A step cannot skip to itself")

        now = datetime.now(timezone.utc)
        condition = StepCondition(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            step_id=step_id,
            template_id=step.template_id,
            condition_type=ctype,
            action=caction,
            priority=priority,
            field_name=field_name,
            operator=coperator,
            value=cvalue,
            target_step_id=target_step_id,
            required_role=required_role,
            organization_id=step.organization_id
        )
        with self.storage.atomic():
            self.storage.insert(CONDITIONS_TABLE, condition.id, condition.to_dict())
            self._touch_template(step.template_id)

        self._record(AuditEventType.STEP_CONDITION_ADDED, 'step', step_id,
                     {'condition_id': condition.id, 'action': caction.value, 'priority': priority},
                     created_by, step.organization_id,
                     f"Condition {caction.value} added to step '{step.name}'")
        return condition

    def get_conditions(self, step_id: str) -> List[StepCondition]:
        """Conditions of a step in evaluation order"""
        return order_conditions([StepCondition.from_dict(d)
                                 for d in self.storage.find(CONDITIONS_TABLE, {'step_id': step_id})])

    def get_template_conditions(self, template_id: str) -> List[StepCondition]:
        return order_conditions([StepCondition.from_dict(d)
                                 for d in self.storage.find(CONDITIONS_TABLE, {'template_id': template_id})])

    def remove_condition(self, condition_id: str, removed_by: Optional[str] = None) -> None:
        data = self.storage.load(CONDITIONS_TABLE, condition_id)
        if not data:
            raise NotFound(f"Condition {condition_id} not found", {'condition_id': condition_id})
        condition = StepCondition.from_dict(data)

        with self.storage.atomic():
            self.storage.delete(CONDITIONS_TABLE, condition_id)
            self._touch_template(condition.template_id)

        self._record(AuditEventType.STEP_CONDITION_REMOVED, 'step', condition.step_id,
                     {'condition_id': condition_id}, removed_by, condition.organization_id,
                     f"Condition {condition_id} removed")

    # Publishing

    def publish_template(self, template_id: str,
                         published_by: Optional[str] = None) -> ValidationReport:
        """Validate the step graph and mark the template published"""
        template = self.require_template(template_id)
        steps = self.get_steps(template_id)
        report = validate_template(template, steps, self.get_template_conditions(template_id),
                                   {s.id: self.get_role_assignments(s.id) for s in steps})
        if not report.valid:
            raise InvalidTemplate(
                f"Template {template_id} failed validation: {'; '.join(report.errors)}",
                report.to_dict()
            )

        template.is_published = True
        template.updated_at = datetime.now(timezone.utc)
        self.storage.save(TEMPLATES_TABLE, template.id, template.to_dict())

        self._record(AuditEventType.TEMPLATE_PUBLISHED, 'template', template.id,
                     {'version': template.version, 'warnings': report.warnings},
                     published_by, template.organization_id,
                     f"Template '{template.name}' published at version {template.version}")
        self.publish_event(DomainEvent.TEMPLATE_UPDATED, 'template', template.id,
                           {'is_published': True, 'version': template.version},
                           template.organization_id)
        return report
