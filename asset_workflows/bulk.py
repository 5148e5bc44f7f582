"""
Bulk Workflow Initializer

Backfills workflow state for entities created before a default template
existed (or while initialization failed). Idempotent: entities that already
hold a state are left alone, and states created concurrently by another
initializer are counted as skipped rather than duplicated.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple

from .audit import AuditEventType
from .events import DomainEvent, EventPublisherMixin
from .errors import DuplicateRecord, NoDefaultTemplate, NoStepsInTemplate
from .templates import WorkflowModule, WorkflowTemplate, WorkflowTemplateStep
from .state import ApprovalAction, new_state
from .sla import compute_sla_due
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class EntityRef:
    """Identity of a business entity as seen by the workflow engine"""
    id: str
    organization_id: Optional[str] = None


class EntitySource(ABC):
    """Lists the work orders or incidents of a module"""

    @abstractmethod
    def list_entities(self, module: WorkflowModule) -> List[EntityRef]:
        pass


class InMemoryEntitySource(EntitySource):
    """Entity source backed by a dict, for tests and embedding"""

    def __init__(self, entities: Optional[Dict[WorkflowModule, List[EntityRef]]] = None):
        self._entities: Dict[WorkflowModule, List[EntityRef]] = {
            WorkflowModule(k): list(v) for k, v in (entities or {}).items()
        }

    def add_entity(self, module: WorkflowModule, entity_id: str,
                   organization_id: Optional[str] = None) -> EntityRef:
        ref = EntityRef(entity_id, organization_id)
        self._entities.setdefault(WorkflowModule(module), []).append(ref)
        return ref

    def remove_entity(self, module: WorkflowModule, entity_id: str) -> None:
        module = WorkflowModule(module)
        self._entities[module] = [e for e in self._entities.get(module, []) if e.id != entity_id]

    def list_entities(self, module: WorkflowModule) -> List[EntityRef]:
        return list(self._entities.get(WorkflowModule(module), []))


@dataclass
class BulkInitResult:
    initialized: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'initialized': self.initialized,
            'failed': self.failed,
            'skipped': self.skipped,
            'errors': list(self.errors)
        }


class BulkInitializer(EventPublisherMixin):
    """Creates missing workflow states for every entity of a module"""

    def __init__(self, engine, entity_source: EntitySource, batch_size: int = 500):
        self.engine = engine
        self.storage = engine.storage
        self.templates = engine.templates
        self.states = engine.states
        self.audit = engine.audit
        self.entity_source = entity_source
        self.batch_size = max(1, batch_size)
        self.logger = get_logger("assetflow.bulk")

    def _entities(self, module: WorkflowModule, organization_id: Optional[str]) -> List[EntityRef]:
        entities = self.entity_source.list_entities(module)
        if organization_id is not None:
            entities = [e for e in entities if e.organization_id == organization_id]
        return entities

    def _plan(self, module: WorkflowModule,
              organization_id: Optional[str]) -> Tuple[WorkflowTemplate, WorkflowTemplateStep]:
        template = self.templates.get_default_template(module, organization_id)
        if template is None:
            raise NoDefaultTemplate(
                f"No default workflow template for {module.value}",
                {'module': module.value, 'organization_id': organization_id}
            )
        first = self.templates.get_first_step(template.id)
        if first is None:
            raise NoStepsInTemplate(f"Default template {template.id} has no steps",
                                    {'template_id': template.id})
        return template, first

    def bulk_initialize(self, module: WorkflowModule, organization_id: Optional[str] = None,
                        actor_id: Optional[str] = None,
                        correlation_id: Optional[str] = None) -> BulkInitResult:
        """
        Initialize workflows for entities of ``module`` that have none.

        Preconditions (default template with at least one step) are checked
        for the requested organization and every organization among the
        module's entities before anything is written, so an unconfigured
        module fails even when nothing is missing. Each state is stamped
        with its own entity's organization. The state and its history row
        are written together; an entity that fails leaves neither behind.
        """
        module = WorkflowModule(module)
        entity_type = module.entity_type
        entities = self._entities(module, organization_id)

        organizations = {e.organization_id for e in entities}
        if organization_id is not None or not organizations:
            organizations.add(organization_id)
        plans = {org: self._plan(module, org) for org in sorted(organizations, key=str)}
        assignees = {org: self.engine.resolve_assignee(step, org) for org, (_, step) in plans.items()}

        existing = self.states.entity_ids_with_state(entity_type)
        missing = [e for e in entities if e.id not in existing]

        result = BulkInitResult()
        now = self.engine.clock()
        for start in range(0, len(missing), self.batch_size):
            batch = missing[start:start + self.batch_size]
            with self.storage.atomic():
                for ref in batch:
                    template, first = plans[ref.organization_id]
                    state = new_state(entity_type, ref.id, template.id, first.id, ref.organization_id,
                                      now, sla_due_at=compute_sla_due(now, first.sla_hours),
                                      assigned_to_user_id=assignees[ref.organization_id])
                    try:
                        with self.storage.atomic():
                            self.states.create_state(state)
                            self.states.record_approval(state, ApprovalAction.INITIALIZED, first.id,
                                                        actor_id=actor_id,
                                                        comments="bulk initialization", now=now)
                    except DuplicateRecord:
                        result.skipped += 1
                        continue
                    except Exception as e:
                        result.failed += 1
                        result.errors.append({'entity_id': ref.id, 'error': str(e)})
                        log_action(self.logger, "error",
                                   f"Bulk initialization failed for {entity_type} {ref.id}: {e}",
                                   user_id=actor_id, action="bulk_initialize",
                                   resource=entity_type, entity_id=ref.id,
                                   correlation_id=correlation_id)
                        continue
                    result.initialized += 1

        summary = {'module': module.value, 'organization_id': organization_id,
                   'initialized': result.initialized, 'failed': result.failed,
                   'skipped': result.skipped}
        self.audit.log_event(AuditEventType.WORKFLOW_BULK_INITIALIZED, 'module', module.value,
                             summary, user_id=actor_id, organization_id=organization_id)
        log_action(self.logger, "warning" if result.failed else "info",
                   f"Bulk initialization of {module.value}: {result.initialized} initialized, "
                   f"{result.failed} failed, {result.skipped} skipped",
                   user_id=actor_id, action="bulk_initialize", resource=module.value,
                   correlation_id=correlation_id)
        self.publish_event(DomainEvent.BULK_INITIALIZED, 'module', module.value, summary,
                           organization_id)
        return result

    def get_workflow_status(self, module: WorkflowModule,
                            organization_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts of entities with and without a workflow state"""
        module = WorkflowModule(module)
        entities = self._entities(module, organization_id)
        existing = self.states.entity_ids_with_state(module.entity_type)
        with_workflow = sum(1 for e in entities if e.id in existing)
        default = self.templates.get_default_template(module, organization_id)
        return {
            'module': module.value,
            'total_entities': len(entities),
            'with_workflow': with_workflow,
            'without_workflow': len(entities) - with_workflow,
            'has_default_template': default is not None
        }
