"""
Entity Workflow State Module

Per-entity record of where a work order or incident sits in its workflow,
plus the approval history of every transition.

Each entity owns at most one state row. The row id is derived from
(entity_type, entity_id), so two concurrent initializers collide on insert
instead of creating duplicates. Updates are compare-and-swap on ``revision``.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Set
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import NotFound, ConcurrentModification


STATES_TABLE = "entity_workflow_states"
APPROVALS_TABLE = "workflow_approvals"

STATE_NAMESPACE = uuid.UUID("2b7e4c19-8a5d-4f3e-b1c6-9d0a7e5f3c21")


class EntityType(Enum):
    WORK_ORDER = "work_order"
    INCIDENT = "incident"


class WorkflowStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ApprovalAction(Enum):
    """Kinds of history rows"""
    INITIALIZED = "initialized"
    APPROVED = "approved"
    AUTO_APPROVED = "auto_approved"
    REJECTED = "rejected"
    REASSIGNED = "reassigned"
    COMPLETED = "completed"


def state_id_for(entity_type: str, entity_id: str) -> str:
    """Deterministic state id: one row per entity"""
    return str(uuid.uuid5(STATE_NAMESPACE, f"{EntityType(entity_type).value}:{entity_id}"))


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class EntityWorkflowState(StorageRecord):
    """Where one entity sits in its workflow"""
    template_id: str
    current_step_id: str
    entity_type: EntityType
    organization_id: Optional[str] = None
    work_order_id: Optional[str] = None
    incident_id: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    pending_approval_from_role: Optional[str] = None
    step_started_at: Optional[datetime] = None
    sla_due_at: Optional[datetime] = None
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    completed_at: Optional[datetime] = None
    step_approvals: List[Dict[str, Any]] = field(default_factory=list)
    revision: int = 0

    def __post_init__(self):
        self.entity_type = EntityType(self.entity_type)
        if self.entity_type == EntityType.WORK_ORDER:
            if not self.work_order_id or self.incident_id:
                raise ValueError("A work order workflow state needs work_order_id and no incident_id")
        elif not self.incident_id or self.work_order_id:
            raise ValueError("An incident workflow state needs incident_id and no work_order_id")

    @property
    def entity_id(self) -> str:
        return self.work_order_id if self.entity_type == EntityType.WORK_ORDER else self.incident_id

    @property
    def is_completed(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EntityWorkflowState':
        data['status'] = WorkflowStatus(data['status'])
        for key in ('step_started_at', 'sla_due_at', 'completed_at'):
            data[key] = _parse_dt(data.get(key))
        return super().from_dict(data)


def new_state(entity_type: str, entity_id: str, template_id: str, step_id: str,
              organization_id: Optional[str], now: datetime,
              sla_due_at: Optional[datetime] = None,
              assigned_to_user_id: Optional[str] = None) -> EntityWorkflowState:
    """Build (without storing) the initial state for an entity"""
    entity_type = EntityType(entity_type)
    return EntityWorkflowState(
        id=state_id_for(entity_type.value, entity_id),
        created_at=now,
        updated_at=now,
        template_id=template_id,
        current_step_id=step_id,
        entity_type=entity_type,
        organization_id=organization_id,
        work_order_id=entity_id if entity_type == EntityType.WORK_ORDER else None,
        incident_id=entity_id if entity_type == EntityType.INCIDENT else None,
        assigned_to_user_id=assigned_to_user_id,
        step_started_at=now,
        sla_due_at=sla_due_at
    )


@dataclass
class WorkflowApproval(StorageRecord):
    """History row written by every initialization and transition"""
    state_id: str
    entity_type: str
    entity_id: str
    step_id: str
    action: ApprovalAction
    from_step_id: Optional[str] = None
    actor_id: Optional[str] = None
    comments: Optional[str] = None
    organization_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowApproval':
        data['action'] = ApprovalAction(data['action'])
        return super().from_dict(data)


class WorkflowStateStore:
    """Persistence for entity workflow states and their approval history"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def create_state(self, state: EntityWorkflowState) -> EntityWorkflowState:
        """Insert a new state; raises DuplicateRecord if the entity already has one"""
        self.storage.insert(STATES_TABLE, state.id, state.to_dict())
        return state

    def get_state(self, state_id: str) -> Optional[EntityWorkflowState]:
        data = self.storage.load(STATES_TABLE, state_id)
        if not data:
            return None
        return EntityWorkflowState.from_dict(data)

    def require_state(self, state_id: str) -> EntityWorkflowState:
        state = self.get_state(state_id)
        if state is None:
            raise NotFound(f"Workflow state {state_id} not found", {'state_id': state_id})
        return state

    def get_state_for_entity(self, entity_type: str, entity_id: str) -> Optional[EntityWorkflowState]:
        return self.get_state(state_id_for(entity_type, entity_id))

    def list_states(self, entity_type: Optional[str] = None,
                    organization_id: Optional[str] = None,
                    template_id: Optional[str] = None,
                    status: Optional[WorkflowStatus] = None) -> List[EntityWorkflowState]:
        filters: Dict[str, Any] = {}
        if entity_type is not None:
            filters['entity_type'] = EntityType(entity_type).value
        if organization_id is not None:
            filters['organization_id'] = organization_id
        if template_id is not None:
            filters['template_id'] = template_id
        if status is not None:
            filters['status'] = WorkflowStatus(status).value

        states = [EntityWorkflowState.from_dict(d) for d in self.storage.find(STATES_TABLE, filters)]
        return sorted(states, key=lambda s: s.created_at)

    def entity_ids_with_state(self, entity_type: str) -> Set[str]:
        key = 'work_order_id' if EntityType(entity_type) == EntityType.WORK_ORDER else 'incident_id'
        rows = self.storage.find(STATES_TABLE, {'entity_type': EntityType(entity_type).value})
        return {row[key] for row in rows}

    def save_state(self, state: EntityWorkflowState, expected_revision: int,
                   now: Optional[datetime] = None) -> EntityWorkflowState:
        """
        Persist ``state`` only if the stored revision still equals
        ``expected_revision``; the saved state carries the next revision.
        """
        state.revision = expected_revision + 1
        state.updated_at = now or datetime.now(timezone.utc)
        if not self.storage.compare_and_swap(STATES_TABLE, state.id,
                                             {'revision': expected_revision}, state.to_dict()):
            current = self.storage.load(STATES_TABLE, state.id)
            if current is None:
                raise NotFound(f"Workflow state {state.id} not found", {'state_id': state.id})
            raise ConcurrentModification(
                f"Workflow state {state.id} was modified concurrently",
                {'state_id': state.id, 'expected_revision': expected_revision,
                 'current_revision': current.get('revision')}
            )
        return state

    def delete_for_entity(self, entity_type: str, entity_id: str) -> bool:
        """Remove the state and history of an entity that was deleted"""
        state_id = state_id_for(entity_type, entity_id)
        with self.storage.atomic():
            for row in self.storage.find(APPROVALS_TABLE, {'state_id': state_id}):
                self.storage.delete(APPROVALS_TABLE, row['id'])
            return self.storage.delete(STATES_TABLE, state_id)

    # Approval history

    def record_approval(self, state: EntityWorkflowState, action: ApprovalAction,
                        step_id: str, from_step_id: Optional[str] = None,
                        actor_id: Optional[str] = None,
                        comments: Optional[str] = None,
                        now: Optional[datetime] = None) -> WorkflowApproval:
        now = now or datetime.now(timezone.utc)
        approval = WorkflowApproval(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            state_id=state.id,
            entity_type=state.entity_type.value,
            entity_id=state.entity_id,
            step_id=step_id,
            action=action,
            from_step_id=from_step_id,
            actor_id=actor_id,
            comments=comments,
            organization_id=state.organization_id
        )
        data = approval.to_dict()
        # Tie-breaker for rows of one state written within the same clock tick
        data['sequence'] = self._next_sequence(state.id)
        self.storage.insert(APPROVALS_TABLE, approval.id, data)
        return approval

    def _next_sequence(self, state_id: str) -> int:
        rows = self.storage.find(APPROVALS_TABLE, {'state_id': state_id})
        return max((r.get('sequence', 0) for r in rows), default=0) + 1

    def get_history(self, state_id: str) -> List[WorkflowApproval]:
        """Approval history of a state, newest first"""
        rows = self.storage.find(APPROVALS_TABLE, {'state_id': state_id})
        rows.sort(key=lambda r: (r['created_at'], r.get('sequence', 0)), reverse=True)
        history = []
        for row in rows:
            row.pop('sequence', None)
            history.append(WorkflowApproval.from_dict(row))
        return history
