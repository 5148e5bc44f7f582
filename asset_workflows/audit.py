"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every template change and workflow state change is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Template events
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_UPDATED = "template_updated"
    TEMPLATE_DELETED = "template_deleted"
    TEMPLATE_PUBLISHED = "template_published"
    DEFAULT_TEMPLATE_CHANGED = "default_template_changed"
    DEFAULT_TEMPLATE_REPAIRED = "default_template_repaired"

    # Step definition events
    STEP_ADDED = "step_added"
    STEP_UPDATED = "step_updated"
    STEP_DELETED = "step_deleted"
    STEP_ROLE_ASSIGNED = "step_role_assigned"
    STEP_CONDITION_ADDED = "step_condition_added"
    STEP_CONDITION_REMOVED = "step_condition_removed"

    # Workflow state events
    WORKFLOW_INITIALIZED = "workflow_initialized"
    WORKFLOW_TRANSITIONED = "workflow_transitioned"
    WORKFLOW_APPROVAL_RECORDED = "workflow_approval_recorded"
    WORKFLOW_REJECTED = "workflow_rejected"
    WORKFLOW_REASSIGNED = "workflow_reassigned"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_STATE_DELETED = "workflow_state_deleted"
    WORKFLOW_BULK_INITIALIZED = "workflow_bulk_initialized"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # template, step, workflow_state, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    organization_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _json_safe(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'organization_id': self.organization_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return value


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: (x.get('created_at', ''), x.get('sequence', 0)))
            self._last_hash = latest.get('current_hash')

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the actor who initiated the action
            organization_id: Owning organization

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self._lock:
            now = datetime.now(timezone.utc)
            self._load_last_hash()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                user_id=user_id,
                organization_id=organization_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            data = event.to_dict()
            # Tie-breaker for events created within the same clock tick
            data['sequence'] = self.storage.count(self.table_name)
            self.storage.save(self.table_name, event.id, data)
            self._last_hash = event.current_hash

            return event

    def _ordered_events(self) -> List[AuditEvent]:
        rows = self.storage.load_all(self.table_name)
        rows.sort(key=lambda x: (x.get('created_at', ''), x.get('sequence', 0)))
        events = []
        for row in rows:
            row.pop('sequence', None)
            events.append(AuditEvent.from_dict(row))
        return events

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events for one entity, oldest first"""
        events = [e for e in self._ordered_events()
                  if e.entity_type == entity_type and e.entity_id == entity_id]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        events = [e for e in self._ordered_events() if e.event_type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._ordered_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
