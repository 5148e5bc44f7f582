"""
Event System Module

Publish/subscribe dispatcher for workflow domain events. Notification
delivery, dashboards and entity-status sync subscribe here; a failing handler
never breaks the operation that published the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events emitted by the workflow engine"""

    # Template events
    TEMPLATE_CREATED = "workflow.template_created"
    TEMPLATE_UPDATED = "workflow.template_updated"
    TEMPLATE_DELETED = "workflow.template_deleted"

    # Workflow instance events
    WORKFLOW_INITIALIZED = "workflow.initialized"
    STEP_TRANSITIONED = "workflow.step_transitioned"
    APPROVAL_RECORDED = "workflow.approval_recorded"
    STEP_REJECTED = "workflow.step_rejected"
    STEP_REASSIGNED = "workflow.step_reassigned"
    WORKFLOW_COMPLETED = "workflow.completed"
    BULK_INITIALIZED = "workflow.bulk_initialized"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    organization_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'organization_id': self.organization_id,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher: publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("assetflow.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


class EventPublisherMixin:
    """Mixin to add event publishing capabilities to managers"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: EventDispatcher) -> None:
        self._event_dispatcher = event_dispatcher

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any], organization_id: Optional[str] = None) -> None:
        if self._event_dispatcher is None:
            return
        self._event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
            organization_id=organization_id
        ))
