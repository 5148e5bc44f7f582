"""
Tests for the Event System (Observer Pattern)
"""

from datetime import datetime
from unittest.mock import Mock

from asset_workflows.events import DomainEvent, EventPayload, EventDispatcher, EventPublisherMixin


class TestEventPayload:

    def test_event_payload_creation(self):
        """Test creating event payloads"""
        event = EventPayload(
            event_type=DomainEvent.STEP_TRANSITIONED,
            entity_type="work_order",
            entity_id="wo-123",
            data={"step_id": "s2"}
        )

        assert event.event_type == DomainEvent.STEP_TRANSITIONED
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_to_dict(self):
        """Test payload serialization"""
        event = EventPayload(DomainEvent.WORKFLOW_COMPLETED, "incident", "inc-1", {}, "org-1")
        data = event.to_dict()
        assert data['event_type'] == "workflow.completed"
        assert data['organization_id'] == "org-1"


class TestEventDispatcher:

    def test_subscribe_and_publish(self):
        """Test that subscribers receive matching events only"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.WORKFLOW_INITIALIZED, handler)

        event = EventPayload(DomainEvent.WORKFLOW_INITIALIZED, "work_order", "wo-1", {})
        dispatcher.publish(event)
        dispatcher.publish(EventPayload(DomainEvent.STEP_REJECTED, "work_order", "wo-1", {}))

        handler.assert_called_once_with(event)

    def test_global_handler_receives_everything(self):
        """Test subscribe_all"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(EventPayload(DomainEvent.TEMPLATE_CREATED, "template", "t", {}))
        dispatcher.publish(EventPayload(DomainEvent.BULK_INITIALIZED, "module", "work_orders", {}))

        assert handler.call_count == 2

    def test_failing_handler_is_isolated(self):
        """Test that one failing handler does not stop the others"""
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("notification service down"))
        healthy = Mock()
        dispatcher.subscribe(DomainEvent.STEP_TRANSITIONED, failing)
        dispatcher.subscribe(DomainEvent.STEP_TRANSITIONED, healthy)

        dispatcher.publish(EventPayload(DomainEvent.STEP_TRANSITIONED, "incident", "i", {}))

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_unsubscribe_and_counts(self):
        """Test handler bookkeeping"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.STEP_REASSIGNED, handler)
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.STEP_REASSIGNED) == 1
        assert dispatcher.get_handler_count() == 2

        dispatcher.unsubscribe(DomainEvent.STEP_REASSIGNED, handler)
        dispatcher.unsubscribe(DomainEvent.STEP_REASSIGNED, handler)
        assert dispatcher.get_handler_count(DomainEvent.STEP_REASSIGNED) == 0

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0


class TestEventPublisherMixin:

    def test_publish_without_dispatcher_is_noop(self):
        """Test that components work without a dispatcher"""
        publisher = EventPublisherMixin()
        publisher.publish_event(DomainEvent.TEMPLATE_UPDATED, "template", "t", {})

    def test_publish_with_dispatcher(self):
        """Test that the mixin forwards events"""
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.TEMPLATE_UPDATED, handler)

        publisher = EventPublisherMixin()
        publisher.set_event_dispatcher(dispatcher)
        publisher.publish_event(DomainEvent.TEMPLATE_UPDATED, "template", "t", {"v": 2}, "org-1")

        payload = handler.call_args[0][0]
        assert payload.data == {"v": 2}
        assert payload.organization_id == "org-1"
