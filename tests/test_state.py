"""
Tests for workflow state persistence and approval history
"""

import pytest
from datetime import datetime, timezone

from asset_workflows.storage import InMemoryStorage
from asset_workflows.errors import DuplicateRecord, ConcurrentModification, NotFound
from asset_workflows.state import (
    WorkflowStateStore, EntityWorkflowState, EntityType, WorkflowStatus, ApprovalAction,
    new_state, state_id_for, STATES_TABLE
)


NOW = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def store(storage):
    return WorkflowStateStore(storage)


@pytest.fixture
def state(store):
    return store.create_state(new_state("work_order", "wo-1", "tpl-1", "step-1", "org-1", NOW))


class TestStateIdentity:

    def test_state_id_is_deterministic(self):
        """Test that the same entity always maps to the same state id"""
        assert state_id_for("work_order", "wo-1") == state_id_for("work_order", "wo-1")
        assert state_id_for("work_order", "wo-1") != state_id_for("incident", "wo-1")

    def test_one_state_per_entity(self, store, state):
        """Test that a second initialization collides on insert"""
        with pytest.raises(DuplicateRecord):
            store.create_state(new_state("work_order", "wo-1", "tpl-2", "step-9", "org-1", NOW))
        assert store.get_state(state.id).template_id == "tpl-1"

    def test_exactly_one_entity_reference(self):
        """Test that a state points at a work order or an incident, never both"""
        with pytest.raises(ValueError):
            EntityWorkflowState(id="s", created_at=NOW, updated_at=NOW, template_id="t",
                                current_step_id="s1", entity_type="work_order",
                                work_order_id="wo-1", incident_id="inc-1")
        with pytest.raises(ValueError):
            EntityWorkflowState(id="s", created_at=NOW, updated_at=NOW, template_id="t",
                                current_step_id="s1", entity_type="incident")

    def test_entity_id_property(self, store):
        incident = store.create_state(new_state("incident", "inc-7", "tpl-1", "step-1", None, NOW))
        assert incident.entity_type == EntityType.INCIDENT
        assert incident.entity_id == "inc-7"
        assert incident.work_order_id is None


class TestStatePersistence:

    def test_roundtrip(self, store, state):
        """Test that stored states load with their types restored"""
        loaded = store.get_state_for_entity("work_order", "wo-1")

        assert loaded.id == state.id
        assert loaded.status == WorkflowStatus.ACTIVE
        assert loaded.step_started_at == NOW
        assert loaded.revision == 0

    def test_save_increments_revision(self, store, state):
        """Test compare-and-swap on the revision"""
        state.current_step_id = "step-2"
        saved = store.save_state(state, expected_revision=0)

        assert saved.revision == 1
        assert store.get_state(state.id).current_step_id == "step-2"

    def test_stale_save_rejected(self, store, state):
        """Test that two writers starting from the same revision cannot both win"""
        first = store.get_state(state.id)
        second = store.get_state(state.id)

        first.current_step_id = "step-2"
        store.save_state(first, expected_revision=0)

        second.current_step_id = "step-3"
        with pytest.raises(ConcurrentModification) as exc_info:
            store.save_state(second, expected_revision=0)

        assert exc_info.value.details['current_revision'] == 1
        assert store.get_state(state.id).current_step_id == "step-2"

    def test_save_missing_state(self, store):
        orphan = new_state("work_order", "ghost", "tpl-1", "step-1", None, NOW)
        with pytest.raises(NotFound):
            store.save_state(orphan, expected_revision=0)

    def test_list_states_filters(self, store, state):
        store.create_state(new_state("work_order", "wo-2", "tpl-2", "step-1", "org-2", NOW))
        store.create_state(new_state("incident", "inc-1", "tpl-3", "step-1", "org-1", NOW))

        assert len(store.list_states()) == 3
        assert len(store.list_states(entity_type="work_order")) == 2
        assert len(store.list_states(organization_id="org-1")) == 2
        assert [s.id for s in store.list_states(template_id="tpl-2")] == [
            state_id_for("work_order", "wo-2")
        ]
        assert store.entity_ids_with_state("work_order") == {"wo-1", "wo-2"}

    def test_delete_for_entity(self, store, state, storage):
        """Test that deleting an entity's workflow removes state and history"""
        store.record_approval(state, ApprovalAction.INITIALIZED, "step-1")

        assert store.delete_for_entity("work_order", "wo-1")
        assert store.get_state(state.id) is None
        assert store.get_history(state.id) == []
        assert not store.delete_for_entity("work_order", "wo-1")
        assert storage.count(STATES_TABLE) == 0


class TestApprovalHistory:

    def test_history_newest_first(self, store, state):
        """Test that history is returned in reverse chronological order"""
        store.record_approval(state, ApprovalAction.INITIALIZED, "step-1", actor_id="u1")
        store.record_approval(state, ApprovalAction.APPROVED, "step-2", from_step_id="step-1",
                              actor_id="u2", comments="looks good")
        store.record_approval(state, ApprovalAction.REJECTED, "step-1", from_step_id="step-2",
                              actor_id="u3")

        history = store.get_history(state.id)
        assert [h.action for h in history] == [
            ApprovalAction.REJECTED, ApprovalAction.APPROVED, ApprovalAction.INITIALIZED
        ]
        assert history[1].comments == "looks good"
        assert history[1].entity_id == "wo-1"

    def test_history_is_per_state(self, store, state):
        other = store.create_state(new_state("work_order", "wo-2", "tpl-1", "step-1", None, NOW))
        store.record_approval(state, ApprovalAction.INITIALIZED, "step-1")
        store.record_approval(other, ApprovalAction.INITIALIZED, "step-1")

        assert len(store.get_history(state.id)) == 1

    def test_same_instant_rows_keep_write_order(self, store, state):
        """Test that rows stamped with one timestamp come back in write order"""
        for action in (ApprovalAction.INITIALIZED, ApprovalAction.APPROVED,
                       ApprovalAction.COMPLETED):
            store.record_approval(state, action, "step-1", now=NOW)

        history = store.get_history(state.id)
        assert [h.action for h in history] == [
            ApprovalAction.COMPLETED, ApprovalAction.APPROVED, ApprovalAction.INITIALIZED
        ]
        assert all(h.created_at == NOW for h in history)

    def test_order_survives_deleting_other_history(self, store, state, storage):
        """Test that removing another entity's history does not reorder this one"""
        other = store.create_state(new_state("work_order", "wo-2", "tpl-1", "step-1", None, NOW))
        store.record_approval(other, ApprovalAction.INITIALIZED, "step-1", now=NOW)
        store.record_approval(other, ApprovalAction.APPROVED, "step-1", now=NOW)
        store.record_approval(state, ApprovalAction.INITIALIZED, "step-1", now=NOW)

        store.delete_for_entity("work_order", "wo-2")
        store.record_approval(state, ApprovalAction.APPROVED, "step-1", now=NOW)

        assert [h.action for h in store.get_history(state.id)] == [
            ApprovalAction.APPROVED, ApprovalAction.INITIALIZED
        ]
