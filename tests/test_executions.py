"""
Tests for the workflow execution log and its analytics
"""

import pytest
from datetime import datetime, timezone

from asset_workflows.storage import InMemoryStorage
from asset_workflows.errors import Unauthorized
from asset_workflows.executions import ExecutionLogger, EXECUTIONS_TABLE, ANALYTICS_WINDOW


NOW = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def executions(storage):
    return ExecutionLogger(storage, clock=lambda: NOW)


class TestTracking:

    def test_success_is_recorded(self, executions):
        """Test that a completed block writes one successful row"""
        with executions.track("initialize", performed_by="u1", correlation_id="req-1",
                              entity_type="work_order", entity_id="wo-1",
                              organization_id="org-1") as ctx:
            ctx.workflow_state_id = "state-1"
            ctx.metadata['template_id'] = "tpl-1"

        log = executions.get_logs()[0]
        assert log.success
        assert log.action_type == "initialize"
        assert log.workflow_state_id == "state-1"
        assert log.correlation_id == "req-1"
        assert log.metadata == {'template_id': "tpl-1"}
        assert log.created_at == NOW
        assert log.execution_time_ms >= 0

    def test_failure_is_recorded_and_reraised(self, executions):
        with pytest.raises(Unauthorized):
            with executions.track("advance", organization_id="org-1"):
                raise Unauthorized("no approve capability")

        log = executions.get_logs("org-1")[0]
        assert not log.success
        assert log.error_code == "unauthorized"
        assert log.error_message == "no approve capability"

    def test_unexpected_error_uses_exception_name(self, executions):
        with pytest.raises(KeyError):
            with executions.track("reject"):
                raise KeyError("step")

        assert executions.get_logs()[0].error_code == "KeyError"

    def test_storage_failure_does_not_fail_the_operation(self, executions, storage, monkeypatch):
        """Test that an unwritable execution log never blocks the workflow"""
        def broken_insert(table, record_id, data):
            raise RuntimeError("disk full")

        monkeypatch.setattr(storage, "insert", broken_insert)

        with executions.track("advance") as ctx:
            ctx.step_id = "step-1"

        assert storage.count(EXECUTIONS_TABLE) == 0


class TestAnalytics:

    def test_counts_and_average(self, executions, storage):
        """Test success, failure and timing aggregation per organization"""
        for i, success in enumerate((True, True, False)):
            storage.insert(EXECUTIONS_TABLE, f"log-{i}", {
                'id': f"log-{i}", 'created_at': NOW.isoformat(), 'updated_at': NOW.isoformat(),
                'action_type': "advance", 'organization_id': "org-1", 'success': success,
                'execution_time_ms': 10.0 * (i + 1), 'metadata': {}
            })
        with executions.track("advance", organization_id="org-2"):
            pass

        analytics = executions.get_analytics("org-1", recent=2)

        assert analytics['total_executions'] == 3
        assert analytics['successful_executions'] == 2
        assert analytics['failed_executions'] == 1
        assert analytics['avg_execution_time_ms'] == 20
        assert len(analytics['recent_logs']) == 2

    def test_empty_organization(self, executions):
        analytics = executions.get_analytics("org-9")
        assert analytics['total_executions'] == 0
        assert analytics['avg_execution_time_ms'] == 0
        assert analytics['recent_logs'] == []

    def test_window_limits_rows(self, executions):
        for _ in range(ANALYTICS_WINDOW + 5):
            with executions.track("advance", organization_id="org-1"):
                pass

        assert executions.get_analytics("org-1")['total_executions'] == ANALYTICS_WINDOW
