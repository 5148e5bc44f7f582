"""
Tests for SLA classification and labels
"""

import pytest
from datetime import datetime, timedelta, timezone

from asset_workflows.sla import (
    SLAStatus, calculate_sla_status, compute_sla_due, find_sla_breaches
)
from asset_workflows.state import new_state, WorkflowStatus


NOW = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)


class TestSLAStatus:

    def test_no_sla(self):
        """Test that a step without a due time is on time"""
        report = calculate_sla_status(None, NOW)
        assert report.status == SLAStatus.ON_TIME
        assert report.label == "No SLA"

    @pytest.mark.parametrize("offset, status, label", [
        (timedelta(hours=-1), SLAStatus.OVERDUE, "Overdue by 1h"),
        (timedelta(hours=-2, minutes=-40), SLAStatus.OVERDUE, "Overdue by 2h"),
        (timedelta(hours=3), SLAStatus.AT_RISK, "3h remaining"),
        (timedelta(minutes=30), SLAStatus.AT_RISK, "30m remaining"),
        (timedelta(hours=10), SLAStatus.ON_TIME, "10h remaining"),
        (timedelta(hours=6), SLAStatus.ON_TIME, "6h remaining"),
        (timedelta(hours=5, minutes=59), SLAStatus.AT_RISK, "5h remaining"),
    ])
    def test_classification(self, offset, status, label):
        """Test status and label against the at-risk window"""
        report = calculate_sla_status(NOW + offset, NOW)
        assert report.status == status
        assert report.label == label

    def test_custom_at_risk_window(self):
        report = calculate_sla_status(NOW + timedelta(hours=10), NOW, at_risk_hours=12)
        assert report.status == SLAStatus.AT_RISK

    def test_naive_due_time_is_utc(self):
        """Test that naive datetimes are treated as UTC"""
        due = (NOW + timedelta(hours=2)).replace(tzinfo=None)
        assert calculate_sla_status(due, NOW).label == "2h remaining"


class TestSLADue:

    def test_compute_due(self):
        assert compute_sla_due(NOW, 24) == NOW + timedelta(hours=24)
        assert compute_sla_due(NOW, 0.5) == NOW + timedelta(minutes=30)
        assert compute_sla_due(NOW, None) is None


class TestBreaches:

    def test_find_breaches(self):
        """Test that only active states past their due time are reported"""
        overdue = new_state("work_order", "wo-1", "t", "s", None, NOW,
                            sla_due_at=NOW - timedelta(hours=1))
        fine = new_state("work_order", "wo-2", "t", "s", None, NOW,
                         sla_due_at=NOW + timedelta(hours=1))
        no_sla = new_state("work_order", "wo-3", "t", "s", None, NOW)
        done = new_state("work_order", "wo-4", "t", "s", None, NOW,
                         sla_due_at=NOW - timedelta(hours=5))
        done.status = WorkflowStatus.COMPLETED

        breached = find_sla_breaches([overdue, fine, no_sla, done], NOW)
        assert [s.entity_id for s in breached] == ["wo-1"]
