"""
SLA Status Calculator

Pure functions: classify a due time against "now" and render the short label
shown next to a workflow. Breaches are detected lazily when a state is read;
nothing here schedules or stores anything.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional

DEFAULT_AT_RISK_HOURS = 6


class SLAStatus(Enum):
    ON_TIME = "on-time"
    AT_RISK = "at-risk"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class SLAReport:
    status: SLAStatus
    label: str
    remaining: Optional[timedelta] = None


def _aware(value: datetime) -> datetime:
    # Naive datetimes are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_sla_due(now: datetime, sla_hours: Optional[float]) -> Optional[datetime]:
    """Due time for a step entered at ``now``; None when the step has no SLA"""
    if sla_hours is None:
        return None
    return _aware(now) + timedelta(hours=sla_hours)


def calculate_sla_status(sla_due_at: Optional[datetime], now: Optional[datetime] = None,
                         at_risk_hours: float = DEFAULT_AT_RISK_HOURS) -> SLAReport:
    """
    Classify an SLA due time.

    No due time is on-time ("No SLA"). A due time in the past is overdue,
    labelled with whole hours elapsed. Less than ``at_risk_hours`` left is
    at-risk. Remaining time is labelled in whole minutes under one hour and
    in whole hours otherwise.
    """
    if sla_due_at is None:
        return SLAReport(SLAStatus.ON_TIME, "No SLA")

    now = _aware(now or datetime.now(timezone.utc))
    remaining = _aware(sla_due_at) - now
    hours = remaining.total_seconds() / 3600

    if hours < 0:
        return SLAReport(SLAStatus.OVERDUE, f"Overdue by {math.floor(abs(hours))}h", remaining)

    status = SLAStatus.AT_RISK if hours < at_risk_hours else SLAStatus.ON_TIME
    if hours < 1:
        label = f"{math.floor(hours * 60)}m remaining"
    else:
        label = f"{math.floor(hours)}h remaining"
    return SLAReport(status, label, remaining)


def find_sla_breaches(states: Iterable, now: Optional[datetime] = None) -> List:
    """Active workflow states whose current step is past its SLA"""
    now = now or datetime.now(timezone.utc)
    breached = []
    for state in states:
        if state.is_completed or state.sla_due_at is None:
            continue
        if calculate_sla_status(state.sla_due_at, now).status == SLAStatus.OVERDUE:
            breached.append(state)
    return breached
