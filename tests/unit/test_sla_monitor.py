"""
Unit tests for SLA breach evaluation.
"""
from datetime import datetime, timedelta

import pytest

from models import Issue
from utils.sla_monitor import bump_priority, is_breached, sla_summary, time_remaining

NOW = datetime(2024, 5, 14, 9, 30)


def test_overdue_in_progress_issue_is_breached():
    issue = Issue(status="in_progress", sla_deadline=NOW - timedelta(hours=1))
    assert is_breached(issue, NOW) is True


@pytest.mark.parametrize("status", ["resolved", "closed"])
def test_finished_issue_is_never_breached(status):
    issue = Issue(status=status, sla_deadline=NOW - timedelta(hours=1))
    assert is_breached(issue, NOW) is False


def test_deadline_itself_is_not_a_breach():
    issue = Issue(status="assigned", sla_deadline=NOW)
    assert is_breached(issue, NOW) is False


def test_missing_deadline_is_not_breached():
    issue = Issue(status="submitted", sla_deadline=None)
    assert is_breached(issue, NOW) is False
    assert time_remaining(issue, NOW) is None


def test_summary_reports_hours_remaining():
    issue = Issue(status="assigned", sla_deadline=NOW + timedelta(hours=5, minutes=30), auto_escalated=False)
    summary = sla_summary(issue, NOW)
    assert summary["is_breached"] is False
    assert summary["hours_remaining"] == 5.5


@pytest.mark.parametrize(
    "priority,expected",
    [("low", "medium"), ("medium", "high"), ("high", "critical"), ("critical", "critical"), ("bogus", "medium")],
)
def test_bump_priority(priority, expected):
    assert bump_priority(priority) == expected
