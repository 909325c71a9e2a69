"""
Integration tests for SLA breach escalation.
"""
from datetime import timedelta

import pytest

from extensions import db
from models import AuditLogEntry, User
from utils.issue_service import create_issue, issue_statistics, list_issues
from utils.sla_monitor import escalate_issue, run_escalation_sweep
from utils.state_machine import transition


@pytest.fixture
def report(app_ctx, submission, classifier_returning):
    def _report(category, at):
        return create_issue(submission(category=category), classifier=classifier_returning(category, 0.9), now=at)

    return _report


def test_sweep_escalates_overdue_issue_once(report, now):
    issue = report("garbage", now)
    later = now + timedelta(hours=25)

    first = run_escalation_sweep(now=later)
    second = run_escalation_sweep(now=later + timedelta(hours=1))

    assert first == {"checked": 1, "escalated": 1, "conflicts": 0, "failed": 0, "skipped": False}
    assert second["escalated"] == 0
    db.session.expire_all()
    assert issue.auto_escalated is True
    assert issue.escalated_at == later
    assert issue.escalation_reason == "SLA deadline exceeded"
    assert issue.priority == "critical"

    entries = AuditLogEntry.query.filter_by(entity_id=issue.issue_id, action="auto_escalation").all()
    assert len(entries) == 1
    assert entries[0].old_values["priority"] == "high"
    assert entries[0].new_values["auto_escalated"] is True
    assert entries[0].details["hours_overdue"] == 1.0


def test_issue_within_deadline_is_left_alone(report, now):
    issue = report("pothole", now)

    result = run_escalation_sweep(now=now + timedelta(hours=47))

    assert result["checked"] == 0
    assert issue.auto_escalated is False


def test_resolved_issue_is_not_escalated(report, make_user, now):
    officer = db.session.get(User, make_user("officer", department_code="SANITATION"))
    issue = report("garbage", now)
    transition(issue, "assigned", officer)
    transition(issue, "in_progress", officer)
    transition(issue, "resolved", officer, resolution_images=["https://images.example.org/fixed.jpg"])

    result = run_escalation_sweep(now=now + timedelta(days=3))

    assert result["checked"] == 0
    assert issue.auto_escalated is False


def test_rejected_issue_is_never_escalated(report, make_user, now):
    officer = db.session.get(User, make_user("officer", department_code="SANITATION"))
    issue = report("garbage", now)
    transition(issue, "rejected", officer, notes="Duplicate of an older report")
    later = now + timedelta(days=30)

    assert escalate_issue(issue, now=later) is False
    assert issue.priority == "high"
    assert issue.auto_escalated is False
    assert AuditLogEntry.query.filter_by(entity_id=issue.issue_id, action="auto_escalation").count() == 0
    assert run_escalation_sweep(now=later)["checked"] == 0


def test_breach_filter_and_statistics_agree(report, make_user, now):
    officer = db.session.get(User, make_user("officer", department_code="SANITATION"))
    report("garbage", now)
    rejected = report("garbage", now)
    transition(rejected, "rejected", officer)
    resolved = report("garbage", now)
    transition(resolved, "assigned", officer)
    transition(resolved, "in_progress", officer)
    transition(resolved, "resolved", officer, resolution_images=["https://images.example.org/fixed.jpg"])
    later = now + timedelta(days=3)

    breached = list_issues({"breached": "true"}, now=later)
    not_breached = list_issues({"breached": "false"}, now=later)
    stats = issue_statistics(now=later)

    assert breached["total"] == 2
    assert {issue.status for issue in breached["items"]} == {"submitted", "rejected"}
    assert [issue.status for issue in not_breached["items"]] == ["resolved"]
    assert stats["sla"]["currently_breached"] == breached["total"]


def test_direct_escalation_is_idempotent(report, now):
    issue = report("water", now)
    later = now + timedelta(hours=13)

    assert escalate_issue(issue, now=later) is True
    assert escalate_issue(issue, now=later + timedelta(hours=1)) is False
    assert issue.priority == "critical"
    assert AuditLogEntry.query.filter_by(entity_id=issue.issue_id, action="auto_escalation").count() == 1


def test_sweep_processes_oldest_deadline_first(report, now):
    water = report("water", now)
    garbage = report("garbage", now)

    result = run_escalation_sweep(now=now + timedelta(hours=30))

    assert result["escalated"] == 2
    escalations = (
        AuditLogEntry.query.filter_by(action="auto_escalation").order_by(AuditLogEntry.id.asc()).all()
    )
    assert [entry.entity_id for entry in escalations] == [water.issue_id, garbage.issue_id]


def test_sweep_with_app_argument_pushes_context(app, submission, classifier_returning, now):
    with app.app_context():
        create_issue(submission(), classifier=classifier_returning("garbage", 0.9), now=now)

    result = run_escalation_sweep(app, now=now + timedelta(hours=25))

    assert result["escalated"] == 1
