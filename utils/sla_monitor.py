"""SLA breach evaluation and the escalation sweep (schedule `flask sla-sweep` via cron)."""
from __future__ import annotations

import threading
from contextlib import nullcontext
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import and_, text

from extensions import db
from models import OPEN_STATUSES, PRIORITY_LEVELS, Issue
from utils.audit import record_audit, snapshot
from utils.errors import ConflictError, PersistenceError
from utils.persistence import commit_issue_change

ESCALATION_AUDIT_FIELDS = ("auto_escalated", "escalation_reason", "escalated_at", "priority")
NOT_BREACHABLE_STATUSES = ("resolved", "closed")
# Arbitrary constant key for the cross-process advisory lock on PostgreSQL.
SWEEP_ADVISORY_LOCK_KEY = 724_310_551

_sweep_lock = threading.Lock()


def is_breached(issue: Issue, now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    return (
        issue.sla_deadline is not None
        and now > issue.sla_deadline
        and issue.status not in NOT_BREACHABLE_STATUSES
    )


def breached_clause(now: datetime):
    """SQL counterpart of is_breached for list filters and statistics."""
    return and_(
        Issue.sla_deadline.isnot(None),
        Issue.sla_deadline < now,
        Issue.status.notin_(NOT_BREACHABLE_STATUSES),
    )


def time_remaining(issue: Issue, now: datetime | None = None) -> timedelta | None:
    if issue.sla_deadline is None:
        return None
    return issue.sla_deadline - (now or datetime.utcnow())


def sla_summary(issue: Issue, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    remaining = time_remaining(issue, now)
    return {
        "sla_deadline": issue.sla_deadline.isoformat() if issue.sla_deadline else None,
        "is_breached": is_breached(issue, now),
        "hours_remaining": round(remaining.total_seconds() / 3600, 2) if remaining is not None else None,
        "auto_escalated": issue.auto_escalated,
        "escalation_reason": issue.escalation_reason,
    }


def bump_priority(priority: str) -> str:
    try:
        index = PRIORITY_LEVELS.index(priority)
    except ValueError:
        return "medium"
    return PRIORITY_LEVELS[min(index + 1, len(PRIORITY_LEVELS) - 1)]


def escalate_issue(issue: Issue, now: datetime | None = None, reason: str | None = None, session=None) -> bool:
    """Flag a breached open issue once. Returns False when there is nothing to do."""
    session = session or db.session
    now = now or datetime.utcnow()
    if issue.status not in OPEN_STATUSES:
        return False
    if issue.auto_escalated or not is_breached(issue, now):
        return False

    reason = reason or current_app.config.get("SLA_ESCALATION_REASON", "SLA deadline exceeded")
    before = snapshot(issue, ESCALATION_AUDIT_FIELDS)
    issue.auto_escalated = True
    issue.escalation_reason = reason
    issue.escalated_at = now
    issue.priority = bump_priority(issue.priority)
    record_audit(
        "issue",
        issue.issue_id,
        "auto_escalation",
        old_values=before,
        new_values=snapshot(issue, ESCALATION_AUDIT_FIELDS),
        details={
            "sla_deadline": issue.sla_deadline,
            "hours_overdue": round((now - issue.sla_deadline).total_seconds() / 3600, 2),
        },
        session=session,
    )
    commit_issue_change(issue, "auto_escalation", session=session)
    current_app.logger.warning(
        "issue_auto_escalated",
        extra={"issue_id": issue.issue_id, "priority": issue.priority, "reason": reason},
    )
    return True


def _overdue_issues(now: datetime) -> list[Issue]:
    return (
        Issue.query.filter(
            Issue.sla_deadline.isnot(None),
            Issue.sla_deadline < now,
            Issue.status.in_(OPEN_STATUSES),
            Issue.auto_escalated.is_(False),
        )
        .order_by(Issue.sla_deadline.asc())
        .all()
    )


def _try_database_lock():
    """Hold a PostgreSQL advisory lock on a dedicated connection; None means another sweep owns it."""
    engine = db.engine
    if engine.dialect.name != "postgresql":
        return nullcontext()
    connection = engine.connect()
    acquired = connection.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": SWEEP_ADVISORY_LOCK_KEY}).scalar()
    if not acquired:
        connection.close()
        return None
    return _AdvisoryLock(connection)


class _AdvisoryLock:
    def __init__(self, connection) -> None:
        self.connection = connection

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        try:
            self.connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": SWEEP_ADVISORY_LOCK_KEY})
        finally:
            self.connection.close()


def _sweep(now: datetime) -> dict:
    result = {"checked": 0, "escalated": 0, "conflicts": 0, "failed": 0, "skipped": False}
    lock = _try_database_lock()
    if lock is None:
        current_app.logger.info("SLA sweep already running elsewhere; skipping")
        result["skipped"] = True
        return result
    with lock:
        for issue in _overdue_issues(now):
            result["checked"] += 1
            issue_id = issue.issue_id
            try:
                if escalate_issue(issue, now=now):
                    result["escalated"] += 1
            except ConflictError:
                # An authority action won the race; the next sweep re-evaluates.
                result["conflicts"] += 1
            except PersistenceError:
                current_app.logger.exception("SLA escalation failed", extra={"issue_id": issue_id})
                result["failed"] += 1
    return result


def run_escalation_sweep(app=None, now: datetime | None = None) -> dict:
    """Escalate every overdue open issue once. Only one sweep runs at a time."""
    if not _sweep_lock.acquire(blocking=False):
        return {"checked": 0, "escalated": 0, "conflicts": 0, "failed": 0, "skipped": True}
    try:
        with app.app_context() if app is not None else nullcontext():
            result = _sweep(now or datetime.utcnow())
            current_app.logger.info("SLA sweep finished", extra=result)
    finally:
        _sweep_lock.release()
    return result
