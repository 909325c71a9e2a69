"""Canonical issue status transitions with history and audit written atomically."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from flask import current_app

from extensions import db
from models import ISSUE_STATUSES, PRIORITY_LEVELS, Issue, User
from utils.audit import record_audit, snapshot
from utils.errors import IllegalTransition, ValidationError
from utils.persistence import check_expected_version, commit_issue_change

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "submitted": frozenset({"assigned", "rejected"}),
    "assigned": frozenset({"in_progress", "rejected"}),
    "in_progress": frozenset({"resolved", "rejected"}),
    "resolved": frozenset({"closed"}),
    "closed": frozenset(),
    "rejected": frozenset(),
}

# Timestamp column stamped when an issue enters the status.
STATUS_TIMESTAMPS = {
    "in_progress": "in_progress_at",
    "resolved": "resolved_at",
    "closed": "closed_at",
    "rejected": "rejected_at",
}

TRANSITION_AUDIT_FIELDS = ("status", "resolved_at", "resolved_by_user_id", "resolution_notes", "resolution_images")
PRIORITY_AUDIT_FIELDS = ("priority", "severity_level")
FEEDBACK_AUDIT_FIELDS = ("citizen_rating", "citizen_feedback", "feedback_at")


def allowed_transitions(status: str) -> list[str]:
    return sorted(ALLOWED_TRANSITIONS.get(status, frozenset()))


def is_allowed(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def _clean_images(images: Iterable[str] | None) -> list[str]:
    if not images:
        return []
    if isinstance(images, str):
        images = [images]
    return [str(url).strip() for url in images if url and str(url).strip()]


def transition(
    issue: Issue,
    to_status: str,
    actor: User | None,
    notes: str | None = None,
    resolution_images: Iterable[str] | None = None,
    *,
    expected_version=None,
    session=None,
    now: datetime | None = None,
) -> Issue:
    """Move an issue along one legal edge.

    Validation happens before any attribute is touched, so a rejected request
    leaves nothing to roll back. The status change, its history entry and the
    audit entry are committed together; a concurrent writer that committed
    first turns this call into a ConflictError.
    """
    session = session or db.session
    now = now or datetime.utcnow()

    if to_status not in ISSUE_STATUSES:
        raise ValidationError(f"Unknown status {to_status!r}", field="status")
    if not is_allowed(issue.status, to_status):
        raise IllegalTransition(
            f"Cannot move issue from {issue.status} to {to_status}",
            issue_id=issue.issue_id,
            from_status=issue.status,
            to_status=to_status,
            allowed=allowed_transitions(issue.status),
        )
    images = _clean_images(resolution_images)
    if to_status == "resolved" and not images:
        raise ValidationError("At least one resolution image is required to resolve an issue", field="resolution_images")
    check_expected_version(issue, expected_version)

    actor_id = actor.id if actor else None
    before = snapshot(issue, TRANSITION_AUDIT_FIELDS)
    from_status = issue.status

    if to_status == "resolved":
        issue.resolution_images = list(issue.resolution_images or []) + images
        issue.resolved_by_user_id = actor_id
        if notes:
            issue.resolution_notes = notes
    stamp_field = STATUS_TIMESTAMPS.get(to_status)
    if stamp_field:
        setattr(issue, stamp_field, now)
    if to_status == "assigned" and issue.assigned_at is None:
        issue.assigned_at = now

    issue.record_status(to_status, actor_id=actor_id, notes=notes, at=now)
    record_audit(
        "issue",
        issue.issue_id,
        "status_change",
        old_values=before,
        new_values=snapshot(issue, TRANSITION_AUDIT_FIELDS),
        actor=actor,
        details={"notes": notes},
        session=session,
    )
    commit_issue_change(issue, "transition", session=session)
    current_app.logger.info(
        "issue_status_changed",
        extra={"issue_id": issue.issue_id, "from": from_status, "to": to_status, "actor": actor_id},
    )
    return issue


def update_priority(
    issue: Issue,
    actor: User | None,
    priority: str | None = None,
    severity_level: str | None = None,
    notes: str | None = None,
    *,
    expected_version=None,
    session=None,
) -> Issue:
    """Side-channel priority/severity edit, audited as priority_update."""
    session = session or db.session
    if priority is None and severity_level is None:
        raise ValidationError("Provide priority or severity_level", field="priority")
    for field_name, value in (("priority", priority), ("severity_level", severity_level)):
        if value is not None and value not in PRIORITY_LEVELS:
            raise ValidationError(f"{field_name} must be one of {', '.join(PRIORITY_LEVELS)}", field=field_name)
    if issue.is_terminal:
        raise ValidationError(f"Cannot change priority of a {issue.status} issue", field="status")
    check_expected_version(issue, expected_version)

    before = snapshot(issue, PRIORITY_AUDIT_FIELDS)
    if priority is not None:
        issue.priority = priority
    if severity_level is not None:
        issue.severity_level = severity_level
    after = snapshot(issue, PRIORITY_AUDIT_FIELDS)
    if before == after:
        return issue

    record_audit(
        "issue",
        issue.issue_id,
        "priority_update",
        old_values=before,
        new_values=after,
        actor=actor,
        details={"notes": notes},
        session=session,
    )
    commit_issue_change(issue, "priority_update", session=session)
    current_app.logger.info("issue_priority_updated", extra={"issue_id": issue.issue_id, **after})
    return issue


def submit_feedback(issue: Issue, rating, feedback: str | None = None, *, session=None, now: datetime | None = None) -> Issue:
    session = session or db.session
    if issue.status not in ("resolved", "closed"):
        raise ValidationError("Feedback is accepted only for resolved or closed issues", field="status")
    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise ValidationError("rating must be an integer between 1 and 5", field="rating")
    if not 1 <= rating <= 5:
        raise ValidationError("rating must be an integer between 1 and 5", field="rating")

    before = snapshot(issue, FEEDBACK_AUDIT_FIELDS)
    issue.citizen_rating = rating
    issue.citizen_feedback = (feedback or "").strip() or None
    issue.feedback_at = now or datetime.utcnow()
    record_audit(
        "issue",
        issue.issue_id,
        "citizen_feedback",
        old_values=before,
        new_values=snapshot(issue, FEEDBACK_AUDIT_FIELDS),
        session=session,
    )
    commit_issue_change(issue, "citizen_feedback", session=session)
    return issue
