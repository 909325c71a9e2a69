"""
Integration tests for status transitions, their history and audit trail.
"""
import random
from datetime import timedelta

import pytest

from extensions import db
from models import ISSUE_STATUSES, AuditLogEntry, IssueRoutingLog, IssueStatusHistory, User
from utils.errors import ConflictError, IllegalTransition, PersistenceError, ValidationError
from utils.issue_service import create_issue
from utils.state_machine import is_allowed, submit_feedback, transition, update_priority

PHOTO = "https://images.example.org/fixed-1.jpg"


@pytest.fixture
def issue(app_ctx, submission, classifier_returning, now):
    return create_issue(submission(), classifier=classifier_returning("garbage", 0.9), now=now)


@pytest.fixture
def officer(app_ctx, make_user):
    return db.session.get(User, make_user("officer", department_code="SANITATION"))


def _history_count(issue):
    return IssueStatusHistory.query.filter_by(issue_pk=issue.id).count()


def _audit_actions(issue):
    entries = (
        AuditLogEntry.query.filter_by(entity_id=issue.issue_id)
        .order_by(AuditLogEntry.id.asc())
        .all()
    )
    return [entry.action for entry in entries]


def test_full_lifecycle(issue, officer, now):
    transition(issue, "assigned", officer, now=now + timedelta(minutes=10))
    transition(issue, "in_progress", officer, notes="Crew dispatched", now=now + timedelta(hours=1))
    transition(issue, "resolved", officer, notes="Collected", resolution_images=[PHOTO], now=now + timedelta(hours=3))
    transition(issue, "closed", officer, now=now + timedelta(hours=4))

    assert issue.status == "closed"
    assert [entry.to_status for entry in issue.status_history] == [
        "submitted",
        "assigned",
        "in_progress",
        "resolved",
        "closed",
    ]
    assert [entry.from_status for entry in issue.status_history][1:] == ["submitted", "assigned", "in_progress", "resolved"]
    assert issue.status_history[-1].created_at == now + timedelta(hours=4)
    assert issue.in_progress_at == now + timedelta(hours=1)
    assert issue.resolved_at == now + timedelta(hours=3)
    assert issue.closed_at == now + timedelta(hours=4)
    assert issue.resolution_images == [PHOTO]
    assert issue.resolution_notes == "Collected"
    assert issue.resolved_by_user_id == officer.id
    assert _audit_actions(issue) == ["create"] + ["status_change"] * 4
    assert issue.version_id == 5


def test_status_change_audit_carries_before_and_after(issue, officer, now):
    transition(issue, "assigned", officer, notes="Taking this", now=now)

    entry = AuditLogEntry.query.filter_by(entity_id=issue.issue_id, action="status_change").one()
    assert entry.old_values["status"] == "submitted"
    assert entry.new_values["status"] == "assigned"
    assert entry.actor_user_id == officer.id
    assert entry.details == {"notes": "Taking this"}


def test_illegal_transition_writes_nothing(issue, officer):
    with pytest.raises(IllegalTransition) as excinfo:
        transition(issue, "resolved", officer, resolution_images=[PHOTO])

    assert excinfo.value.details["allowed"] == ["assigned", "rejected"]
    db.session.expire_all()
    assert issue.status == "submitted"
    assert _history_count(issue) == 1
    assert _audit_actions(issue) == ["create"]
    assert issue.version_id == 1


def test_random_targets_only_realize_legal_edges(app_ctx, submission, classifier_returning, officer, now):
    rng = random.Random(20240514)
    for walk in range(20):
        issue = create_issue(
            submission(citizen_email=f"walker-{walk}@example.org"),
            classifier=classifier_returning("garbage", 0.9),
            now=now,
        )
        attempts = 0
        while not issue.is_terminal or attempts < 40:
            attempts += 1
            target = rng.choice(ISSUE_STATUSES)
            source = issue.status
            history_before = _history_count(issue)
            version_before = issue.version_id

            if is_allowed(source, target):
                transition(issue, target, officer, resolution_images=[PHOTO])
                assert issue.status == target
                assert _history_count(issue) == history_before + 1
                assert issue.version_id == version_before + 1
            else:
                with pytest.raises(IllegalTransition):
                    transition(issue, target, officer, resolution_images=[PHOTO])
                db.session.expire_all()
                assert issue.status == source
                assert _history_count(issue) == history_before
                assert issue.version_id == version_before

        assert [entry.to_status for entry in issue.status_history][0] == "submitted"
        pairs = zip(issue.status_history, issue.status_history[1:])
        assert all(is_allowed(prev.to_status, entry.to_status) for prev, entry in pairs)


def test_unknown_status_is_a_validation_error(issue, officer):
    with pytest.raises(ValidationError):
        transition(issue, "archived", officer)


def test_resolving_requires_a_photo(issue, officer):
    transition(issue, "assigned", officer)
    transition(issue, "in_progress", officer)

    with pytest.raises(ValidationError):
        transition(issue, "resolved", officer, resolution_images=["  "])

    db.session.expire_all()
    assert issue.status == "in_progress"
    assert issue.resolved_at is None
    assert _history_count(issue) == 3


def test_terminal_status_has_no_exit(issue, officer):
    transition(issue, "rejected", officer, notes="Not a municipal asset")

    for target in ("submitted", "assigned", "in_progress", "resolved", "closed"):
        with pytest.raises(IllegalTransition):
            transition(issue, target, officer, resolution_images=[PHOTO])
    assert issue.rejected_at is not None


def test_stale_expected_version_is_a_conflict(issue, officer):
    with pytest.raises(ConflictError) as excinfo:
        transition(issue, "assigned", officer, expected_version=7)

    assert excinfo.value.to_dict()["retryable"] is True
    assert issue.status == "submitted"
    assert _history_count(issue) == 1


def test_matching_expected_version_is_accepted(issue, officer):
    transition(issue, "assigned", officer, expected_version=str(issue.version_id))
    assert issue.status == "assigned"


def test_history_rows_cannot_be_edited(issue):
    entry = issue.status_history[0]
    entry.notes = "rewritten"

    with pytest.raises(PersistenceError):
        db.session.commit()
    db.session.rollback()

    assert IssueStatusHistory.query.filter_by(issue_pk=issue.id).one().notes == "Issue submitted by citizen"


@pytest.mark.parametrize("model", [IssueStatusHistory, IssueRoutingLog, AuditLogEntry])
def test_append_only_rows_cannot_be_deleted(issue, model):
    db.session.delete(model.query.first())

    with pytest.raises(PersistenceError):
        db.session.commit()
    db.session.rollback()
    assert model.query.count() >= 1


def test_priority_update_is_audited(issue, officer):
    update_priority(issue, officer, priority="critical", severity_level="high", notes="School nearby")

    assert issue.priority == "critical"
    assert issue.severity_level == "high"
    entry = AuditLogEntry.query.filter_by(entity_id=issue.issue_id, action="priority_update").one()
    assert entry.old_values == {"priority": "high", "severity_level": "medium"}
    assert entry.new_values == {"priority": "critical", "severity_level": "high"}
    assert _history_count(issue) == 1


def test_unchanged_priority_writes_nothing(issue, officer):
    update_priority(issue, officer, priority="high")
    assert "priority_update" not in _audit_actions(issue)


def test_priority_rejected_on_terminal_issue(issue, officer):
    transition(issue, "rejected", officer)
    with pytest.raises(ValidationError):
        update_priority(issue, officer, priority="low")


def test_feedback_after_resolution(issue, officer, now):
    transition(issue, "assigned", officer)
    transition(issue, "in_progress", officer)
    transition(issue, "resolved", officer, resolution_images=[PHOTO])

    submit_feedback(issue, "5", "  Quick work  ", now=now)

    assert issue.citizen_rating == 5
    assert issue.citizen_feedback == "Quick work"
    assert "citizen_feedback" in _audit_actions(issue)


@pytest.mark.parametrize("rating", [0, 6, "great", None])
def test_feedback_rating_must_be_one_to_five(issue, officer, rating):
    transition(issue, "assigned", officer)
    transition(issue, "in_progress", officer)
    transition(issue, "resolved", officer, resolution_images=[PHOTO])

    with pytest.raises(ValidationError):
        submit_feedback(issue, rating)


def test_feedback_before_resolution_is_refused(issue):
    with pytest.raises(ValidationError):
        submit_feedback(issue, 4)
