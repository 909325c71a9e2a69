"""
Integration tests for proximity and recency based duplicate detection.
"""
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from utils import duplicate_detector
from utils.duplicate_detector import detect_duplicate
from utils.issue_service import create_issue
from utils.state_machine import transition

# Roughly 200 m north of the central fixture location.
NORTH_200M = {"lat": 40.7568, "lng": -74.0100}


def _report(submission, classifier_returning, category, at, **overrides):
    payload = submission(category=category, **overrides)
    return create_issue(payload, classifier=classifier_returning(category, 0.9), now=at)


def test_same_spot_within_window_is_duplicate(app_ctx, submission, classifier_returning, now):
    first = _report(submission, classifier_returning, "pothole", now)
    second = _report(submission, classifier_returning, "pothole", now + timedelta(hours=1))

    assert first.is_duplicate is False
    assert second.is_duplicate is True
    assert second.duplicate_of_issue_id == first.id


def test_different_category_is_not_duplicate(app_ctx, submission, classifier_returning, now):
    _report(submission, classifier_returning, "pothole", now)
    second = _report(submission, classifier_returning, "garbage", now + timedelta(hours=1))

    assert second.is_duplicate is False
    assert second.duplicate_of_issue_id is None


def test_outside_radius_is_not_duplicate(app_ctx, submission, classifier_returning, now):
    _report(submission, classifier_returning, "pothole", now)
    second = _report(
        submission,
        classifier_returning,
        "pothole",
        now + timedelta(hours=1),
        location={**NORTH_200M, "address": "Further up Main Street"},
    )

    assert second.is_duplicate is False


def test_outside_window_is_not_duplicate(app_ctx, submission, classifier_returning, now):
    _report(submission, classifier_returning, "pothole", now)
    second = _report(submission, classifier_returning, "pothole", now + timedelta(hours=25))

    assert second.is_duplicate is False


def test_most_recent_candidate_is_canonical(app_ctx, submission, classifier_returning, now):
    _report(submission, classifier_returning, "pothole", now)
    newer = _report(submission, classifier_returning, "pothole", now + timedelta(hours=2))
    latest = _report(submission, classifier_returning, "pothole", now + timedelta(hours=3))

    assert latest.duplicate_of_issue_id == newer.id


def test_terminal_issues_are_not_candidates(app_ctx, submission, classifier_returning, now):
    first = _report(submission, classifier_returning, "pothole", now)
    transition(first, "rejected", None, notes="Private property", now=now + timedelta(minutes=5))

    second = _report(submission, classifier_returning, "pothole", now + timedelta(hours=1))

    assert second.is_duplicate is False


def test_reclassified_issue_matches_on_verified_category(app_ctx, submission, classifier_returning, now):
    first = create_issue(submission(category="other"), classifier=classifier_returning("garbage", 0.9), now=now)
    second = _report(submission, classifier_returning, "garbage", now + timedelta(minutes=30))

    assert first.verified_category == "garbage"
    assert second.duplicate_of_issue_id == first.id


def test_reports_either_side_of_the_antimeridian_match(app_ctx, submission, classifier_returning, now):
    first = _report(submission, classifier_returning, "garbage", now, location={"lat": 0.0, "lng": 179.9999})
    second = _report(
        submission,
        classifier_returning,
        "garbage",
        now + timedelta(hours=1),
        location={"lat": 0.0, "lng": -179.9999},
    )

    assert second.is_duplicate is True
    assert second.duplicate_of_issue_id == first.id


def test_store_failure_degrades_to_not_duplicate(app_ctx, monkeypatch, now):
    def failing_query(*args, **kwargs):
        raise OperationalError("SELECT ...", {}, Exception("database is locked"))

    monkeypatch.setattr(duplicate_detector, "find_duplicate_candidates", failing_query)

    result = detect_duplicate("pothole", 40.755, -74.01, now, window=timedelta(hours=24), radius_m=50)

    assert result.is_duplicate is False
    assert result.duplicate_of_id is None
    assert "database is locked" in result.error
