"""
Integration tests for per-department workload and SLA figures.
"""
from datetime import timedelta

import pytest

from extensions import db
from models import Department, User
from utils.errors import ValidationError
from utils.issue_service import create_issue, department_performance, system_department_performance
from utils.state_machine import transition

PHOTO = "https://images.example.org/fixed-1.jpg"


@pytest.fixture
def report(app_ctx, submission, classifier_returning):
    def _report(category, at, email="asha@example.org"):
        return create_issue(
            submission(category=category, citizen_email=email),
            classifier=classifier_returning(category, 0.9),
            now=at,
        )

    return _report


@pytest.fixture
def officer(app_ctx, make_user):
    return db.session.get(User, make_user("officer", department_code="SANITATION"))


def test_sanitation_figures(report, officer, now):
    resolved = report("garbage", now)
    transition(resolved, "assigned", officer, now=now + timedelta(hours=1))
    transition(resolved, "in_progress", officer, now=now + timedelta(hours=2))
    transition(resolved, "resolved", officer, resolution_images=[PHOTO], now=now + timedelta(hours=6))
    rejected = report("garbage", now, email="lee@example.org")
    transition(rejected, "rejected", officer, now=now + timedelta(hours=1))
    report("garbage", now, email="sam@example.org")
    report("garbage", now - timedelta(days=40), email="old@example.org")
    report("pothole", now)

    sanitation = Department.query.filter_by(code="SANITATION").one()
    figures = department_performance(sanitation, days=30, now=now + timedelta(days=2))

    assert figures["total_issues"] == 3
    assert figures["by_status"] == {"resolved": 1, "rejected": 1, "submitted": 1}
    assert figures["open_count"] == 1
    assert figures["resolved_count"] == 1
    assert figures["rejected_count"] == 1
    assert figures["resolution_rate"] == 33.3
    assert figures["currently_breached"] == 2
    assert figures["resolved_on_time"] == 1
    assert figures["resolved_late"] == 0
    assert figures["compliance_rate"] == 100.0
    assert figures["average_resolution_hours"] == 6.0


def test_empty_department(app_ctx, now):
    parks = Department.query.filter_by(code="PARKS").one()

    figures = department_performance(parks, now=now)

    assert figures["window_days"] == 30
    assert figures["total_issues"] == 0
    assert figures["resolution_rate"] is None
    assert figures["average_resolution_hours"] is None


def test_window_must_be_positive(app_ctx, now):
    parks = Department.query.filter_by(code="PARKS").one()
    with pytest.raises(ValidationError):
        department_performance(parks, days=-3, now=now)


def test_system_overview_skips_inactive_departments(app_ctx, now):
    parks = Department.query.filter_by(code="PARKS").one()
    parks.is_active = False
    db.session.commit()

    codes = [item["code"] for item in system_department_performance(now=now)]

    assert "PARKS" not in codes
    assert len(codes) == 6
