"""Transactional helpers shared by every issue mutation."""
from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from models import Issue
from utils.errors import ConflictError, PersistenceError, ValidationError


def check_expected_version(issue: Issue, expected_version) -> None:
    """Reject writes based on a stale read before anything is mutated."""
    if expected_version is None or expected_version == "":
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("version must be an integer", field="version")
    if expected != issue.version_id:
        raise ConflictError(
            "Issue has changed since it was read; re-fetch and retry",
            issue_id=issue.issue_id,
            expected_version=expected,
            current_version=issue.version_id,
        )


def commit_issue_change(issue: Issue, operation: str, session=None) -> None:
    """Commit the staged change, its history rows and audit entries as one unit."""
    session = session or db.session
    issue_id = issue.issue_id
    try:
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        current_app.logger.warning("issue_write_conflict", extra={"issue_id": issue_id, "operation": operation})
        raise ConflictError(
            "Issue was modified concurrently; re-fetch and retry",
            issue_id=issue_id,
            operation=operation,
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        current_app.logger.exception("issue_write_failed", extra={"issue_id": issue_id, "operation": operation})
        raise PersistenceError("Unable to persist issue change", issue_id=issue_id, operation=operation) from exc
    except PersistenceError:
        session.rollback()
        raise
