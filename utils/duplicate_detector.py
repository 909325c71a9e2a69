"""Best-effort detection of earlier open reports describing the same problem."""
from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import TERMINAL_STATUSES, Issue
from utils.errors import DuplicateDetectionFailure
from utils.geo import bounding_box, haversine_distance_m, in_bounding_box


@dataclass
class DuplicateCandidate:
    issue: Issue
    distance_m: float


@dataclass
class DuplicateResult:
    is_duplicate: bool
    duplicate_of_id: str | None = None
    candidates: list[DuplicateCandidate] = field(default_factory=list)
    error: str | None = None


def _is_postgres(session) -> bool:
    return session.get_bind().dialect.name == "postgresql"


def find_duplicate_candidates(
    category: str,
    lat: float,
    lng: float,
    created_at: datetime,
    *,
    window: timedelta,
    radius_m: float,
    session=None,
) -> list[DuplicateCandidate]:
    """Open issues of the same effective category within radius and window, newest first."""
    session = session or db.session
    since = created_at - window
    effective_category = func.coalesce(Issue.verified_category, Issue.category)

    rows = (
        session.query(Issue)
        .filter(
            effective_category == category,
            Issue.status.notin_(TERMINAL_STATUSES),
            Issue.created_at >= since,
            Issue.created_at < created_at,
        )
        .order_by(Issue.created_at.desc(), Issue.id.desc())
        .all()
    )

    box = bounding_box(lat, lng, radius_m)
    candidates: list[DuplicateCandidate] = []
    for issue in rows:
        location = issue.location or {}
        try:
            other_lat = float(location["lat"])
            other_lng = float(location["lng"])
        except (KeyError, TypeError, ValueError):
            continue
        if not in_bounding_box(box, other_lat, other_lng):
            continue
        distance = haversine_distance_m(lat, lng, other_lat, other_lng)
        if distance <= radius_m:
            candidates.append(DuplicateCandidate(issue=issue, distance_m=distance))
    return candidates


def detect_duplicate(
    category: str,
    lat: float,
    lng: float,
    created_at: datetime,
    *,
    window: timedelta,
    radius_m: float,
    session=None,
) -> DuplicateResult:
    """Never raises: store failures degrade to a non-duplicate result."""
    session = session or db.session
    try:
        postgres = _is_postgres(session)
        with session.begin_nested() if postgres else nullcontext():
            if postgres:
                timeout_ms = int(current_app.config.get("DUPLICATE_QUERY_TIMEOUT_MS", 2000))
                session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
            candidates = find_duplicate_candidates(
                category,
                lat,
                lng,
                created_at,
                window=window,
                radius_m=radius_m,
                session=session,
            )
            if postgres:
                session.execute(text("SET LOCAL statement_timeout TO DEFAULT"))
    except (SQLAlchemyError, DuplicateDetectionFailure) as exc:
        failure = exc if isinstance(exc, DuplicateDetectionFailure) else DuplicateDetectionFailure(str(exc))
        current_app.logger.warning(
            "duplicate_detection_failed",
            extra={"category": category, "error": failure.message},
        )
        return DuplicateResult(is_duplicate=False, error=failure.message)

    if not candidates:
        return DuplicateResult(is_duplicate=False)

    canonical = candidates[0].issue
    current_app.logger.info(
        "duplicate_detected",
        extra={"category": category, "duplicate_of": canonical.issue_id, "candidates": len(candidates)},
    )
    return DuplicateResult(is_duplicate=True, duplicate_of_id=canonical.id, candidates=candidates)
