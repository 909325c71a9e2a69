"""Issue submission pipeline and read-side queries exposed to the API layer."""
from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from flask import current_app
from sqlalchemy import false, func, not_, or_

from extensions import db
from models import (
    ISSUE_CATEGORIES,
    ISSUE_STATUSES,
    OPEN_STATUSES,
    PRIORITY_LEVELS,
    WARD_AREAS,
    Department,
    Issue,
)
from utils.ai_vision import classify_issue_images
from utils.audit import record_audit, snapshot
from utils.classification_policy import ClassificationDecision, apply_classification, decide_classification
from utils.duplicate_detector import detect_duplicate
from utils.errors import ClassifierUnavailable, IssueNotFound, ValidationError
from utils.geo import validate_coordinates
from utils.persistence import commit_issue_change
from utils.routing_engine import determine_ward, route_issue
from utils.sla_monitor import breached_clause

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_IMAGES = 10

CREATE_AUDIT_FIELDS = (
    "issue_id",
    "category",
    "verified_category",
    "confidence_score",
    "needs_review",
    "was_reclassified",
    "ai_processing_status",
    "location",
    "ward_area",
    "status",
    "priority",
    "assigned_department_id",
    "assigned_user_id",
    "sla_deadline",
    "is_duplicate",
    "duplicate_of_issue_id",
)

Classifier = Callable[[list, str], Mapping[str, Any]]


def generate_issue_id(now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    return f"ISSUE-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def _clean_text(value: Any, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if max_length is not None:
        text = text[:max_length]
    return text or None


def validate_submission(payload: Mapping[str, Any]) -> dict:
    """Return a cleaned submission or raise ValidationError before anything is persisted."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")

    category = str(payload.get("category") or "").strip().lower()
    if not category:
        raise ValidationError("category is required", field="category")
    if category not in ISSUE_CATEGORIES:
        raise ValidationError(f"category must be one of {', '.join(ISSUE_CATEGORIES)}", field="category")

    location = payload.get("location")
    if not isinstance(location, Mapping):
        raise ValidationError("location with lat and lng is required", field="location")
    lat, lng = validate_coordinates(location.get("lat"), location.get("lng"))
    clean_location = {"lat": lat, "lng": lng, "address": _clean_text(location.get("address"), 500)}
    if location.get("ward"):
        clean_location["ward"] = _clean_text(location.get("ward"), 20)

    images = payload.get("images") or []
    if isinstance(images, str):
        images = [images]
    if not isinstance(images, list):
        raise ValidationError("images must be a list of URLs", field="images")
    images = [str(url).strip() for url in images if url and str(url).strip()]
    if not images:
        raise ValidationError("At least one image is required", field="images")
    if len(images) > MAX_IMAGES:
        raise ValidationError(f"At most {MAX_IMAGES} images are allowed", field="images")

    citizen_name = _clean_text(payload.get("citizen_name"), 255)
    if not citizen_name:
        raise ValidationError("citizen_name is required", field="citizen_name")
    citizen_email = _clean_text(payload.get("citizen_email"), 255)
    if not citizen_email or not EMAIL_PATTERN.match(citizen_email):
        raise ValidationError("A valid citizen_email is required", field="citizen_email")

    return {
        "category": category,
        "location": clean_location,
        "images": images,
        "citizen_name": citizen_name,
        "citizen_email": citizen_email.lower(),
        "citizen_phone": _clean_text(payload.get("citizen_phone"), 32),
        "title": _clean_text(payload.get("title"), 255),
        "description": _clean_text(payload.get("description"), 5000),
    }


def _classify(data: dict, classifier: Classifier | None, now: datetime) -> ClassificationDecision:
    threshold = float(current_app.config.get("CLASSIFICATION_CONFIDENCE_THRESHOLD", 0.6))
    category = data["category"]
    if classifier is None:
        if not current_app.config.get("CLASSIFIER_ENABLED", True):
            return decide_classification(category, None, error="Classifier disabled", now=now, threshold=threshold)
        classifier = classify_issue_images

    try:
        output = classifier(data["images"], category)
    except ClassifierUnavailable as exc:
        current_app.logger.warning("classifier_unavailable", extra={"category": category, "error": exc.message})
        return decide_classification(category, None, error=exc.message, now=now, threshold=threshold)
    except Exception as exc:
        current_app.logger.exception("classifier_failed", extra={"category": category})
        return decide_classification(category, None, error=str(exc) or type(exc).__name__, now=now, threshold=threshold)
    return decide_classification(category, output, now=now, threshold=threshold)


def create_issue(payload: Mapping[str, Any], classifier: Classifier | None = None, now: datetime | None = None) -> Issue:
    """Validate, classify, de-duplicate, route and persist a new issue atomically."""
    data = validate_submission(payload)
    now = now or datetime.utcnow()

    issue = Issue(
        issue_id=generate_issue_id(now),
        citizen_name=data["citizen_name"],
        citizen_email=data["citizen_email"],
        citizen_phone=data["citizen_phone"],
        title=data["title"],
        description=data["description"],
        images=data["images"],
        category=data["category"],
        location=data["location"],
        resolution_images=[],
        created_at=now,
        updated_at=now,
    )

    apply_classification(issue, _classify(data, classifier, now))

    duplicate = detect_duplicate(
        issue.effective_category,
        data["location"]["lat"],
        data["location"]["lng"],
        now,
        window=timedelta(hours=float(current_app.config.get("DUPLICATE_WINDOW_HOURS", 24))),
        radius_m=float(current_app.config.get("DUPLICATE_RADIUS_METERS", 50)),
    )
    issue.is_duplicate = duplicate.is_duplicate
    issue.duplicate_of_issue_id = duplicate.duplicate_of_id

    issue.ward_area = determine_ward(data["location"])
    route_issue(issue, now=now)
    issue.record_status("submitted", notes="Issue submitted by citizen", at=now)

    db.session.add(issue)
    record_audit(
        "issue",
        issue.issue_id,
        "create",
        new_values=snapshot(issue, CREATE_AUDIT_FIELDS),
        details={"duplicate_error": duplicate.error} if duplicate.error else None,
    )
    commit_issue_change(issue, "create")
    current_app.logger.info(
        "issue_created",
        extra={
            "issue_id": issue.issue_id,
            "verified_category": issue.verified_category,
            "needs_review": issue.needs_review,
            "is_duplicate": issue.is_duplicate,
            "department_id": issue.assigned_department_id,
        },
    )
    return issue


def _scope_criteria(user) -> list:
    """Authorities see their own department; admins and anonymous aggregate reads see everything."""
    if user is None or not getattr(user, "is_authenticated", False):
        return []
    if user.role == "authority":
        if not user.department_id:
            return [false()]
        return [Issue.assigned_department_id == user.department_id]
    return []


def get_issue(issue_id: str, user=None) -> Issue:
    issue = Issue.query.filter(or_(Issue.issue_id == issue_id, Issue.id == issue_id)).first()
    if issue is None:
        raise IssueNotFound(f"Issue {issue_id} not found", issue_id=issue_id)
    if user is not None and getattr(user, "is_authenticated", False) and user.role == "authority":
        if issue.assigned_department_id != user.department_id:
            raise IssueNotFound(f"Issue {issue_id} not found", issue_id=issue_id)
    return issue


def _as_bool(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise ValidationError(f"Invalid boolean value {value!r}")


def _as_list(value: Any, allowed: tuple[str, ...], field: str) -> list[str]:
    if not value:
        return []
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    cleaned = [str(item).strip() for item in items if str(item).strip()]
    invalid = [item for item in cleaned if item not in allowed]
    if invalid:
        raise ValidationError(f"Invalid {field}: {', '.join(invalid)}", field=field)
    return cleaned


def parse_timestamp(value: Any, field: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp", field=field)


def list_issues(filters: Mapping[str, Any], user=None, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    query = Issue.query.filter(*_scope_criteria(user))

    statuses = _as_list(filters.get("status"), ISSUE_STATUSES, "status")
    if statuses:
        query = query.filter(Issue.status.in_(statuses))
    categories = _as_list(filters.get("category"), ISSUE_CATEGORIES, "category")
    if categories:
        query = query.filter(func.coalesce(Issue.verified_category, Issue.category).in_(categories))
    priorities = _as_list(filters.get("priority"), PRIORITY_LEVELS, "priority")
    if priorities:
        query = query.filter(Issue.priority.in_(priorities))
    wards = _as_list(filters.get("ward_area"), WARD_AREAS, "ward_area")
    if wards:
        query = query.filter(Issue.ward_area.in_(wards))
    if filters.get("department_id"):
        query = query.filter(Issue.assigned_department_id == filters["department_id"])
    if filters.get("assigned_user_id"):
        query = query.filter(Issue.assigned_user_id == filters["assigned_user_id"])

    for flag in ("needs_review", "is_duplicate", "auto_escalated"):
        value = _as_bool(filters.get(flag))
        if value is not None:
            query = query.filter(getattr(Issue, flag).is_(value))

    breached = _as_bool(filters.get("breached"))
    if breached is True:
        query = query.filter(breached_clause(now))
    elif breached is False:
        query = query.filter(not_(breached_clause(now)))

    created_from = parse_timestamp(filters.get("created_from"), "created_from")
    if created_from:
        query = query.filter(Issue.created_at >= created_from)
    created_to = parse_timestamp(filters.get("created_to"), "created_to")
    if created_to:
        query = query.filter(Issue.created_at <= created_to)

    search = _clean_text(filters.get("q"), 100)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(Issue.issue_id.ilike(pattern), Issue.title.ilike(pattern), Issue.description.ilike(pattern))
        )

    sort = filters.get("sort") or "-created_at"
    sort_columns = {
        "created_at": Issue.created_at,
        "sla_deadline": Issue.sla_deadline,
        "priority": Issue.priority,
        "updated_at": Issue.updated_at,
    }
    column = sort_columns.get(sort.lstrip("-"))
    if column is None:
        raise ValidationError(f"Unsupported sort {sort!r}", field="sort")
    query = query.order_by(column.desc() if sort.startswith("-") else column.asc(), Issue.id.asc())

    try:
        page = max(int(filters.get("page") or 1), 1)
        per_page = int(filters.get("per_page") or current_app.config.get("PAGE_SIZE", 20))
    except (TypeError, ValueError):
        raise ValidationError("page and per_page must be integers")
    per_page = max(1, min(per_page, int(current_app.config.get("MAX_PAGE_SIZE", 100))))

    pagination = query.paginate(page=page, per_page=per_page, error_out=False)
    return {
        "items": pagination.items,
        "total": pagination.total,
        "page": page,
        "per_page": per_page,
        "pages": pagination.pages,
    }


def list_success_stories(limit: int | None = None) -> list[Issue]:
    """Resolved issues that carry both a citizen photo and a resolution photo."""
    limit = limit or int(current_app.config.get("SUCCESS_STORIES_LIMIT", 20))
    stories: list[Issue] = []
    query = (
        Issue.query.filter(Issue.status.in_(("resolved", "closed")), Issue.resolved_at.isnot(None))
        .order_by(Issue.resolved_at.desc())
    )
    for issue in query.yield_per(100):
        if issue.images and issue.resolution_images:
            stories.append(issue)
            if len(stories) >= limit:
                break
    return stories


def _resolution_summary(rows) -> dict:
    """On-time/late counts and mean resolution time over (created_at, resolved_at, sla_deadline) rows."""
    on_time = 0
    late = 0
    resolution_hours: list[float] = []
    for created_at, resolved_at, deadline in rows:
        resolution_hours.append((resolved_at - created_at).total_seconds() / 3600)
        if deadline is None:
            continue
        if resolved_at <= deadline:
            on_time += 1
        else:
            late += 1
    measured = on_time + late
    return {
        "resolved_on_time": on_time,
        "resolved_late": late,
        "compliance_rate": round(on_time * 100.0 / measured, 1) if measured else None,
        "average_resolution_hours": round(sum(resolution_hours) / len(resolution_hours), 2) if resolution_hours else None,
    }


def issue_statistics(user=None, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    criteria = _scope_criteria(user)

    def _grouped(column) -> dict:
        rows = db.session.query(column, func.count(Issue.id)).filter(*criteria).group_by(column).all()
        return {key: count for key, count in rows if key is not None}

    by_status = _grouped(Issue.status)
    by_category = _grouped(func.coalesce(Issue.verified_category, Issue.category))
    by_priority = _grouped(Issue.priority)
    by_ward = _grouped(Issue.ward_area)

    resolution = _resolution_summary(
        db.session.query(Issue.created_at, Issue.resolved_at, Issue.sla_deadline)
        .filter(*criteria, Issue.resolved_at.isnot(None))
        .all()
    )
    currently_breached = db.session.query(func.count(Issue.id)).filter(*criteria, breached_clause(now)).scalar()
    escalated = db.session.query(func.count(Issue.id)).filter(*criteria, Issue.auto_escalated.is_(True)).scalar()

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_category": by_category,
        "by_priority": by_priority,
        "by_ward": by_ward,
        "sla": {
            "resolved_on_time": resolution["resolved_on_time"],
            "resolved_late": resolution["resolved_late"],
            "compliance_rate": resolution["compliance_rate"],
            "currently_breached": currently_breached or 0,
            "escalated": escalated or 0,
        },
        "average_resolution_hours": resolution["average_resolution_hours"],
        "generated_at": now.isoformat(),
    }


def department_performance(department: Department, days: int | None = None, now: datetime | None = None) -> dict:
    """Workload and SLA figures for issues routed to one department within a trailing window."""
    now = now or datetime.utcnow()
    days = days or int(current_app.config.get("PERFORMANCE_WINDOW_DAYS", 30))
    if days < 1:
        raise ValidationError("days must be a positive integer", field="days")
    since = now - timedelta(days=days)
    criteria = (Issue.assigned_department_id == department.id, Issue.created_at >= since)

    def _grouped(column) -> dict:
        rows = db.session.query(column, func.count(Issue.id)).filter(*criteria).group_by(column).all()
        return {key: count for key, count in rows if key is not None}

    def _count(*extra) -> int:
        return db.session.query(func.count(Issue.id)).filter(*criteria, *extra).scalar() or 0

    by_status = _grouped(Issue.status)
    total = sum(by_status.values())
    resolved_count = by_status.get("resolved", 0) + by_status.get("closed", 0)
    resolution = _resolution_summary(
        db.session.query(Issue.created_at, Issue.resolved_at, Issue.sla_deadline)
        .filter(*criteria, Issue.resolved_at.isnot(None))
        .all()
    )

    return {
        "department_id": department.id,
        "code": department.code,
        "name": department.name,
        "window_days": days,
        "total_issues": total,
        "by_status": by_status,
        "by_priority": _grouped(Issue.priority),
        "open_count": sum(by_status.get(status, 0) for status in OPEN_STATUSES),
        "resolved_count": resolved_count,
        "rejected_count": by_status.get("rejected", 0),
        "resolution_rate": round(resolved_count * 100.0 / total, 1) if total else None,
        "currently_breached": _count(breached_clause(now)),
        "escalated": _count(Issue.auto_escalated.is_(True)),
        **resolution,
        "generated_at": now.isoformat(),
    }


def system_department_performance(days: int | None = None, now: datetime | None = None) -> list[dict]:
    """department_performance for every active department, ordered by name."""
    now = now or datetime.utcnow()
    departments = Department.query.filter(Department.is_active.is_(True)).order_by(Department.name.asc()).all()
    return [department_performance(department, days=days, now=now) for department in departments]
