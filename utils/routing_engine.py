"""Rule-table routing of issues to departments, authorities, and SLA deadlines."""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping

from flask import current_app

from extensions import db
from models import ISSUE_CATEGORIES, PRIORITY_LEVELS, WARD_AREAS, Department, Issue, User
from utils.audit import record_audit, snapshot
from utils.errors import IllegalTransition, RoutingRuleMissing, ValidationError
from utils.persistence import check_expected_version, commit_issue_change

REROUTE_AUDIT_FIELDS = (
    "assigned_department_id",
    "assigned_user_id",
    "assigned_at",
    "sla_deadline",
)


@dataclass(frozen=True)
class RoutingRule:
    rule_id: str
    category: str
    department_code: str
    priority: str
    sla_hours: int
    ward: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping, position: int) -> "RoutingRule":
        category = str(data.get("category") or "").strip().lower()
        priority = str(data.get("priority") or "medium").strip().lower()
        ward = data.get("ward") or None
        if category not in ISSUE_CATEGORIES:
            raise ValueError(f"Routing rule #{position} has unknown category {category!r}")
        if priority not in PRIORITY_LEVELS:
            raise ValueError(f"Routing rule #{position} has unknown priority {priority!r}")
        if ward is not None and ward not in WARD_AREAS:
            raise ValueError(f"Routing rule #{position} has unknown ward {ward!r}")
        sla_hours = int(data.get("sla_hours") or 0)
        if sla_hours <= 0:
            raise ValueError(f"Routing rule #{position} needs positive sla_hours")
        department_code = str(data.get("department_code") or "").strip().upper()
        if not department_code:
            raise ValueError(f"Routing rule #{position} needs a department_code")
        rule_id = data.get("rule_id") or f"{category}-{ward or 'any'}-{position}"
        return cls(
            rule_id=str(rule_id),
            category=category,
            department_code=department_code,
            priority=priority,
            sla_hours=sla_hours,
            ward=ward,
        )


@dataclass
class RoutingDecision:
    rule_id: str
    department_code: str
    priority: str
    sla_hours: int
    fallback: bool = False


def load_routing_rules(config: Mapping) -> list[RoutingRule]:
    """Build the ordered rule table from config, or from ROUTING_RULES_PATH when set."""
    raw_rules = config.get("ROUTING_RULES") or []
    path = config.get("ROUTING_RULES_PATH")
    if path:
        with open(path, encoding="utf-8") as fh:
            loaded = json.load(fh)
        raw_rules = loaded.get("rules", []) if isinstance(loaded, dict) else loaded
    return [RoutingRule.from_dict(item, position) for position, item in enumerate(raw_rules, start=1)]


def init_routing(app) -> None:
    rules = load_routing_rules(app.config)
    app.extensions["routing_rules"] = rules
    app.logger.info("Routing rules loaded", extra={"rules": len(rules)})


def get_routing_rules() -> list[RoutingRule]:
    rules = current_app.extensions.get("routing_rules")
    if rules is None:
        rules = load_routing_rules(current_app.config)
        current_app.extensions["routing_rules"] = rules
    return rules


def match_rule(rules: Iterable[RoutingRule], category: str, ward: str | None) -> RoutingRule:
    """Ward-specific rules beat category-only rules; first match wins within each pass."""
    rules = list(rules)
    if ward:
        for rule in rules:
            if rule.ward == ward and rule.category == category:
                return rule
    for rule in rules:
        if rule.ward is None and rule.category == category:
            return rule
    raise RoutingRuleMissing(f"No routing rule for category {category!r} in ward {ward!r}", category=category, ward=ward)


def _fallback_decision() -> RoutingDecision:
    default = current_app.config.get("DEFAULT_ROUTING") or {}
    return RoutingDecision(
        rule_id=default.get("rule_id", "fallback"),
        department_code=str(default.get("department_code", "PLANNING")).upper(),
        priority=default.get("priority", "low"),
        sla_hours=int(default.get("sla_hours", 168)),
        fallback=True,
    )


def decide_route(category: str, ward: str | None, rules: Iterable[RoutingRule] | None = None) -> RoutingDecision:
    try:
        rule = match_rule(rules if rules is not None else get_routing_rules(), category, ward)
    except RoutingRuleMissing as exc:
        current_app.logger.warning("routing_rule_missing", extra={"category": category, "ward": ward, "error": exc.message})
        return _fallback_decision()
    return RoutingDecision(
        rule_id=rule.rule_id,
        department_code=rule.department_code,
        priority=rule.priority,
        sla_hours=rule.sla_hours,
    )


def determine_ward(location: Mapping | None, boundaries: Mapping | None = None) -> str:
    """Explicit ward wins; otherwise coordinate bands decide, defaulting to Central."""
    location = location or {}
    explicit = location.get("ward")
    if explicit:
        for ward in WARD_AREAS:
            if str(explicit).strip().lower() == ward.lower():
                return ward

    bounds = boundaries or current_app.config.get("WARD_BOUNDARIES") or {}
    try:
        lat = float(location.get("lat"))
        lng = float(location.get("lng"))
    except (TypeError, ValueError):
        return "Central"

    if lat > bounds.get("north_min_lat", 40.77):
        return "North"
    if lat < bounds.get("south_max_lat", 40.74):
        return "South"
    if lng > bounds.get("east_min_lng", -74.0):
        return "East"
    if lng < bounds.get("west_max_lng", -74.02):
        return "West"
    return "Central"


def find_available_authority(department_id: str, ward: str | None = None) -> User | None:
    """Active authority in the department, preferring one who covers the issue's ward."""
    base = User.query.filter(
        User.department_id == department_id,
        User.role == "authority",
        User.is_active.is_(True),
    ).order_by(User.created_at.asc(), User.username.asc())
    if ward:
        in_ward = base.filter(User.ward_area == ward).first()
        if in_ward:
            return in_ward
    return base.first()


def _resolve_department(decision: RoutingDecision) -> tuple[Department | None, RoutingDecision]:
    department = Department.query.filter_by(code=decision.department_code, is_active=True).first()
    if department or decision.fallback:
        return department, decision
    current_app.logger.warning(
        "routing_department_unavailable",
        extra={"department_code": decision.department_code, "rule_id": decision.rule_id},
    )
    fallback = _fallback_decision()
    return Department.query.filter_by(code=fallback.department_code, is_active=True).first(), fallback


def route_issue(issue: Issue, *, now: datetime | None = None, rules: Iterable[RoutingRule] | None = None) -> RoutingDecision:
    """Automatic routing at submission. Stages changes; the caller commits."""
    now = now or datetime.utcnow()
    decision = decide_route(issue.effective_category, issue.ward_area, rules)
    department, decision = _resolve_department(decision)
    if department is None:
        current_app.logger.error("routing_no_department", extra={"issue_id": issue.issue_id, "rule_id": decision.rule_id})

    issue.assigned_department_id = department.id if department else None
    issue.priority = decision.priority
    issue.assigned_at = now
    issue.sla_deadline = now + timedelta(hours=decision.sla_hours)

    if department and current_app.config.get("AUTO_ASSIGN_AUTHORITY", True):
        authority = find_available_authority(department.id, issue.ward_area)
        issue.assigned_user_id = authority.id if authority else None

    issue.append_routing_log(
        method="auto",
        matched_rule=decision.rule_id,
        department_id=issue.assigned_department_id,
        assigned_user_id=issue.assigned_user_id,
        priority=decision.priority,
        sla_hours=decision.sla_hours,
        sla_deadline=issue.sla_deadline,
        reason="Fallback route" if decision.fallback else None,
        created_at=now,
    )
    current_app.logger.info(
        "issue_routed",
        extra={"issue_id": issue.issue_id, "routing": asdict(decision), "department_id": issue.assigned_department_id},
    )
    return decision


def reroute_issue(
    issue: Issue,
    department_id: str,
    actor: User,
    *,
    assigned_user_id: str | None = None,
    reason: str | None = None,
    recompute_sla: bool = False,
    expected_version=None,
    now: datetime | None = None,
    session=None,
) -> Issue:
    """Manual reassignment. Keeps the SLA deadline unless recompute_sla is requested."""
    session = session or db.session
    now = now or datetime.utcnow()
    if issue.is_terminal:
        raise IllegalTransition(f"Cannot re-route an issue in terminal status {issue.status}", issue_id=issue.issue_id)
    check_expected_version(issue, expected_version)

    department = session.get(Department, department_id) if department_id else None
    if department is None or not department.is_active:
        raise ValidationError("Target department does not exist or is inactive", field="department_id")

    assignee = None
    if assigned_user_id:
        assignee = session.get(User, assigned_user_id)
        if assignee is None or not assignee.is_active or assignee.department_id != department.id:
            raise ValidationError("Assigned user must be an active member of the target department", field="assigned_user_id")

    before = snapshot(issue, REROUTE_AUDIT_FIELDS)
    issue.assigned_department_id = department.id
    issue.assigned_user_id = assignee.id if assignee else None
    if recompute_sla:
        issue.assigned_at = now
        issue.sla_deadline = now + timedelta(hours=department.sla_hours)

    issue.append_routing_log(
        method="manual",
        matched_rule="manual",
        department_id=department.id,
        assigned_user_id=issue.assigned_user_id,
        priority=issue.priority,
        sla_hours=department.sla_hours if recompute_sla else None,
        sla_deadline=issue.sla_deadline,
        reason=reason,
        actor_user_id=actor.id if actor else None,
        created_at=now,
    )
    record_audit(
        "issue",
        issue.issue_id,
        "reroute",
        old_values=before,
        new_values=snapshot(issue, REROUTE_AUDIT_FIELDS),
        actor=actor,
        details={"reason": reason, "recompute_sla": recompute_sla},
        session=session,
    )
    commit_issue_change(issue, "reroute", session=session)
    current_app.logger.info(
        "issue_rerouted",
        extra={"issue_id": issue.issue_id, "department_id": department.id, "recompute_sla": recompute_sla},
    )
    return issue
