"""Administrator tooling: audit trail, routing table, accounts, department performance and SLA sweeps."""
from dataclasses import asdict

from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user

from extensions import db
from models import ADMIN_ROLES, User
from utils.accounts import list_users, set_user_status
from utils.audit import query_audit_log
from utils.decorators import roles_required
from utils.errors import ValidationError
from utils.issue_service import parse_timestamp, system_department_performance
from utils.routing_engine import get_routing_rules
from utils.security import sanitize_input
from utils.sla_monitor import run_escalation_sweep

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _int_arg(name: str):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", field=name)


@admin_bp.route("/audit-logs", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def audit_logs():
    filters = sanitize_input(request.args)
    max_limit = int(current_app.config.get("AUDIT_LOG_LIMIT", 200))
    try:
        limit = int(filters.get("limit") or max_limit)
    except ValueError:
        raise ValidationError("limit must be an integer", field="limit")
    entries = query_audit_log(
        entity_type=filters.get("entity_type"),
        entity_id=filters.get("entity_id"),
        action=filters.get("action"),
        actor_user_id=filters.get("actor_user_id"),
        since=parse_timestamp(filters.get("since"), "since"),
        limit=max(1, min(limit, max_limit)),
    )
    return jsonify({"items": [entry.to_dict() for entry in entries]})


@admin_bp.route("/routing-rules", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def routing_rules():
    return jsonify({"items": [asdict(rule) for rule in get_routing_rules()]})


@admin_bp.route("/sla-sweep", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def sla_sweep():
    return jsonify(run_escalation_sweep())


@admin_bp.route("/department-performance", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def department_performance_overview():
    return jsonify({"items": system_department_performance(days=_int_arg("days"))})


@admin_bp.route("/users", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def users():
    result = list_users(request.args)
    return jsonify(
        {
            "items": [user.to_dict() for user in result["items"]],
            "total": result["total"],
            "page": result["page"],
            "per_page": result["per_page"],
            "pages": result["pages"],
        }
    )


@admin_bp.route("/users/<string:user_id>/status", methods=["PUT"])
@roles_required(*ADMIN_ROLES)
def user_status(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        abort(404)
    payload = request.get_json(silent=True) or {}
    status = str(payload.get("status") or "").strip().lower()
    set_user_status(user, status, current_user, reason=payload.get("reason"))
    return jsonify(user.to_dict())
