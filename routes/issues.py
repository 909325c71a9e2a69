"""Issue intake, tracking, and authority lifecycle actions."""
from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user

from models import USER_ROLES
from utils.decorators import roles_required
from utils.errors import ValidationError
from utils.issue_service import (
    create_issue,
    get_issue,
    issue_statistics,
    list_issues,
    list_success_stories,
)
from utils.routing_engine import reroute_issue
from utils.sla_monitor import escalate_issue, sla_summary
from utils.state_machine import allowed_transitions, submit_feedback, transition, update_priority

issues_bp = Blueprint("issues", __name__, url_prefix="/api/issues")

STAFF_ROLES = USER_ROLES


def _is_staff() -> bool:
    return bool(current_user and current_user.is_authenticated and current_user.role in STAFF_ROLES)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _issue_payload(issue, full: bool) -> dict:
    payload = issue.to_dict() if full else issue.public_payload()
    payload["sla"] = sla_summary(issue)
    if full:
        payload["allowed_transitions"] = allowed_transitions(issue.status)
    return payload


@issues_bp.route("", methods=["POST"])
def submit_issue():
    issue = create_issue(_json_body())
    payload = _issue_payload(issue, full=False)
    return jsonify(payload), 201


@issues_bp.route("", methods=["GET"])
@roles_required(*STAFF_ROLES)
def list_all():
    result = list_issues(request.args, user=current_user)
    current_app.logger.info(
        "issues_listed",
        extra={"user_id": current_user.id, "count": len(result["items"]), "total": result["total"]},
    )
    return jsonify(
        {
            "items": [_issue_payload(issue, full=True) for issue in result["items"]],
            "total": result["total"],
            "page": result["page"],
            "per_page": result["per_page"],
            "pages": result["pages"],
        }
    )


@issues_bp.route("/success-stories", methods=["GET"])
def success_stories():
    try:
        limit = int(request.args.get("limit") or current_app.config.get("SUCCESS_STORIES_LIMIT", 20))
    except ValueError:
        raise ValidationError("limit must be an integer", field="limit")
    limit = max(1, min(limit, int(current_app.config.get("MAX_PAGE_SIZE", 100))))
    return jsonify({"items": [issue.public_payload() for issue in list_success_stories(limit)]})


@issues_bp.route("/stats", methods=["GET"])
def statistics():
    user = current_user if _is_staff() else None
    return jsonify(issue_statistics(user=user))


@issues_bp.route("/<string:issue_id>", methods=["GET"])
def issue_detail(issue_id):
    if _is_staff():
        return jsonify(_issue_payload(get_issue(issue_id, current_user), full=True))
    return jsonify(_issue_payload(get_issue(issue_id), full=False))


@issues_bp.route("/<string:issue_id>/transition", methods=["POST"])
@roles_required(*STAFF_ROLES)
def change_status(issue_id):
    payload = _json_body()
    issue = get_issue(issue_id, current_user)
    to_status = str(payload.get("status") or "").strip().lower()
    if not to_status:
        raise ValidationError("status is required", field="status")
    transition(
        issue,
        to_status,
        current_user,
        notes=payload.get("notes"),
        resolution_images=payload.get("resolution_images"),
        expected_version=payload.get("version"),
    )
    return jsonify(_issue_payload(issue, full=True))


@issues_bp.route("/<string:issue_id>/priority", methods=["PATCH"])
@roles_required(*STAFF_ROLES)
def change_priority(issue_id):
    payload = _json_body()
    issue = get_issue(issue_id, current_user)
    update_priority(
        issue,
        current_user,
        priority=payload.get("priority"),
        severity_level=payload.get("severity_level"),
        notes=payload.get("notes"),
        expected_version=payload.get("version"),
    )
    return jsonify(_issue_payload(issue, full=True))


@issues_bp.route("/<string:issue_id>/reroute", methods=["POST"])
@roles_required(*STAFF_ROLES)
def reroute(issue_id):
    payload = _json_body()
    issue = get_issue(issue_id, current_user)
    reroute_issue(
        issue,
        payload.get("department_id"),
        current_user,
        assigned_user_id=payload.get("assigned_user_id"),
        reason=payload.get("reason"),
        recompute_sla=bool(payload.get("recompute_sla", False)),
        expected_version=payload.get("version"),
    )
    return jsonify(_issue_payload(issue, full=True))


@issues_bp.route("/<string:issue_id>/escalation-check", methods=["POST"])
@roles_required(*STAFF_ROLES)
def escalation_check(issue_id):
    issue = get_issue(issue_id, current_user)
    escalated = escalate_issue(issue)
    return jsonify({"escalated": escalated, "issue_id": issue.issue_id, "sla": sla_summary(issue)})


@issues_bp.route("/<string:issue_id>/feedback", methods=["POST"])
def feedback(issue_id):
    payload = _json_body()
    issue = get_issue(issue_id)
    email = str(payload.get("citizen_email") or "").strip().lower()
    if not email or email != issue.citizen_email:
        abort(403)
    submit_feedback(issue, payload.get("rating"), payload.get("feedback"))
    return jsonify({"issue_id": issue.issue_id, "citizen_rating": issue.citizen_rating})
