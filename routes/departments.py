"""Department reference data: public listing and administrator maintenance."""
import re

from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import ADMIN_ROLES, USER_ROLES, Department
from utils.audit import record_audit, snapshot
from utils.decorators import roles_required
from utils.errors import PersistenceError, ValidationError
from utils.issue_service import department_performance

departments_bp = Blueprint("departments", __name__, url_prefix="/api/departments")

DEPARTMENT_FIELDS = ("name", "code", "description", "contact_email", "sla_hours", "is_active")
CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]{1,31}$")


def _department_or_404(department_id: str) -> Department:
    department = db.session.get(Department, department_id)
    if department is None:
        abort(404)
    return department


def _clean_fields(payload: dict, partial: bool) -> dict:
    cleaned: dict = {}
    if "name" in payload or not partial:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", field="name")
        cleaned["name"] = name[:255]
    if "code" in payload or not partial:
        code = str(payload.get("code") or "").strip().upper()
        if not CODE_PATTERN.match(code):
            raise ValidationError("code must be 2-32 upper-case letters, digits or underscores", field="code")
        cleaned["code"] = code
    if "sla_hours" in payload or not partial:
        try:
            sla_hours = int(payload.get("sla_hours"))
        except (TypeError, ValueError):
            raise ValidationError("sla_hours must be a positive integer", field="sla_hours")
        if sla_hours <= 0:
            raise ValidationError("sla_hours must be a positive integer", field="sla_hours")
        cleaned["sla_hours"] = sla_hours
    for field in ("description", "contact_email"):
        if field in payload:
            cleaned[field] = (str(payload.get(field) or "").strip() or None)
    if "is_active" in payload:
        cleaned["is_active"] = bool(payload.get("is_active"))
    return cleaned


def _commit(action: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Department write failed", extra={"action": action})
        raise PersistenceError("Unable to save department") from exc


@departments_bp.route("", methods=["GET"])
def list_departments():
    include_inactive = request.args.get("include_inactive") == "true"
    query = Department.query
    is_admin = current_user.is_authenticated and current_user.role in ADMIN_ROLES
    if not (include_inactive and is_admin):
        query = query.filter(Department.is_active.is_(True))
    return jsonify({"items": [d.to_dict() for d in query.order_by(Department.name.asc()).all()]})


@departments_bp.route("/<string:department_id>", methods=["GET"])
def department_detail(department_id):
    return jsonify(_department_or_404(department_id).to_dict())


@departments_bp.route("/<string:department_id>/performance", methods=["GET"])
@roles_required(*USER_ROLES)
def performance(department_id):
    department = _department_or_404(department_id)
    if current_user.role == "authority" and current_user.department_id != department.id:
        abort(403)
    days = request.args.get("days")
    try:
        days = int(days) if days else None
    except ValueError:
        raise ValidationError("days must be an integer", field="days")
    return jsonify(department_performance(department, days=days))


@departments_bp.route("", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def create_department():
    payload = request.get_json(silent=True) or {}
    fields = _clean_fields(payload, partial=False)
    if Department.query.filter_by(code=fields["code"]).first():
        raise ValidationError(f"Department code {fields['code']} already exists", field="code")
    department = Department(**fields)
    db.session.add(department)
    db.session.flush()
    record_audit("department", department.id, "create", new_values=snapshot(department, DEPARTMENT_FIELDS), actor=current_user)
    _commit("create")
    current_app.logger.info("Department created", extra={"department_code": department.code})
    return jsonify(department.to_dict()), 201


@departments_bp.route("/<string:department_id>", methods=["PATCH"])
@roles_required(*ADMIN_ROLES)
def update_department(department_id):
    department = _department_or_404(department_id)
    fields = _clean_fields(request.get_json(silent=True) or {}, partial=True)
    if not fields:
        raise ValidationError("No updatable fields supplied")
    if "code" in fields and fields["code"] != department.code:
        if Department.query.filter_by(code=fields["code"]).first():
            raise ValidationError(f"Department code {fields['code']} already exists", field="code")
    before = snapshot(department, DEPARTMENT_FIELDS)
    for key, value in fields.items():
        setattr(department, key, value)
    record_audit(
        "department",
        department.id,
        "update",
        old_values=before,
        new_values=snapshot(department, DEPARTMENT_FIELDS),
        actor=current_user,
    )
    _commit("update")
    return jsonify(department.to_dict())


@departments_bp.route("/<string:department_id>", methods=["DELETE"])
@roles_required(*ADMIN_ROLES)
def deactivate_department(department_id):
    department = _department_or_404(department_id)
    if department.is_active:
        department.is_active = False
        record_audit(
            "department",
            department.id,
            "deactivate",
            old_values={"is_active": True},
            new_values={"is_active": False},
            actor=current_user,
        )
        _commit("deactivate")
    return jsonify(department.to_dict())
