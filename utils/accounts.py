"""Administrator maintenance of authority and admin accounts."""
from __future__ import annotations

from typing import Any, Mapping

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import USER_ROLES, User
from utils.audit import record_audit
from utils.errors import PersistenceError, ValidationError

USER_STATUSES = ("active", "inactive")


def list_users(filters: Mapping[str, Any]) -> dict:
    query = User.query
    role = filters.get("role")
    if role:
        if role not in USER_ROLES:
            raise ValidationError(f"role must be one of {', '.join(USER_ROLES)}", field="role")
        query = query.filter(User.role == role)
    status = filters.get("status")
    if status:
        if status not in USER_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(USER_STATUSES)}", field="status")
        query = query.filter(User.is_active.is_(status == "active"))
    if filters.get("department_id"):
        query = query.filter(User.department_id == filters["department_id"])

    try:
        page = max(int(filters.get("page") or 1), 1)
        per_page = int(filters.get("per_page") or current_app.config.get("PAGE_SIZE", 20))
    except (TypeError, ValueError):
        raise ValidationError("page and per_page must be integers")
    per_page = max(1, min(per_page, int(current_app.config.get("MAX_PAGE_SIZE", 100))))

    pagination = query.order_by(User.username.asc()).paginate(page=page, per_page=per_page, error_out=False)
    return {
        "items": pagination.items,
        "total": pagination.total,
        "page": page,
        "per_page": per_page,
        "pages": pagination.pages,
    }


def set_user_status(user: User, status: str, actor: User, reason: str | None = None) -> User:
    """Activate or deactivate an account, audited as status_update."""
    if status not in USER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(USER_STATUSES)}", field="status")
    if user.id == actor.id:
        raise ValidationError("Administrators cannot change their own status", field="status")
    if user.role == "super_admin" and actor.role != "super_admin":
        raise ValidationError("Only a super admin can change another super admin", field="status")

    active = status == "active"
    if user.is_active == active:
        return user

    previous = "active" if user.is_active else "inactive"
    user.is_active = active
    record_audit(
        "user",
        user.id,
        "status_update",
        old_values={"status": previous},
        new_values={"status": status},
        actor=actor,
        details={"reason": reason},
    )
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("User status update failed", extra={"user_id": user.id})
        raise PersistenceError("Unable to update user status") from exc
    current_app.logger.info(
        "User status updated",
        extra={"user_id": user.id, "status": status, "actor": actor.id},
    )
    return user
