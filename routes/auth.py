"""Session login for authority users (actor identity for engine actions)."""
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user

from extensions import db
from models import User
from utils.audit import record_audit
from utils.errors import ValidationError
from utils.security import reset_attempts, track_attempt

auth_bp = Blueprint("auth", __name__)


@auth_bp.route("/login", methods=["POST"])
def login():
    payload = request.get_json(silent=True) or {}
    username = str(payload.get("username") or "").strip().lower()
    password = str(payload.get("password") or "")
    if not username or not password:
        raise ValidationError("username and password are required")

    throttle_key = f"login:{request.remote_addr}:{username}"
    if not track_attempt(throttle_key):
        current_app.logger.warning("Login throttled", extra={"username": username})
        return jsonify({"error": "too_many_attempts", "message": "Too many login attempts; try again later"}), 429

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password):
        record_audit("user", user.id if user else username, "login_failed", actor=user)
        db.session.commit()
        return jsonify({"error": "invalid_credentials", "message": "Invalid credentials provided."}), 401

    if not user.is_active:
        return jsonify({"error": "inactive", "message": "Account is inactive."}), 403

    login_user(user)
    session.permanent = True
    user.last_login_at = datetime.utcnow()
    record_audit("user", user.id, "login", actor=user)
    db.session.commit()
    reset_attempts(throttle_key)
    current_app.logger.info("Authority logged in", extra={"user_id": user.id, "role": user.role})
    return jsonify({"user": user.to_dict()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user_id = current_user.id
    logout_user()
    session.clear()
    record_audit("user", user_id, "logout", actor=user_id)
    db.session.commit()
    return jsonify({"status": "logged_out"})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})
