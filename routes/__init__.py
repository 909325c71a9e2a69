"""Blueprint registration and service health."""
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from .admin import admin_bp
from .auth import auth_bp
from .departments import departments_bp
from .issues import issues_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/health", methods=["GET"])
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        current_app.logger.exception("Health check database query failed")
        db.session.rollback()
        return jsonify({"status": "degraded", "database": "unavailable"}), 503
    return jsonify({"status": "ok", "database": "ok"})


__all__ = ["main_bp", "auth_bp", "issues_bp", "departments_bp", "admin_bp"]
