"""Flask application factory for the civic issue lifecycle and routing engine."""
import os
from typing import Optional

import click
from flask import Flask, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv

from extensions import db, login_manager, migrate
from utils.errors import EngineError
from utils.logger import init_logging
from utils.routing_engine import init_routing
from utils.security import apply_security_headers


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(EngineError)
    def engine_error(error: EngineError):
        if error.status_code >= 500:
            app.logger.error("Engine failure", extra={"path": request.path, "error": error.message})
        else:
            app.logger.info(
                "Request rejected",
                extra={"path": request.path, "error": error.error_code, "detail": error.message},
            )
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        if error.code in (403, 404):
            app.logger.warning(f"{error.code} {error.name}", extra={"path": request.path, "method": request.method})
        return jsonify({"error": error.name.lower().replace(" ", "_"), "message": error.description}), error.code

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.exception("500 Internal Server Error")
        db.session.rollback()
        return jsonify({"error": "internal_server_error", "message": "Unexpected error"}), 500


def ensure_reference_data(app: Flask) -> None:
    """Seed departments on an empty store and the bootstrap super admin when configured."""
    from models import Department, User  # Local import to avoid circular dependency

    if Department.query.count() == 0:
        for dept in app.config.get("DEFAULT_DEPARTMENTS", []):
            db.session.add(Department(**dept))
        db.session.commit()
        app.logger.info("Seeded reference departments", extra={"count": len(app.config.get("DEFAULT_DEPARTMENTS", []))})

    username = (app.config.get("DEFAULT_ADMIN_USERNAME") or "").lower().strip()
    password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not username or not password:
        return
    if User.query.filter_by(username=username).first():
        return
    admin_user = User(username=username, full_name="System Administrator", role="super_admin", is_active=True)
    admin_user.set_password(password)
    db.session.add(admin_user)
    db.session.commit()


def ensure_database_exists(app: Flask, database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # Startup continues; the first real query reports the connection problem.
            app.logger.warning("Could not verify database existence", extra={"database": db_name}, exc_info=True)
        finally:
            engine.dispose()


def create_app(config_name: Optional[str] = None, overrides: Optional[dict] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())
    app.config.from_pyfile("config.py", silent=True)
    if overrides:
        app.config.update(overrides)

    logger = init_logging(app)
    app.logger = logger

    ensure_database_exists(app, app.config["SQLALCHEMY_DATABASE_URI"])

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        user = db.session.get(User, str(user_id))
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401

    init_routing(app)

    from routes import admin_bp, auth_bp, departments_bp, issues_bp, main_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(issues_bp)
    app.register_blueprint(departments_bp)
    app.register_blueprint(admin_bp)

    register_cli(app)
    register_error_handlers(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    with app.app_context():
        db.create_all()
        ensure_reference_data(app)

    return app


def register_cli(app: Flask) -> None:
    @app.cli.command("sla-sweep")
    def sla_sweep():
        """Escalate overdue open issues (schedule this via cron)."""
        from utils.sla_monitor import run_escalation_sweep

        result = run_escalation_sweep(app)
        click.echo(
            f"checked={result['checked']} escalated={result['escalated']} "
            f"conflicts={result['conflicts']} failed={result['failed']} skipped={result['skipped']}"
        )

    @app.cli.command("create-user")
    @click.argument("username")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--role", type=click.Choice(["authority", "admin", "super_admin"]), default="authority")
    @click.option("--department", "department_code", default=None, help="Department code for authorities.")
    @click.option("--ward", default=None, help="Ward the authority covers.")
    def create_user(username, password, role, department_code, ward):
        """Create an authority or administrator account."""
        from models import WARD_AREAS, Department, User

        username = username.lower().strip()
        if User.query.filter_by(username=username).first():
            raise click.ClickException(f"User {username} already exists")
        department = None
        if department_code:
            department = Department.query.filter_by(code=department_code.upper()).first()
            if department is None:
                raise click.ClickException(f"Unknown department {department_code}")
        if role == "authority" and department is None:
            raise click.ClickException("Authorities must belong to a department")
        if ward and ward not in WARD_AREAS:
            raise click.ClickException(f"Ward must be one of {', '.join(WARD_AREAS)}")
        user = User(username=username, role=role, department_id=department.id if department else None, ward_area=ward)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created {role} {username}")
