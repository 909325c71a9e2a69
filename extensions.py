"""Shared Flask extension singletons for the issue engine."""
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

# Bound to the app inside create_app.
db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
