"""Environment-aware configuration for the issue engine."""
import os
from datetime import timedelta


DEFAULT_DEPARTMENTS: tuple[dict, ...] = (
    {"name": "Roads and Infrastructure", "code": "ROADS", "sla_hours": 48, "description": "Potholes, road damage, sidewalks"},
    {"name": "Sanitation Department", "code": "SANITATION", "sla_hours": 24, "description": "Garbage collection and street cleaning"},
    {"name": "Water and Sewerage", "code": "WATER", "sla_hours": 12, "description": "Leaks, flooding, sewer blockages"},
    {"name": "Electricity and Street Lighting", "code": "ELECTRICITY", "sla_hours": 24, "description": "Street lights and public electrical faults"},
    {"name": "Traffic Management", "code": "TRAFFIC", "sla_hours": 48, "description": "Signals, signage, road markings"},
    {"name": "Parks and Recreation", "code": "PARKS", "sla_hours": 72, "description": "Graffiti, parks, public spaces"},
    {"name": "Building and Planning", "code": "PLANNING", "sla_hours": 168, "description": "Everything not covered elsewhere"},
)

# Ordered; ward-specific rules are consulted before category-only rules.
DEFAULT_ROUTING_RULES: tuple[dict, ...] = (
    {"rule_id": "pothole-default", "category": "pothole", "department_code": "ROADS", "priority": "medium", "sla_hours": 48},
    {"rule_id": "garbage-default", "category": "garbage", "department_code": "SANITATION", "priority": "high", "sla_hours": 24},
    {"rule_id": "water-default", "category": "water", "department_code": "WATER", "priority": "high", "sla_hours": 12},
    {"rule_id": "streetlight-default", "category": "streetlight", "department_code": "ELECTRICITY", "priority": "medium", "sla_hours": 24},
    {"rule_id": "traffic-default", "category": "traffic", "department_code": "TRAFFIC", "priority": "high", "sla_hours": 48},
    {"rule_id": "graffiti-default", "category": "graffiti", "department_code": "PARKS", "priority": "low", "sla_hours": 72},
    {"rule_id": "sidewalk-default", "category": "sidewalk", "department_code": "ROADS", "priority": "medium", "sla_hours": 48},
    {"rule_id": "other-default", "category": "other", "department_code": "PLANNING", "priority": "low", "sla_hours": 168},
)


class BaseConfig:
    def __init__(self) -> None:
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        if db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'issues.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
        if not self.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            self.SQLALCHEMY_ENGINE_OPTIONS.update(
                {
                    "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
                    "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
                    "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
                    "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
                }
            )
        self.SESSION_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = "Lax"
        self.PERMANENT_SESSION_LIFETIME = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", 12)))
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        self.JSON_SORT_KEYS = False
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "superadmin")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "")

        # External vision classifier
        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
        self.GEMINI_VISION_MODEL = os.getenv("GEMINI_VISION_MODEL", "gemini-2.5-flash")
        self.CLASSIFIER_ENABLED = os.getenv("CLASSIFIER_ENABLED", "true").lower() == "true"
        self.CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", 10))
        self.CLASSIFIER_MAX_RETRIES = int(os.getenv("CLASSIFIER_MAX_RETRIES", 1))
        self.CLASSIFICATION_CONFIDENCE_THRESHOLD = float(os.getenv("CLASSIFICATION_CONFIDENCE_THRESHOLD", 0.6))
        self.MAX_CLASSIFIER_IMAGE_BYTES = int(os.getenv("MAX_CLASSIFIER_IMAGE_BYTES", 8 * 1024 * 1024))

        # Duplicate detection
        self.DUPLICATE_WINDOW_HOURS = float(os.getenv("DUPLICATE_WINDOW_HOURS", 24))
        self.DUPLICATE_RADIUS_METERS = float(os.getenv("DUPLICATE_RADIUS_METERS", 50))
        self.DUPLICATE_QUERY_TIMEOUT_MS = int(os.getenv("DUPLICATE_QUERY_TIMEOUT_MS", 2000))

        # Routing
        self.ROUTING_RULES = [dict(rule) for rule in DEFAULT_ROUTING_RULES]
        self.ROUTING_RULES_PATH = os.getenv("ROUTING_RULES_PATH", "")
        self.DEFAULT_ROUTING = {
            "rule_id": "fallback",
            "department_code": os.getenv("DEFAULT_DEPARTMENT_CODE", "PLANNING"),
            "priority": os.getenv("DEFAULT_PRIORITY", "low"),
            "sla_hours": int(os.getenv("DEFAULT_SLA_HOURS", 168)),
        }
        self.DEFAULT_DEPARTMENTS = [dict(dept) for dept in DEFAULT_DEPARTMENTS]
        self.WARD_BOUNDARIES = {
            "north_min_lat": float(os.getenv("WARD_NORTH_MIN_LAT", 40.77)),
            "south_max_lat": float(os.getenv("WARD_SOUTH_MAX_LAT", 40.74)),
            "east_min_lng": float(os.getenv("WARD_EAST_MIN_LNG", -74.0)),
            "west_max_lng": float(os.getenv("WARD_WEST_MAX_LNG", -74.02)),
        }
        self.AUTO_ASSIGN_AUTHORITY = os.getenv("AUTO_ASSIGN_AUTHORITY", "true").lower() == "true"

        # SLA
        self.SLA_ESCALATION_REASON = os.getenv("SLA_ESCALATION_REASON", "SLA deadline exceeded")

        # Listing
        self.PAGE_SIZE = int(os.getenv("PAGE_SIZE", 20))
        self.MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", 100))
        self.SUCCESS_STORIES_LIMIT = int(os.getenv("SUCCESS_STORIES_LIMIT", 20))
        self.AUDIT_LOG_LIMIT = int(os.getenv("AUDIT_LOG_LIMIT", 200))
        self.PERFORMANCE_WINDOW_DAYS = int(os.getenv("PERFORMANCE_WINDOW_DAYS", 30))


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.SESSION_COOKIE_SECURE = False
        if not self.DEFAULT_ADMIN_PASSWORD:
            self.DEFAULT_ADMIN_PASSWORD = "Admin@12345!"


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.SESSION_COOKIE_SECURE = True


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.SECRET_KEY = "testing-secret"
        self.SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite://")
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.SESSION_COOKIE_SECURE = False
        self.PREFERRED_URL_SCHEME = "http"
        self.CLASSIFIER_ENABLED = False
        self.GEMINI_API_KEY = ""
        self.DEFAULT_ADMIN_PASSWORD = ""
        self.LOG_LEVEL = "WARNING"
