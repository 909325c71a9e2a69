"""Core data models for issues, departments, authorities, and the audit trail."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import event
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from utils.errors import PersistenceError


def generate_uuid() -> str:
	return str(uuid.uuid4())


def _sql_in(column: str, values: tuple[str, ...], nullable: bool = False) -> str:
	quoted = ",".join(f"'{value}'" for value in values)
	clause = f"{column} IN ({quoted})"
	if nullable:
		return f"{column} IS NULL OR {clause}"
	return clause


ISSUE_CATEGORIES: tuple[str, ...] = (
	"pothole",
	"garbage",
	"streetlight",
	"graffiti",
	"water",
	"traffic",
	"sidewalk",
	"other",
)

ISSUE_STATUSES: tuple[str, ...] = (
	"submitted",
	"assigned",
	"in_progress",
	"resolved",
	"closed",
	"rejected",
)

TERMINAL_STATUSES: tuple[str, ...] = (
	"closed",
	"rejected",
)

OPEN_STATUSES: tuple[str, ...] = (
	"submitted",
	"assigned",
	"in_progress",
)

PRIORITY_LEVELS: tuple[str, ...] = (
	"low",
	"medium",
	"high",
	"critical",
)

USER_ROLES: tuple[str, ...] = (
	"authority",
	"admin",
	"super_admin",
)

ADMIN_ROLES: tuple[str, ...] = (
	"admin",
	"super_admin",
)

WARD_AREAS: tuple[str, ...] = (
	"North",
	"South",
	"East",
	"West",
	"Central",
)

ROUTING_METHODS: tuple[str, ...] = (
	"auto",
	"manual",
)

AI_PROCESSING_STATUSES: tuple[str, ...] = (
	"pending",
	"completed",
	"failed",
)


def _iso(value: datetime | None) -> str | None:
	return value.isoformat() if value else None


class Department(db.Model):
	__tablename__ = "departments"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(255), nullable=False)
	code = db.Column(db.String(32), unique=True, nullable=False, index=True)
	description = db.Column(db.Text, nullable=True)
	contact_email = db.Column(db.String(255), nullable=True)
	sla_hours = db.Column(db.Integer, nullable=False, default=48)
	is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint("sla_hours > 0", name="ck_department_sla_positive"),
	)

	users = db.relationship("User", back_populates="department", lazy="dynamic")
	issues = db.relationship("Issue", back_populates="department", lazy="dynamic")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"code": self.code,
			"description": self.description,
			"contact_email": self.contact_email,
			"sla_hours": self.sla_hours,
			"is_active": self.is_active,
			"created_at": _iso(self.created_at),
			"updated_at": _iso(self.updated_at),
		}


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	username = db.Column(db.String(80), unique=True, nullable=False, index=True)
	full_name = db.Column(db.String(150), nullable=True)
	email = db.Column(db.String(255), unique=True, nullable=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role = db.Column(db.String(20), nullable=False, default="authority", index=True)
	department_id = db.Column(db.String(36), db.ForeignKey("departments.id"), nullable=True, index=True)
	ward_area = db.Column(db.String(20), nullable=True, index=True)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	__table_args__ = (
		db.CheckConstraint(_sql_in("role", USER_ROLES), name="ck_user_role_valid"),
		db.CheckConstraint(_sql_in("ward_area", WARD_AREAS, nullable=True), name="ck_user_ward_valid"),
	)

	department = db.relationship("Department", back_populates="users")

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def is_admin(self) -> bool:
		return self.role in ADMIN_ROLES

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"username": self.username,
			"full_name": self.full_name,
			"role": self.role,
			"department_id": self.department_id,
			"ward_area": self.ward_area,
			"is_active": self.is_active,
			"last_login_at": _iso(self.last_login_at),
		}


class Issue(db.Model):
	__tablename__ = "issues"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	issue_id = db.Column(db.String(32), unique=True, nullable=False, index=True)
	version_id = db.Column(db.Integer, nullable=False)

	citizen_name = db.Column(db.String(255), nullable=False)
	citizen_email = db.Column(db.String(255), nullable=False, index=True)
	citizen_phone = db.Column(db.String(32), nullable=True)
	title = db.Column(db.String(255), nullable=True)
	description = db.Column(db.Text, nullable=True)
	images = db.Column(db.JSON, nullable=False, default=list)

	category = db.Column(db.String(20), nullable=False, index=True)
	verified_category = db.Column(db.String(20), nullable=True, index=True)
	confidence_score = db.Column(db.Float, nullable=True)
	needs_review = db.Column(db.Boolean, nullable=False, default=False, index=True)
	was_reclassified = db.Column(db.Boolean, nullable=False, default=False)
	reclassification_event = db.Column(db.JSON, nullable=True)
	ai_explanation = db.Column(db.Text, nullable=True)
	ai_processing_status = db.Column(db.String(20), nullable=False, default="pending")
	ai_error = db.Column(db.Text, nullable=True)
	processed_at = db.Column(db.DateTime, nullable=True)

	location = db.Column(db.JSON, nullable=False)
	ward_area = db.Column(db.String(20), nullable=True, index=True)

	status = db.Column(db.String(20), nullable=False, default="submitted", index=True)
	priority = db.Column(db.String(20), nullable=False, default="medium", index=True)
	severity_level = db.Column(db.String(20), nullable=False, default="medium")

	assigned_department_id = db.Column(db.String(36), db.ForeignKey("departments.id"), nullable=True, index=True)
	assigned_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	assigned_at = db.Column(db.DateTime, nullable=True)

	sla_deadline = db.Column(db.DateTime, nullable=True, index=True)
	auto_escalated = db.Column(db.Boolean, nullable=False, default=False, index=True)
	escalation_reason = db.Column(db.String(255), nullable=True)
	escalated_at = db.Column(db.DateTime, nullable=True)

	is_duplicate = db.Column(db.Boolean, nullable=False, default=False, index=True)
	duplicate_of_issue_id = db.Column(db.String(36), db.ForeignKey("issues.id"), nullable=True, index=True)

	resolution_notes = db.Column(db.Text, nullable=True)
	resolution_images = db.Column(db.JSON, nullable=False, default=list)
	resolved_at = db.Column(db.DateTime, nullable=True)
	resolved_by_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	in_progress_at = db.Column(db.DateTime, nullable=True)
	closed_at = db.Column(db.DateTime, nullable=True)
	rejected_at = db.Column(db.DateTime, nullable=True)

	citizen_rating = db.Column(db.Integer, nullable=True)
	citizen_feedback = db.Column(db.Text, nullable=True)
	feedback_at = db.Column(db.DateTime, nullable=True)

	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__mapper_args__ = {"version_id_col": version_id}

	__table_args__ = (
		db.CheckConstraint(_sql_in("category", ISSUE_CATEGORIES), name="ck_issue_category_valid"),
		db.CheckConstraint(
			_sql_in("verified_category", ISSUE_CATEGORIES, nullable=True),
			name="ck_issue_verified_category_valid",
		),
		db.CheckConstraint(_sql_in("status", ISSUE_STATUSES), name="ck_issue_status_valid"),
		db.CheckConstraint(_sql_in("priority", PRIORITY_LEVELS), name="ck_issue_priority_valid"),
		db.CheckConstraint(_sql_in("severity_level", PRIORITY_LEVELS), name="ck_issue_severity_valid"),
		db.CheckConstraint(
			_sql_in("ai_processing_status", AI_PROCESSING_STATUSES),
			name="ck_issue_ai_processing_status_valid",
		),
		db.CheckConstraint(
			"confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
			name="ck_issue_confidence_range",
		),
		db.CheckConstraint(
			"citizen_rating IS NULL OR (citizen_rating >= 1 AND citizen_rating <= 5)",
			name="ck_issue_rating_range",
		),
		db.CheckConstraint(
			"NOT is_duplicate OR duplicate_of_issue_id IS NOT NULL",
			name="ck_issue_duplicate_reference",
		),
		db.Index("ix_issues_category_status_created", "category", "status", "created_at"),
		db.Index("ix_issues_department_status", "assigned_department_id", "status"),
	)

	department = db.relationship("Department", back_populates="issues")
	assigned_user = db.relationship("User", foreign_keys=[assigned_user_id])
	resolved_by = db.relationship("User", foreign_keys=[resolved_by_user_id])
	status_history = db.relationship(
		"IssueStatusHistory",
		back_populates="issue",
		order_by="IssueStatusHistory.id",
		cascade="all",
	)
	routing_logs = db.relationship(
		"IssueRoutingLog",
		back_populates="issue",
		order_by="IssueRoutingLog.id",
		cascade="all",
	)

	@property
	def immutable_fields(self) -> set[str]:
		return {"issue_id", "category", "location", "created_at"}

	@property
	def effective_category(self) -> str:
		return self.verified_category or self.category

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_STATUSES

	def record_status(
		self,
		new_status: str,
		actor_id: str | None = None,
		notes: str | None = None,
		at: datetime | None = None,
	) -> "IssueStatusHistory":
		"""Append one history entry and move the canonical status with it."""
		entry = IssueStatusHistory(
			from_status=self.status,
			to_status=new_status,
			actor_user_id=actor_id,
			notes=notes,
			created_at=at or datetime.utcnow(),
		)
		self.status_history.append(entry)
		self.status = new_status
		return entry

	def append_routing_log(self, **fields) -> "IssueRoutingLog":
		entry = IssueRoutingLog(**fields)
		if entry.created_at is None:
			entry.created_at = datetime.utcnow()
		self.routing_logs.append(entry)
		return entry

	def public_payload(self) -> dict:
		"""Citizen-safe view used for tracking and transparency listings."""
		location = self.location or {}
		return {
			"issue_id": self.issue_id,
			"title": self.title,
			"category": self.category,
			"verified_category": self.verified_category,
			"status": self.status,
			"priority": self.priority,
			"ward_area": self.ward_area,
			"address": location.get("address"),
			"department": self.department.name if self.department else None,
			"images": list(self.images or []),
			"resolution_images": list(self.resolution_images or []),
			"is_duplicate": self.is_duplicate,
			"sla_deadline": _iso(self.sla_deadline),
			"resolved_at": _iso(self.resolved_at),
			"created_at": _iso(self.created_at),
			"status_history": [
				{"to_status": entry.to_status, "created_at": _iso(entry.created_at)}
				for entry in self.status_history
			],
		}

	def to_dict(self) -> dict:
		payload = self.public_payload()
		payload.update(
			{
				"id": self.id,
				"version": self.version_id,
				"citizen_name": self.citizen_name,
				"citizen_email": self.citizen_email,
				"citizen_phone": self.citizen_phone,
				"description": self.description,
				"location": self.location,
				"confidence_score": self.confidence_score,
				"needs_review": self.needs_review,
				"was_reclassified": self.was_reclassified,
				"reclassification_event": self.reclassification_event,
				"ai_explanation": self.ai_explanation,
				"ai_processing_status": self.ai_processing_status,
				"ai_error": self.ai_error,
				"severity_level": self.severity_level,
				"assigned_department_id": self.assigned_department_id,
				"assigned_user_id": self.assigned_user_id,
				"assigned_at": _iso(self.assigned_at),
				"auto_escalated": self.auto_escalated,
				"escalation_reason": self.escalation_reason,
				"escalated_at": _iso(self.escalated_at),
				"duplicate_of_issue_id": self.duplicate_of_issue_id,
				"resolution_notes": self.resolution_notes,
				"resolved_by_user_id": self.resolved_by_user_id,
				"citizen_rating": self.citizen_rating,
				"citizen_feedback": self.citizen_feedback,
				"status_history": [entry.to_dict() for entry in self.status_history],
				"routing_logs": [entry.to_dict() for entry in self.routing_logs],
				"updated_at": _iso(self.updated_at),
			}
		)
		return payload


class IssueStatusHistory(db.Model):
	__tablename__ = "issue_status_history"

	id = db.Column(db.Integer, primary_key=True)
	issue_pk = db.Column(db.String(36), db.ForeignKey("issues.id"), nullable=False, index=True)
	from_status = db.Column(db.String(20), nullable=True)
	to_status = db.Column(db.String(20), nullable=False, index=True)
	notes = db.Column(db.String(1000), nullable=True)
	actor_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_sql_in("to_status", ISSUE_STATUSES), name="ck_issue_history_to_status_valid"),
	)

	issue = db.relationship("Issue", back_populates="status_history")
	actor = db.relationship("User")

	def to_dict(self) -> dict:
		return {
			"from_status": self.from_status,
			"to_status": self.to_status,
			"notes": self.notes,
			"actor_user_id": self.actor_user_id,
			"created_at": _iso(self.created_at),
		}


class IssueRoutingLog(db.Model):
	__tablename__ = "issue_routing_logs"

	id = db.Column(db.Integer, primary_key=True)
	issue_pk = db.Column(db.String(36), db.ForeignKey("issues.id"), nullable=False, index=True)
	method = db.Column(db.String(10), nullable=False)
	matched_rule = db.Column(db.String(64), nullable=False)
	department_id = db.Column(db.String(36), db.ForeignKey("departments.id"), nullable=True)
	assigned_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	priority = db.Column(db.String(20), nullable=True)
	sla_hours = db.Column(db.Integer, nullable=True)
	sla_deadline = db.Column(db.DateTime, nullable=True)
	reason = db.Column(db.String(500), nullable=True)
	actor_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_sql_in("method", ROUTING_METHODS), name="ck_routing_method_valid"),
	)

	issue = db.relationship("Issue", back_populates="routing_logs")

	def to_dict(self) -> dict:
		return {
			"method": self.method,
			"matched_rule": self.matched_rule,
			"department_id": self.department_id,
			"assigned_user_id": self.assigned_user_id,
			"priority": self.priority,
			"sla_hours": self.sla_hours,
			"sla_deadline": _iso(self.sla_deadline),
			"reason": self.reason,
			"actor_user_id": self.actor_user_id,
			"created_at": _iso(self.created_at),
		}


class AuditLogEntry(db.Model):
	__tablename__ = "audit_log_entries"

	id = db.Column(db.Integer, primary_key=True)
	entity_type = db.Column(db.String(50), nullable=False, index=True)
	entity_id = db.Column(db.String(64), nullable=False, index=True)
	action = db.Column(db.String(50), nullable=False, index=True)
	old_values = db.Column(db.JSON, nullable=True)
	new_values = db.Column(db.JSON, nullable=True)
	actor_user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	details = db.Column(db.JSON, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.Index("ix_audit_entity", "entity_type", "entity_id"),
	)

	actor = db.relationship("User")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"entity_type": self.entity_type,
			"entity_id": self.entity_id,
			"action": self.action,
			"old_values": self.old_values,
			"new_values": self.new_values,
			"actor_user_id": self.actor_user_id,
			"ip_address": self.ip_address,
			"details": self.details,
			"created_at": _iso(self.created_at),
		}


APPEND_ONLY_MODELS: tuple[type, ...] = (IssueStatusHistory, IssueRoutingLog, AuditLogEntry)


@event.listens_for(Session, "before_flush")
def _enforce_append_only(session, flush_context, instances) -> None:
	for obj in session.deleted:
		if isinstance(obj, APPEND_ONLY_MODELS):
			raise PersistenceError(f"{type(obj).__name__} rows are append-only and cannot be deleted")
	for obj in session.dirty:
		if isinstance(obj, APPEND_ONLY_MODELS) and session.is_modified(obj, include_collections=False):
			raise PersistenceError(f"{type(obj).__name__} rows are append-only and cannot be modified")
