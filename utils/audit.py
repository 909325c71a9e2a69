"""Audit trail writer: one immutable entry per mutation, inside the caller's transaction."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable

from flask import has_request_context, request

from extensions import db
from models import AuditLogEntry


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return value


def _actor_id(actor) -> str | None:
    if actor is None:
        return None
    if isinstance(actor, str):
        return actor
    if getattr(actor, "is_authenticated", True) is False:
        return None
    return getattr(actor, "id", None)


def snapshot(obj, fields: Iterable[str]) -> dict:
    """Capture the named attributes of a model as JSON-safe values."""
    return {name: _json_safe(getattr(obj, name, None)) for name in fields}


def record_audit(
    entity_type: str,
    entity_id: str,
    action: str,
    old_values: dict | None = None,
    new_values: dict | None = None,
    actor=None,
    details: dict | None = None,
    session=None,
) -> AuditLogEntry:
    """Stage an audit entry. The caller commits it together with the change it describes."""
    session = session or db.session
    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = request.headers.get("X-Forwarded-For", request.remote_addr or "").split(",")[0].strip() or None
        user_agent = (request.headers.get("User-Agent") or "")[:255] or None

    entry = AuditLogEntry(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        old_values=_json_safe(old_values) if old_values is not None else None,
        new_values=_json_safe(new_values) if new_values is not None else None,
        actor_user_id=_actor_id(actor),
        ip_address=ip_address,
        user_agent=user_agent,
        details=_json_safe(details) if details is not None else None,
        created_at=datetime.utcnow(),
    )
    session.add(entry)
    return entry


def query_audit_log(
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    actor_user_id: str | None = None,
    since: datetime | None = None,
    limit: int = 200,
) -> list[AuditLogEntry]:
    query = AuditLogEntry.query
    if entity_type:
        query = query.filter(AuditLogEntry.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLogEntry.entity_id == entity_id)
    if action:
        query = query.filter(AuditLogEntry.action == action)
    if actor_user_id:
        query = query.filter(AuditLogEntry.actor_user_id == actor_user_id)
    if since:
        query = query.filter(AuditLogEntry.created_at >= since)
    return query.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc()).limit(limit).all()
