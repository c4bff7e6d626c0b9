"""Audit log writer/reader.

Entries are added inside the caller's transaction so a rolled-back change never
leaves an audit row behind. Rows are never updated or deleted here; PostgreSQL
enforces the same with a trigger (see alembic revision 0002).
"""

from datetime import date, datetime

from sqlalchemy import inspect, select

from momorecon.services.audit.models import AuditLogEntry


SYSTEM_ACTOR = "system"


def _json_safe(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def snapshot(entity) -> dict | None:
    """Column values of an ORM object as a JSON-safe dict."""

    if entity is None:
        return None
    mapper = inspect(entity).mapper
    return {attr.key: _json_safe(getattr(entity, attr.key)) for attr in mapper.column_attrs}


class AuditLog:
    """Append-only record of state transitions with before/after snapshots."""

    def record(
        self,
        db,
        action: str,
        entity_type: str,
        entity_id: str,
        before: dict | None,
        after: dict | None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=_json_safe(before),
            after=_json_safe(after),
            actor_id=actor_id,
        )
        db.add(entry)
        return entry

    def list_entries(
        self,
        db,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditLogEntry]:
        """Newest entries first, optionally filtered to one entity."""

        stmt = select(AuditLogEntry)
        if entity_type:
            stmt = stmt.where(AuditLogEntry.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(AuditLogEntry.entity_id == entity_id)
        stmt = stmt.order_by(AuditLogEntry.at.desc(), AuditLogEntry.id).limit(max(1, min(limit, 500)))
        return list(db.execute(stmt).scalars())
