from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ats_automation.core.models import AuditRecord
from ats_automation.db.models import AuditLog


def _row_from_record(record: AuditRecord) -> AuditLog:
    return AuditLog(
        event_type=record.event_kind.value,
        category=record.category,
        subcategory=record.subcategory,
        severity=record.severity.value,
        status=record.status,
        actor_type="system",
        actor_name=record.actor,
        entity_type="application" if record.entity_id is not None else None,
        entity_id=record.entity_id,
        action=record.action or None,
        description=record.description,
        old_values=record.old_value,
        new_values=record.new_value,
        metadata_json=dict(record.metadata or {}),
        created_at=record.occurred_at,
    )


class AuditRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    def insert(self, record: AuditRecord) -> int:
        with self._Session() as s:
            try:
                row = _row_from_record(record)
                s.add(row)
                s.commit()
                return int(row.id)
            except Exception:
                s.rollback()
                raise

    def list_recent(self, *, subcategory: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self._Session() as s:
            q = select(AuditLog).order_by(AuditLog.id.desc()).limit(max(1, int(limit)))
            if subcategory:
                q = q.where(AuditLog.subcategory == subcategory)
            rows = s.execute(q).scalars().all()
            return [
                {
                    "id": r.id,
                    "event_type": r.event_type,
                    "subcategory": r.subcategory,
                    "severity": r.severity,
                    "status": r.status,
                    "actor_name": r.actor_name,
                    "entity_id": r.entity_id,
                    "description": r.description,
                    "old_values": r.old_values,
                    "new_values": r.new_values,
                    "metadata": r.metadata_json,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in rows
            ]
