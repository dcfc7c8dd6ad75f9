from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ats_automation.db.base import Base
from ats_automation.db.types import JSONText, UTCDateTime


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    subcategory: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    severity: Mapped[str] = mapped_column(String, nullable=False, default="info")
    status: Mapped[str] = mapped_column(String, nullable=False, default="success")
    actor_type: Mapped[str] = mapped_column(String, nullable=False, default="system")
    actor_name: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Plain column, not a foreign key: audit rows must outlive deleted applications.
    entity_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    action: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    old_values: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONText(), nullable=True)
    new_values: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONText(), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONText(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_subcategory_created", "subcategory", "created_at"),
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
    )
