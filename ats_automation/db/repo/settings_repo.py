from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, sessionmaker

from ats_automation.db.models import Setting


class SettingsRepo:
    """System-wide (user_id IS NULL) settings rows as (value, data_type) pairs."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    def get_many(self, keys: Sequence[str]) -> dict[str, tuple[str | None, str]]:
        if not keys:
            return {}
        with self._Session() as s:
            rows = s.execute(
                select(Setting.key, Setting.value, Setting.data_type).where(
                    and_(Setting.key.in_(list(keys)), Setting.user_id.is_(None))
                )
            ).all()
            return {str(k): (v, str(t or "string")) for k, v, t in rows}

    def upsert(self, key: str, value: str | None, data_type: str) -> None:
        now = datetime.now(timezone.utc)
        with self._Session() as s:
            try:
                current = s.execute(
                    select(Setting).where(and_(Setting.key == key, Setting.user_id.is_(None))).limit(1)
                ).scalar_one_or_none()
                if current is None:
                    s.add(Setting(key=key, value=value, data_type=data_type, user_id=None, updated_at=now))
                else:
                    current.value = value
                    current.data_type = data_type
                    current.updated_at = now
                s.commit()
            except Exception:
                s.rollback()
                raise
