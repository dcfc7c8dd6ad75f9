from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class JSONText(TypeDecorator):
    """
    Cross-DB JSON column type used for audit snapshots:
    - PostgreSQL: JSONB
    - Others (SQLite): TEXT with JSON serialization

    Snapshot values often carry datetimes (archived_at, applied_at); they are
    written as ISO strings.
    """

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return None
        if dialect.name == "postgresql":
            return json.loads(json.dumps(value, default=_json_default))
        return json.dumps(value, ensure_ascii=False, default=_json_default)

    def process_result_value(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return None
        if dialect.name == "postgresql":
            return value
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except Exception:
            return value


class UTCDateTime(TypeDecorator):
    """
    Timestamps are stored as naive UTC and always come back timezone-aware.

    SQLite drops tzinfo on the way in, so cutoff comparisons only line up if
    every value is normalised to UTC before binding.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
