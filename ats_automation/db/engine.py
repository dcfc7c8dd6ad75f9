from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url


def _engine_options_for_url(url: str) -> dict[str, Any]:
    u = (url or "").strip().lower()
    if u.startswith("postgresql"):
        return {
            "pool_pre_ping": True,
            "pool_size": 5,
            "max_overflow": 10,
        }
    # Store calls run on worker threads (asyncio.to_thread), so SQLite
    # connections must be shareable across threads.
    return {"connect_args": {"check_same_thread": False}}


def _ensure_sqlite_parent(url: str) -> None:
    try:
        u = make_url(url)
    except Exception:
        return
    if not u.drivername.startswith("sqlite"):
        return
    db = u.database or ""
    if db and db != ":memory:":
        Path(db).parent.mkdir(parents=True, exist_ok=True)


def make_engine(url: str, *, echo: bool = False, extra_options: Mapping[str, Any] | None = None) -> Engine:
    options = _engine_options_for_url(url)
    if extra_options:
        options.update(dict(extra_options))
    _ensure_sqlite_parent(url)
    return create_engine(url, echo=echo, **options)
