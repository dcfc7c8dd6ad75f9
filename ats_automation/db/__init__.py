from ats_automation.db.base import Base
from ats_automation.db.config import DBSettings, get_db_settings
from ats_automation.db.engine import make_engine
from ats_automation.db.session import make_session_factory

__all__ = [
    "Base",
    "DBSettings",
    "get_db_settings",
    "make_engine",
    "make_session_factory",
]
