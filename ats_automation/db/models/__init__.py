from ats_automation.db.models.applications import (
    Application,
    ApplicationEmail,
    ApplicationNote,
    ApplicationStageHistory,
    HireApprovalRequest,
    Job,
    User,
)
from ats_automation.db.models.audit import AuditLog
from ats_automation.db.models.settings import Setting

__all__ = [
    "Application",
    "ApplicationEmail",
    "ApplicationNote",
    "ApplicationStageHistory",
    "HireApprovalRequest",
    "Job",
    "User",
    "AuditLog",
    "Setting",
]
