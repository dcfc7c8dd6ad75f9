from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def whole_days_between(earlier: datetime | None, later: datetime) -> int | None:
    if earlier is None:
        return None
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    return math.floor((later - earlier).total_seconds() / 86400)


class TaskName(str, Enum):
    AUTO_ARCHIVE = "auto_archive"
    AUTO_PROGRESS = "auto_progress"
    AUTO_REJECT = "auto_reject"
    DATA_RETENTION = "data_retention"
    STALE_DETECTOR = "stale_detector"
    DIGEST_SENDER = "digest_sender"

    @property
    def actor(self) -> str:
        return f"system:{self.value}"

    @property
    def subcategory(self) -> str:
        return _SUBCATEGORIES[self]


_SUBCATEGORIES = {
    TaskName.AUTO_ARCHIVE: "AUTO_ARCHIVE",
    TaskName.AUTO_PROGRESS: "AUTO_PROGRESS",
    TaskName.AUTO_REJECT: "AUTO_REJECT",
    TaskName.DATA_RETENTION: "DATA_RETENTION",
    TaskName.STALE_DETECTOR: "STALE_DETECTION",
    TaskName.DIGEST_SENDER: "WEEKLY_DIGEST",
}


class EventKind(str, Enum):
    UPDATE = "UPDATE"
    BULK_UPDATE = "BULK_UPDATE"
    DELETE = "DELETE"
    BULK_DELETE = "BULK_DELETE"
    SYSTEM_ACTION = "SYSTEM_ACTION"
    ERROR = "ERROR"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ApplicationStatus(str, Enum):
    APPLIED = "Applied"
    REVIEWING = "Reviewing"
    INTERVIEW = "Interview"
    OFFER = "Offer"
    HIRED = "Hired"
    REJECTED = "Rejected"


DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_CRON_DAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class TriggerSpec:
    """
    When a task fires. Instances are normalised by the constructors below so
    that equality means "fires at the same wall-clock instants".

    day_of_week follows datetime.weekday(): 0 is Monday.
    """

    kind: str  # daily|hourly_interval|weekly
    hour: int = 0
    minute: int = 0
    day_of_week: int | None = None
    interval_hours: int | None = None
    timezone: str = "UTC"

    @classmethod
    def daily(cls, hour: int, minute: int = 0, *, timezone: str = "UTC") -> "TriggerSpec":
        return cls(kind="daily", hour=int(hour), minute=int(minute), timezone=timezone)

    @classmethod
    def every_hours(cls, hours: int, *, timezone: str = "UTC") -> "TriggerSpec":
        hours = int(hours)
        if hours == 24:
            return cls.daily(0, 0, timezone=timezone)
        return cls(kind="hourly_interval", interval_hours=hours, timezone=timezone)

    @classmethod
    def weekly(cls, day_of_week: int, hour: int, minute: int = 0, *, timezone: str = "UTC") -> "TriggerSpec":
        return cls(kind="weekly", hour=int(hour), minute=int(minute), day_of_week=int(day_of_week) % 7, timezone=timezone)

    def describe(self) -> str:
        if self.kind == "hourly_interval":
            return f"Every {self.interval_hours} hours ({self.timezone})"
        hhmm = f"{self.hour:02d}:{self.minute:02d}"
        if self.kind == "weekly":
            day = DAY_NAMES[int(self.day_of_week or 0)].capitalize()
            return f"Weekly on {day} at {hhmm} ({self.timezone})"
        return f"Daily at {hhmm} ({self.timezone})"

    def to_trigger(self) -> Any:
        from apscheduler.triggers.cron import CronTrigger

        if self.kind == "hourly_interval":
            return CronTrigger(hour=f"*/{int(self.interval_hours or 1)}", minute=0, timezone=self.timezone)
        if self.kind == "weekly":
            return CronTrigger(
                day_of_week=_CRON_DAYS[int(self.day_of_week or 0)],
                hour=self.hour,
                minute=self.minute,
                timezone=self.timezone,
            )
        return CronTrigger(hour=self.hour, minute=self.minute, timezone=self.timezone)


@dataclass(frozen=True)
class AutomationConfig:
    name: TaskName
    enabled: bool
    threshold: int | None = None
    threshold_unit: str | None = None  # days|years
    trigger: TriggerSpec | None = None
    reason: str = ""
    params: dict[str, Any] = field(default_factory=dict, compare=False)

    def schedule_key(self) -> tuple[bool, TriggerSpec | None]:
        # Only these two decide whether the live timer must be replaced.
        return (self.enabled, self.trigger if self.enabled else None)


@dataclass(frozen=True)
class EligibleEntity:
    id: int
    current_status: str
    is_archived: bool = False
    stage_entered_at: datetime | None = None
    applied_at: datetime | None = None
    archived_at: datetime | None = None
    updated_at: datetime | None = None
    job_id: int | None = None
    job_title: str | None = None
    name: str | None = None
    email: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email or str(self.id)


@dataclass
class TransitionResult:
    task_name: TaskName
    matched_count: int = 0
    succeeded_ids: list[int] = field(default_factory=list)
    failed_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    audit_failures: int = 0
    elapsed_ms: int = 0
    threshold: int | None = None

    @property
    def ok(self) -> bool:
        return not self.failed_ids and not self.errors

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["task_name"] = self.task_name.value
        out["ok"] = self.ok
        return out


@dataclass(frozen=True)
class AuditRecord:
    event_kind: EventKind
    actor: str
    category: str
    subcategory: str
    description: str
    entity_id: str | None = None
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    occurred_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.INFO
    status: str = "success"
    action: str = ""

    @classmethod
    def for_task(
        cls,
        task: TaskName,
        event_kind: EventKind,
        *,
        description: str,
        category: str = "APPLICATION",
        entity_id: Any = None,
        **kwargs: Any,
    ) -> "AuditRecord":
        return cls(
            event_kind=event_kind,
            actor=task.actor,
            category=category,
            subcategory=task.subcategory,
            description=description,
            entity_id=str(entity_id) if entity_id is not None else None,
            **kwargs,
        )


@dataclass(frozen=True)
class StaleIndexEntry:
    entity_id: int
    days_in_stage: int
    threshold_at_compute_time: int
    status: str = ""
    stage_entered_at: datetime | None = None
    job_id: int | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["stage_entered_at"] = self.stage_entered_at.isoformat() if self.stage_entered_at else None
        return out


@dataclass(frozen=True)
class ScheduleInfo:
    name: str
    enabled: bool
    threshold: int | None
    threshold_unit: str | None
    next_fire_description: str | None
    next_fire_time: str | None
    is_running: bool
    has_active_timer: bool
    state: str
    last_run: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
