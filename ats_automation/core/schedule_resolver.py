from __future__ import annotations

import re
from typing import Any, Mapping

from ats_automation.core.models import DAY_NAMES, AutomationConfig, TaskName, TriggerSpec


RETENTION_MIN_YEARS = 3
STALE_INTERVAL_HOURS = 4
TRANSITION_HOUR = 0
RETENTION_HOUR = 2
DEFAULT_DIGEST_DAY = 0  # Monday
DEFAULT_DIGEST_TIME = (9, 0)

SETTING_KEYS: dict[TaskName, tuple[str, ...]] = {
    TaskName.AUTO_ARCHIVE: ("enable_workflow_automation", "auto_archive_rejected_days"),
    TaskName.AUTO_PROGRESS: ("enable_workflow_automation", "auto_progress_delay_days"),
    TaskName.AUTO_REJECT: ("enable_workflow_automation", "auto_reject_after_days", "auto_progress_delay_days"),
    TaskName.DATA_RETENTION: ("candidate_data_retention_years",),
    TaskName.STALE_DETECTOR: ("alert_stale_applications_days",),
    TaskName.DIGEST_SENDER: ("weekly_digest_enabled", "weekly_digest_day", "weekly_digest_time"),
}

_THRESHOLD_KEYS = {
    TaskName.AUTO_ARCHIVE: "auto_archive_rejected_days",
    TaskName.AUTO_PROGRESS: "auto_progress_delay_days",
    TaskName.AUTO_REJECT: "auto_reject_after_days",
    TaskName.STALE_DETECTOR: "alert_stale_applications_days",
}
_WORKFLOW_TASKS = (TaskName.AUTO_ARCHIVE, TaskName.AUTO_PROGRESS, TaskName.AUTO_REJECT)
_INT_RE = re.compile(r"^[+-]?\d+(\.0+)?$")


def parse_threshold(raw: Any) -> int | None:
    """Positive integer or None. Never raises."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        n = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            return None
        n = int(raw)
    else:
        s = str(raw).strip()
        if not _INT_RE.match(s):
            return None
        n = int(float(s))
    return n if n > 0 else None


def parse_flag(raw: Any, default: bool = False) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def parse_day(raw: Any) -> int:
    s = str(raw or "").strip().lower()
    if s in DAY_NAMES:
        return DAY_NAMES.index(s)
    return DEFAULT_DIGEST_DAY


def parse_hhmm(raw: Any) -> tuple[int, int]:
    m = re.match(r"^\s*(\d{1,2}):(\d{2})\s*$", str(raw or ""))
    if not m:
        return DEFAULT_DIGEST_TIME
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        return DEFAULT_DIGEST_TIME
    return hour, minute


def _disabled(task: TaskName, reason: str, *, threshold: int | None = None, unit: str | None = None) -> AutomationConfig:
    return AutomationConfig(name=task, enabled=False, threshold=threshold, threshold_unit=unit, reason=reason)


def resolve(task: TaskName | str, settings: Mapping[str, Any], *, timezone: str = "America/New_York") -> AutomationConfig:
    """
    Pure mapping from raw settings to an AutomationConfig.

    Bad or missing values disable the automation; nothing here raises for
    operator input.
    """
    task = TaskName(task)

    if task in _WORKFLOW_TASKS:
        if not parse_flag(settings.get("enable_workflow_automation")):
            return _disabled(task, "workflow_automation_disabled", unit="days")
        days = parse_threshold(settings.get(_THRESHOLD_KEYS[task]))
        if days is None:
            return _disabled(task, f"{_THRESHOLD_KEYS[task]}_unset_or_invalid", unit="days")
        params: dict[str, Any] = {}
        if task is TaskName.AUTO_REJECT:
            params["exclude_applied"] = parse_threshold(settings.get("auto_progress_delay_days")) is not None
        return AutomationConfig(
            name=task,
            enabled=True,
            threshold=days,
            threshold_unit="days",
            trigger=TriggerSpec.daily(TRANSITION_HOUR, 0, timezone=timezone),
            params=params,
        )

    if task is TaskName.DATA_RETENTION:
        years = parse_threshold(settings.get("candidate_data_retention_years"))
        if years is None:
            return _disabled(task, "candidate_data_retention_years_unset_or_invalid", unit="years")
        if years < RETENTION_MIN_YEARS:
            # Should have been refused on write; treat as misconfiguration.
            return _disabled(task, f"retention_below_floor_{RETENTION_MIN_YEARS}y", threshold=years, unit="years")
        return AutomationConfig(
            name=task,
            enabled=True,
            threshold=years,
            threshold_unit="years",
            trigger=TriggerSpec.daily(RETENTION_HOUR, 0, timezone=timezone),
            params={"minimum_years": RETENTION_MIN_YEARS},
        )

    if task is TaskName.STALE_DETECTOR:
        days = parse_threshold(settings.get("alert_stale_applications_days"))
        if days is None:
            return _disabled(task, "alert_stale_applications_days_unset_or_invalid", unit="days")
        return AutomationConfig(
            name=task,
            enabled=True,
            threshold=days,
            threshold_unit="days",
            trigger=TriggerSpec.every_hours(STALE_INTERVAL_HOURS, timezone=timezone),
        )

    # Digest defaults to on, as it does for a fresh install.
    if not parse_flag(settings.get("weekly_digest_enabled"), default=True):
        return _disabled(task, "weekly_digest_disabled")
    day = parse_day(settings.get("weekly_digest_day"))
    hour, minute = parse_hhmm(settings.get("weekly_digest_time"))
    return AutomationConfig(
        name=task,
        enabled=True,
        trigger=TriggerSpec.weekly(day, hour, minute, timezone=timezone),
        params={"day": DAY_NAMES[day], "time": f"{hour:02d}:{minute:02d}"},
    )
