from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ats_automation.core.models import ApplicationStatus, EligibleEntity


TIMESTAMP_FIELDS = ("applied_at", "updated_at", "archived_at", "stage_entered_at")


@dataclass(frozen=True)
class EligibilityPredicate:
    """
    Store-agnostic row filter: status membership, archive flag and one
    "timestamp older than cutoff" condition. The repository turns it into a
    WHERE clause; `matches` evaluates the same rule on a projection.
    """

    timestamp_field: str
    cutoff: datetime
    status_in: tuple[str, ...] = ()
    status_not_in: tuple[str, ...] = ()
    archived: bool | None = None

    def __post_init__(self) -> None:
        if self.timestamp_field not in TIMESTAMP_FIELDS:
            raise ValueError(f"unsupported timestamp field: {self.timestamp_field}")

    def matches(self, entity: EligibleEntity) -> bool:
        if self.status_in and entity.current_status not in self.status_in:
            return False
        if self.status_not_in and entity.current_status in self.status_not_in:
            return False
        if self.archived is not None and bool(entity.is_archived) != self.archived:
            return False
        ts = getattr(entity, self.timestamp_field)
        return ts is not None and ts < self.cutoff


def days_ago(now: datetime, days: int) -> datetime:
    return now - timedelta(days=int(days))


def years_ago(now: datetime, years: int) -> datetime:
    try:
        return now.replace(year=now.year - int(years))
    except ValueError:
        # Feb 29 on a non-leap target year.
        return now.replace(year=now.year - int(years), day=28)


def auto_archive_predicate(days: int, now: datetime) -> EligibilityPredicate:
    return EligibilityPredicate(
        timestamp_field="updated_at",
        cutoff=days_ago(now, days),
        status_in=(ApplicationStatus.REJECTED.value,),
        archived=False,
    )


def auto_progress_predicate(days: int, now: datetime) -> EligibilityPredicate:
    return EligibilityPredicate(
        timestamp_field="applied_at",
        cutoff=days_ago(now, days),
        status_in=(ApplicationStatus.APPLIED.value,),
        archived=False,
    )


def auto_reject_predicate(days: int, now: datetime, *, exclude_applied: bool = False) -> EligibilityPredicate:
    excluded = [ApplicationStatus.REJECTED.value]
    if exclude_applied:
        # Applied rows belong to auto-progress while it is enabled.
        excluded.append(ApplicationStatus.APPLIED.value)
    return EligibilityPredicate(
        timestamp_field="applied_at",
        cutoff=days_ago(now, days),
        status_not_in=tuple(excluded),
        archived=False,
    )


def stale_predicate(days: int, now: datetime) -> EligibilityPredicate:
    return EligibilityPredicate(
        timestamp_field="stage_entered_at",
        cutoff=days_ago(now, days),
        archived=False,
    )


def retention_predicate(years: int, now: datetime) -> EligibilityPredicate:
    return EligibilityPredicate(
        timestamp_field="archived_at",
        cutoff=years_ago(now, years),
        archived=True,
    )
