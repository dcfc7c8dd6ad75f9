from __future__ import annotations

from abc import abstractmethod
from datetime import datetime, timedelta
from typing import Any

from ats_automation.core.batch_transition import (
    ArchiveTransition,
    AuditDescriptor,
    BatchTransitionEngine,
    StatusTransition,
    Transition,
)
from ats_automation.core.digest import WeeklyDigestSender
from ats_automation.core.errors import AuditEmissionError
from ats_automation.core.models import (
    ApplicationStatus,
    AuditRecord,
    AutomationConfig,
    EventKind,
    TaskName,
    TransitionResult,
    utcnow,
)
from ats_automation.core.predicates import (
    EligibilityPredicate,
    auto_archive_predicate,
    auto_progress_predicate,
    auto_reject_predicate,
)
from ats_automation.core.retention import DataRetentionReaper
from ats_automation.core.stale_index import StaleApplicationIndex, detect_stale
from ats_automation.workers.periodic_task import PeriodicTask, logger, trigger_type


ARCHIVE_REASON = "auto_rejected_expired"


class TransitionTask(PeriodicTask):
    """Daily bulk transition over the rows its predicate selects."""

    action: str
    elapsed_label: str = "days_elapsed"
    transition: Transition

    def __init__(self, *, engine: BatchTransitionEngine, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._engine = engine

    @abstractmethod
    def predicate(self, config: AutomationConfig, now: datetime) -> EligibilityPredicate:
        """Rows this pass may touch, evaluated against `now`."""

    async def execute(self, config: AutomationConfig, *, trigger: str) -> TransitionResult:
        now = self._clock()
        return await self._engine.run(
            self.predicate(config, now),
            self.transition,
            AuditDescriptor(
                task=self.name,
                action=self.action,
                threshold=int(config.threshold or 0),
                trigger_type=trigger_type(trigger),
                elapsed_label=self.elapsed_label,
            ),
            now=now,
        )


class AutoArchiveTask(TransitionTask):
    name = TaskName.AUTO_ARCHIVE
    action = "Auto-archive"
    elapsed_label = "days_since_rejected"
    transition = ArchiveTransition(ARCHIVE_REASON)

    def predicate(self, config: AutomationConfig, now: datetime) -> EligibilityPredicate:
        return auto_archive_predicate(config.threshold, now)


class AutoProgressTask(TransitionTask):
    name = TaskName.AUTO_PROGRESS
    action = "Auto-progress"
    elapsed_label = "days_since_applied"
    transition = StatusTransition(ApplicationStatus.REVIEWING.value)

    def predicate(self, config: AutomationConfig, now: datetime) -> EligibilityPredicate:
        return auto_progress_predicate(config.threshold, now)


class AutoRejectTask(TransitionTask):
    name = TaskName.AUTO_REJECT
    action = "Auto-reject"
    elapsed_label = "days_since_applied"
    transition = StatusTransition(ApplicationStatus.REJECTED.value)

    def predicate(self, config: AutomationConfig, now: datetime) -> EligibilityPredicate:
        return auto_reject_predicate(
            config.threshold,
            now,
            exclude_applied=bool(config.params.get("exclude_applied")),
        )


class DataRetentionTask(PeriodicTask):
    name = TaskName.DATA_RETENTION

    def __init__(self, *, reaper: DataRetentionReaper, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._reaper = reaper

    async def execute(self, config: AutomationConfig, *, trigger: str) -> TransitionResult:
        return await self._reaper.run(int(config.threshold or 0), trigger_type=trigger_type(trigger))


class StaleDetectorTask(PeriodicTask):
    """Rebuilds the stale-application index every few hours."""

    name = TaskName.STALE_DETECTOR
    first_run_delay_seconds = 5

    def __init__(self, *, store: Any, index: StaleApplicationIndex, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._store = store
        self.index = index

    def first_run_time(self, config: AutomationConfig) -> datetime | None:
        # Populate the index shortly after (re)arming instead of waiting for the next 4h slot.
        return utcnow() + timedelta(seconds=self.first_run_delay_seconds)

    def on_disabled(self) -> None:
        self.index.clear()

    def schedule_extra(self) -> dict[str, Any]:
        return {"index": self.index.describe()}

    async def execute(self, config: AutomationConfig, *, trigger: str) -> dict[str, Any]:
        threshold = int(config.threshold or 0)
        now = self._clock()
        entries = await detect_stale(self._store, threshold, now)
        self.index.replace(entries, threshold=threshold, computed_at=now)
        logger.info("stale_index_replaced count=%s threshold=%s", len(entries), threshold)
        try:
            self._audit.emit(
                AuditRecord.for_task(
                    self.name,
                    EventKind.SYSTEM_ACTION,
                    category="SYSTEM",
                    action="Stale detection",
                    description=f"{len(entries)} applications in the same stage for more than {threshold} days",
                    metadata={
                        "trigger_type": trigger_type(trigger),
                        "threshold": threshold,
                        "stale_count": len(entries),
                        "stale_ids": [e.entity_id for e in entries],
                    },
                )
            )
        except AuditEmissionError as e:
            logger.error("audit_emit_failed task=%s error=%s", self.name.value, e)
        return {"ok": True, "stale_count": len(entries), "threshold": threshold, "computed_at": now.isoformat()}


class DigestSenderTask(PeriodicTask):
    name = TaskName.DIGEST_SENDER

    def __init__(self, *, sender: WeeklyDigestSender, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._sender = sender

    async def execute(self, config: AutomationConfig, *, trigger: str) -> dict[str, Any]:
        return await self._sender.run(trigger_type=trigger_type(trigger))
