from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ats_automation.core.batch_transition import BatchTransitionEngine
from ats_automation.core.digest import WeeklyDigestSender
from ats_automation.core.errors import UnknownTaskError
from ats_automation.core.models import TaskName, utcnow
from ats_automation.core.retention import DataRetentionReaper
from ats_automation.core.schedule_resolver import SETTING_KEYS
from ats_automation.core.stale_index import StaleApplicationIndex, StaleApplicationLookup
from ats_automation.db.config import get_db_settings, redact_database_url
from ats_automation.db.engine import make_engine
from ats_automation.db.repo.applications_repo import ApplicationsRepo
from ats_automation.db.repo.audit_repo import AuditRepo
from ats_automation.db.repo.settings_repo import SettingsRepo
from ats_automation.db.session import make_session_factory
from ats_automation.services.application_store import ApplicationStore
from ats_automation.services.audit_sink import AuditSink
from ats_automation.services.mailer import SmtpDigestMailer, SmtpSettings
from ats_automation.services.scheduler_config import SchedulerConfig
from ats_automation.services.settings_provider import SettingsProvider
from ats_automation.workers.periodic_task import PeriodicTask
from ats_automation.workers.tasks import (
    AutoArchiveTask,
    AutoProgressTask,
    AutoRejectTask,
    DataRetentionTask,
    DigestSenderTask,
    StaleDetectorTask,
)


logger = logging.getLogger("scheduler")


class SchedulerSupervisor:
    """
    Owns the APScheduler instance, the stale index and the six automation tasks.

    Must be constructed inside a running event loop: the AsyncIOScheduler is
    bound to it.
    """

    def __init__(
        self,
        *,
        settings: SettingsProvider,
        audit: AuditSink,
        store: ApplicationStore,
        mailer: Any,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self.settings = settings
        self.audit = audit
        self.store = store
        self.scheduler = scheduler or AsyncIOScheduler(
            event_loop=asyncio.get_running_loop(),
            timezone=self.config.timezone,
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": self.config.misfire_grace_seconds,
            },
        )
        self.index = StaleApplicationIndex()
        self.lookup = StaleApplicationLookup(self.index, store, settings, clock=clock)
        self.running = False

        common: dict[str, Any] = {
            "scheduler": self.scheduler,
            "settings": settings,
            "audit": audit,
            "timezone": self.config.timezone,
            "reconcile_seconds": self.config.reconcile_seconds,
            "misfire_grace_seconds": self.config.misfire_grace_seconds,
            "clock": clock,
        }
        engine = BatchTransitionEngine(store, audit, clock=clock)
        tasks: list[PeriodicTask] = [
            AutoArchiveTask(engine=engine, **common),
            AutoProgressTask(engine=engine, **common),
            AutoRejectTask(engine=engine, **common),
            DataRetentionTask(reaper=DataRetentionReaper(store, audit, clock=clock), **common),
            StaleDetectorTask(store=store, index=self.index, **common),
            DigestSenderTask(
                sender=WeeklyDigestSender(
                    store,
                    settings,
                    mailer,
                    audit,
                    stale_count=self._stale_count,
                    site_name=self.config.site_name,
                    clock=clock,
                ),
                **common,
            ),
        ]
        self._tasks: dict[TaskName, PeriodicTask] = {t.name: t for t in tasks}

    def _stale_count(self) -> int | None:
        return self.index.count() if self.index.populated else None

    def task(self, name: TaskName | str) -> PeriodicTask:
        try:
            key = TaskName(name)
        except ValueError as e:
            raise UnknownTaskError(f"task={name}") from e
        return self._tasks[key]

    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks.values())

    async def start(self) -> None:
        if self.running:
            return
        self.scheduler.start()
        self.running = True
        for t in self.tasks():
            try:
                await t.start()
            except Exception:
                logger.exception("task_start_failed task=%s", t.name.value)
        logger.info(
            "supervisor_started tasks=%s tz=%s reconcile_seconds=%s",
            len(self._tasks),
            self.config.timezone,
            self.config.reconcile_seconds,
        )

    async def shutdown(self, wait_seconds: float | None = None) -> dict[str, Any]:
        wait = float(self.config.shutdown_wait_seconds if wait_seconds is None else wait_seconds)
        t0 = time.monotonic()
        for t in self.tasks():
            t.retire()
        idle = await asyncio.gather(*(t.wait_idle(wait) for t in self.tasks()))
        remaining = max(0.0, wait - (time.monotonic() - t0))
        drained = await self.audit.close(remaining)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.index.clear()
        self.running = False
        out = {
            "tasks_idle": all(idle),
            "audit_drained": drained,
            "audit_pending": self.audit.pending_count,
            "elapsed_ms": int((time.monotonic() - t0) * 1000),
        }
        logger.info(
            "supervisor_stopped tasks_idle=%s audit_drained=%s elapsed_ms=%s",
            out["tasks_idle"],
            out["audit_drained"],
            out["elapsed_ms"],
        )
        return out

    async def trigger_now(self, name: TaskName | str) -> Any:
        return await self.task(name).trigger_now()

    async def reconcile_for_setting(self, key: str) -> list[str]:
        """Re-read settings now for every task that depends on `key`."""
        if not self.running:
            return []
        touched: list[str] = []
        for t in self.tasks():
            if key in SETTING_KEYS[t.name]:
                await t.reconcile()
                touched.append(t.name.value)
        return touched

    def health(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "timezone": self.config.timezone,
            "reconcile_seconds": self.config.reconcile_seconds,
            "tasks": [t.get_schedule_info().to_dict() for t in self.tasks()],
            "stale_index": self.index.describe(),
            "audit": {
                "pending": self.audit.pending_count,
                "written": self.audit.written_count,
                "failed": self.audit.failed_count,
            },
        }


def build_supervisor(config: SchedulerConfig, *, mailer: Any | None = None) -> SchedulerSupervisor:
    """Wire database-backed collaborators; call from inside the event loop."""
    db = get_db_settings()
    engine = make_engine(db.database_url, echo=db.echo)
    factory = make_session_factory(engine)
    logger.info("supervisor_db url=%s", redact_database_url(db.database_url))
    return SchedulerSupervisor(
        settings=SettingsProvider(SettingsRepo(factory), cache_ttl_seconds=config.settings_cache_ttl_seconds),
        audit=AuditSink(AuditRepo(factory)),
        store=ApplicationStore(ApplicationsRepo(factory)),
        mailer=mailer or SmtpDigestMailer(SmtpSettings.from_env()),
        config=config,
    )
