from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from apscheduler.triggers.interval import IntervalTrigger

from ats_automation.core.errors import (
    AuditEmissionError,
    AutomationError,
    ConfigurationError,
    IrreversibleOperationError,
    TransientStoreError,
)
from ats_automation.core.models import (
    AuditRecord,
    AutomationConfig,
    EventKind,
    ScheduleInfo,
    Severity,
    TaskName,
    utcnow,
)
from ats_automation.core.schedule_resolver import SETTING_KEYS, resolve


logger = logging.getLogger("scheduler")


class TaskState(str, Enum):
    STOPPED = "stopped"
    RECONCILING = "reconciling"
    ARMED = "armed"
    IDLE = "idle"
    FIRING = "firing"


def trigger_type(trigger: str) -> str:
    return "scheduled" if trigger == "schedule" else trigger


class PeriodicTask(ABC):
    """
    One automation with its own APScheduler job.

    Jobs:
      <name>            the task's own trigger, replaced in place on config change
      <name>:reconcile  re-reads settings every reconcile_seconds

    A fire that arrives while the previous one is still running is dropped.
    Exceptions never leave fire(); they are logged and written as ERROR audit
    records, and the job stays armed for the next trigger.
    """

    name: TaskName

    def __init__(
        self,
        *,
        scheduler: Any,
        settings: Any,
        audit: Any,
        timezone: str = "America/New_York",
        reconcile_seconds: int = 3600,
        misfire_grace_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._scheduler = scheduler
        self._settings = settings
        self._audit = audit
        self._tz = timezone
        self._reconcile_seconds = max(1, int(reconcile_seconds))
        self._misfire_grace = int(misfire_grace_seconds)
        self._clock = clock

        self.state = TaskState.STOPPED
        self.config: AutomationConfig | None = None
        self.last_run: dict[str, Any] | None = None
        self.runs = 0
        self.failures = 0
        self.dropped_fires = 0
        self.reconcile_failures = 0

        self._retired = True
        self._in_flight = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def job_id(self) -> str:
        return self.name.value

    @property
    def reconcile_job_id(self) -> str:
        return f"{self.name.value}:reconcile"

    @property
    def is_running(self) -> bool:
        return self._in_flight

    @property
    def has_active_timer(self) -> bool:
        return self._scheduler.get_job(self.job_id) is not None

    # -- hooks --------------------------------------------------------------

    @abstractmethod
    async def execute(self, config: AutomationConfig, *, trigger: str) -> Any:
        """Run one pass of the automation and return its result."""

    def first_run_time(self, config: AutomationConfig) -> datetime | None:
        return None

    def on_disabled(self) -> None:
        pass

    def schedule_extra(self) -> dict[str, Any]:
        return {}

    # -- config -------------------------------------------------------------

    async def load_config(self, *, use_cache: bool = False) -> AutomationConfig:
        values = await self._settings.get_settings(SETTING_KEYS[self.name], {}, use_cache=use_cache)
        return resolve(self.name, values, timezone=self._tz)

    def _settled_state(self) -> TaskState:
        if self._retired:
            return TaskState.STOPPED
        if self._in_flight:
            return TaskState.FIRING
        return TaskState.ARMED if self.has_active_timer else TaskState.IDLE

    def _arm(self, config: AutomationConfig) -> None:
        if config.trigger is None:
            raise ConfigurationError(f"task={self.name.value} enabled without a trigger")
        extra: dict[str, Any] = {}
        nrt = self.first_run_time(config)
        if nrt is not None:
            extra["next_run_time"] = nrt
        self._scheduler.add_job(
            self.fire,
            trigger=config.trigger.to_trigger(),
            id=self.job_id,
            name=self.name.value,
            kwargs={"trigger": "schedule"},
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._misfire_grace,
            replace_existing=True,
            **extra,
        )
        logger.info("task_armed task=%s trigger=%s", self.name.value, config.trigger.describe())

    def _disarm(self) -> None:
        if self._scheduler.get_job(self.job_id) is not None:
            self._scheduler.remove_job(self.job_id)
            logger.info("task_disarmed task=%s", self.name.value)

    def apply_config(self, config: AutomationConfig) -> bool:
        """Install `config`; returns True when the live timer had to change."""
        prev = self.config
        self.config = config
        if prev is not None and prev.schedule_key() == config.schedule_key() and (
            self.has_active_timer == config.enabled
        ):
            if prev.threshold != config.threshold:
                logger.info(
                    "config_updated task=%s threshold=%s->%s",
                    self.name.value,
                    prev.threshold,
                    config.threshold,
                )
            return False
        if config.enabled:
            self._arm(config)
        else:
            self._disarm()
            self.on_disabled()
            logger.info("task_idle task=%s reason=%s", self.name.value, config.reason)
        return True

    async def reconcile(self) -> bool:
        if self._retired:
            return False
        if not self._in_flight:
            self.state = TaskState.RECONCILING
        try:
            config = await self.load_config(use_cache=False)
        except TransientStoreError as e:
            self.reconcile_failures += 1
            logger.error("reconcile_failed task=%s error=%s keep_schedule=1", self.name.value, e)
            self.state = self._settled_state()
            return False
        changed = self.apply_config(config)
        self.state = self._settled_state()
        return changed

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        self._retired = False
        await self.reconcile()
        self._scheduler.add_job(
            self.reconcile,
            trigger=IntervalTrigger(seconds=self._reconcile_seconds, timezone=self._tz),
            id=self.reconcile_job_id,
            name=self.reconcile_job_id,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._misfire_grace,
            replace_existing=True,
        )
        logger.info(
            "task_started task=%s state=%s reconcile_seconds=%s",
            self.name.value,
            self.state.value,
            self._reconcile_seconds,
        )

    def retire(self) -> None:
        """Remove both jobs; later fires become no-ops. An in-flight fire keeps running."""
        self._retired = True
        for job_id in (self.job_id, self.reconcile_job_id):
            if self._scheduler.get_job(job_id) is not None:
                self._scheduler.remove_job(job_id)
        if not self._in_flight:
            self.state = TaskState.STOPPED

    async def wait_idle(self, timeout: float | None = None) -> bool:
        if not self._in_flight:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("task_wait_timeout task=%s timeout=%s", self.name.value, timeout)
            return False
        return True

    async def stop(self, timeout: float | None = None) -> bool:
        self.retire()
        ok = await self.wait_idle(timeout)
        self.state = TaskState.STOPPED
        return ok

    # -- firing -------------------------------------------------------------

    async def fire(self, trigger: str = "schedule") -> Any:
        if self._retired:
            logger.info("fire_skipped task=%s reason=stopped trigger=%s", self.name.value, trigger)
            return None
        if self._in_flight:
            self.dropped_fires += 1
            logger.warning(
                "fire_dropped task=%s reason=in_flight trigger=%s dropped_total=%s",
                self.name.value,
                trigger,
                self.dropped_fires,
            )
            return None

        self._in_flight = True
        self._idle.clear()
        self.state = TaskState.FIRING
        started = utcnow()
        t0 = time.monotonic()
        try:
            config = await self.load_config(use_cache=False)
            if self.config is None or self.config.schedule_key() == config.schedule_key():
                self.config = config
            if not config.enabled:
                logger.info("fire_skipped task=%s reason=%s trigger=%s", self.name.value, config.reason, trigger)
                self.last_run = {
                    "started_at": started.isoformat(),
                    "trigger": trigger,
                    "ok": True,
                    "skipped": config.reason or "disabled",
                }
                return None
            result = await self.execute(config, trigger=trigger)
            self.runs += 1
            summary = result.to_dict() if hasattr(result, "to_dict") else result
            ok = bool(summary.get("ok", True)) if isinstance(summary, dict) else True
            self.last_run = {
                "started_at": started.isoformat(),
                "trigger": trigger,
                "ok": ok,
                "elapsed_ms": int((time.monotonic() - t0) * 1000),
                "result": summary,
            }
            logger.info(
                "job_done task=%s trigger=%s ok=%s elapsed_ms=%s",
                self.name.value,
                trigger,
                ok,
                self.last_run["elapsed_ms"],
            )
            return result
        except Exception as e:
            self.failures += 1
            self.last_run = {
                "started_at": started.isoformat(),
                "trigger": trigger,
                "ok": False,
                "elapsed_ms": int((time.monotonic() - t0) * 1000),
                "error": str(e),
            }
            logger.exception("job_failed task=%s trigger=%s error=%s", self.name.value, trigger, e)
            self._record_failure(e, trigger)
            return None
        finally:
            self._in_flight = False
            self._idle.set()
            self.state = self._settled_state()

    async def trigger_now(self) -> Any:
        return await self.fire(trigger="manual")

    def _record_failure(self, exc: Exception, trigger: str) -> None:
        critical = isinstance(exc, IrreversibleOperationError)
        metadata: dict[str, Any] = {
            "trigger_type": trigger_type(trigger),
            "error_type": type(exc).__name__,
            "threshold": self.config.threshold if self.config else None,
        }
        if isinstance(exc, AutomationError):
            metadata["error_code"] = exc.err.code
        if critical:
            metadata["step"] = exc.step
            metadata["attempted_ids"] = list(exc.attempted_ids)
            metadata["manual_reconciliation_required"] = True
        try:
            self._audit.emit(
                AuditRecord.for_task(
                    self.name,
                    EventKind.ERROR,
                    category="SYSTEM",
                    action=f"{self.name.value} failed",
                    description=f"{self.name.value} run failed: {exc}",
                    severity=Severity.CRITICAL if critical else Severity.ERROR,
                    status="failure",
                    metadata=metadata,
                )
            )
        except AuditEmissionError as e:
            logger.error("audit_emit_failed task=%s error=%s", self.name.value, e)

    # -- introspection ------------------------------------------------------

    def get_schedule_info(self) -> ScheduleInfo:
        cfg = self.config
        job = self._scheduler.get_job(self.job_id)
        nrt = getattr(job, "next_run_time", None)
        return ScheduleInfo(
            name=self.name.value,
            enabled=bool(cfg and cfg.enabled),
            threshold=cfg.threshold if cfg else None,
            threshold_unit=cfg.threshold_unit if cfg else None,
            next_fire_description=cfg.trigger.describe() if cfg and cfg.enabled and cfg.trigger else None,
            next_fire_time=nrt.isoformat() if nrt else None,
            is_running=self._in_flight,
            has_active_timer=job is not None,
            state=self.state.value,
            last_run=self.last_run,
            extra={
                "reason": cfg.reason if cfg else "",
                "params": dict(cfg.params) if cfg else {},
                "runs": self.runs,
                "failures": self.failures,
                "dropped_fires": self.dropped_fires,
                "reconcile_failures": self.reconcile_failures,
                **self.schedule_extra(),
            },
        )
