from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable

from ats_automation.core.errors import (
    AuditEmissionError,
    ConfigurationError,
    IrreversibleOperationError,
    TransientStoreError,
)
from ats_automation.core.models import (
    AuditRecord,
    EligibleEntity,
    EventKind,
    Severity,
    TaskName,
    TransitionResult,
    utcnow,
    whole_days_between,
)
from ats_automation.core.predicates import retention_predicate
from ats_automation.core.schedule_resolver import RETENTION_MIN_YEARS


logger = logging.getLogger("automation.retention")

TASK = TaskName.DATA_RETENTION


def _snapshot(entity: EligibleEntity) -> dict[str, Any]:
    return {
        "id": entity.id,
        "name": entity.name,
        "email": entity.email,
        "status": entity.current_status,
        "job_id": entity.job_id,
        "job_title": entity.job_title,
        "applied_at": entity.applied_at,
        "archived_at": entity.archived_at,
    }


def _mark_dropped(result: TransitionResult, before: list[int], after: list[int]) -> None:
    kept = set(after)
    for i in before:
        if i not in kept:
            result.failed_ids.append(i)
            result.errors.append(f"{i}:no_longer_eligible")
            logger.warning("retention_skipped application_id=%s reason=no_longer_eligible", i)


class DataRetentionReaper:
    """
    Permanently removes archived applications older than the retention period.

    Order per run:
      1. select archived rows past the cutoff
      2. write a snapshot record for each row (awaited)
      3. re-check the cutoff for the snapshotted rows
      4. delete child rows, one statement per table
      5. delete the applications
      6. write the batch summary

    Rows whose snapshot could not be written are never deleted. Every delete
    carries the retention predicate, so a row restored mid-run survives and
    is reported as no_longer_eligible. Once step 4
    has started nothing is rolled back; a failure there or in step 5 raises
    IrreversibleOperationError.
    """

    def __init__(self, store: Any, audit: Any, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    def _emit(self, record: AuditRecord, result: TransitionResult) -> None:
        try:
            self._audit.emit(record)
        except AuditEmissionError as e:
            result.audit_failures += 1
            logger.error("audit_emit_failed task=%s error=%s", TASK.value, e)

    async def run(self, retention_years: int, *, trigger_type: str = "scheduled") -> TransitionResult:
        years = int(retention_years)
        if years < RETENTION_MIN_YEARS:
            raise ConfigurationError(f"retention_years={years} below minimum {RETENTION_MIN_YEARS}")

        t0 = time.monotonic()
        now = self._clock()
        predicate = retention_predicate(years, now)
        result = TransitionResult(task_name=TASK, threshold=years)
        context = {
            "retention_years": years,
            "minimum_years": RETENTION_MIN_YEARS,
            "cutoff": predicate.cutoff.isoformat(),
            "trigger_type": trigger_type,
        }

        entities = await self._store.find_eligible(predicate)
        result.matched_count = len(entities)
        if not entities:
            result.elapsed_ms = int((time.monotonic() - t0) * 1000)
            self._emit(
                AuditRecord.for_task(
                    TASK,
                    EventKind.SYSTEM_ACTION,
                    category="SYSTEM",
                    action="Data retention completed",
                    description=f"No archived applications older than {years} years",
                    metadata={**context, "matched_count": 0, "elapsed_ms": result.elapsed_ms},
                ),
                result,
            )
            logger.info("retention_done matched=0 years=%s", years)
            return result

        snapshotted: list[int] = []
        for e in entities:
            try:
                await self._audit.write(
                    AuditRecord.for_task(
                        TASK,
                        EventKind.DELETE,
                        entity_id=e.id,
                        action="Permanent deletion",
                        description=f"Permanently deleting application of {e.display_name} (retention {years} years)",
                        old_value=_snapshot(e),
                        new_value=None,
                        occurred_at=now,
                        severity=Severity.WARNING,
                        metadata={
                            **context,
                            "days_since_archived": whole_days_between(e.archived_at, now),
                            "child_tables": list(self._store.child_tables),
                            "permanent_deletion": True,
                        },
                    )
                )
            except AuditEmissionError as err:
                result.failed_ids.append(e.id)
                result.errors.append(f"{e.id}:snapshot_failed")
                result.audit_failures += 1
                logger.error("retention_snapshot_failed application_id=%s error=%s", e.id, err)
                continue
            snapshotted.append(e.id)

        deleted_children: dict[str, int] = {}
        deleted_ids: list[int] = []
        eligible: list[int] = []
        if snapshotted:
            # Rows restored while their snapshots were written drop out here.
            eligible = await self._store.still_eligible(snapshotted, predicate)
            _mark_dropped(result, snapshotted, eligible)
        if eligible:
            for table in self._store.child_tables:
                step = f"delete_children:{table}"
                try:
                    deleted_children[table] = await self._store.delete_children(table, eligible, guard=predicate)
                except TransientStoreError as err:
                    logger.critical("retention_step_failed step=%s ids=%s error=%s", step, eligible, err)
                    raise IrreversibleOperationError(step, eligible, cause=err) from err
            try:
                deleted_ids = await self._store.delete_applications(eligible, guard=predicate)
            except TransientStoreError as err:
                logger.critical("retention_step_failed step=delete_applications ids=%s error=%s", eligible, err)
                raise IrreversibleOperationError("delete_applications", eligible, cause=err) from err
            _mark_dropped(result, eligible, deleted_ids)
        result.succeeded_ids = list(deleted_ids)
        deleted = len(deleted_ids)

        result.elapsed_ms = int((time.monotonic() - t0) * 1000)
        self._emit(
            AuditRecord.for_task(
                TASK,
                EventKind.BULK_DELETE,
                action="Bulk permanent deletion",
                description=f"Permanently deleted {deleted} of {result.matched_count} archived applications (retention {years} years)",
                occurred_at=now,
                severity=Severity.WARNING,
                status="success" if result.ok else "partial",
                metadata={
                    **context,
                    "matched_count": result.matched_count,
                    "deleted_count": deleted,
                    "deleted_ids": list(deleted_ids),
                    "failed_ids": list(result.failed_ids),
                    "deleted_children": deleted_children,
                    "audit_failures": result.audit_failures,
                    "elapsed_ms": result.elapsed_ms,
                    "permanent_deletion": True,
                },
            ),
            result,
        )
        logger.info(
            "retention_done matched=%s deleted=%s failed=%s years=%s elapsed_ms=%s",
            result.matched_count,
            deleted,
            len(result.failed_ids),
            years,
            result.elapsed_ms,
        )
        return result
