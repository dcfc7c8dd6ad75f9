from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

from ats_automation.core.errors import AuditEmissionError
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
from ats_automation.core.predicates import EligibilityPredicate


logger = logging.getLogger("automation.batch")


class Transition(Protocol):
    def update_values(self, now: datetime) -> dict[str, Any]: ...

    def audit_values(self, entity: EligibleEntity, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]: ...


@dataclass(frozen=True)
class StatusTransition:
    to_status: str

    def update_values(self, now: datetime) -> dict[str, Any]:
        return {"status": self.to_status, "current_stage_entered_at": now, "updated_at": now}

    def audit_values(self, entity: EligibleEntity, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
        return {"status": entity.current_status}, {"status": self.to_status}


@dataclass(frozen=True)
class ArchiveTransition:
    reason: str

    def update_values(self, now: datetime) -> dict[str, Any]:
        return {
            "is_archived": True,
            "archived_at": now,
            "archived_by": None,
            "archive_reason": self.reason,
            "updated_at": now,
        }

    def audit_values(self, entity: EligibleEntity, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
        old = {"is_archived": False, "archived_at": None, "archived_by": None, "archive_reason": None}
        new = {"is_archived": True, "archived_at": now, "archived_by": None, "archive_reason": self.reason}
        return old, new


@dataclass(frozen=True)
class AuditDescriptor:
    task: TaskName
    action: str
    threshold: int
    trigger_type: str = "scheduled"
    threshold_unit: str = "days"
    elapsed_label: str = "days_elapsed"


class BatchTransitionEngine:
    """
    select eligible rows -> one bulk update -> per-row and batch audit records.

    The bulk update re-checks the predicate, so a row edited by hand between
    select and update is reported as failed rather than overwritten.
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
            result.errors.append(f"audit:{record.entity_id or 'batch'}:{e.err.code}")
            logger.error(
                "audit_emit_failed task=%s entity_id=%s error=%s",
                record.subcategory,
                record.entity_id,
                e,
            )

    async def run(
        self,
        predicate: EligibilityPredicate,
        transition: Transition,
        descriptor: AuditDescriptor,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        t0 = time.monotonic()
        now = now or self._clock()
        task = descriptor.task
        result = TransitionResult(task_name=task, threshold=descriptor.threshold)

        entities = await self._store.find_eligible(predicate)
        result.matched_count = len(entities)
        context = {
            "threshold": descriptor.threshold,
            "threshold_unit": descriptor.threshold_unit,
            "cutoff": predicate.cutoff.isoformat(),
            "trigger_type": descriptor.trigger_type,
        }

        if not entities:
            result.elapsed_ms = int((time.monotonic() - t0) * 1000)
            self._emit(
                AuditRecord.for_task(
                    task,
                    EventKind.SYSTEM_ACTION,
                    category="SYSTEM",
                    action=f"{descriptor.action} completed",
                    description=f"No applications matched (threshold {descriptor.threshold} {descriptor.threshold_unit})",
                    metadata={**context, "matched_count": 0, "per_entity_records": 0, "elapsed_ms": result.elapsed_ms},
                ),
                result,
            )
            logger.info("batch_done task=%s matched=0", task.value)
            return result

        ids = [e.id for e in entities]
        updated = set(await self._store.bulk_update(ids, transition.update_values(now), guard=predicate))
        result.succeeded_ids = [i for i in ids if i in updated]
        result.failed_ids = [i for i in ids if i not in updated]
        for fid in result.failed_ids:
            result.errors.append(f"{fid}:no_longer_eligible")

        per_entity = 0
        for e in entities:
            applied = e.id in updated
            old, new = transition.audit_values(e, now)
            elapsed = whole_days_between(getattr(e, predicate.timestamp_field), now)
            self._emit(
                AuditRecord.for_task(
                    task,
                    EventKind.UPDATE,
                    entity_id=e.id,
                    action=descriptor.action,
                    description=(
                        f"{descriptor.action}: {e.display_name}"
                        if applied
                        else f"{descriptor.action} skipped: {e.display_name} changed before update"
                    ),
                    old_value=old,
                    new_value=new if applied else old,
                    occurred_at=now,
                    severity=Severity.INFO if applied else Severity.WARNING,
                    status="success" if applied else "skipped",
                    metadata={
                        **context,
                        "job_id": e.job_id,
                        "job_title": e.job_title,
                        descriptor.elapsed_label: elapsed,
                        "days_over_threshold": (elapsed - descriptor.threshold) if elapsed is not None else None,
                        "bulk_operation": True,
                        "total_count": len(entities),
                    },
                ),
                result,
            )
            per_entity += 1

        result.elapsed_ms = int((time.monotonic() - t0) * 1000)
        self._emit(
            AuditRecord.for_task(
                task,
                EventKind.BULK_UPDATE,
                action=f"Bulk {descriptor.action.lower()}",
                description=(
                    f"{descriptor.action} updated {len(result.succeeded_ids)} of {result.matched_count} applications "
                    f"(threshold {descriptor.threshold} {descriptor.threshold_unit})"
                ),
                occurred_at=now,
                severity=Severity.INFO if not result.failed_ids else Severity.WARNING,
                status="success" if result.ok else "partial",
                metadata={
                    **context,
                    "matched_count": result.matched_count,
                    "updated_count": len(result.succeeded_ids),
                    "failed_ids": list(result.failed_ids),
                    "per_entity_records": per_entity,
                    "audit_failures": result.audit_failures,
                    "elapsed_ms": result.elapsed_ms,
                },
            ),
            result,
        )
        logger.info(
            "batch_done task=%s matched=%s updated=%s failed=%s audit_failures=%s elapsed_ms=%s",
            task.value,
            result.matched_count,
            len(result.succeeded_ids),
            len(result.failed_ids),
            result.audit_failures,
            result.elapsed_ms,
        )
        return result
