from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from ats_automation.core.errors import AuditEmissionError
from ats_automation.core.models import AuditRecord, EventKind, Severity, TaskName, utcnow


logger = logging.getLogger("automation.digest")

TASK = TaskName.DIGEST_SENDER
RECIPIENTS_KEY = "weekly_digest_recipients"


def percent_change(old: int, new: int) -> int:
    if old == 0:
        return 100 if new > 0 else 0
    return round((new - old) / old * 100)


@dataclass
class WeeklyDigest:
    start: datetime
    end: datetime
    applications_this_week: int
    applications_previous_week: int
    status_breakdown: dict[str, int] = field(default_factory=dict)
    jobs_created: int = 0
    top_jobs: list[dict[str, Any]] = field(default_factory=list)
    stale_count: int | None = None
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def applications_change_percent(self) -> int:
        return percent_change(self.applications_previous_week, self.applications_this_week)

    @property
    def date_range(self) -> str:
        return f"{self.start:%Y-%m-%d} - {(self.end - timedelta(seconds=1)):%Y-%m-%d}"

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["start"] = self.start.isoformat()
        out["end"] = self.end.isoformat()
        out["generated_at"] = self.generated_at.isoformat()
        out["applications_change_percent"] = self.applications_change_percent
        return out


async def build_digest(store: Any, now: datetime, *, stale_count: int | None = None) -> WeeklyDigest:
    """Last seven days against the seven before them."""
    end = now
    start = end - timedelta(days=7)
    prev_start = start - timedelta(days=7)
    return WeeklyDigest(
        start=start,
        end=end,
        applications_this_week=await store.count_applications_between(start, end),
        applications_previous_week=await store.count_applications_between(prev_start, start),
        status_breakdown=await store.status_breakdown_between(start, end),
        jobs_created=await store.count_jobs_created_between(start, end),
        top_jobs=await store.top_jobs_between(start, end, limit=5),
        stale_count=stale_count,
        generated_at=now,
    )


def digest_subject(digest: WeeklyDigest, site_name: str) -> str:
    return f"Weekly Digest: {digest.date_range} - {site_name}"


def render_digest_text(digest: WeeklyDigest, recipient: dict[str, Any], *, site_name: str) -> str:
    name = " ".join(p for p in (recipient.get("first_name"), recipient.get("last_name")) if p) or recipient.get("email", "")
    change = digest.applications_change_percent
    lines = [
        f"Hi {name},",
        "",
        f"Here is the {site_name} weekly digest for {digest.date_range}.",
        "",
        "Applications",
        f"  This week:     {digest.applications_this_week}",
        f"  Previous week: {digest.applications_previous_week}",
        f"  Change:        {change:+d}%",
        "",
        f"Jobs created: {digest.jobs_created}",
    ]
    if digest.stale_count is not None:
        lines.append(f"Stale applications: {digest.stale_count}")
    if digest.status_breakdown:
        lines += ["", "By status"]
        for status, n in sorted(digest.status_breakdown.items(), key=lambda kv: (-kv[1], kv[0])):
            lines.append(f"  {status}: {n}")
    if digest.top_jobs:
        lines += ["", "Top jobs"]
        for i, j in enumerate(digest.top_jobs, start=1):
            lines.append(f"  {i}. {j['title']} ({j['applications']} applications)")
    lines += ["", f"Generated {digest.generated_at:%Y-%m-%d %H:%M} UTC"]
    return "\n".join(lines) + "\n"


class WeeklyDigestSender:
    def __init__(
        self,
        store: Any,
        settings: Any,
        mailer: Any,
        audit: Any,
        *,
        stale_count: Callable[[], int | None] | None = None,
        site_name: str = "Careers",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._mailer = mailer
        self._audit = audit
        self._stale_count = stale_count
        self._site_name = site_name
        self._clock = clock

    def _emit(self, record: AuditRecord) -> None:
        try:
            self._audit.emit(record)
        except AuditEmissionError as e:
            logger.error("audit_emit_failed task=%s error=%s", TASK.value, e)

    async def run(self, *, trigger_type: str = "scheduled") -> dict[str, Any]:
        t0 = time.monotonic()
        raw = await self._settings.get_setting(RECIPIENTS_KEY, [], use_cache=False)
        recipient_ids = raw if isinstance(raw, list) else []
        if not recipient_ids:
            logger.info("digest_skipped reason=no_recipients")
            self._emit(
                AuditRecord.for_task(
                    TASK,
                    EventKind.SYSTEM_ACTION,
                    category="SYSTEM",
                    action="Weekly digest",
                    description="Weekly digest skipped: no recipients configured",
                    metadata={"trigger_type": trigger_type, "sent": 0, "failed": 0, "configured_recipients": 0},
                )
            )
            return {"ok": True, "sent": 0, "failed": 0, "configured_recipients": 0, "active_recipients": 0, "results": []}

        recipients = await self._store.active_users(recipient_ids)
        now = self._clock()
        stale = self._stale_count() if self._stale_count is not None else None
        digest = await build_digest(self._store, now, stale_count=stale)
        subject = digest_subject(digest, self._site_name)

        results: list[dict[str, Any]] = []
        for r in recipients:
            try:
                await self._mailer.send(r["email"], subject, render_digest_text(digest, r, site_name=self._site_name))
                results.append({"user_id": r["id"], "email": r["email"], "success": True})
            except Exception as e:
                logger.error("digest_send_failed user_id=%s email=%s error=%s", r["id"], r["email"], e)
                results.append({"user_id": r["id"], "email": r["email"], "success": False, "error": str(e)})

        sent = sum(1 for x in results if x["success"])
        failed = len(results) - sent
        out = {
            "ok": failed == 0 and bool(recipients),
            "sent": sent,
            "failed": failed,
            "configured_recipients": len(recipient_ids),
            "active_recipients": len(recipients),
            "results": results,
            "digest": digest.to_dict(),
            "elapsed_ms": int((time.monotonic() - t0) * 1000),
        }
        self._emit(
            AuditRecord.for_task(
                TASK,
                EventKind.SYSTEM_ACTION,
                category="SYSTEM",
                action="Weekly digest",
                description=f"Weekly digest sent to {sent} of {len(recipients)} active recipients",
                severity=Severity.INFO if out["ok"] else Severity.WARNING,
                status="success" if out["ok"] else "partial",
                metadata={
                    "trigger_type": trigger_type,
                    "sent": sent,
                    "failed": failed,
                    "configured_recipients": len(recipient_ids),
                    "active_recipients": len(recipients),
                    "date_range": digest.date_range,
                    "applications_this_week": digest.applications_this_week,
                    "elapsed_ms": out["elapsed_ms"],
                },
            )
        )
        logger.info("digest_done sent=%s failed=%s active_recipients=%s", sent, failed, len(recipients))
        return out
