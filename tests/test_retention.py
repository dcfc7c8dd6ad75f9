from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from ats_automation.core.errors import ConfigurationError, IrreversibleOperationError, TransientStoreError
from ats_automation.core.models import EligibleEntity
from ats_automation.core.predicates import years_ago
from ats_automation.core.retention import DataRetentionReaper
from ats_automation.db.models import (
    Application,
    ApplicationEmail,
    ApplicationNote,
    ApplicationStageHistory,
    HireApprovalRequest,
)

from support_db import NOW, RecordingAudit, TempDB, days_before, fixed_clock


class DataRetentionReaperTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = TempDB()
        _, _, self.store = self.db.services()
        self.audit = RecordingAudit()
        self.reaper = DataRetentionReaper(self.store, self.audit, clock=fixed_clock())

        self.old_id = self.db.add_application(
            status="Rejected",
            applied_at=days_before(365 * 5),
            is_archived=True,
            archived_at=days_before(365 * 4),
            name="Old Candidate",
        )
        self.recent_id = self.db.add_application(
            status="Rejected",
            applied_at=days_before(365 * 3),
            is_archived=True,
            archived_at=days_before(365 * 2),
        )
        self.active_id = self.db.add_application(status="Applied", applied_at=days_before(365 * 6))
        for app_id in (self.old_id, self.recent_id):
            self.db.add_child(ApplicationNote, app_id, body="note", created_at=NOW)
            self.db.add_child(ApplicationEmail, app_id, subject="hello", created_at=NOW)
            self.db.add_child(ApplicationStageHistory, app_id, from_status="Applied", to_status="Rejected", changed_at=NOW)
            self.db.add_child(HireApprovalRequest, app_id, requested_at=NOW)

    def tearDown(self) -> None:
        self.db.close()

    async def test_refuses_retention_below_floor(self) -> None:
        with self.assertRaises(ConfigurationError):
            await self.reaper.run(2)
        self.assertEqual(self.db.count(Application), 3)

    async def test_deletes_only_rows_archived_before_cutoff(self) -> None:
        result = await self.reaper.run(3)

        self.assertEqual(result.matched_count, 1)
        self.assertEqual(result.succeeded_ids, [self.old_id])
        self.assertIsNone(self.db.application(self.old_id))
        self.assertIsNotNone(self.db.application(self.recent_id))
        self.assertIsNotNone(self.db.application(self.active_id))
        for model in (ApplicationNote, ApplicationEmail, ApplicationStageHistory, HireApprovalRequest):
            self.assertEqual(self.db.count(model), 1, model.__tablename__)

        deletes = self.audit.of_kind("DELETE")
        self.assertEqual(len(deletes), 1)
        self.assertEqual(deletes[0].old_value["name"], "Old Candidate")
        self.assertEqual(deletes[0].old_value["status"], "Rejected")
        summary = self.audit.of_kind("BULK_DELETE")[0]
        self.assertTrue(summary.metadata["permanent_deletion"])
        self.assertEqual(summary.metadata["deleted_count"], 1)
        self.assertEqual(summary.metadata["deleted_children"]["application_notes"], 1)

    async def test_snapshot_record_precedes_deletion(self) -> None:
        calls: list[str] = []
        store = AsyncMock()
        store.child_tables = ("application_notes", "emails")
        store.find_eligible.return_value = [EligibleEntity(id=7, current_status="Rejected", is_archived=True, archived_at=days_before(2000))]
        store.still_eligible.return_value = [7]
        store.delete_children.side_effect = lambda table, ids, guard=None: calls.append(f"children:{table}") or 1
        store.delete_applications.side_effect = lambda ids, guard=None: calls.append("applications") or list(ids)

        class OrderedAudit(RecordingAudit):
            async def write(self, record):
                calls.append("snapshot")
                return await super().write(record)

        await DataRetentionReaper(store, OrderedAudit(), clock=fixed_clock()).run(3)
        self.assertEqual(calls, ["snapshot", "children:application_notes", "children:emails", "applications"])

    async def test_failed_snapshot_excludes_entity_from_deletion(self) -> None:
        second_old = self.db.add_application(
            status="Rejected",
            applied_at=days_before(365 * 6),
            is_archived=True,
            archived_at=days_before(365 * 5),
        )
        audit = RecordingAudit(fail_on={str(self.old_id)})
        result = await DataRetentionReaper(self.store, audit, clock=fixed_clock()).run(3)

        self.assertEqual(result.failed_ids, [self.old_id])
        self.assertEqual(result.succeeded_ids, [second_old])
        self.assertIsNotNone(self.db.application(self.old_id))
        self.assertIsNone(self.db.application(second_old))
        self.assertEqual(self.db.count(ApplicationNote), 2)

    async def test_step_failure_raises_irreversible_error(self) -> None:
        store = AsyncMock()
        store.child_tables = ("application_notes", "emails")
        store.find_eligible.return_value = [EligibleEntity(id=7, current_status="Rejected", is_archived=True, archived_at=days_before(2000))]
        store.still_eligible.return_value = [7]
        store.delete_children.side_effect = [3, TransientStoreError("emails table locked")]

        with self.assertRaises(IrreversibleOperationError) as ctx:
            await DataRetentionReaper(store, self.audit, clock=fixed_clock()).run(3)
        self.assertEqual(ctx.exception.step, "delete_children:emails")
        self.assertEqual(ctx.exception.attempted_ids, [7])
        store.delete_applications.assert_not_awaited()

    async def test_zero_matches_emit_informational_record(self) -> None:
        result = await self.reaper.run(10)
        self.assertEqual(result.matched_count, 0)
        self.assertEqual(len(self.audit.records), 1)
        self.assertEqual(self.audit.records[0].event_kind.value, "SYSTEM_ACTION")
        self.assertEqual(self.db.count(Application), 3)

    async def test_application_restored_after_snapshot_is_not_deleted(self) -> None:
        db = self.db

        class RestoringAudit(RecordingAudit):
            async def write(self, record):
                out = await super().write(record)
                with db.factory() as s:
                    row = s.get(Application, int(record.entity_id))
                    row.is_archived = False
                    row.archived_at = None
                    s.commit()
                return out

        audit = RestoringAudit()
        result = await DataRetentionReaper(self.store, audit, clock=fixed_clock()).run(3)

        self.assertEqual(result.matched_count, 1)
        self.assertEqual(result.succeeded_ids, [])
        self.assertEqual(result.failed_ids, [self.old_id])
        self.assertIn(f"{self.old_id}:no_longer_eligible", result.errors)
        row = self.db.application(self.old_id)
        self.assertIsNotNone(row)
        self.assertFalse(row.is_archived)
        self.assertEqual(self.db.count(ApplicationNote), 2)
        self.assertEqual(self.db.count(HireApprovalRequest), 2)
        summary = audit.of_kind("BULK_DELETE")[0]
        self.assertEqual(summary.metadata["deleted_count"], 0)
        self.assertEqual(summary.metadata["failed_ids"], [self.old_id])
        self.assertEqual(summary.status, "partial")

    async def test_rows_rejected_by_guarded_delete_are_reported(self) -> None:
        store = AsyncMock()
        store.child_tables = ("application_notes",)
        store.find_eligible.return_value = [
            EligibleEntity(id=i, current_status="Rejected", is_archived=True, archived_at=days_before(2000)) for i in (7, 8)
        ]
        store.still_eligible.return_value = [7, 8]
        store.delete_children.return_value = 1
        store.delete_applications.return_value = [7]

        result = await DataRetentionReaper(store, self.audit, clock=fixed_clock()).run(3)

        self.assertEqual(result.succeeded_ids, [7])
        self.assertEqual(result.failed_ids, [8])
        self.assertEqual(result.errors, ["8:no_longer_eligible"])
        predicate = store.still_eligible.await_args.args[1]
        self.assertEqual(store.delete_children.await_args.kwargs["guard"], predicate)
        self.assertEqual(store.delete_applications.await_args.kwargs["guard"], predicate)


class RetentionCutoffTests(unittest.IsolatedAsyncioTestCase):
    async def _run_at(self, now: datetime, years: int, archived: dict[str, datetime]) -> dict[str, bool]:
        db = TempDB()
        try:
            _, _, store = db.services()
            ids = {
                label: db.add_application(
                    status="Rejected",
                    applied_at=at - timedelta(days=30),
                    is_archived=True,
                    archived_at=at,
                )
                for label, at in archived.items()
            }
            await DataRetentionReaper(store, RecordingAudit(), clock=fixed_clock(now)).run(years)
            return {label: db.application(app_id) is None for label, app_id in ids.items()}
        finally:
            db.close()

    async def test_cutoff_is_strict_for_each_supported_period(self) -> None:
        for years in (3, 5, 7):
            with self.subTest(years=years):
                cutoff = years_ago(NOW, years)
                self.assertEqual(cutoff, NOW.replace(year=NOW.year - years))
                deleted = await self._run_at(
                    NOW,
                    years,
                    {
                        "older": cutoff - timedelta(minutes=1),
                        "exact": cutoff,
                        "newer": cutoff + timedelta(minutes=1),
                    },
                )
                self.assertEqual(deleted, {"older": True, "exact": False, "newer": False})

    async def test_leap_day_run_falls_back_to_february_28(self) -> None:
        leap = datetime(2028, 2, 29, 12, 0, tzinfo=timezone.utc)
        self.assertEqual(years_ago(leap, 3), datetime(2025, 2, 28, 12, 0, tzinfo=timezone.utc))
        self.assertEqual(years_ago(leap, 4), datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc))

        deleted = await self._run_at(
            leap,
            3,
            {
                "older": datetime(2025, 2, 28, 11, 59, tzinfo=timezone.utc),
                "newer": datetime(2025, 2, 28, 12, 1, tzinfo=timezone.utc),
            },
        )
        self.assertEqual(deleted, {"older": True, "newer": False})


if __name__ == "__main__":
    unittest.main()
