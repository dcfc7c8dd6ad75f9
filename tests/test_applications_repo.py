from __future__ import annotations

import unittest

from sqlalchemy import event

from ats_automation.core.predicates import auto_progress_predicate, retention_predicate
from ats_automation.db.models import ApplicationNote
from ats_automation.db.repo.applications_repo import ApplicationsRepo

from support_db import NOW, TempDB, days_before


class ApplicationsRepoGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = TempDB()
        self.repo = ApplicationsRepo(self.db.factory)
        self.statements: list[str] = []
        event.listen(self.db.engine, "before_cursor_execute", self._capture)

    def tearDown(self) -> None:
        event.remove(self.db.engine, "before_cursor_execute", self._capture)
        self.db.close()

    def _capture(self, conn, cursor, statement, parameters, context, executemany) -> None:
        self.statements.append(statement)

    def _where_of(self, verb: str) -> str:
        hits = [s for s in self.statements if s.lstrip().upper().startswith(verb) and "applications" in s]
        self.assertTrue(hits, f"no {verb} issued")
        return hits[-1].split(" WHERE ", 1)[1]

    def test_bulk_update_carries_predicate_in_where(self) -> None:
        app_id = self.db.add_application(status="Applied", applied_at=days_before(31))
        predicate = auto_progress_predicate(30, NOW)

        updated = self.repo.bulk_update([app_id], {"status": "Reviewing"}, guard=predicate)

        self.assertEqual(updated, [app_id])
        where = self._where_of("UPDATE")
        self.assertIn("applied_at", where)
        self.assertIn("status", where)
        self.assertIn("is_archived", where)

    def test_bulk_update_skips_rows_that_stopped_matching(self) -> None:
        moved = self.db.add_application(status="Interview", applied_at=days_before(31))
        still = self.db.add_application(status="Applied", applied_at=days_before(31))
        predicate = auto_progress_predicate(30, NOW)

        updated = self.repo.bulk_update([moved, still], {"status": "Reviewing"}, guard=predicate)

        self.assertEqual(updated, [still])
        self.assertEqual(self.db.application(moved).status, "Interview")
        self.assertEqual(self.db.application(still).status, "Reviewing")

    def test_guarded_deletes_spare_restored_rows(self) -> None:
        gone = self.db.add_application(
            status="Rejected", applied_at=days_before(2500), is_archived=True, archived_at=days_before(2000)
        )
        restored = self.db.add_application(status="Rejected", applied_at=days_before(2500))
        for app_id in (gone, restored):
            self.db.add_child(ApplicationNote, app_id, body="note", created_at=NOW)
        predicate = retention_predicate(3, NOW)

        self.assertEqual(self.repo.still_eligible([gone, restored], predicate), [gone])
        self.assertEqual(self.repo.delete_children("application_notes", [gone, restored], guard=predicate), 1)
        self.assertEqual(self.repo.delete_applications([gone, restored], guard=predicate), [gone])

        self.assertIn("archived_at", self._where_of("DELETE"))
        self.assertIsNone(self.db.application(gone))
        self.assertIsNotNone(self.db.application(restored))
        self.assertEqual(self.db.count(ApplicationNote), 1)

    def test_unguarded_calls_with_no_ids_issue_nothing(self) -> None:
        self.assertEqual(self.repo.bulk_update([], {"status": "Reviewing"}), [])
        self.assertEqual(self.repo.delete_applications([]), [])
        self.assertEqual(self.statements, [])


if __name__ == "__main__":
    unittest.main()
