from __future__ import annotations

import unittest
from typing import Any

from fastapi.testclient import TestClient

from ats_automation.core.errors import TransientStoreError, UnknownTaskError
from ats_automation.core.models import ScheduleInfo, StaleIndexEntry, TaskName, TransitionResult
from ats_automation.core.stale_index import StaleApplicationIndex
from ats_automation.web.admin_api import create_app

from support_db import TempDB


class StubTask:
    def __init__(self, name: str) -> None:
        self.name = name
        self.fired = 0

    async def trigger_now(self) -> Any:
        self.fired += 1
        return TransitionResult(task_name=TaskName(self.name), matched_count=2, succeeded_ids=[4, 9])

    def get_schedule_info(self) -> ScheduleInfo:
        return ScheduleInfo(
            name=self.name,
            enabled=True,
            threshold=30,
            threshold_unit="days",
            next_fire_description="Daily at 00:00 (UTC)",
            next_fire_time=None,
            is_running=False,
            has_active_timer=True,
            state="armed",
            last_run={"ok": True, "trigger": "manual"} if self.fired else None,
        )


class StubLookup:
    def __init__(self, entries: list[StaleIndexEntry]) -> None:
        self.entries = entries
        self.fresh_calls: list[bool] = []

    async def all_stale(self, *, fresh: bool = False) -> list[StaleIndexEntry]:
        self.fresh_calls.append(fresh)
        return list(self.entries)

    async def stale_info(self, entity_id: int, *, fresh: bool = False) -> StaleIndexEntry | None:
        return next((e for e in self.entries if e.entity_id == entity_id), None)


class StubAudit:
    def __init__(self) -> None:
        self.fail = False

    async def recent(self, *, subcategory: str | None = None, limit: int = 100) -> list[dict]:
        if self.fail:
            raise TransientStoreError("audit read failed")
        return [{"id": 1, "subcategory": subcategory, "event_type": "SYSTEM_ACTION"}][:limit]


class StubSupervisor:
    running = True

    def __init__(self) -> None:
        self.tasks = {n.value: StubTask(n.value) for n in TaskName}
        self.index = StaleApplicationIndex()
        self.lookup = StubLookup([StaleIndexEntry(entity_id=7, days_in_stage=21, threshold_at_compute_time=14)])
        self.audit = StubAudit()
        self.reconciled: list[str] = []

    def task(self, name: str) -> StubTask:
        if name not in self.tasks:
            raise UnknownTaskError(f"task={name}")
        return self.tasks[name]

    def health(self) -> dict[str, Any]:
        return {"running": True, "tasks": [t.get_schedule_info().to_dict() for t in self.tasks.values()]}

    async def reconcile_for_setting(self, key: str) -> list[str]:
        self.reconciled.append(key)
        return ["data_retention"] if key == "candidate_data_retention_years" else []


class AdminApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = TempDB()
        self.settings, _, _ = self.db.services()
        self.sup = StubSupervisor()
        self.client = TestClient(create_app(self.sup, self.settings))

    def tearDown(self) -> None:
        self.client.close()
        self.db.close()

    def test_healthz_and_status(self) -> None:
        r = self.client.get("/healthz")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["running"])

        body = self.client.get("/api/automation/status").json()
        self.assertTrue(body["ok"])
        self.assertEqual(len(body["tasks"]), 6)

    def test_unknown_task_is_404_with_error_envelope(self) -> None:
        r = self.client.get("/api/automation/tasks/auto_hire")
        self.assertEqual(r.status_code, 404)
        body = r.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"]["code"], "AUTOMATION_404_TASK_NOT_FOUND")

        r = self.client.post("/api/automation/tasks/auto_hire/trigger")
        self.assertEqual(r.status_code, 404)

    def test_trigger_runs_task_once(self) -> None:
        r = self.client.post("/api/automation/tasks/auto_progress/trigger")
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertTrue(body["executed"])
        self.assertEqual(body["result"]["succeeded_ids"], [4, 9])
        self.assertEqual(body["last_run"]["trigger"], "manual")
        self.assertEqual(self.sup.tasks["auto_progress"].fired, 1)

    def test_stale_endpoints(self) -> None:
        body = self.client.get("/api/automation/stale", params={"fresh": "true"}).json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["items"][0]["entity_id"], 7)
        self.assertEqual(self.sup.lookup.fresh_calls, [True])

        self.assertTrue(self.client.get("/api/automation/stale/7").json()["is_stale"])
        missing = self.client.get("/api/automation/stale/8").json()
        self.assertFalse(missing["is_stale"])
        self.assertIsNone(missing["entry"])

    def test_audit_endpoint_maps_store_failure_to_503(self) -> None:
        body = self.client.get("/api/automation/audit", params={"subcategory": "AUTO_ARCHIVE"}).json()
        self.assertEqual(body["items"][0]["subcategory"], "AUTO_ARCHIVE")

        self.sup.audit.fail = True
        r = self.client.get("/api/automation/audit")
        self.assertEqual(r.status_code, 503)
        self.assertEqual(r.json()["error"]["code"], "AUTOMATION_101_STORE_UNAVAILABLE")

    def test_retention_below_floor_is_rejected(self) -> None:
        r = self.client.put("/api/settings/candidate_data_retention_years", json={"value": 2})
        self.assertEqual(r.status_code, 422)
        self.assertEqual(r.json()["error"]["code"], "AUTOMATION_002_SETTING_REJECTED")
        self.assertEqual(self.sup.reconciled, [])

        r = self.client.put("/api/settings/candidate_data_retention_years", json={"value": 5})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["reconciled"], ["data_retention"])
        self.assertEqual(self.sup.reconciled, ["candidate_data_retention_years"])

    def test_missing_value_field_is_422(self) -> None:
        r = self.client.put("/api/settings/weekly_digest_day", json={})
        self.assertEqual(r.status_code, 422)


if __name__ == "__main__":
    unittest.main()
