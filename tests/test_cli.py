from __future__ import annotations

import contextlib
import io
import json
import os
import unittest
from unittest.mock import patch

from ats_automation.workers import cli

from support_db import TempDB


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = TempDB()
        self.env = patch.dict(os.environ, {"DATABASE_URL": self.db.url, "SCHEDULER_TIMEZONE": "UTC"})
        self.env.start()

    def tearDown(self) -> None:
        self.env.stop()
        self.db.close()

    def _main(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with patch("sys.argv", ["cli", *argv]), contextlib.redirect_stdout(out), contextlib.redirect_stderr(io.StringIO()):
            code = cli.main()
        return code, out.getvalue()

    def test_usage_and_unknown_command(self) -> None:
        self.assertEqual(self._main()[0], 2)
        self.assertEqual(self._main("launch")[0], 2)
        self.assertEqual(self._main("trigger")[0], 2)

    def test_status_reports_resolved_configs(self) -> None:
        self.db.set("candidate_data_retention_years", "5", "number")
        code, out = self._main("status")
        self.assertEqual(code, 0)
        tasks = {t["name"]: t for t in json.loads(out)["tasks"]}
        self.assertTrue(tasks["data_retention"]["enabled"])
        self.assertEqual(tasks["data_retention"]["schedule"], "Daily at 02:00 (UTC)")
        self.assertFalse(tasks["auto_archive"]["enabled"])
        self.assertEqual(tasks["auto_archive"]["reason"], "workflow_automation_disabled")

    def test_settings_set_rejects_retention_below_floor(self) -> None:
        code, out = self._main("settings:set", "candidate_data_retention_years", "2")
        self.assertEqual(code, 10)
        self.assertEqual(json.loads(out)["error_code"], "AUTOMATION_002_SETTING_REJECTED")

        code, out = self._main("settings:set", "candidate_data_retention_years", "4")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["value"], 4)

    def test_trigger_unknown_task(self) -> None:
        code, out = self._main("trigger", "auto_hire")
        self.assertEqual(code, 10)
        self.assertEqual(json.loads(out)["error_code"], "AUTOMATION_404_TASK_NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
