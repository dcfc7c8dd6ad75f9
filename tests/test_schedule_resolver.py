from __future__ import annotations

import unittest

from apscheduler.triggers.cron import CronTrigger

from ats_automation.core.models import TaskName, TriggerSpec
from ats_automation.core.schedule_resolver import parse_hhmm, parse_threshold, resolve


WORKFLOW_ON = {"enable_workflow_automation": True}


class ScheduleResolverTests(unittest.TestCase):
    def test_non_positive_thresholds_disable_transition_tasks(self) -> None:
        for task, key in (
            (TaskName.AUTO_ARCHIVE, "auto_archive_rejected_days"),
            (TaskName.AUTO_PROGRESS, "auto_progress_delay_days"),
            (TaskName.AUTO_REJECT, "auto_reject_after_days"),
        ):
            for raw in (0, -1, "0", "-30", None, "", "abc", "7.5", True):
                cfg = resolve(task, {**WORKFLOW_ON, key: raw})
                self.assertFalse(cfg.enabled, f"{task} {raw!r}")
                self.assertIsNone(cfg.trigger)
                self.assertTrue(cfg.reason)

    def test_workflow_gate_disables_all_three(self) -> None:
        settings = {
            "enable_workflow_automation": "false",
            "auto_archive_rejected_days": 30,
            "auto_progress_delay_days": 30,
            "auto_reject_after_days": 30,
        }
        for task in (TaskName.AUTO_ARCHIVE, TaskName.AUTO_PROGRESS, TaskName.AUTO_REJECT):
            cfg = resolve(task, settings)
            self.assertFalse(cfg.enabled)
            self.assertEqual(cfg.reason, "workflow_automation_disabled")

    def test_transition_task_daily_at_midnight(self) -> None:
        cfg = resolve(TaskName.AUTO_PROGRESS, {**WORKFLOW_ON, "auto_progress_delay_days": "30"}, timezone="UTC")
        self.assertTrue(cfg.enabled)
        self.assertEqual(cfg.threshold, 30)
        self.assertEqual(cfg.threshold_unit, "days")
        self.assertEqual(cfg.trigger, TriggerSpec.daily(0, 0, timezone="UTC"))

    def test_auto_reject_excludes_applied_only_while_progress_enabled(self) -> None:
        base = {**WORKFLOW_ON, "auto_reject_after_days": 60}
        self.assertFalse(resolve(TaskName.AUTO_REJECT, base).params["exclude_applied"])
        cfg = resolve(TaskName.AUTO_REJECT, {**base, "auto_progress_delay_days": "14"})
        self.assertTrue(cfg.params["exclude_applied"])

    def test_retention_floor_disables_below_three_years(self) -> None:
        cfg = resolve(TaskName.DATA_RETENTION, {"candidate_data_retention_years": 2})
        self.assertFalse(cfg.enabled)
        self.assertEqual(cfg.threshold, 2)
        ok = resolve(TaskName.DATA_RETENTION, {"candidate_data_retention_years": "3"}, timezone="UTC")
        self.assertTrue(ok.enabled)
        self.assertEqual(ok.threshold_unit, "years")
        self.assertEqual(ok.trigger, TriggerSpec.daily(2, 0, timezone="UTC"))

    def test_stale_detector_every_four_hours(self) -> None:
        cfg = resolve(TaskName.STALE_DETECTOR, {"alert_stale_applications_days": 14})
        self.assertTrue(cfg.enabled)
        self.assertEqual(cfg.trigger.kind, "hourly_interval")
        self.assertEqual(cfg.trigger.interval_hours, 4)
        self.assertEqual(cfg.trigger.describe(), "Every 4 hours (America/New_York)")

    def test_digest_defaults_to_monday_nine(self) -> None:
        cfg = resolve(TaskName.DIGEST_SENDER, {})
        self.assertTrue(cfg.enabled)
        self.assertEqual(cfg.trigger, TriggerSpec.weekly(0, 9, 0, timezone="America/New_York"))
        self.assertEqual(cfg.params, {"day": "monday", "time": "09:00"})

    def test_digest_custom_day_and_bad_time(self) -> None:
        cfg = resolve(TaskName.DIGEST_SENDER, {"weekly_digest_day": "Friday", "weekly_digest_time": "25:00"})
        self.assertEqual(cfg.trigger.day_of_week, 4)
        self.assertEqual((cfg.trigger.hour, cfg.trigger.minute), (9, 0))
        off = resolve(TaskName.DIGEST_SENDER, {"weekly_digest_enabled": "false"})
        self.assertFalse(off.enabled)

    def test_schedule_key_ignores_threshold(self) -> None:
        a = resolve(TaskName.AUTO_ARCHIVE, {**WORKFLOW_ON, "auto_archive_rejected_days": 30})
        b = resolve(TaskName.AUTO_ARCHIVE, {**WORKFLOW_ON, "auto_archive_rejected_days": 45})
        self.assertEqual(a.schedule_key(), b.schedule_key())
        self.assertNotEqual(a, b)

    def test_trigger_spec_builds_cron_triggers(self) -> None:
        self.assertIsInstance(TriggerSpec.weekly(2, 8, 30).to_trigger(), CronTrigger)
        self.assertEqual(TriggerSpec.every_hours(24), TriggerSpec.daily(0, 0))
        self.assertIn("Wednesday at 08:30", TriggerSpec.weekly(2, 8, 30).describe())

    def test_parsers(self) -> None:
        self.assertEqual(parse_threshold(" 12 "), 12)
        self.assertEqual(parse_threshold(12.0), 12)
        self.assertIsNone(parse_threshold("12 days"))
        self.assertEqual(parse_hhmm("7:05"), (7, 5))
        self.assertEqual(parse_hhmm("noon"), (9, 0))


if __name__ == "__main__":
    unittest.main()
