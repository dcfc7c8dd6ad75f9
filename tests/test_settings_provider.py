from __future__ import annotations

import unittest
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from ats_automation.core.errors import SettingValidationError, TransientStoreError
from ats_automation.db.models import Setting
from ats_automation.db.repo.settings_repo import SettingsRepo
from ats_automation.services.settings_provider import SettingsProvider, parse_setting_value, validate_setting

from support_db import TempDB


class SettingValueTests(unittest.TestCase):
    def test_parse_typed_values(self) -> None:
        self.assertEqual(parse_setting_value("30", "number"), 30)
        self.assertEqual(parse_setting_value("2.5", "number"), 2.5)
        self.assertTrue(parse_setting_value("true", "boolean"))
        self.assertFalse(parse_setting_value("no", "boolean"))
        self.assertEqual(parse_setting_value("[1, 2]", "json"), [1, 2])
        self.assertEqual(parse_setting_value("abc", "number"), "abc")

    def test_retention_below_floor_rejected(self) -> None:
        with self.assertRaises(SettingValidationError) as ctx:
            validate_setting("candidate_data_retention_years", 2)
        self.assertEqual(ctx.exception.err.code, "AUTOMATION_002_SETTING_REJECTED")
        self.assertEqual(validate_setting("candidate_data_retention_years", "5"), ("5", "number"))

    def test_threshold_validation(self) -> None:
        self.assertEqual(validate_setting("auto_progress_delay_days", "0"), ("0", "number"))
        for bad in ("-1", "ten", True, 1.5):
            with self.assertRaises(SettingValidationError):
                validate_setting("auto_progress_delay_days", bad)

    def test_other_known_keys(self) -> None:
        self.assertEqual(validate_setting("enable_workflow_automation", "on"), ("true", "boolean"))
        self.assertEqual(validate_setting("weekly_digest_day", "Friday"), ("friday", "string"))
        self.assertEqual(validate_setting("weekly_digest_recipients", "[3, 4]"), ("[3, 4]", "json"))
        with self.assertRaises(SettingValidationError):
            validate_setting("weekly_digest_time", "9am")
        with self.assertRaises(SettingValidationError):
            validate_setting("weekly_digest_recipients", "{}")


class SettingsProviderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = TempDB()

    def tearDown(self) -> None:
        self.db.close()

    async def test_missing_key_returns_default(self) -> None:
        provider, _, _ = self.db.services()
        self.assertEqual(await provider.get_setting("auto_archive_rejected_days", 99), 99)
        self.assertIsNone(await provider.get_setting("auto_archive_rejected_days"))

    async def test_cache_ttl_and_fresh_reads(self) -> None:
        now = [0.0]
        provider = SettingsProvider(SettingsRepo(self.db.factory), cache_ttl_seconds=300, clock=lambda: now[0])
        self.db.set("auto_archive_rejected_days", "30", "number")
        self.assertEqual(await provider.get_setting("auto_archive_rejected_days"), 30)

        with self.db.factory() as s:
            row = s.query(Setting).filter_by(key="auto_archive_rejected_days").one()
            row.value = "45"
            s.commit()

        now[0] = 100.0
        self.assertEqual(await provider.get_setting("auto_archive_rejected_days"), 30)
        self.assertEqual(await provider.get_setting("auto_archive_rejected_days", use_cache=False), 45)
        now[0] = 1000.0
        self.assertEqual(await provider.get_setting("auto_archive_rejected_days"), 45)

    async def test_rejected_write_keeps_previous_value(self) -> None:
        provider, _, _ = self.db.services()
        await provider.set_setting("candidate_data_retention_years", 4)
        with self.assertRaises(SettingValidationError):
            await provider.set_setting("candidate_data_retention_years", 2)
        self.assertEqual(await provider.get_setting("candidate_data_retention_years"), 4)

    async def test_write_then_read_round_trip_through_types(self) -> None:
        provider, _, _ = self.db.services()
        self.assertIs(await provider.set_setting("weekly_digest_enabled", "yes"), True)
        values = await provider.get_settings(["weekly_digest_enabled", "weekly_digest_day"], {"weekly_digest_day": "monday"})
        self.assertEqual(values, {"weekly_digest_enabled": True, "weekly_digest_day": "monday"})

    async def test_store_failure_raises_transient(self) -> None:
        repo = MagicMock()
        repo.get_many.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
        provider = SettingsProvider(repo)
        with self.assertRaises(TransientStoreError):
            await provider.get_settings(["auto_archive_rejected_days"])


if __name__ == "__main__":
    unittest.main()
