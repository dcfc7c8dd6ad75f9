from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

from ats_automation.core.errors import SettingValidationError, TransientStoreError
from ats_automation.core.models import DAY_NAMES
from ats_automation.core.schedule_resolver import RETENTION_MIN_YEARS
from ats_automation.db.repo.settings_repo import SettingsRepo


logger = logging.getLogger("automation.settings")

DAY_THRESHOLD_KEYS = (
    "auto_archive_rejected_days",
    "auto_progress_delay_days",
    "auto_reject_after_days",
    "alert_stale_applications_days",
)
BOOLEAN_KEYS = ("enable_workflow_automation", "weekly_digest_enabled")

_MISSING = object()
_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_setting_value(value: Any, data_type: str) -> Any:
    """Typed view of a stored string. Unparseable values come back raw."""
    if value is None:
        return None
    dt = (data_type or "string").strip().lower()
    try:
        if dt == "boolean":
            return value is True or str(value).strip().lower() == "true"
        if dt == "number":
            n = float(value)
            return int(n) if n.is_integer() else n
        if dt == "json":
            return json.loads(value) if isinstance(value, str) else value
    except (TypeError, ValueError):
        logger.warning("setting_parse_failed data_type=%s value=%r", dt, value)
        return value
    return value


def _strict_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise SettingValidationError(key, "expected an integer, got boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    s = str(value).strip()
    if not re.fullmatch(r"-?\d+", s):
        raise SettingValidationError(key, f"expected an integer, got {value!r}")
    return int(s)


def validate_setting(key: str, value: Any) -> tuple[str, str]:
    """
    Validate an operator write and return (stored_value, data_type).

    Unknown keys are stored as strings (or JSON for lists/dicts).
    """
    if key in DAY_THRESHOLD_KEYS:
        n = _strict_int(key, value)
        if n < 0:
            raise SettingValidationError(key, "must be >= 0 (0 disables the automation)")
        return str(n), "number"
    if key == "candidate_data_retention_years":
        n = _strict_int(key, value)
        if n < RETENTION_MIN_YEARS:
            raise SettingValidationError(key, f"must be at least {RETENTION_MIN_YEARS} years")
        return str(n), "number"
    if key in BOOLEAN_KEYS:
        if isinstance(value, bool):
            return ("true" if value else "false"), "boolean"
        s = str(value).strip().lower()
        if s in _TRUE:
            return "true", "boolean"
        if s in _FALSE:
            return "false", "boolean"
        raise SettingValidationError(key, f"expected a boolean, got {value!r}")
    if key == "weekly_digest_day":
        s = str(value).strip().lower()
        if s not in DAY_NAMES:
            raise SettingValidationError(key, f"expected one of {list(DAY_NAMES)}")
        return s, "string"
    if key == "weekly_digest_time":
        s = str(value).strip()
        if not _HHMM.match(s):
            raise SettingValidationError(key, "expected HH:MM")
        return s, "string"
    if key == "weekly_digest_recipients":
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise SettingValidationError(key, f"expected a JSON list: {e}") from e
        if not isinstance(value, list):
            raise SettingValidationError(key, "expected a list of user ids")
        return json.dumps(value), "json"
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False), "json"
    if isinstance(value, bool):
        return ("true" if value else "false"), "boolean"
    return str(value), "string"


class SettingsProvider:
    """
    Read-mostly view over the settings table.

    Missing keys resolve to the caller's default. A failing store raises
    TransientStoreError so callers can keep whatever they last knew.
    """

    def __init__(
        self,
        repo: SettingsRepo,
        *,
        cache_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._ttl = float(cache_ttl_seconds)
        self._clock = clock
        self._cache: dict[str, tuple[Any, float]] = {}

    async def get_setting(self, key: str, default: Any = None, *, use_cache: bool = True) -> Any:
        values = await self.get_settings([key], {key: default}, use_cache=use_cache)
        return values.get(key, default)

    async def get_settings(
        self,
        keys: Iterable[str],
        defaults: dict[str, Any] | None = None,
        *,
        use_cache: bool = True,
    ) -> dict[str, Any]:
        keys = list(dict.fromkeys(keys))
        defaults = defaults or {}
        now = self._clock()
        found: dict[str, Any] = {}
        to_load: list[str] = []
        for k in keys:
            hit = self._cache.get(k) if use_cache else None
            if hit is not None and now - hit[1] < self._ttl:
                found[k] = hit[0]
            else:
                to_load.append(k)

        if to_load:
            try:
                rows = await asyncio.to_thread(self._repo.get_many, to_load)
            except SQLAlchemyError as e:
                logger.error("settings_read_failed keys=%s error=%s", ",".join(to_load), e)
                raise TransientStoreError(f"settings read failed: {e}") from e
            for k in to_load:
                if k in rows:
                    raw, data_type = rows[k]
                    val = parse_setting_value(raw, data_type)
                else:
                    val = _MISSING
                self._cache[k] = (val, now)
                found[k] = val

        out: dict[str, Any] = {}
        for k in keys:
            v = found.get(k, _MISSING)
            if v is _MISSING:
                if k in defaults:
                    out[k] = defaults[k]
            else:
                out[k] = v
        return out

    async def set_setting(self, key: str, value: Any) -> Any:
        stored, data_type = validate_setting(key, value)
        try:
            await asyncio.to_thread(self._repo.upsert, key, stored, data_type)
        except SQLAlchemyError as e:
            logger.error("settings_write_failed key=%s error=%s", key, e)
            raise TransientStoreError(f"settings write failed: {e}") from e
        self._cache.pop(key, None)
        logger.info("settings_written key=%s data_type=%s", key, data_type)
        return parse_setting_value(stored, data_type)

    def clear_cache(self) -> None:
        self._cache.clear()
