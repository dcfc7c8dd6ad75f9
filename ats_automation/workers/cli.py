from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any

from ats_automation.core.errors import AutomationError
from ats_automation.core.models import TaskName
from ats_automation.core.schedule_resolver import SETTING_KEYS, resolve
from ats_automation.db.config import get_db_settings
from ats_automation.db.engine import make_engine
from ats_automation.db.repo.settings_repo import SettingsRepo
from ats_automation.db.session import make_session_factory
from ats_automation.services.scheduler_config import SchedulerConfig, load_scheduler_config
from ats_automation.services.settings_provider import SettingsProvider
from ats_automation.web.admin_api import create_app, serve
from ats_automation.workers.supervisor import build_supervisor


USAGE = (
    "Usage: python -m ats_automation.workers.cli "
    "run [--api]|status|trigger <task>|settings:set <key> <value>"
)


def _configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[SCHED] %(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _settings_provider(cfg: SchedulerConfig) -> SettingsProvider:
    db = get_db_settings()
    factory = make_session_factory(make_engine(db.database_url, echo=db.echo))
    return SettingsProvider(SettingsRepo(factory), cache_ttl_seconds=cfg.settings_cache_ttl_seconds)


async def _run(cfg: SchedulerConfig, with_api: bool) -> int:
    supervisor = build_supervisor(cfg)
    await supervisor.start()
    try:
        if with_api:
            await serve(create_app(supervisor, supervisor.settings), host=cfg.admin_host, port=cfg.admin_port)
        else:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await stop.wait()
    finally:
        await supervisor.shutdown(cfg.shutdown_wait_seconds)
    return 0


async def _status(cfg: SchedulerConfig) -> int:
    provider = _settings_provider(cfg)
    rows = []
    for name in TaskName:
        values = await provider.get_settings(SETTING_KEYS[name], {}, use_cache=False)
        c = resolve(name, values, timezone=cfg.timezone)
        rows.append(
            {
                "name": name.value,
                "enabled": c.enabled,
                "threshold": c.threshold,
                "threshold_unit": c.threshold_unit,
                "schedule": c.trigger.describe() if c.trigger else None,
                "reason": c.reason,
            }
        )
    _print({"ok": True, "timezone": cfg.timezone, "tasks": rows})
    return 0


async def _trigger(cfg: SchedulerConfig, name: str) -> int:
    supervisor = build_supervisor(cfg)
    task = supervisor.task(name)
    await supervisor.start()
    try:
        result = await task.trigger_now()
    finally:
        await supervisor.shutdown(cfg.shutdown_wait_seconds)
    summary = result.to_dict() if hasattr(result, "to_dict") else result
    _print({"ok": task.last_run is not None and bool(task.last_run.get("ok")), "task": name, "result": summary, "last_run": task.last_run})
    return 0 if task.last_run and task.last_run.get("ok") else 1


async def _settings_set(cfg: SchedulerConfig, key: str, value: str) -> int:
    stored = await _settings_provider(cfg).set_setting(key, value)
    _print({"ok": True, "key": key, "value": stored})
    return 0


def cmd_run(argv: list[str]) -> int:
    cfg = load_scheduler_config()
    return asyncio.run(_run(cfg, "--api" in argv))


def cmd_status(argv: list[str]) -> int:
    _ = argv
    return asyncio.run(_status(load_scheduler_config()))


def cmd_trigger(argv: list[str]) -> int:
    if not argv:
        print(f"trigger requires a task name: {', '.join(t.value for t in TaskName)}", file=sys.stderr)
        return 2
    return asyncio.run(_trigger(load_scheduler_config(), argv[0]))


def cmd_settings_set(argv: list[str]) -> int:
    if len(argv) < 2:
        print("settings:set requires <key> <value>", file=sys.stderr)
        return 2
    return asyncio.run(_settings_set(load_scheduler_config(), argv[0], argv[1]))


def main() -> int:
    argv = sys.argv[1:]
    if not argv:
        print(USAGE, file=sys.stderr)
        return 2

    _configure_logging()
    cmd = argv[0]
    tail = argv[1:]
    try:
        if cmd == "run":
            return cmd_run(tail)
        if cmd == "status":
            return cmd_status(tail)
        if cmd == "trigger":
            return cmd_trigger(tail)
        if cmd == "settings:set":
            return cmd_settings_set(tail)
        print(f"Unknown command: {cmd}", file=sys.stderr)
        return 2
    except AutomationError as e:
        _print({"ok": False, "error_code": e.err.code, "error": str(e)})
        return 10
    except Exception as e:
        _print({"ok": False, "error_code": "AUTOMATION_999_UNEXPECTED", "error": str(e)})
        return 12


if __name__ == "__main__":
    raise SystemExit(main())
