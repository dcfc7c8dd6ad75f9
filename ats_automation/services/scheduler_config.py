from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "scheduler.yaml"


@dataclass(frozen=True)
class SchedulerConfig:
    timezone: str = "America/New_York"
    reconcile_seconds: int = 3600
    misfire_grace_seconds: int = 600
    shutdown_wait_seconds: int = 30
    settings_cache_ttl_seconds: int = 300
    admin_host: str = "127.0.0.1"
    admin_port: int = 8790
    site_name: str = "Careers"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise RuntimeError(f"invalid yaml: {path}")
    return obj


def _section(cfg: dict[str, Any], name: str) -> dict[str, Any]:
    d = cfg.get(name, {})
    return d if isinstance(d, dict) else {}


def _int(raw: Any, default: int, *, minimum: int = 1) -> int:
    try:
        v = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return v if v >= minimum else default


def load_scheduler_config(path: Path | None = None, environ: dict[str, str] | None = None) -> SchedulerConfig:
    """YAML file first, then environment overrides; bad numbers fall back to defaults."""
    env = os.environ if environ is None else environ
    p = Path(env.get("SCHEDULER_CONFIG", "").strip() or path or DEFAULT_CONFIG_PATH)
    cfg = _load_yaml(p)
    sched = _section(cfg, "scheduler")
    settings = _section(cfg, "settings")
    admin = _section(cfg, "admin_api")
    digest = _section(cfg, "digest")
    d = SchedulerConfig()

    def pick(env_key: str, raw: Any) -> Any:
        v = str(env.get(env_key, "") or "").strip()
        return v if v else raw

    return SchedulerConfig(
        timezone=str(pick("SCHEDULER_TIMEZONE", sched.get("timezone")) or d.timezone),
        reconcile_seconds=_int(pick("SCHEDULER_RECONCILE_SECONDS", sched.get("reconcile_seconds")), d.reconcile_seconds),
        misfire_grace_seconds=_int(
            pick("SCHEDULER_MISFIRE_GRACE_SECONDS", sched.get("misfire_grace_seconds")), d.misfire_grace_seconds
        ),
        shutdown_wait_seconds=_int(
            pick("SCHEDULER_SHUTDOWN_WAIT_SECONDS", sched.get("shutdown_wait_seconds")), d.shutdown_wait_seconds, minimum=0
        ),
        settings_cache_ttl_seconds=_int(
            pick("SETTINGS_CACHE_TTL_SECONDS", settings.get("cache_ttl_seconds")), d.settings_cache_ttl_seconds, minimum=0
        ),
        admin_host=str(pick("ADMIN_API_HOST", admin.get("host")) or d.admin_host),
        admin_port=_int(pick("ADMIN_API_PORT", admin.get("port")), d.admin_port),
        site_name=str(pick("DIGEST_SITE_NAME", digest.get("site_name")) or d.site_name),
    )
