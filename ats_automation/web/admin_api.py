from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ats_automation.core.errors import (
    AutomationError,
    SettingValidationError,
    TransientStoreError,
    UnknownTaskError,
)


class SettingPayload(BaseModel):
    value: Any


def _status_for(exc: AutomationError) -> int:
    if isinstance(exc, UnknownTaskError):
        return 404
    if isinstance(exc, SettingValidationError):
        return 422
    if isinstance(exc, TransientStoreError):
        return 503
    return 500


def _jsonable(result: Any) -> Any:
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return result


def create_app(supervisor: Any, settings: Any) -> FastAPI:
    """
    Operator API over a running SchedulerSupervisor.

    Every response carries "ok"; failures use
    {"ok": false, "error": {"code": ..., "message": ...}}.
    """
    app = FastAPI(title="ATS Automation Admin API", version="1.0.0")

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload = {"ok": False, "error": {"code": f"HTTP_{exc.status_code}", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(AutomationError)
    async def _automation_error_handler(_: Request, exc: AutomationError) -> JSONResponse:
        payload = {"ok": False, "error": {"code": exc.err.code, "message": str(exc), "detail": exc.detail}}
        return JSONResponse(status_code=_status_for(exc), content=payload)

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {
            "ok": True,
            "service": "ats-automation",
            "running": bool(supervisor.running),
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/automation/status")
    def automation_status() -> dict[str, Any]:
        return {"ok": True, **supervisor.health()}

    @app.get("/api/automation/tasks/{name}")
    def task_info(name: str) -> dict[str, Any]:
        task = supervisor.task(name)
        return {"ok": True, "task": task.get_schedule_info().to_dict()}

    @app.post("/api/automation/tasks/{name}/trigger")
    async def task_trigger(name: str) -> dict[str, Any]:
        task = supervisor.task(name)
        result = await task.trigger_now()
        info = task.get_schedule_info().to_dict()
        return {
            "ok": True,
            "task": name,
            "executed": result is not None,
            "result": _jsonable(result),
            "last_run": info.get("last_run"),
        }

    @app.get("/api/automation/stale")
    async def stale_list(fresh: bool = False) -> dict[str, Any]:
        entries = await supervisor.lookup.all_stale(fresh=fresh)
        return {
            "ok": True,
            "fresh": fresh,
            "count": len(entries),
            "index": supervisor.index.describe(),
            "items": [e.to_dict() for e in entries],
        }

    @app.get("/api/automation/stale/{application_id}")
    async def stale_one(application_id: int, fresh: bool = False) -> dict[str, Any]:
        entry = await supervisor.lookup.stale_info(application_id, fresh=fresh)
        return {
            "ok": True,
            "application_id": application_id,
            "is_stale": entry is not None,
            "entry": entry.to_dict() if entry is not None else None,
        }

    @app.get("/api/automation/audit")
    async def audit_recent(subcategory: str | None = None, limit: int = 50) -> dict[str, Any]:
        rows = await supervisor.audit.recent(subcategory=subcategory, limit=max(1, min(int(limit), 500)))
        return {"ok": True, "count": len(rows), "items": rows}

    @app.put("/api/settings/{key}")
    async def put_setting(key: str, payload: SettingPayload) -> dict[str, Any]:
        value = await settings.set_setting(key, payload.value)
        settings.clear_cache()
        reconciled = await supervisor.reconcile_for_setting(key)
        return {"ok": True, "key": key, "value": value, "reconciled": reconciled}

    return app


async def serve(app: FastAPI, *, host: str, port: int) -> None:
    """Run the API on the current event loop, next to the scheduler."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    await server.serve()
