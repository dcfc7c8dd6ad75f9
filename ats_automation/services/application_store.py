from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from ats_automation.core.errors import TransientStoreError
from ats_automation.core.models import EligibleEntity
from ats_automation.core.predicates import EligibilityPredicate
from ats_automation.db.repo.applications_repo import CHILD_TABLES, ApplicationsRepo


logger = logging.getLogger("automation.store")

T = TypeVar("T")


class ApplicationStore:
    """
    Async face of ApplicationsRepo. Every call runs on a worker thread so the
    event loop keeps serving other tasks; SQLAlchemy failures surface as
    TransientStoreError.
    """

    child_tables: tuple[str, ...] = tuple(name for name, _ in CHILD_TABLES)

    def __init__(self, repo: ApplicationsRepo) -> None:
        self._repo = repo

    async def _call(self, op: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error("store_call_failed op=%s error=%s", op, e)
            raise TransientStoreError(f"op={op} error={e}") from e

    async def find_eligible(self, predicate: EligibilityPredicate) -> list[EligibleEntity]:
        return await self._call("find_eligible", self._repo.find_eligible, predicate)

    async def get_projection(self, application_id: int) -> EligibleEntity | None:
        return await self._call("get_projection", self._repo.get_projection, application_id)

    async def bulk_update(
        self,
        ids: Sequence[int],
        values: dict[str, Any],
        *,
        guard: EligibilityPredicate | None = None,
    ) -> list[int]:
        return await self._call("bulk_update", self._repo.bulk_update, list(ids), values, guard=guard)

    async def still_eligible(self, ids: Sequence[int], guard: EligibilityPredicate) -> list[int]:
        return await self._call("still_eligible", self._repo.still_eligible, list(ids), guard)

    async def delete_children(
        self,
        table: str,
        ids: Sequence[int],
        *,
        guard: EligibilityPredicate | None = None,
    ) -> int:
        return await self._call(f"delete_children:{table}", self._repo.delete_children, table, list(ids), guard=guard)

    async def delete_applications(self, ids: Sequence[int], *, guard: EligibilityPredicate | None = None) -> list[int]:
        return await self._call("delete_applications", self._repo.delete_applications, list(ids), guard=guard)

    async def count_applications_between(self, start: datetime, end: datetime) -> int:
        return await self._call("count_applications", self._repo.count_applications_between, start, end)

    async def status_breakdown_between(self, start: datetime, end: datetime) -> dict[str, int]:
        return await self._call("status_breakdown", self._repo.status_breakdown_between, start, end)

    async def count_jobs_created_between(self, start: datetime, end: datetime) -> int:
        return await self._call("count_jobs", self._repo.count_jobs_created_between, start, end)

    async def top_jobs_between(self, start: datetime, end: datetime, *, limit: int = 5) -> list[dict[str, Any]]:
        return await self._call("top_jobs", self._repo.top_jobs_between, start, end, limit=limit)

    async def active_users(self, user_ids: Sequence[Any]) -> list[dict[str, Any]]:
        return await self._call("active_users", self._repo.active_users, list(user_ids))
