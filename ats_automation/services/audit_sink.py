from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from ats_automation.core.errors import AuditEmissionError, TransientStoreError
from ats_automation.core.models import AuditRecord
from ats_automation.db.repo.audit_repo import AuditRepo


logger = logging.getLogger("automation.audit")


class AuditSink:
    """
    Append-only audit log writer.

    - emit(): fire-and-forget. The write runs on a worker thread; the caller
      never waits for it and failures are only logged.
    - write(): awaited, raises AuditEmissionError. Used where the record must
      be on disk before the caller proceeds (snapshots before deletion).
    - drain(): bounded wait for outstanding emits, used on shutdown.
    """

    def __init__(self, repo: AuditRepo) -> None:
        self._repo = repo
        self._pending: set[asyncio.Task] = set()
        self._closed = False
        self.written_count = 0
        self.failed_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def emit(self, record: AuditRecord) -> None:
        if self._closed:
            raise AuditEmissionError(f"sink closed subcategory={record.subcategory} entity_id={record.entity_id}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise AuditEmissionError(f"no running event loop: {e}") from e
        task = loop.create_task(self._background_write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def write(self, record: AuditRecord) -> int:
        if self._closed:
            raise AuditEmissionError(f"sink closed subcategory={record.subcategory} entity_id={record.entity_id}")
        return await self._insert(record)

    async def _insert(self, record: AuditRecord) -> int:
        try:
            row_id = await asyncio.to_thread(self._repo.insert, record)
        except SQLAlchemyError as e:
            self.failed_count += 1
            logger.error(
                "audit_write_failed subcategory=%s entity_id=%s error=%s",
                record.subcategory,
                record.entity_id,
                e,
            )
            raise AuditEmissionError(str(e)) from e
        self.written_count += 1
        return row_id

    async def _background_write(self, record: AuditRecord) -> None:
        try:
            await self._insert(record)
        except AuditEmissionError:
            # Already logged in _insert(); fire-and-forget callers do not see it.
            pass
        except Exception:
            self.failed_count += 1
            logger.exception("audit_emit_crashed subcategory=%s entity_id=%s", record.subcategory, record.entity_id)

    async def drain(self, timeout: float | None = None) -> bool:
        pending = set(self._pending)
        if not pending:
            return True
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("audit_drain_timeout pending=%s timeout=%s", len(not_done), timeout)
            return False
        return True

    async def close(self, timeout: float | None = None) -> bool:
        self._closed = True
        return await self.drain(timeout)

    async def recent(self, *, subcategory: str | None = None, limit: int = 100) -> list[dict]:
        try:
            return await asyncio.to_thread(self._repo.list_recent, subcategory=subcategory, limit=limit)
        except SQLAlchemyError as e:
            logger.error("audit_read_failed subcategory=%s error=%s", subcategory, e)
            raise TransientStoreError(f"audit read failed: {e}") from e
