from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from ats_automation.core.models import EligibleEntity
from ats_automation.core.predicates import EligibilityPredicate
from ats_automation.db.models import (
    Application,
    ApplicationEmail,
    ApplicationNote,
    ApplicationStageHistory,
    HireApprovalRequest,
    Job,
    User,
)


_TIMESTAMP_COLUMNS = {
    "applied_at": Application.applied_at,
    "updated_at": Application.updated_at,
    "archived_at": Application.archived_at,
    "stage_entered_at": Application.current_stage_entered_at,
}

# Deletion order for permanent removal; every table references applications.id.
CHILD_TABLES: tuple[tuple[str, Any], ...] = (
    ("application_notes", ApplicationNote),
    ("emails", ApplicationEmail),
    ("application_stage_history", ApplicationStageHistory),
    ("hire_approval_requests", HireApprovalRequest),
)


def predicate_clause(p: EligibilityPredicate) -> Any:
    ts = _TIMESTAMP_COLUMNS[p.timestamp_field]
    conds = [ts.is_not(None), ts < p.cutoff]
    if p.status_in:
        conds.append(Application.status.in_(list(p.status_in)))
    if p.status_not_in:
        conds.append(Application.status.not_in(list(p.status_not_in)))
    if p.archived is not None:
        conds.append(Application.is_archived.is_(p.archived))
    return and_(*conds)


def _guarded(ids: Sequence[int], guard: EligibilityPredicate | None) -> Any:
    cond = Application.id.in_(list(ids))
    return and_(cond, predicate_clause(guard)) if guard is not None else cond


def _projection_columns() -> tuple[Any, ...]:
    return (
        Application.id,
        Application.status,
        Application.is_archived,
        Application.current_stage_entered_at,
        Application.applied_at,
        Application.archived_at,
        Application.updated_at,
        Application.job_id,
        Job.title,
        Application.name,
        Application.email,
    )


def _to_entity(row: Any) -> EligibleEntity:
    return EligibleEntity(
        id=int(row[0]),
        current_status=str(row[1]),
        is_archived=bool(row[2]),
        stage_entered_at=row[3],
        applied_at=row[4],
        archived_at=row[5],
        updated_at=row[6],
        job_id=row[7],
        job_title=row[8],
        name=row[9],
        email=row[10],
    )


class ApplicationsRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    def find_eligible(self, predicate: EligibilityPredicate) -> list[EligibleEntity]:
        with self._Session() as s:
            rows = s.execute(
                select(*_projection_columns())
                .outerjoin(Job, Job.id == Application.job_id)
                .where(predicate_clause(predicate))
                .order_by(Application.id)
            ).all()
            return [_to_entity(r) for r in rows]

    def get_projection(self, application_id: int) -> EligibleEntity | None:
        with self._Session() as s:
            row = s.execute(
                select(*_projection_columns())
                .outerjoin(Job, Job.id == Application.job_id)
                .where(Application.id == int(application_id))
                .limit(1)
            ).first()
            return _to_entity(row) if row is not None else None

    def still_eligible(self, ids: Sequence[int], guard: EligibilityPredicate) -> list[int]:
        if not ids:
            return []
        with self._Session() as s:
            return [int(x) for x in s.execute(select(Application.id).where(_guarded(ids, guard))).scalars().all()]

    def bulk_update(
        self,
        ids: Sequence[int],
        values: dict[str, Any],
        *,
        guard: EligibilityPredicate | None = None,
    ) -> list[int]:
        """
        One statement, one commit. The guard is part of the UPDATE's WHERE,
        so rows that stopped matching since selection are left alone and are
        missing from the returned ids.
        """
        if not ids:
            return []
        with self._Session() as s:
            try:
                cond = _guarded(ids, guard)
                stmt = update(Application).where(cond).values(**values).execution_options(synchronize_session=False)
                if s.get_bind().dialect.update_returning:
                    updated = [int(x) for x in s.execute(stmt.returning(Application.id)).scalars().all()]
                else:
                    updated = [int(x) for x in s.execute(select(Application.id).where(cond)).scalars().all()]
                    if updated:
                        s.execute(stmt.where(Application.id.in_(updated)))
                s.commit()
                return sorted(updated)
            except Exception:
                s.rollback()
                raise

    def delete_children(self, table: str, ids: Sequence[int], *, guard: EligibilityPredicate | None = None) -> int:
        """Child rows of `ids`; with a guard, only of parents that still match it."""
        model = dict(CHILD_TABLES)[table]
        if not ids:
            return 0
        parents: Any = list(ids)
        if guard is not None:
            parents = select(Application.id).where(_guarded(ids, guard))
        with self._Session() as s:
            try:
                res = s.execute(delete(model).where(model.application_id.in_(parents)))
                s.commit()
                return int(res.rowcount or 0)
            except Exception:
                s.rollback()
                raise

    def delete_applications(self, ids: Sequence[int], *, guard: EligibilityPredicate | None = None) -> list[int]:
        """Returns the ids actually deleted."""
        if not ids:
            return []
        with self._Session() as s:
            try:
                cond = _guarded(ids, guard)
                stmt = delete(Application).where(cond).execution_options(synchronize_session=False)
                if s.get_bind().dialect.delete_returning:
                    deleted = [int(x) for x in s.execute(stmt.returning(Application.id)).scalars().all()]
                else:
                    deleted = [int(x) for x in s.execute(select(Application.id).where(cond)).scalars().all()]
                    if deleted:
                        s.execute(stmt.where(Application.id.in_(deleted)))
                s.commit()
                return sorted(deleted)
            except Exception:
                s.rollback()
                raise

    def count_applications_between(self, start: datetime, end: datetime) -> int:
        with self._Session() as s:
            return int(
                s.execute(
                    select(func.count(Application.id)).where(
                        and_(Application.applied_at >= start, Application.applied_at < end)
                    )
                ).scalar_one()
            )

    def status_breakdown_between(self, start: datetime, end: datetime) -> dict[str, int]:
        with self._Session() as s:
            rows = s.execute(
                select(Application.status, func.count(Application.id))
                .where(and_(Application.applied_at >= start, Application.applied_at < end))
                .group_by(Application.status)
            ).all()
            return {str(status): int(n) for status, n in rows}

    def count_jobs_created_between(self, start: datetime, end: datetime) -> int:
        with self._Session() as s:
            return int(
                s.execute(
                    select(func.count(Job.id)).where(and_(Job.created_at >= start, Job.created_at < end))
                ).scalar_one()
            )

    def top_jobs_between(self, start: datetime, end: datetime, *, limit: int = 5) -> list[dict[str, Any]]:
        with self._Session() as s:
            n = func.count(Application.id).label("n")
            rows = s.execute(
                select(Job.id, Job.title, n)
                .join(Application, Application.job_id == Job.id)
                .where(and_(Application.applied_at >= start, Application.applied_at < end))
                .group_by(Job.id, Job.title)
                .order_by(n.desc(), Job.id)
                .limit(max(1, int(limit)))
            ).all()
            return [{"job_id": int(r[0]), "title": str(r[1]), "applications": int(r[2])} for r in rows]

    def active_users(self, user_ids: Sequence[Any]) -> list[dict[str, Any]]:
        ids: list[int] = []
        for raw in user_ids:
            try:
                ids.append(int(raw))
            except (TypeError, ValueError):
                continue
        if not ids:
            return []
        with self._Session() as s:
            rows = s.execute(
                select(User.id, User.email, User.first_name, User.last_name)
                .where(and_(User.id.in_(ids), User.is_active.is_(True)))
                .order_by(User.id)
            ).all()
            return [
                {"id": int(r[0]), "email": str(r[1]), "first_name": r[2] or "", "last_name": r[3] or ""}
                for r in rows
            ]
