from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Mapping

from ats_automation.core.models import EligibleEntity, StaleIndexEntry, utcnow, whole_days_between
from ats_automation.core.predicates import stale_predicate
from ats_automation.core.schedule_resolver import parse_threshold


logger = logging.getLogger("automation.stale")

STALE_THRESHOLD_KEY = "alert_stale_applications_days"


@dataclass(frozen=True)
class _Snapshot:
    entries: Mapping[int, StaleIndexEntry] = field(default_factory=lambda: MappingProxyType({}))
    threshold: int | None = None
    computed_at: datetime | None = None


class StaleApplicationIndex:
    """
    Latest stale-application snapshot, published by the stale detector.

    Readers see either the previous snapshot or the new one, never a mix:
    `replace` swaps a single reference. Before the first run every id reads
    as "not stale".
    """

    def __init__(self) -> None:
        self._snap = _Snapshot()

    def replace(self, entries: list[StaleIndexEntry], *, threshold: int, computed_at: datetime | None = None) -> None:
        mapping = MappingProxyType({e.entity_id: e for e in entries})
        self._snap = _Snapshot(entries=mapping, threshold=int(threshold), computed_at=computed_at or utcnow())

    def clear(self) -> None:
        self._snap = _Snapshot()

    @property
    def populated(self) -> bool:
        return self._snap.computed_at is not None

    @property
    def threshold(self) -> int | None:
        return self._snap.threshold

    @property
    def computed_at(self) -> datetime | None:
        return self._snap.computed_at

    def is_stale(self, entity_id: int) -> bool:
        return int(entity_id) in self._snap.entries

    def get(self, entity_id: int) -> StaleIndexEntry | None:
        return self._snap.entries.get(int(entity_id))

    def count(self) -> int:
        return len(self._snap.entries)

    def all(self) -> list[StaleIndexEntry]:
        return sorted(self._snap.entries.values(), key=lambda e: (-e.days_in_stage, e.entity_id))

    def describe(self) -> dict[str, Any]:
        snap = self._snap
        return {
            "populated": snap.computed_at is not None,
            "count": len(snap.entries),
            "threshold": snap.threshold,
            "computed_at": snap.computed_at.isoformat() if snap.computed_at else None,
        }


def stale_entry(entity: EligibleEntity, threshold: int, now: datetime) -> StaleIndexEntry:
    return StaleIndexEntry(
        entity_id=entity.id,
        days_in_stage=whole_days_between(entity.stage_entered_at, now) or 0,
        threshold_at_compute_time=int(threshold),
        status=entity.current_status,
        stage_entered_at=entity.stage_entered_at,
        job_id=entity.job_id,
        name=entity.name,
    )


async def detect_stale(store: Any, threshold: int, now: datetime) -> list[StaleIndexEntry]:
    entities = await store.find_eligible(stale_predicate(threshold, now))
    return [stale_entry(e, threshold, now) for e in entities]


class StaleApplicationLookup:
    """
    Answers "is this application stale?" for request handlers.

    The index is served when populated; `fresh=True` (or a cold index)
    re-queries the store with the current threshold.
    """

    def __init__(
        self,
        index: StaleApplicationIndex,
        store: Any,
        settings: Any,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._index = index
        self._store = store
        self._settings = settings
        self._clock = clock

    async def _threshold(self) -> int | None:
        raw = await self._settings.get_setting(STALE_THRESHOLD_KEY, None)
        return parse_threshold(raw)

    async def is_stale(self, entity_id: int, *, fresh: bool = False) -> bool:
        return (await self.stale_info(entity_id, fresh=fresh)) is not None

    async def stale_info(self, entity_id: int, *, fresh: bool = False) -> StaleIndexEntry | None:
        if not fresh and self._index.populated:
            return self._index.get(entity_id)
        threshold = await self._threshold()
        if threshold is None:
            return None
        entity = await self._store.get_projection(int(entity_id))
        if entity is None:
            return None
        now = self._clock()
        if not stale_predicate(threshold, now).matches(entity):
            return None
        return stale_entry(entity, threshold, now)

    async def all_stale(self, *, fresh: bool = False) -> list[StaleIndexEntry]:
        if not fresh and self._index.populated:
            return self._index.all()
        threshold = await self._threshold()
        if threshold is None:
            return []
        entries = await detect_stale(self._store, threshold, self._clock())
        logger.info("stale_lookup_fresh threshold=%s count=%s", threshold, len(entries))
        return sorted(entries, key=lambda e: (-e.days_in_stage, e.entity_id))
