"""
SlotStore — persistence for synced availability.

``availability_slots`` holds every normalized slot a provider reported (not
deduped, so per-service queries stay possible); ``availability_daily_summary``
holds per-day counts for every day of a synced range (zero for days without
slots) and its ``fetched_at`` marks when that day was last synced.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, NamedTuple, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import AvailabilityDailySummaryRecord, AvailabilitySlotRecord
from utils.schemas import AvailabilitySlot, DailySummary, DateRange

logger = logging.getLogger(__name__)

# columns compared when merging an existing row with a fresh slot
_MERGE_FIELDS = (
    "calendar_id",
    "appointment_type_id",
    "appointment_type_name",
    "service_name",
    "slot_date",
    "start_time",
    "start_at",
    "end_at",
    "duration_minutes",
    "price",
    "estimated_revenue",
    "timezone",
    "status",
)


class SyncCoverage(NamedTuple):
    """Synced days inside a range and the oldest/newest summary stamps."""

    days: int
    oldest: Optional[datetime]
    newest: Optional[datetime]


class SlotStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def sync_coverage(
        self, user_id: str, provider: str, date_range: DateRange
    ) -> SyncCoverage:
        """How many days of the range have a summary, and how fresh they are."""
        record = AvailabilityDailySummaryRecord
        async with self._sessions() as session:
            result = await session.execute(
                select(
                    func.count(func.distinct(record.slot_date)),
                    func.min(record.fetched_at),
                    func.max(record.fetched_at),
                ).where(
                    record.user_id == user_id,
                    record.source == provider,
                    record.slot_date >= date_range.start,
                    record.slot_date < date_range.end,
                    record.fetched_at.isnot(None),
                )
            )
            days, oldest, newest = result.one()
            return SyncCoverage(days or 0, oldest, newest)

    async def load(
        self, user_id: str, provider: str, date_range: DateRange
    ) -> List[AvailabilitySlot]:
        async with self._sessions() as session:
            result = await session.execute(
                select(AvailabilitySlotRecord)
                .where(
                    AvailabilitySlotRecord.user_id == user_id,
                    AvailabilitySlotRecord.source == provider,
                    AvailabilitySlotRecord.slot_date >= date_range.start,
                    AvailabilitySlotRecord.slot_date < date_range.end,
                )
                .order_by(AvailabilitySlotRecord.slot_date, AvailabilitySlotRecord.start_time)
            )
            return [_to_slot(row) for row in result.scalars().all()]

    async def replace(
        self,
        user_id: str,
        provider: str,
        date_range: DateRange,
        slots: Iterable[AvailabilitySlot],
    ) -> int:
        """Delete the stored slots for the range and insert ``slots``."""
        unique = _by_external_id(slots)
        async with self._sessions() as session:
            await session.execute(
                delete(AvailabilitySlotRecord).where(
                    AvailabilitySlotRecord.user_id == user_id,
                    AvailabilitySlotRecord.source == provider,
                    AvailabilitySlotRecord.slot_date >= date_range.start,
                    AvailabilitySlotRecord.slot_date < date_range.end,
                )
            )
            session.add_all(_to_record(user_id, slot) for slot in unique.values())
            await session.commit()
        logger.debug("Replaced %d %s slots for user %s", len(unique), provider, user_id)
        return len(unique)

    async def merge(
        self, user_id: str, provider: str, slots: Iterable[AvailabilitySlot]
    ) -> int:
        """
        Insert new slots and update changed ones, matched by external id.

        Stored slots absent from ``slots`` are left untouched.  Returns the
        number of rows inserted or updated.
        """
        unique = _by_external_id(slots)
        if not unique:
            return 0

        written = 0
        async with self._sessions() as session:
            result = await session.execute(
                select(AvailabilitySlotRecord).where(
                    AvailabilitySlotRecord.user_id == user_id,
                    AvailabilitySlotRecord.source == provider,
                    AvailabilitySlotRecord.external_id.in_(list(unique)),
                )
            )
            existing = {row.external_id: row for row in result.scalars().all()}

            for external_id, slot in unique.items():
                row = existing.get(external_id)
                if row is None:
                    session.add(_to_record(user_id, slot))
                    written += 1
                    continue
                if apply_slot_changes(row, slot):
                    written += 1
            await session.commit()
        logger.debug("Merged %d %s slots for user %s", written, provider, user_id)
        return written

    async def upsert_summaries(self, user_id: str, summaries: Iterable[DailySummary]) -> None:
        rows = [
            {
                "user_id": user_id,
                "source": s.provider,
                "slot_date": s.slot_date,
                "slot_count": s.slot_count,
                "estimated_revenue": s.estimated_revenue,
                "timezone": s.timezone,
                "fetched_at": s.fetched_at,
            }
            for s in summaries
        ]
        if not rows:
            return

        stmt = insert(AvailabilityDailySummaryRecord).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "source", "slot_date"],
            set_={
                "slot_count": stmt.excluded.slot_count,
                "estimated_revenue": stmt.excluded.estimated_revenue,
                "timezone": stmt.excluded.timezone,
                "fetched_at": stmt.excluded.fetched_at,
            },
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()


def apply_slot_changes(row: AvailabilitySlotRecord, slot: AvailabilitySlot) -> bool:
    """
    Copy ``slot`` onto an existing row in place.

    Returns True when any compared column differed.  ``fetched_at`` is
    always bumped and does not count as a change.
    """
    changed = False
    for field in _MERGE_FIELDS:
        value = getattr(slot, field)
        if getattr(row, field) != value:
            setattr(row, field, value)
            changed = True
    row.fetched_at = slot.fetched_at
    return changed


def _by_external_id(slots: Iterable[AvailabilitySlot]) -> Dict[str, AvailabilitySlot]:
    return {slot.external_id: slot for slot in slots}


def _to_record(user_id: str, slot: AvailabilitySlot) -> AvailabilitySlotRecord:
    return AvailabilitySlotRecord(
        user_id=user_id,
        source=slot.provider,
        external_id=slot.external_id,
        calendar_id=slot.calendar_id,
        appointment_type_id=slot.appointment_type_id,
        appointment_type_name=slot.appointment_type_name,
        service_name=slot.service_name,
        slot_date=slot.slot_date,
        start_time=slot.start_time,
        start_at=slot.start_at,
        end_at=slot.end_at,
        duration_minutes=slot.duration_minutes,
        price=slot.price,
        estimated_revenue=slot.estimated_revenue,
        timezone=slot.timezone,
        status=slot.status,
        fetched_at=slot.fetched_at,
    )


def _to_slot(row: AvailabilitySlotRecord) -> AvailabilitySlot:
    return AvailabilitySlot(
        provider=row.source,
        external_id=row.external_id,
        calendar_id=row.calendar_id,
        appointment_type_id=row.appointment_type_id,
        appointment_type_name=row.appointment_type_name,
        service_name=row.service_name,
        slot_date=row.slot_date,
        start_time=row.start_time,
        start_at=row.start_at,
        end_at=row.end_at,
        duration_minutes=row.duration_minutes,
        price=row.price,
        estimated_revenue=row.estimated_revenue or 0.0,
        timezone=row.timezone,
        status=row.status,
        fetched_at=row.fetched_at,
    )
