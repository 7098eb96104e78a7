"""
Slot normalization — provider payloads → ``AvailabilitySlot`` and the
aggregates built from them (dedupe, daily summaries, hourly buckets).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from utils.schemas import (
    AcuitySlotPayload,
    AvailabilitySlot,
    DailySummary,
    DateRange,
    HourlyBucket,
    ProviderSlotPayload,
    SquareSlotPayload,
)

DEFAULT_SERVICE_NAME = "Haircut"

# (substring, canonical name), first match wins
_SERVICE_RULES: Tuple[Tuple[str, str], ...] = (
    ("kids", "Kids Haircut"),
    ("haircut", DEFAULT_SERVICE_NAME),
    ("lineup", "Lineup"),
    ("beard", "Beard"),
    ("shave", "Head Shave"),
)


def normalize_service_name(value: Optional[str]) -> str:
    """
    Map a provider's appointment-type name onto a canonical service name.

    >>> normalize_service_name("haircut (kids)")
    'Kids Haircut'
    >>> normalize_service_name("  Hot Towel  ")
    'Hot Towel'
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return DEFAULT_SERVICE_NAME

    lowered = trimmed.lower()
    for needle, canonical in _SERVICE_RULES:
        if needle in lowered:
            return canonical
    return trimmed


def is_default_service_name(value: Optional[str]) -> bool:
    return normalize_service_name(value) == DEFAULT_SERVICE_NAME


def build_external_id(calendar_id: str, appointment_type_id: str, slot_date, start_time: str) -> str:
    return f"{calendar_id}:{appointment_type_id}:{slot_date.isoformat()}T{start_time}"


def to_availability_slot(payload: ProviderSlotPayload, fetched_at: datetime) -> AvailabilitySlot:
    """Convert one validated provider payload into the common slot shape."""
    if isinstance(payload, AcuitySlotPayload):
        calendar_id = payload.calendar_id
        service = payload.appointment_type
        slot_date = payload.slot_date
        start_time = payload.start_time
        start_at = payload.start_at
        tz = payload.timezone
    elif isinstance(payload, SquareSlotPayload):
        # Square's offset is kept as-is so the date does not shift across zones
        calendar_id = payload.location_id
        service = payload.variation
        slot_date = payload.start_at.date()
        start_time = payload.start_at.strftime("%H:%M")
        start_at = payload.start_at
        tz = payload.location_timezone
    else:
        raise TypeError(f"Unsupported slot payload: {type(payload).__name__}")

    end_at = None
    if start_at is not None and service.duration_minutes:
        end_at = start_at + timedelta(minutes=service.duration_minutes)

    return AvailabilitySlot(
        provider=payload.provider,
        external_id=build_external_id(calendar_id, service.id, slot_date, start_time),
        calendar_id=calendar_id,
        appointment_type_id=service.id,
        appointment_type_name=service.name,
        service_name=normalize_service_name(service.name),
        slot_date=slot_date,
        start_time=start_time,
        start_at=start_at,
        end_at=end_at,
        duration_minutes=service.duration_minutes,
        price=service.price,
        estimated_revenue=round(service.price or 0.0, 2),
        timezone=tz,
        fetched_at=fetched_at,
    )


def dedupe_slots(slots: Iterable[AvailabilitySlot]) -> List[AvailabilitySlot]:
    """
    Keep one slot per (provider, calendar, date, start time).

    The same opening is usually offered for several services; the default
    service wins, then the cheaper one.  First-seen order is preserved.
    """
    kept: Dict[Tuple[str, str, object, str], AvailabilitySlot] = {}
    for slot in slots:
        key = (slot.provider, slot.calendar_id, slot.slot_date, slot.start_time)
        current = kept.get(key)
        kept[key] = slot if current is None else _preferred(current, slot)
    return list(kept.values())


def _preferred(current: AvailabilitySlot, candidate: AvailabilitySlot) -> AvailabilitySlot:
    current_default = is_default_service_name(current.appointment_type_name)
    candidate_default = is_default_service_name(candidate.appointment_type_name)
    if current_default != candidate_default:
        return current if current_default else candidate

    if candidate.price is None:
        return current
    if current.price is None:
        return candidate
    return candidate if candidate.price < current.price else current


def build_daily_summaries(
    slots: Iterable[AvailabilitySlot], fetched_at: datetime
) -> List[DailySummary]:
    summaries: Dict[Tuple[str, object], DailySummary] = {}
    for slot in slots:
        key = (slot.provider, slot.slot_date)
        summary = summaries.get(key)
        if summary is None:
            summary = summaries[key] = DailySummary(
                provider=slot.provider,
                slot_date=slot.slot_date,
                timezone=slot.timezone,
                fetched_at=fetched_at,
            )
        summary.slot_count += 1
        summary.estimated_revenue = round(summary.estimated_revenue + slot.estimated_revenue, 2)
    return sorted(summaries.values(), key=lambda s: (s.provider, s.slot_date))


def fill_missing_days(
    summaries: Iterable[DailySummary], provider: str, date_range: DateRange, fetched_at: datetime
) -> List[DailySummary]:
    """One summary per day of the range; days without slots get a zero count."""
    by_day = {s.slot_date: s for s in summaries}
    return [
        by_day.get(day) or DailySummary(provider=provider, slot_date=day, fetched_at=fetched_at)
        for day in date_range.dates()
    ]


def build_hourly_buckets(slots: Iterable[AvailabilitySlot]) -> List[HourlyBucket]:
    buckets: Dict[Tuple[str, object, str], HourlyBucket] = {}
    for slot in slots:
        hour = _slot_hour(slot)
        if hour is None:
            continue
        key = (slot.provider, slot.slot_date, hour)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = HourlyBucket(
                provider=slot.provider,
                slot_date=slot.slot_date,
                hour=hour,
                timezone=slot.timezone,
            )
        bucket.slot_count += 1
    return sorted(buckets.values(), key=lambda b: (b.provider, b.slot_date, b.hour))


def _slot_hour(slot: AvailabilitySlot) -> Optional[str]:
    head = slot.start_time.split(":", 1)[0]
    if head.isdigit() and 0 <= int(head) <= 23:
        return f"{int(head):02d}:00"
    if slot.start_at is not None:
        return f"{slot.start_at.hour:02d}:00"
    return None
