"""
Pydantic schemas shared by the connectors, the orchestrator and the routes.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials
# ═══════════════════════════════════════════════════════════════════════════════


class Credential(BaseModel):
    """Decrypted view of one ``provider_credentials`` row."""

    user_id: str
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    account_id: Optional[str] = None
    account_label: Optional[str] = None
    token_type: str = "Bearer"
    scopes: List[str] = Field(default_factory=list)
    provider_meta: Dict[str, Any] = Field(default_factory=dict)
    status: str = "active"
    error_message: Optional[str] = None
    connected_at: Optional[datetime] = None
    last_refreshed: Optional[datetime] = None

    def is_expired(self, now: datetime, buffer_seconds: int = 0) -> bool:
        """A credential without ``expires_at`` never expires."""
        if self.expires_at is None:
            return False
        return self.expires_at <= now + timedelta(seconds=buffer_seconds)


class TokenGrant(BaseModel):
    """Token set returned by a provider's code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    account_id: Optional[str] = None
    account_label: Optional[str] = None
    provider_meta: Dict[str, Any] = Field(default_factory=dict)


class DisconnectResult(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"


# ═══════════════════════════════════════════════════════════════════════════════
# Availability — inputs
# ═══════════════════════════════════════════════════════════════════════════════


class DateRange(BaseModel):
    """Half-open day range ``[start, end)``."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def dates(self) -> List[date]:
        return [self.start + timedelta(days=i) for i in range(self.days)]

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end


class OrchestratorOptions(BaseModel):
    dry_run: bool = False
    force_refresh: bool = False
    update_mode: bool = False


# ═══════════════════════════════════════════════════════════════════════════════
# Availability — provider payloads (validated at the adapter boundary)
# ═══════════════════════════════════════════════════════════════════════════════


class AppointmentType(BaseModel):
    id: str
    name: Optional[str] = None
    duration_minutes: Optional[int] = None
    price: Optional[float] = None


class AcuitySlotPayload(BaseModel):
    provider: Literal["acuity"] = "acuity"
    calendar_id: str
    appointment_type: AppointmentType
    slot_date: date
    start_time: str                       # "HH:MM" in the calendar's local time
    start_at: Optional[datetime] = None
    timezone: Optional[str] = None


class SquareSlotPayload(BaseModel):
    provider: Literal["square"] = "square"
    location_id: str
    location_timezone: Optional[str] = None
    variation: AppointmentType
    start_at: datetime                    # keeps Square's offset, so date/time are local


ProviderSlotPayload = Annotated[
    Union[AcuitySlotPayload, SquareSlotPayload],
    Field(discriminator="provider"),
]


# ═══════════════════════════════════════════════════════════════════════════════
# Availability — normalized output
# ═══════════════════════════════════════════════════════════════════════════════


class AvailabilitySlot(BaseModel):
    provider: str
    external_id: str
    calendar_id: str
    appointment_type_id: str
    appointment_type_name: Optional[str] = None
    service_name: str
    slot_date: date
    start_time: str
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    price: Optional[float] = None
    estimated_revenue: float = 0.0
    timezone: Optional[str] = None
    status: str = "available"
    fetched_at: Optional[datetime] = None


class DailySummary(BaseModel):
    provider: str
    slot_date: date
    slot_count: int = 0
    estimated_revenue: float = 0.0
    timezone: Optional[str] = None
    fetched_at: Optional[datetime] = None


class HourlyBucket(BaseModel):
    provider: str
    slot_date: date
    hour: str
    slot_count: int = 0
    timezone: Optional[str] = None


class ProviderSyncSummary(BaseModel):
    provider: str
    status: Literal["success", "failed"] = "success"
    slots_fetched: int = 0
    slots_written: int = 0
    day_count: int = 0
    estimated_revenue: float = 0.0
    cache_hit: bool = False
    fetched_at: Optional[datetime] = None
    error: Optional[str] = None


class AvailabilityPullResult(BaseModel):
    success: bool
    dry_run: bool = False
    update_mode: bool = False
    fetched_at: datetime
    cache_hit: bool = False
    range: DateRange
    total_slots: int = 0
    total_estimated_revenue: float = 0.0
    slots: List[AvailabilitySlot] = Field(default_factory=list)
    daily_summaries: List[DailySummary] = Field(default_factory=list)
    hourly_buckets: List[HourlyBucket] = Field(default_factory=list)
    providers: List[ProviderSyncSummary] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Request bodies
# ═══════════════════════════════════════════════════════════════════════════════


class CalendarSelection(BaseModel):
    calendar: str = Field(..., min_length=1)


class LocationSelection(BaseModel):
    model_config = {"populate_by_name": True}

    location_ids: List[str] = Field(default_factory=list, alias="selectedLocationIds")


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., min_length=1)
