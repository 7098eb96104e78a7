"""
SQLAlchemy ORM models for provider credentials and synced availability.

User identities live in the managed auth backend, so ``user_id`` columns are
plain strings rather than foreign keys.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_credentials_user_provider"),
    )

    credential_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    account_label = Column(String(128))
    account_id = Column(String(256))
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_type = Column(String(32), default="Bearer")
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(ARRAY(Text), default=list)
    provider_meta = Column(JSONB, default=dict)
    status = Column(String(16), nullable=False, default="active")
    connected_at = Column(DateTime(timezone=True), default=_utcnow)
    last_refreshed = Column(DateTime(timezone=True))
    last_used_at = Column(DateTime(timezone=True))
    error_message = Column(Text)


class AvailabilitySlotRecord(Base):
    __tablename__ = "availability_slots"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "external_id", name="uq_availability_slots_external"),
        Index("ix_availability_slots_user_source_date", "user_id", "source", "slot_date"),
    )

    slot_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    source = Column(String(32), nullable=False)
    external_id = Column(String(256), nullable=False)
    calendar_id = Column(String(128), nullable=False)
    appointment_type_id = Column(String(128), nullable=False)
    appointment_type_name = Column(Text)
    service_name = Column(String(128), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    start_at = Column(DateTime(timezone=True))
    end_at = Column(DateTime(timezone=True))
    duration_minutes = Column(Integer)
    price = Column(Float)
    estimated_revenue = Column(Float, nullable=False, default=0.0)
    timezone = Column(String(64))
    status = Column(String(16), nullable=False, default="available")
    fetched_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AvailabilityDailySummaryRecord(Base):
    __tablename__ = "availability_daily_summary"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "slot_date", name="uq_availability_daily_summary_day"),
    )

    summary_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    source = Column(String(32), nullable=False)
    slot_date = Column(Date, nullable=False)
    slot_count = Column(Integer, nullable=False, default=0)
    estimated_revenue = Column(Float, nullable=False, default=0.0)
    timezone = Column(String(64))
    fetched_at = Column(DateTime(timezone=True), nullable=False)
