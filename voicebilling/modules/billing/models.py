"""Billing models for tenants, plans, usage and adjustments.

Tenants, billing accounts, plans and usage events are owned by the
platform and only read here. Billing adjustments are owned by this engine.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Date, DateTime, Integer, JSON, Numeric, String, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from voicebilling.core.database import Base


class UsageKind(str, Enum):
    """Metered resource kinds. Declaration order is the line item tie-break order."""
    VOICE_BOT_MINUTE = "voice_bot_minute"
    FORWARDING_MINUTE = "forwarding_minute"
    CALL = "call"
    STT_REQUEST = "stt_request"
    TTS_CHAR = "tts_char"
    LLM_TOKEN = "llm_token"


# Only these kinds can be covered by a plan's free allowance
MINUTE_KINDS = (UsageKind.VOICE_BOT_MINUTE, UsageKind.FORWARDING_MINUTE)


class PlanStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class AdjustmentType(str, Enum):
    """Billing adjustment kinds."""
    PERCENT_DISCOUNT = "percent_discount"
    FIXED_DISCOUNT = "fixed_discount"


class Tenant(Base):
    """Platform tenant (read-only here)."""

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name})>"


class BillingAccount(Base):
    """Tenant billing account linking to the payment processor customer."""

    __tablename__ = "billing_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, unique=True, index=True
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<BillingAccount(tenant_id={self.tenant_id}, customer={self.stripe_customer_id})>"


class SubscriptionPlan(Base):
    """Subscription plan with free minute allowances and overage rates."""

    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Major currency units, e.g. 29.00 EUR
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    free_voice_bot_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    free_forwarding_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # NULL falls back to the default rate table
    voice_bot_rate_per_minute_cents: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 4), nullable=True
    )
    forwarding_rate_per_minute_cents: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 4), nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(20), default=PlanStatus.ACTIVE.value, nullable=False
    )

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name={self.name})>"


class UsageEvent(Base):
    """Append-only usage telemetry (read-only here)."""

    __tablename__ = "usage_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    bot_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_usage_events_tenant_timestamp", "tenant_id", "timestamp"),
    )


class BillingAdjustment(Base):
    """Discount registered for a tenant, applied at invoice time."""

    __tablename__ = "billing_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    adjustment_type: Mapped[str] = mapped_column(String(30), nullable=False)

    # Percent (0-100) for percent discounts, cents for fixed discounts
    value: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)

    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<BillingAdjustment(tenant_id={self.tenant_id}, type={self.adjustment_type})>"
