"""Pydantic schemas for the billing calculator.

Repositories hand these immutable snapshots to the calculator so a
billing run never sees a plan change halfway through.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from voicebilling.modules.billing.models import PlanStatus, UsageKind


class LineItemKind(str, Enum):
    """Invoice line item kinds in tie-break order."""
    BASE_FEE = "base_fee"
    VOICE_BOT_MINUTE = "voice_bot_minute"
    FORWARDING_MINUTE = "forwarding_minute"
    CALL = "call"
    STT_REQUEST = "stt_request"
    TTS_CHAR = "tts_char"
    LLM_TOKEN = "llm_token"
    DISCOUNT = "discount"


class TenantInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    name: str


class BillingAccountInfo(BaseModel):
    """Billing account snapshot."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    tenant_id: uuid.UUID
    stripe_customer_id: Optional[str] = None
    plan_id: Optional[uuid.UUID] = None
    status: str = "active"


class PlanSnapshot(BaseModel):
    """Immutable subscription plan read once per calculation."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    name: str
    monthly_price: Decimal
    free_voice_bot_minutes: int = 0
    free_forwarding_minutes: int = 0
    voice_bot_rate_per_minute_cents: Optional[Decimal] = None
    forwarding_rate_per_minute_cents: Optional[Decimal] = None
    status: str = PlanStatus.ACTIVE.value

    @property
    def is_active(self) -> bool:
        return self.status == PlanStatus.ACTIVE.value

    def free_allowance(self, kind: UsageKind) -> Decimal:
        if kind == UsageKind.VOICE_BOT_MINUTE:
            return Decimal(self.free_voice_bot_minutes)
        if kind == UsageKind.FORWARDING_MINUTE:
            return Decimal(self.free_forwarding_minutes)
        return Decimal(0)

    def overage_rate(self, kind: UsageKind) -> Optional[Decimal]:
        """Plan-specific overage rate in cents, or None when the plan has none."""
        if kind == UsageKind.VOICE_BOT_MINUTE:
            return self.voice_bot_rate_per_minute_cents
        if kind == UsageKind.FORWARDING_MINUTE:
            return self.forwarding_rate_per_minute_cents
        return None


class UsageEventRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    tenant_id: uuid.UUID
    bot_id: Optional[uuid.UUID] = None
    kind: UsageKind
    quantity: Decimal
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class BillingLineItem(BaseModel):
    """One priced line on an invoice. Amounts are integer minor units."""
    model_config = ConfigDict(frozen=True)

    kind: LineItemKind
    name: str
    description: str
    quantity: Decimal
    rate_per_unit: Decimal
    total_amount: int
    free_allowance: Optional[Decimal] = None
    free_allowance_consumed: Optional[Decimal] = None


class MinuteUsage(BaseModel):
    used: Decimal
    free: Decimal
    overage: Decimal
    rate_per_minute_cents: Decimal


class PricedBreakdown(BaseModel):
    """Result of pricing one tenant's usage for a period."""
    tenant_id: uuid.UUID
    period_start: date
    period_end: date
    plan_id: Optional[uuid.UUID] = None
    plan_name: Optional[str] = None
    currency: str
    line_items: list[BillingLineItem]
    subtotal: int
    tax: int = 0
    total: int
    usage_totals: dict[UsageKind, Decimal]
    minute_breakdown: dict[UsageKind, MinuteUsage]


# ==================== Adjustments ====================

class PercentDiscount(BaseModel):
    """Percentage of the pre-discount subtotal."""
    model_config = ConfigDict(frozen=True)

    type: Literal["percent_discount"] = "percent_discount"
    tenant_id: uuid.UUID
    percent: Decimal = Field(..., ge=0, le=100)
    valid_from: date
    valid_until: Optional[date] = None
    description: Optional[str] = None


class FixedDiscount(BaseModel):
    """Fixed amount in minor units."""
    model_config = ConfigDict(frozen=True)

    type: Literal["fixed_discount"] = "fixed_discount"
    tenant_id: uuid.UUID
    amount_cents: int = Field(..., ge=0)
    valid_from: date
    valid_until: Optional[date] = None
    description: Optional[str] = None


Adjustment = Annotated[Union[PercentDiscount, FixedDiscount], Field(discriminator="type")]
