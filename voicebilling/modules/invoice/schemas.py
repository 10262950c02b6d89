"""Pydantic schemas for invoice generation."""

import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from voicebilling.core.errors import ErrorType
from voicebilling.modules.billing.schemas import BillingLineItem
from voicebilling.modules.invoice.interface import ExternalInvoice
from voicebilling.modules.invoice.models import InvoiceStatus
from voicebilling.modules.job.periods import BillingPeriod, is_whole_month


class InvoiceSnapshot(BaseModel):
    """Line items and totals frozen into the local invoice record."""
    line_items: list[BillingLineItem]
    plan_name: Optional[str] = None
    subtotal: int
    discount: int = 0
    tax: int = 0
    total: int


class InvoiceInfo(BaseModel):
    """Local invoice record."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    period_start: date
    period_end: date
    stripe_invoice_id: Optional[str] = None
    status: InvoiceStatus
    total_amount: int
    currency: str
    line_items: Optional[dict] = None
    hosted_invoice_url: Optional[str] = None
    error_message: Optional[str] = None
    payment_retry_count: int = 0
    created_at: Optional[datetime] = None


class InvoiceGenerationResult(BaseModel):
    """Typed outcome of generating one tenant's invoice. Never raised."""
    success: bool
    tenant_id: uuid.UUID
    period_start: date
    period_end: date
    invoice_id: Optional[uuid.UUID] = None
    stripe_invoice_id: Optional[str] = None
    amount: Optional[int] = Field(None, description="Invoice total in minor units")
    skipped: bool = Field(False, description="True when nothing was billable")
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class InvoiceGenerateRequest(BaseModel):
    """Manual single-tenant generation request. Defaults to last month."""
    period_start: Optional[date] = None
    period_end: Optional[date] = None

    @model_validator(mode="after")
    def check_period(self) -> "InvoiceGenerateRequest":
        if (self.period_start is None) != (self.period_end is None):
            raise ValueError("period_start and period_end must be given together")
        if self.period_start is not None and not is_whole_month(self.period_start, self.period_end):
            raise ValueError("period must cover exactly one calendar month")
        return self

    @property
    def period(self) -> Optional[BillingPeriod]:
        if self.period_start is None or self.period_end is None:
            return None
        return BillingPeriod(start=self.period_start, end=self.period_end)


class PaymentRetryResult(BaseModel):
    success: bool
    invoice_id: uuid.UUID
    status: Optional[InvoiceStatus] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class PaymentIntentResult(BaseModel):
    success: bool
    invoice_id: uuid.UUID
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None


class InvoiceDetails(BaseModel):
    """Local invoice plus Stripe's live view of it.

    ``stripe_invoice`` is None when the invoice was never pushed to Stripe
    or the lookup failed; the failure is reported in ``stripe_error``.
    """
    invoice: InvoiceInfo
    stripe_invoice: Optional[ExternalInvoice] = None
    stripe_error: Optional[str] = None
