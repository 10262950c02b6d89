"""Local invoice mirror.

At most one non-failed invoice exists per (tenant, period_start,
period_end). The partial unique index backs the service-level duplicate
check.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Date, DateTime, Index, Integer, JSON, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from voicebilling.core.database import Base


class InvoiceStatus(str, Enum):
    """Invoice status values."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


# Statuses that block generating another invoice for the same period
BLOCKING_STATUSES = (InvoiceStatus.PENDING.value, InvoiceStatus.PAID.value)


class Invoice(Base):
    """Invoice generated for one tenant and billing period."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    stripe_invoice_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=InvoiceStatus.PENDING.value, nullable=False
    )

    # Minor currency units
    total_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    line_items: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    hosted_invoice_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_invoices_tenant_period", "tenant_id", "period_start", "period_end"),
        Index(
            "uq_invoices_tenant_period_active",
            "tenant_id",
            "period_start",
            "period_end",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, tenant={self.tenant_id}, status={self.status})>"
