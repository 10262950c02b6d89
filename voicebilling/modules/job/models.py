"""Invoice job model.

One record per billing run. Completed jobs are the only source used to
decide which periods still need catch-up.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Date, DateTime, Index, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from voicebilling.core.database import Base


class InvoiceJobStatus(str, Enum):
    """Invoice job status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobTrigger(str, Enum):
    """What started a run."""
    SCHEDULED = "scheduled"
    CATCH_UP = "catch_up"
    MANUAL = "manual"


class InvoiceJob(Base):
    """Billing run covering all tenants for one period."""

    __tablename__ = "invoice_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=InvoiceJobStatus.PENDING.value, nullable=False, index=True
    )

    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    # Progress, updated after every tenant
    total_tenants: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_tenants: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_invoices: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_invoices: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_tenants: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    tenant_outcomes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_invoice_jobs_status_period", "status", "period_start", "period_end"),
    )

    def __repr__(self) -> str:
        return f"<InvoiceJob(job_id={self.job_id}, status={self.status})>"
