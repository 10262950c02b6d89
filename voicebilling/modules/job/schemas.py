"""Pydantic schemas for invoice jobs and the scheduler."""

import uuid
from datetime import date, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from voicebilling.core.errors import ErrorType
from voicebilling.modules.job.models import InvoiceJobStatus, JobTrigger
from voicebilling.modules.job.periods import BillingPeriod, is_whole_month


# ==================== Per-tenant Outcomes ====================

class InvoicedOutcome(BaseModel):
    outcome: Literal["invoiced"] = "invoiced"
    tenant_id: uuid.UUID
    invoice_id: Optional[uuid.UUID] = None
    stripe_invoice_id: Optional[str] = None
    amount: int


class SkippedOutcome(BaseModel):
    """Tenant had nothing billable for the period."""
    outcome: Literal["skipped"] = "skipped"
    tenant_id: uuid.UUID
    reason: str


class FailedOutcome(BaseModel):
    outcome: Literal["failed"] = "failed"
    tenant_id: uuid.UUID
    error: str
    error_type: ErrorType


TenantOutcome = Annotated[
    Union[InvoicedOutcome, SkippedOutcome, FailedOutcome],
    Field(discriminator="outcome"),
]


# ==================== Jobs ====================

class InvoiceJobInfo(BaseModel):
    """Invoice job record."""
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    trigger: JobTrigger
    status: InvoiceJobStatus
    period_start: date
    period_end: date
    total_tenants: int = 0
    processed_tenants: int = 0
    successful_invoices: int = 0
    failed_invoices: int = 0
    skipped_tenants: int = 0
    tenant_outcomes: list[TenantOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    start_time: datetime
    end_time: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


class JobListResponse(BaseModel):
    jobs: list[InvoiceJobInfo]
    total: int


class ManualRunRequest(BaseModel):
    """Manual billing run. Defaults to last month in the billing timezone."""
    period_start: Optional[date] = None
    period_end: Optional[date] = None

    @model_validator(mode="after")
    def check_period(self) -> "ManualRunRequest":
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


class ManualRunResponse(BaseModel):
    job_id: str
    status: InvoiceJobStatus
    period_start: date
    period_end: date
    message: str


class SchedulerStatus(BaseModel):
    """Operator view of the scheduler."""
    running: bool
    processing: bool
    current_job_id: Optional[str] = None
    current_job: Optional[InvoiceJobInfo] = None
    last_successful_job: Optional[InvoiceJobInfo] = None
    pending_jobs: int
    failed_jobs: int
    next_scheduled_run: datetime
    resilience: dict[str, Any]
