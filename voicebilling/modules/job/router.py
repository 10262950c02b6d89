"""API Router for billing operations.

Operator surface for triggering invoice runs, inspecting jobs and the
scheduler, and handling single-tenant invoices.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from voicebilling.core.errors import ErrorType, InvoiceRunInProgressError
from voicebilling.modules.billing.calculator import BillingCalculator
from voicebilling.modules.billing.schemas import PricedBreakdown
from voicebilling.modules.invoice.schemas import (
    InvoiceDetails,
    InvoiceGenerateRequest,
    InvoiceGenerationResult,
    InvoiceInfo,
    PaymentIntentResult,
    PaymentRetryResult,
)
from voicebilling.modules.invoice.service import InvoiceService
from voicebilling.modules.job.models import InvoiceJobStatus
from voicebilling.modules.job.scheduler import InvoiceScheduler
from voicebilling.modules.job.schemas import (
    InvoiceJobInfo,
    JobListResponse,
    ManualRunRequest,
    ManualRunResponse,
    SchedulerStatus,
)

router = APIRouter(prefix="/billing", tags=["billing"])

_ERROR_STATUS_CODES = {
    ErrorType.VALIDATION: 400,
    ErrorType.DUPLICATE: 409,
    ErrorType.CONFLICT: 409,
    ErrorType.EXTERNAL_SERVICE: 502,
    ErrorType.PERSISTENCE: 503,
}


def get_scheduler(request: Request) -> InvoiceScheduler:
    """Dependency to get the process-wide InvoiceScheduler."""
    return request.app.state.scheduler


def get_invoice_service(request: Request) -> InvoiceService:
    return request.app.state.invoice_service


def get_calculator(request: Request) -> BillingCalculator:
    return request.app.state.calculator


def _raise_for_failure(error_type: Optional[ErrorType], detail: dict) -> None:
    raise HTTPException(status_code=_ERROR_STATUS_CODES.get(error_type, 500), detail=detail)


# ==================== Invoice Jobs ====================

@router.post("/invoice-jobs", response_model=ManualRunResponse, status_code=202)
async def trigger_invoice_run(
    request: Optional[ManualRunRequest] = Body(None),
    scheduler: InvoiceScheduler = Depends(get_scheduler),
) -> ManualRunResponse:
    """Start a billing run for all tenants in the background."""
    period = request.period if request is not None else None
    if period is None:
        period = scheduler.last_month()

    try:
        job_id = await scheduler.trigger_manual_run(period)
    except InvoiceRunInProgressError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())

    return ManualRunResponse(
        job_id=job_id,
        status=InvoiceJobStatus.PENDING,
        period_start=period.start,
        period_end=period.end,
        message="Invoice run started",
    )


@router.get("/invoice-jobs", response_model=JobListResponse)
async def list_invoice_jobs(
    status: Optional[InvoiceJobStatus] = Query(None, description="Filter by job status"),
    limit: int = Query(10, ge=1, le=100),
    scheduler: InvoiceScheduler = Depends(get_scheduler),
) -> JobListResponse:
    jobs = await scheduler.list_jobs(status=status, limit=limit)
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/invoice-jobs/{job_id}", response_model=InvoiceJobInfo)
async def get_invoice_job(
    job_id: str,
    scheduler: InvoiceScheduler = Depends(get_scheduler),
) -> InvoiceJobInfo:
    job = await scheduler.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Invoice job not found")
    return job


@router.get("/scheduler/status", response_model=SchedulerStatus)
async def get_scheduler_status(
    scheduler: InvoiceScheduler = Depends(get_scheduler),
) -> SchedulerStatus:
    """Scheduler state, last successful run and circuit breaker health."""
    return await scheduler.get_system_status()


# ==================== Single-tenant Invoices ====================

@router.post("/tenants/{tenant_id}/invoices", response_model=InvoiceGenerationResult)
async def generate_tenant_invoice(
    tenant_id: uuid.UUID,
    request: Optional[InvoiceGenerateRequest] = Body(None),
    scheduler: InvoiceScheduler = Depends(get_scheduler),
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceGenerationResult:
    """Generate one tenant's invoice and return the typed result."""
    period = request.period if request is not None else None
    if period is None:
        period = scheduler.last_month()

    result = await service.generate(tenant_id, period.start, period.end)
    if not result.success:
        _raise_for_failure(result.error_type, result.model_dump(mode="json"))
    return result


@router.get("/tenants/{tenant_id}/usage", response_model=PricedBreakdown)
async def get_current_usage(
    tenant_id: uuid.UUID,
    calculator: BillingCalculator = Depends(get_calculator),
) -> PricedBreakdown:
    """Month-to-date usage and costs."""
    return await calculator.current_usage(tenant_id, datetime.now(timezone.utc))


@router.get("/invoices/{invoice_id}", response_model=InvoiceInfo)
async def get_invoice(
    invoice_id: uuid.UUID,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceInfo:
    invoice = await service.get_invoice(invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.post("/invoices/{invoice_id}/retry-payment", response_model=PaymentRetryResult)
async def retry_invoice_payment(
    invoice_id: uuid.UUID,
    service: InvoiceService = Depends(get_invoice_service),
) -> PaymentRetryResult:
    """Retry collection of a failed payment. Allowed once per invoice."""
    result = await service.retry_invoice_payment(invoice_id)
    if not result.success:
        _raise_for_failure(result.error_type, result.model_dump(mode="json"))
    return result


@router.get("/invoices/{invoice_id}/details", response_model=InvoiceDetails)
async def get_invoice_details(
    invoice_id: uuid.UUID,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceDetails:
    """Local invoice with Stripe's live view. A failed Stripe lookup is not an error."""
    details = await service.get_invoice_details(invoice_id)
    if not details:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return details


@router.post("/invoices/{invoice_id}/payment-intent", response_model=PaymentIntentResult)
async def create_payment_intent(
    invoice_id: uuid.UUID,
    service: InvoiceService = Depends(get_invoice_service),
) -> PaymentIntentResult:
    result = await service.create_payment_intent(invoice_id)
    if not result.success:
        _raise_for_failure(result.error_type, result.model_dump(mode="json"))
    return result
