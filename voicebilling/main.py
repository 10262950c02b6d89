"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from fastapi import FastAPI, Response

from voicebilling.core.config import settings
from voicebilling.core.database import dispose_engine, get_session_factory
from voicebilling.core.logging import setup_logging
from voicebilling.core.metrics import get_content_type, get_metrics, set_app_info
from voicebilling.core.middleware import CorrelationIdMiddleware
from voicebilling.modules.audit.service import AuditService
from voicebilling.modules.billing.calculator import BillingCalculator
from voicebilling.modules.billing.repository import (
    AdjustmentRepository,
    PlanRepository,
    TenantRepository,
    UsageRepository,
)
from voicebilling.modules.invoice.interface import PaymentProcessor
from voicebilling.modules.invoice.repository import InvoiceRepository
from voicebilling.modules.invoice.service import InvoiceService
from voicebilling.modules.invoice.stripe_client import StripePaymentProcessor
from voicebilling.modules.job.repository import InvoiceJobRepository
from voicebilling.modules.job.router import router as billing_router
from voicebilling.modules.job.scheduler import InvoiceScheduler


@dataclass
class Services:
    """Service graph built once per process."""
    calculator: BillingCalculator
    invoice_service: InvoiceService
    scheduler: InvoiceScheduler


def build_services(processor: PaymentProcessor) -> Services:
    session_factory = get_session_factory()
    tenant_repo = TenantRepository(session_factory)
    audit_service = AuditService(session_factory)

    calculator = BillingCalculator(
        usage_repo=UsageRepository(session_factory),
        tenant_repo=tenant_repo,
        plan_repo=PlanRepository(session_factory),
    )
    invoice_service = InvoiceService(
        calculator=calculator,
        tenant_repo=tenant_repo,
        invoice_repo=InvoiceRepository(session_factory),
        adjustment_repo=AdjustmentRepository(session_factory),
        processor=processor,
        audit_service=audit_service,
    )
    scheduler = InvoiceScheduler(
        invoice_service=invoice_service,
        tenant_repo=tenant_repo,
        job_repo=InvoiceJobRepository(session_factory),
        audit_service=audit_service,
    )
    return Services(calculator=calculator, invoice_service=invoice_service, scheduler=scheduler)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
    )
    set_app_info(
        version=settings.VERSION,
        environment="development" if settings.DEBUG else "production",
    )

    services = build_services(StripePaymentProcessor())
    app.state.calculator = services.calculator
    app.state.invoice_service = services.invoice_service
    app.state.scheduler = services.scheduler

    if settings.SCHEDULER_ENABLED:
        await services.scheduler.start()
    try:
        yield
    finally:
        await services.scheduler.stop()
        await dispose_engine()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Usage-based billing and automated invoice generation",
    lifespan=lifespan,
)

app.add_middleware(CorrelationIdMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(billing_router)
