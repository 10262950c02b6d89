"""Invoice generation service.

Turns a priced breakdown into a finalized Stripe invoice and mirrors it
locally. Every Stripe call carries a deterministic idempotency key, so a
generation retried after a crash or transient failure reuses the
resources created by the first attempt instead of duplicating them.
"""

import asyncio
import hashlib
import logging
import uuid
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from voicebilling.core.config import settings
from voicebilling.core.errors import (
    BillingValidationError,
    DuplicateInvoiceError,
    ErrorType,
    classify_error,
)
from voicebilling.core.logging import log_error, log_info, log_warning
from voicebilling.core.metrics import INVOICE_AMOUNT_CENTS_TOTAL, INVOICES_GENERATED_TOTAL
from voicebilling.core.resilience import (
    CircuitBreakerRegistry,
    SleepFunc,
    circuit_breakers,
    with_billing_resilience,
    with_external_service_resilience,
)
from voicebilling.modules.audit.models import AuditAction, AuditOutcome
from voicebilling.modules.billing.schemas import (
    Adjustment,
    BillingLineItem,
    LineItemKind,
    PercentDiscount,
    PricedBreakdown,
)
from voicebilling.modules.invoice.interface import (
    ExternalInvoice,
    PaymentProcessor,
    PaymentProcessorError,
)
from voicebilling.modules.invoice.models import InvoiceStatus
from voicebilling.modules.invoice.schemas import (
    InvoiceDetails,
    InvoiceGenerationResult,
    InvoiceInfo,
    InvoiceSnapshot,
    PaymentIntentResult,
    PaymentRetryResult,
)
from voicebilling.modules.job.periods import is_whole_month

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Dunning is limited to a single retry of a failed payment
MAX_PAYMENT_RETRIES = 1

# Read-only lookups trip their own breaker, never the one guarding invoicing
STRIPE_LOOKUP_SERVICE = "stripe_lookup"


def generate_idempotency_key(operation: str, *parts: Any) -> str:
    """Stable 32-char key from the operation name and its identifying parts."""
    raw = ":".join([operation, *(str(p) for p in parts)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def calculate_discount(subtotal: int, adjustments: Iterable[Adjustment]) -> int:
    """Aggregate discount in minor units, capped at the subtotal.

    Percentage discounts apply to the pre-discount subtotal each, fixed
    discounts add up directly.
    """
    if subtotal <= 0:
        return 0
    discount = 0
    for adjustment in adjustments:
        if isinstance(adjustment, PercentDiscount):
            amount = Decimal(subtotal) * adjustment.percent / 100
            discount += int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        else:
            discount += adjustment.amount_cents
    return min(discount, subtotal)


def discount_line_item(discount: int) -> BillingLineItem:
    return BillingLineItem(
        kind=LineItemKind.DISCOUNT,
        name="Discount",
        description="Discounts applied to this billing period",
        quantity=Decimal(1),
        rate_per_unit=Decimal(-discount),
        total_amount=-discount,
    )


class InvoiceService:
    """Generates one invoice per tenant and billing period."""

    def __init__(
        self,
        calculator,
        tenant_repo,
        invoice_repo,
        adjustment_repo,
        processor: PaymentProcessor,
        audit_service=None,
        sleep: SleepFunc = asyncio.sleep,
        breakers: CircuitBreakerRegistry = circuit_breakers,
        currency: str = settings.BILLING_CURRENCY,
    ):
        self.calculator = calculator
        self.tenant_repo = tenant_repo
        self.invoice_repo = invoice_repo
        self.adjustment_repo = adjustment_repo
        self.processor = processor
        self.audit_service = audit_service
        self.sleep = sleep
        self.breakers = breakers
        self.currency = currency

    async def _call_processor(
        self,
        operation_name: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        return await with_billing_resilience(
            operation,
            operation_name,
            sleep=self.sleep,
            registry=self.breakers,
        )

    # ==================== Generation ====================

    async def generate(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
    ) -> InvoiceGenerationResult:
        """Generate and finalize the invoice for one tenant and period.

        Args:
            tenant_id: Tenant to bill
            period_start: First day of the billing period
            period_end: Last day of the billing period (inclusive)

        Returns:
            InvoiceGenerationResult. Failures are reported in the result,
            never raised.
        """
        context = {
            "tenant_id": str(tenant_id),
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        }
        invoice_id: Optional[uuid.UUID] = None
        external: Optional[ExternalInvoice] = None

        try:
            if not is_whole_month(period_start, period_end):
                raise BillingValidationError(
                    "Billing period must cover exactly one calendar month", context
                )

            account = await self.tenant_repo.get_billing_account(tenant_id)
            if account is None or not account.stripe_customer_id:
                raise BillingValidationError(
                    "Tenant has no billing account with a Stripe customer", context
                )

            existing = await self.invoice_repo.find_active_invoice(
                tenant_id, period_start, period_end
            )
            if existing is not None:
                raise DuplicateInvoiceError(
                    f"Invoice {existing.id} ({existing.status.value}) already covers this period",
                    {**context, "invoice_id": str(existing.id)},
                )

            breakdown = await self.calculator.calculate(tenant_id, period_start, period_end)
            if breakdown.total <= 0:
                INVOICES_GENERATED_TOTAL.labels(outcome="skipped").inc()
                log_info(logger, f"Nothing to bill for tenant {tenant_id}", **context)
                return InvoiceGenerationResult(
                    success=True,
                    tenant_id=tenant_id,
                    period_start=period_start,
                    period_end=period_end,
                    amount=0,
                    skipped=True,
                )

            adjustments = await self.adjustment_repo.list_adjustments(
                tenant_id, period_start, period_end
            )
            discount = calculate_discount(breakdown.subtotal, adjustments)

            invoice_id = await self.invoice_repo.reserve_invoice(
                tenant_id, period_start, period_end, breakdown.currency
            )
            external = await self._create_external_invoice(
                account.stripe_customer_id, breakdown, discount
            )
            await self.invoice_repo.attach_external_invoice(
                invoice_id, external.id, external.hosted_invoice_url
            )

            snapshot = InvoiceSnapshot(
                line_items=breakdown.line_items + ([discount_line_item(discount)] if discount else []),
                plan_name=breakdown.plan_name,
                subtotal=breakdown.subtotal,
                discount=discount,
                tax=breakdown.tax,
                total=breakdown.total - discount,
            )
            await self.invoice_repo.complete_invoice(
                invoice_id,
                stripe_invoice_id=external.id,
                total_amount=snapshot.total,
                line_items=snapshot.model_dump(mode="json"),
                hosted_invoice_url=external.hosted_invoice_url,
            )

            INVOICES_GENERATED_TOTAL.labels(outcome="success").inc()
            INVOICE_AMOUNT_CENTS_TOTAL.labels(currency=breakdown.currency).inc(snapshot.total)
            log_info(
                logger,
                f"Generated invoice {external.id} for tenant {tenant_id}: {snapshot.total} {breakdown.currency}",
                **context,
            )
            return InvoiceGenerationResult(
                success=True,
                tenant_id=tenant_id,
                period_start=period_start,
                period_end=period_end,
                invoice_id=invoice_id,
                stripe_invoice_id=external.id,
                amount=snapshot.total,
            )

        except Exception as e:
            error_type = self._error_type(e)
            INVOICES_GENERATED_TOTAL.labels(outcome=error_type.value).inc()
            log_error(logger, f"Invoice generation failed for tenant {tenant_id}: {e}", e, **context)

            if external is not None:
                # The Stripe invoice is live: the row stays pending so it keeps
                # blocking regeneration until the local record is reconciled
                context["stripe_invoice_id"] = external.id
                log_error(
                    logger,
                    f"Stripe invoice {external.id} exists but its local record is incomplete",
                    e,
                    **context,
                )
                await self._record_failure(invoice_id, InvoiceStatus.PENDING, str(e))
            elif invoice_id is not None:
                await self._record_failure(invoice_id, InvoiceStatus.FAILED, str(e))
            await self._audit(
                AuditAction.INVOICE_GENERATION,
                AuditOutcome.FAILURE,
                {**context, "error": str(e), "error_type": error_type.value},
            )
            return InvoiceGenerationResult(
                success=False,
                tenant_id=tenant_id,
                period_start=period_start,
                period_end=period_end,
                invoice_id=invoice_id,
                stripe_invoice_id=external.id if external else None,
                error=str(e),
                error_type=error_type,
            )

    async def _create_external_invoice(
        self,
        customer_id: str,
        breakdown: PricedBreakdown,
        discount: int,
    ) -> ExternalInvoice:
        """Draft, attach items, then finalize."""
        tenant_id = breakdown.tenant_id
        start = breakdown.period_start.isoformat()
        end = breakdown.period_end.isoformat()
        metadata = {"tenant_id": str(tenant_id), "period_start": start, "period_end": end}

        draft = await self._call_processor(
            "create_draft_invoice",
            lambda: self.processor.create_draft_invoice(
                customer_id=customer_id,
                currency=breakdown.currency,
                description=f"Usage {start} - {end}",
                metadata=metadata,
                idempotency_key=generate_idempotency_key("invoice", tenant_id, start, end),
            ),
        )

        for index, item in enumerate(breakdown.line_items):
            if item.total_amount == 0:
                continue
            key = generate_idempotency_key(
                "invoice_item", tenant_id, start, end, item.kind.value, index
            )
            await self._call_processor(
                "add_invoice_item",
                lambda item=item, key=key: self.processor.add_invoice_item(
                    customer_id=customer_id,
                    invoice_id=draft.id,
                    amount=item.total_amount,
                    currency=breakdown.currency,
                    description=f"{item.name} ({item.quantity.normalize():f})",
                    metadata={**metadata, "kind": item.kind.value},
                    idempotency_key=key,
                ),
            )

        if discount > 0:
            await self._call_processor(
                "add_invoice_item",
                lambda: self.processor.add_invoice_item(
                    customer_id=customer_id,
                    invoice_id=draft.id,
                    amount=-discount,
                    currency=breakdown.currency,
                    description="Discount",
                    metadata={**metadata, "kind": LineItemKind.DISCOUNT.value},
                    idempotency_key=generate_idempotency_key(
                        "invoice_item_discount", tenant_id, start, end
                    ),
                ),
            )

        return await self._call_processor(
            "finalize_invoice",
            lambda: self.processor.finalize_invoice(
                draft.id,
                idempotency_key=generate_idempotency_key("invoice_finalize", tenant_id, start, end),
            ),
        )

    # ==================== Payment Retry ====================

    async def retry_invoice_payment(self, invoice_id: uuid.UUID) -> PaymentRetryResult:
        """Retry collection of a failed payment. Allowed once per invoice."""
        try:
            invoice = await self.invoice_repo.get_invoice(invoice_id)
            if invoice is None:
                raise BillingValidationError("Invoice not found", {"invoice_id": str(invoice_id)})
            if not invoice.stripe_invoice_id:
                raise BillingValidationError(
                    "Invoice was never created on Stripe", {"invoice_id": str(invoice_id)}
                )
            if invoice.status == InvoiceStatus.PAID:
                raise BillingValidationError("Invoice is already paid", {"invoice_id": str(invoice_id)})
            if invoice.payment_retry_count >= MAX_PAYMENT_RETRIES:
                raise BillingValidationError(
                    "Payment was already retried for this invoice",
                    {"invoice_id": str(invoice_id)},
                )

            # Counted before the call so a crash cannot allow a second retry
            await self.invoice_repo.record_payment_retry(invoice_id)
            external = await self._call_processor(
                "pay_invoice",
                lambda: self.processor.pay_invoice(
                    invoice.stripe_invoice_id,
                    idempotency_key=generate_idempotency_key("invoice_pay", invoice_id),
                ),
            )

            status = InvoiceStatus.PAID if external.status == "paid" else invoice.status
            if status != invoice.status:
                await self.invoice_repo.update_status(invoice_id, status)
            await self._audit(
                AuditAction.INVOICE_PAYMENT_RETRY,
                AuditOutcome.SUCCESS,
                {"invoice_id": str(invoice_id), "stripe_status": external.status},
            )
            return PaymentRetryResult(success=True, invoice_id=invoice_id, status=status)

        except Exception as e:
            error_type = self._error_type(e)
            log_error(logger, f"Payment retry failed for invoice {invoice_id}: {e}", e)
            await self._audit(
                AuditAction.INVOICE_PAYMENT_RETRY,
                AuditOutcome.FAILURE,
                {"invoice_id": str(invoice_id), "error": str(e), "error_type": error_type.value},
            )
            return PaymentRetryResult(
                success=False,
                invoice_id=invoice_id,
                error=str(e),
                error_type=error_type,
            )

    # ==================== Payment Intents ====================

    async def create_payment_intent(self, invoice_id: uuid.UUID) -> PaymentIntentResult:
        """Create a Stripe payment intent for the total of an unpaid invoice.

        The idempotency key is derived from the tenant and invoice, so
        repeated requests hand back the same intent.
        """
        context = {"invoice_id": str(invoice_id)}
        try:
            invoice = await self.invoice_repo.get_invoice(invoice_id)
            if invoice is None:
                raise BillingValidationError("Invoice not found", context)
            if invoice.status != InvoiceStatus.PENDING:
                raise BillingValidationError(
                    f"Invoice is {invoice.status.value}, only pending invoices can be paid", context
                )
            if invoice.total_amount <= 0:
                raise BillingValidationError("Invoice has no amount to pay", context)

            account = await self.tenant_repo.get_billing_account(invoice.tenant_id)
            if account is None or not account.stripe_customer_id:
                raise BillingValidationError(
                    "Tenant has no billing account with a Stripe customer", context
                )

            intent = await self._call_processor(
                "create_payment_intent",
                lambda: self.processor.create_payment_intent(
                    customer_id=account.stripe_customer_id,
                    amount=invoice.total_amount,
                    currency=invoice.currency,
                    description=f"Payment for invoice {invoice.id}",
                    metadata={
                        "tenant_id": str(invoice.tenant_id),
                        "invoice_id": str(invoice.id),
                        "stripe_invoice_id": invoice.stripe_invoice_id or "",
                    },
                    idempotency_key=generate_idempotency_key(
                        "payment_intent", invoice.tenant_id, invoice.id
                    ),
                ),
            )
            log_info(logger, f"Created payment intent {intent.id} for invoice {invoice_id}", **context)
            return PaymentIntentResult(
                success=True,
                invoice_id=invoice_id,
                payment_intent_id=intent.id,
                client_secret=intent.client_secret,
                amount=intent.amount,
            )

        except Exception as e:
            error_type = self._error_type(e)
            log_error(logger, f"Payment intent failed for invoice {invoice_id}: {e}", e, **context)
            return PaymentIntentResult(
                success=False,
                invoice_id=invoice_id,
                error=str(e),
                error_type=error_type,
            )

    # ==================== Lookups ====================

    async def get_invoice(self, invoice_id: uuid.UUID) -> Optional[InvoiceInfo]:
        return await self.invoice_repo.get_invoice(invoice_id)

    async def get_invoice_details(self, invoice_id: uuid.UUID) -> Optional[InvoiceDetails]:
        """Local invoice with Stripe's live view of it.

        A failed Stripe lookup is logged as a warning and reported in
        ``stripe_error``; the local record is returned regardless.
        """
        invoice = await self.invoice_repo.get_invoice(invoice_id)
        if invoice is None:
            return None
        if not invoice.stripe_invoice_id:
            return InvoiceDetails(invoice=invoice)

        try:
            stripe_invoice = await with_external_service_resilience(
                lambda: self.processor.retrieve_invoice(invoice.stripe_invoice_id),
                STRIPE_LOOKUP_SERVICE,
                "retrieve_invoice",
                sleep=self.sleep,
                registry=self.breakers,
            )
        except Exception as e:
            log_warning(
                logger,
                f"Could not fetch Stripe invoice {invoice.stripe_invoice_id}: {e}",
                invoice_id=str(invoice_id),
            )
            return InvoiceDetails(invoice=invoice, stripe_error=str(e))
        return InvoiceDetails(invoice=invoice, stripe_invoice=stripe_invoice)

    # ==================== Helpers ====================

    @staticmethod
    def _error_type(error: Exception) -> ErrorType:
        if isinstance(error, PaymentProcessorError):
            return ErrorType.EXTERNAL_SERVICE
        return classify_error(error)

    async def _record_failure(
        self,
        invoice_id: uuid.UUID,
        status: InvoiceStatus,
        message: str,
    ) -> None:
        try:
            await self.invoice_repo.update_status(invoice_id, status, message)
        except Exception as e:
            log_error(logger, f"Could not record failure on invoice {invoice_id}", e)

    async def _audit(self, action: AuditAction, outcome: AuditOutcome, metadata: dict) -> None:
        if self.audit_service is None:
            return
        try:
            await self.audit_service.record_audit_event(action, outcome, metadata)
        except Exception as e:
            log_error(logger, f"Could not write audit entry {action.value}", e)
