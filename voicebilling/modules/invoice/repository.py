"""Repository for local invoice records."""

import uuid
from datetime import date
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicebilling.core.errors import DuplicateInvoiceError
from voicebilling.core.resilience import with_database_retry
from voicebilling.modules.invoice.models import BLOCKING_STATUSES, Invoice, InvoiceStatus
from voicebilling.modules.invoice.schemas import InvoiceInfo


class InvoiceRepository:
    """Invoice persistence. One short session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ==================== Queries ====================

    async def get_invoice(self, invoice_id: uuid.UUID) -> Optional[InvoiceInfo]:
        async def _query() -> Optional[InvoiceInfo]:
            async with self.session_factory() as session:
                invoice = await session.get(Invoice, invoice_id)
                return InvoiceInfo.model_validate(invoice) if invoice else None

        return await with_database_retry(_query, "get_invoice")

    async def find_active_invoice(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
    ) -> Optional[InvoiceInfo]:
        """Pending or paid invoice for exactly this period, if any."""
        async def _query() -> Optional[InvoiceInfo]:
            async with self.session_factory() as session:
                query = select(Invoice).where(
                    and_(
                        Invoice.tenant_id == tenant_id,
                        Invoice.period_start == period_start,
                        Invoice.period_end == period_end,
                        Invoice.status.in_(BLOCKING_STATUSES),
                    )
                ).limit(1)
                result = await session.execute(query)
                invoice = result.scalar_one_or_none()
                return InvoiceInfo.model_validate(invoice) if invoice else None

        return await with_database_retry(_query, "find_active_invoice")

    # ==================== Lifecycle ====================

    async def reserve_invoice(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
        currency: str,
    ) -> uuid.UUID:
        """Insert a pending invoice before any external write.

        Raises:
            DuplicateInvoiceError: Another non-failed invoice holds the period.
        """
        async def _insert() -> uuid.UUID:
            async with self.session_factory() as session:
                invoice = Invoice(
                    id=uuid.uuid4(),
                    tenant_id=tenant_id,
                    period_start=period_start,
                    period_end=period_end,
                    status=InvoiceStatus.PENDING.value,
                    total_amount=0,
                    currency=currency,
                )
                session.add(invoice)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise DuplicateInvoiceError(
                        "Invoice already exists for this period",
                        {
                            "tenant_id": str(tenant_id),
                            "period_start": period_start.isoformat(),
                            "period_end": period_end.isoformat(),
                        },
                    ) from e
                return invoice.id

        return await with_database_retry(_insert, "reserve_invoice")

    async def attach_external_invoice(
        self,
        invoice_id: uuid.UUID,
        stripe_invoice_id: str,
        hosted_invoice_url: Optional[str],
    ) -> None:
        """Link the reserved row to its Stripe invoice as soon as it exists."""
        async def _update() -> None:
            async with self.session_factory() as session:
                invoice = await session.get(Invoice, invoice_id)
                if invoice is None:
                    return
                invoice.stripe_invoice_id = stripe_invoice_id
                invoice.hosted_invoice_url = hosted_invoice_url
                await session.commit()

        await with_database_retry(_update, "attach_external_invoice")

    async def complete_invoice(
        self,
        invoice_id: uuid.UUID,
        stripe_invoice_id: str,
        total_amount: int,
        line_items: dict,
        hosted_invoice_url: Optional[str],
    ) -> None:
        async def _update() -> None:
            async with self.session_factory() as session:
                invoice = await session.get(Invoice, invoice_id)
                if invoice is None:
                    return
                invoice.stripe_invoice_id = stripe_invoice_id
                invoice.total_amount = total_amount
                invoice.line_items = line_items
                invoice.hosted_invoice_url = hosted_invoice_url
                await session.commit()

        await with_database_retry(_update, "complete_invoice")

    async def update_status(
        self,
        invoice_id: uuid.UUID,
        status: InvoiceStatus,
        error_message: Optional[str] = None,
    ) -> None:
        async def _update() -> None:
            async with self.session_factory() as session:
                invoice = await session.get(Invoice, invoice_id)
                if invoice is None:
                    return
                invoice.status = status.value
                if error_message is not None:
                    invoice.error_message = error_message
                await session.commit()

        await with_database_retry(_update, "update_invoice_status")

    async def record_payment_retry(self, invoice_id: uuid.UUID) -> int:
        """Increment and return the payment retry counter."""
        async def _update() -> int:
            async with self.session_factory() as session:
                invoice = await session.get(Invoice, invoice_id, with_for_update=True)
                if invoice is None:
                    return 0
                invoice.payment_retry_count += 1
                await session.commit()
                return invoice.payment_retry_count

        return await with_database_retry(_update, "record_payment_retry")
