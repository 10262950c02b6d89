"""Stripe implementation of the payment processor.

The Stripe SDK is synchronous, so every call runs in a worker thread to
keep the event loop free.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import stripe

from voicebilling.core.config import settings
from voicebilling.modules.invoice.interface import (
    ExternalInvoice,
    ExternalInvoiceItem,
    ExternalPaymentIntent,
    PaymentProcessor,
    PaymentProcessorConnectionError,
    PaymentProcessorError,
)

logger = logging.getLogger(__name__)


def _to_invoice(invoice: Any) -> ExternalInvoice:
    return ExternalInvoice(
        id=invoice.id,
        customer_id=invoice.customer,
        status=invoice.status,
        total=invoice.total,
        currency=invoice.currency,
        hosted_invoice_url=invoice.hosted_invoice_url,
        invoice_pdf=invoice.invoice_pdf,
    )


class StripePaymentProcessor(PaymentProcessor):
    """Client for Stripe invoicing operations."""

    def __init__(self, api_key: Optional[str] = None):
        """Initialize Stripe client.

        Raises:
            ValueError: If no secret key is configured
        """
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        if not self.api_key:
            raise ValueError("STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self.api_key

    async def _request(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a Stripe SDK call off the event loop and translate its errors."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.APIConnectionError as e:
            raise PaymentProcessorConnectionError(
                f"Stripe connection error: {e.user_message or e}",
                status_code=e.http_status,
                code=e.code,
            ) from e
        except stripe.StripeError as e:
            raise PaymentProcessorError(
                f"Stripe error: {e.user_message or e}",
                status_code=e.http_status,
                code=e.code,
            ) from e

    # ==================== Invoices ====================

    async def create_draft_invoice(
        self,
        customer_id: str,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ExternalInvoice:
        invoice = await self._request(
            stripe.Invoice.create,
            customer=customer_id,
            currency=currency.lower(),
            description=description,
            metadata=metadata,
            auto_advance=False,
            collection_method="charge_automatically",
            pending_invoice_items_behavior="exclude",
            idempotency_key=idempotency_key,
        )
        logger.info(f"Created Stripe draft invoice {invoice.id} for customer {customer_id}")
        return _to_invoice(invoice)

    async def add_invoice_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ExternalInvoiceItem:
        item = await self._request(
            stripe.InvoiceItem.create,
            customer=customer_id,
            invoice=invoice_id,
            amount=amount,
            currency=currency.lower(),
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return ExternalInvoiceItem(
            id=item.id,
            invoice_id=invoice_id,
            amount=item.amount,
            description=item.description,
        )

    async def finalize_invoice(self, invoice_id: str, idempotency_key: str) -> ExternalInvoice:
        invoice = await self._request(
            stripe.Invoice.finalize_invoice,
            invoice_id,
            auto_advance=True,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Finalized Stripe invoice {invoice_id}")
        return _to_invoice(invoice)

    async def pay_invoice(self, invoice_id: str, idempotency_key: str) -> ExternalInvoice:
        invoice = await self._request(
            stripe.Invoice.pay,
            invoice_id,
            idempotency_key=idempotency_key,
        )
        return _to_invoice(invoice)

    async def retrieve_invoice(self, invoice_id: str) -> ExternalInvoice:
        invoice = await self._request(stripe.Invoice.retrieve, invoice_id)
        return _to_invoice(invoice)

    # ==================== Payment Intents ====================

    async def create_payment_intent(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ExternalPaymentIntent:
        intent = await self._request(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency.lower(),
            customer=customer_id,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Created Stripe payment intent {intent.id} for customer {customer_id}")
        return ExternalPaymentIntent(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
            client_secret=intent.client_secret,
        )
