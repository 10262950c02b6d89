"""Payment processor interface.

Defines the contract the invoice generator relies on. Every mutating call
takes an idempotency key; a repeated key must return the original
resource rather than create a new one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class PaymentProcessorError(Exception):
    """Error returned by the payment processor."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class PaymentProcessorConnectionError(PaymentProcessorError, ConnectionError):
    """Processor could not be reached."""


@dataclass
class ExternalInvoice:
    """Invoice as known by the payment processor."""
    id: str
    customer_id: str
    status: str
    total: int
    currency: str
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None


@dataclass
class ExternalInvoiceItem:
    id: str
    invoice_id: Optional[str]
    amount: int
    description: str


@dataclass
class ExternalPaymentIntent:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None


class PaymentProcessor(ABC):
    """Abstract payment processor used for invoicing."""

    @abstractmethod
    async def create_draft_invoice(
        self,
        customer_id: str,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ExternalInvoice:
        """Create an invoice in draft state that is not advanced automatically."""
        pass

    @abstractmethod
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
        """Attach a line item (negative amount for discounts) to a draft invoice."""
        pass

    @abstractmethod
    async def finalize_invoice(self, invoice_id: str, idempotency_key: str) -> ExternalInvoice:
        pass

    @abstractmethod
    async def pay_invoice(self, invoice_id: str, idempotency_key: str) -> ExternalInvoice:
        """Attempt to collect payment for a finalized invoice."""
        pass

    @abstractmethod
    async def create_payment_intent(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ExternalPaymentIntent:
        """Create a payment intent the customer can confirm client-side."""
        pass

    @abstractmethod
    async def retrieve_invoice(self, invoice_id: str) -> ExternalInvoice:
        pass
