"""Invoice module.

Generates idempotent Stripe invoices and keeps a local mirror.
"""

from voicebilling.modules.invoice.interface import (
    ExternalInvoice,
    ExternalInvoiceItem,
    ExternalPaymentIntent,
    PaymentProcessor,
    PaymentProcessorConnectionError,
    PaymentProcessorError,
)
from voicebilling.modules.invoice.models import Invoice, InvoiceStatus
from voicebilling.modules.invoice.repository import InvoiceRepository
from voicebilling.modules.invoice.schemas import (
    InvoiceDetails,
    InvoiceGenerationResult,
    InvoiceInfo,
    PaymentIntentResult,
    PaymentRetryResult,
)
from voicebilling.modules.invoice.service import (
    InvoiceService,
    calculate_discount,
    generate_idempotency_key,
)

__all__ = [
    "ExternalInvoice",
    "ExternalInvoiceItem",
    "ExternalPaymentIntent",
    "PaymentProcessor",
    "PaymentProcessorConnectionError",
    "PaymentProcessorError",
    "Invoice",
    "InvoiceStatus",
    "InvoiceRepository",
    "InvoiceDetails",
    "InvoiceGenerationResult",
    "InvoiceInfo",
    "PaymentIntentResult",
    "PaymentRetryResult",
    "InvoiceService",
    "calculate_discount",
    "generate_idempotency_key",
]
