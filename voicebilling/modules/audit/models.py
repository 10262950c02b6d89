"""Audit log for billing operations."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from voicebilling.core.database import Base


class AuditAction(str, Enum):
    """Types of auditable billing operations."""
    INVOICE_GENERATION = "invoice_generation"
    INVOICE_PAYMENT_RETRY = "invoice_payment_retry"
    AUTOMATED_INVOICE_GENERATION = "automated_invoice_generation"
    AUTOMATED_INVOICE_GENERATION_ERROR = "automated_invoice_generation_error"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditLog(Base):
    """Append-only audit entry."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

