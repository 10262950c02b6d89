"""Audit log module."""

from voicebilling.modules.audit.models import AuditAction, AuditLog, AuditOutcome
from voicebilling.modules.audit.service import AuditService

__all__ = [
    "AuditAction",
    "AuditLog",
    "AuditOutcome",
    "AuditService",
]
