"""Audit sink backed by the audit_logs table."""

import json
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicebilling.core.resilience import with_database_retry
from voicebilling.modules.audit.models import (
    AuditAction,
    AuditLog,
    AuditOutcome,
)


class AuditService:
    """Append-only audit log writer."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record_audit_event(
        self,
        operation: AuditAction | str,
        outcome: AuditOutcome | str,
        metadata: dict[str, Any],
    ) -> None:
        """Append an audit entry.

        Args:
            operation: Audited operation
            outcome: success or failure
            metadata: Free-form context (tenant, period, counts, messages)
        """
        action = operation.value if isinstance(operation, AuditAction) else operation
        result = outcome.value if isinstance(outcome, AuditOutcome) else outcome
        # Round-trip through JSON so dates, UUIDs and Decimals become plain values
        details = json.loads(json.dumps(metadata, default=str))

        async def _insert() -> None:
            async with self.session_factory() as session:
                session.add(AuditLog(action=action, outcome=result, details=details))
                await session.commit()

        await with_database_retry(_insert, "record_audit_event")

