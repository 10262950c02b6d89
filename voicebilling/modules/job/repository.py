"""Repository for invoice job records."""

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicebilling.core.resilience import with_database_retry
from voicebilling.modules.job.models import InvoiceJob, InvoiceJobStatus, JobTrigger
from voicebilling.modules.job.schemas import InvoiceJobInfo

# Columns the scheduler may change after creation
_MUTABLE_FIELDS = frozenset({
    "status",
    "total_tenants",
    "processed_tenants",
    "successful_invoices",
    "failed_invoices",
    "skipped_tenants",
    "tenant_outcomes",
    "errors",
    "end_time",
})


class InvoiceJobRepository:
    """Invoice job persistence. One short session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ==================== Job CRUD ====================

    async def create_job(
        self,
        job_id: str,
        trigger: JobTrigger,
        period_start: date,
        period_end: date,
        start_time: datetime,
    ) -> InvoiceJobInfo:
        async def _insert() -> InvoiceJobInfo:
            async with self.session_factory() as session:
                job = InvoiceJob(
                    job_id=job_id,
                    trigger=trigger.value,
                    status=InvoiceJobStatus.PENDING.value,
                    period_start=period_start,
                    period_end=period_end,
                    tenant_outcomes=[],
                    errors=[],
                    start_time=start_time,
                )
                session.add(job)
                await session.commit()
                return InvoiceJobInfo.model_validate(job)

        return await with_database_retry(_insert, "create_invoice_job")

    async def get_job(self, job_id: str) -> Optional[InvoiceJobInfo]:
        async def _query() -> Optional[InvoiceJobInfo]:
            async with self.session_factory() as session:
                job = await session.get(InvoiceJob, job_id)
                return InvoiceJobInfo.model_validate(job) if job else None

        return await with_database_retry(_query, "get_invoice_job")

    async def update_job(self, job_id: str, **fields: Any) -> Optional[InvoiceJobInfo]:
        """Update progress or final state.

        Enum values are stored by value; outcome lists must already be
        JSON-compatible.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update invoice job fields: {sorted(unknown)}")

        async def _update() -> Optional[InvoiceJobInfo]:
            async with self.session_factory() as session:
                job = await session.get(InvoiceJob, job_id)
                if job is None:
                    return None
                for name, value in fields.items():
                    if isinstance(value, InvoiceJobStatus):
                        value = value.value
                    setattr(job, name, value)
                await session.commit()
                return InvoiceJobInfo.model_validate(job)

        return await with_database_retry(_update, "update_invoice_job")

    # ==================== Queries ====================

    async def list_jobs(
        self,
        status: Optional[InvoiceJobStatus] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        limit: int = 50,
    ) -> list[InvoiceJobInfo]:
        """Jobs filtered by status and/or exact period, newest first."""
        async def _query() -> list[InvoiceJobInfo]:
            async with self.session_factory() as session:
                conditions = []
                if status is not None:
                    conditions.append(InvoiceJob.status == status.value)
                if period_start is not None:
                    conditions.append(InvoiceJob.period_start == period_start)
                if period_end is not None:
                    conditions.append(InvoiceJob.period_end == period_end)

                query = select(InvoiceJob)
                if conditions:
                    query = query.where(and_(*conditions))
                query = query.order_by(desc(InvoiceJob.start_time)).limit(limit)
                result = await session.execute(query)
                return [InvoiceJobInfo.model_validate(j) for j in result.scalars().all()]

        return await with_database_retry(_query, "list_invoice_jobs")

    async def count_jobs(self, status: InvoiceJobStatus) -> int:
        async def _query() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(func.count(InvoiceJob.job_id)).where(InvoiceJob.status == status.value)
                )
                return result.scalar() or 0

        return await with_database_retry(_query, "count_invoice_jobs")

    async def get_last_successful_job(self) -> Optional[InvoiceJobInfo]:
        """Completed job covering the latest period."""
        async def _query() -> Optional[InvoiceJobInfo]:
            async with self.session_factory() as session:
                query = (
                    select(InvoiceJob)
                    .where(InvoiceJob.status == InvoiceJobStatus.COMPLETED.value)
                    .order_by(desc(InvoiceJob.period_end), desc(InvoiceJob.start_time))
                    .limit(1)
                )
                result = await session.execute(query)
                job = result.scalar_one_or_none()
                return InvoiceJobInfo.model_validate(job) if job else None

        return await with_database_retry(_query, "get_last_successful_invoice_job")

    async def find_completed_job(
        self,
        period_start: date,
        period_end: date,
    ) -> Optional[InvoiceJobInfo]:
        jobs = await self.list_jobs(
            status=InvoiceJobStatus.COMPLETED,
            period_start=period_start,
            period_end=period_end,
            limit=1,
        )
        return jobs[0] if jobs else None

    async def fail_unfinished_jobs(self, reason: str, end_time: datetime) -> int:
        """Mark pending/running jobs left behind by a previous process as failed."""
        async def _update() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(InvoiceJob)
                    .where(
                        InvoiceJob.status.in_(
                            (InvoiceJobStatus.PENDING.value, InvoiceJobStatus.RUNNING.value)
                        )
                    )
                    .values(
                        status=InvoiceJobStatus.FAILED.value,
                        errors=[reason],
                        end_time=end_time,
                    )
                )
                await session.commit()
                return result.rowcount or 0

        return await with_database_retry(_update, "fail_unfinished_invoice_jobs")
