"""Invoice job scheduler.

Decides when to bill, drives invoice generation across all tenants and
recovers billing periods missed while the process was down.

Billing slot: a fixed day-of-month and hour in the billing timezone. A
coarse tick checks the slot, and the startup catch-up over completed
jobs covers any slot that was missed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from voicebilling.core.config import settings
from voicebilling.core.errors import ErrorType, InvoiceRunInProgressError, classify_error
from voicebilling.core.logging import (
    clear_correlation_id,
    log_error,
    log_info,
    log_warning,
    set_correlation_id,
)
from voicebilling.core.metrics import (
    BILLING_RUN_DURATION_SECONDS,
    BILLING_RUN_IN_PROGRESS,
    BILLING_RUNS_TOTAL,
)
from voicebilling.core.resilience import (
    CircuitBreakerRegistry,
    SleepFunc,
    circuit_breakers,
    get_resilience_health,
)
from voicebilling.modules.audit.models import AuditAction, AuditOutcome
from voicebilling.modules.billing.schemas import TenantInfo
from voicebilling.modules.job.models import InvoiceJobStatus, JobTrigger
from voicebilling.modules.job.periods import BillingPeriod, new_job_id, utc_now
from voicebilling.modules.job.schemas import (
    FailedOutcome,
    InvoicedOutcome,
    InvoiceJobInfo,
    SchedulerStatus,
    SkippedOutcome,
    TenantOutcome,
)

logger = logging.getLogger(__name__)


class RunProgress:
    """Counters for a run in flight, persisted after every tenant."""

    def __init__(self, total_tenants: int = 0):
        self.total_tenants = total_tenants
        self.processed = 0
        self.successful = 0
        self.failed = 0
        self.skipped = 0
        self.outcomes: list[TenantOutcome] = []
        self.errors: list[str] = []

    def record(self, outcome: TenantOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        if isinstance(outcome, InvoicedOutcome):
            self.successful += 1
        elif isinstance(outcome, SkippedOutcome):
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append(f"Tenant {outcome.tenant_id}: {outcome.error}")

    @property
    def all_failed(self) -> bool:
        """Every tenant failed, and not merely because it was already billed."""
        if self.processed == 0 or self.failed != self.processed:
            return False
        return any(
            o.error_type != ErrorType.DUPLICATE
            for o in self.outcomes
            if isinstance(o, FailedOutcome)
        )

    def as_fields(self) -> dict:
        return {
            "total_tenants": self.total_tenants,
            "processed_tenants": self.processed,
            "successful_invoices": self.successful,
            "failed_invoices": self.failed,
            "skipped_tenants": self.skipped,
            "tenant_outcomes": [o.model_dump(mode="json") for o in self.outcomes],
            "errors": list(self.errors),
        }


class InvoiceScheduler:
    """Runs billing for every tenant, one run at a time.

    Holds the only "a run is executing" flag in the process. The flag is
    set synchronously before a run does any asynchronous work and cleared
    in a ``finally`` block, so a concurrent trigger fails fast with
    InvoiceRunInProgressError and an unexpected error never leaves the
    scheduler locked.
    """

    def __init__(
        self,
        invoice_service,
        tenant_repo,
        job_repo,
        audit_service,
        clock: Callable[[], datetime] = utc_now,
        sleep: SleepFunc = asyncio.sleep,
        breakers: CircuitBreakerRegistry = circuit_breakers,
        timezone: str = settings.BILLING_TIMEZONE,
        billing_day: int = settings.BILLING_DAY_OF_MONTH,
        billing_hour: int = settings.BILLING_HOUR,
        tick_seconds: float = settings.SCHEDULER_TICK_SECONDS,
        grace_days: int = settings.CATCH_UP_GRACE_DAYS,
        catch_up_pause: float = settings.CATCH_UP_PAUSE_SECONDS,
        tenant_delay: float = settings.TENANT_DELAY_SECONDS,
    ):
        if not 1 <= billing_day <= 28:
            raise ValueError("billing_day must be between 1 and 28")
        if not 0 <= billing_hour <= 23:
            raise ValueError("billing_hour must be between 0 and 23")
        self.invoice_service = invoice_service
        self.tenant_repo = tenant_repo
        self.job_repo = job_repo
        self.audit_service = audit_service
        self._clock = clock
        self._sleep = sleep
        self.breakers = breakers
        self.tz = ZoneInfo(timezone)
        self.billing_day = billing_day
        self.billing_hour = billing_hour
        self.tick_seconds = tick_seconds
        self.grace_days = grace_days
        self.catch_up_pause = catch_up_pause
        self.tenant_delay = tenant_delay

        self._processing = False
        self._current_job_id: Optional[str] = None
        self._current_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    # ==================== Time ====================

    def local_now(self) -> datetime:
        return self._clock().astimezone(self.tz)

    def last_month(self) -> BillingPeriod:
        return BillingPeriod.containing(self.local_now().date()).previous()

    def next_scheduled_run(self) -> datetime:
        """Next billing slot in the billing timezone."""
        now = self.local_now()
        year, month = now.year, now.month
        while True:
            slot = datetime(year, month, self.billing_day, self.billing_hour, tzinfo=self.tz)
            if slot > now:
                return slot
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)

    # ==================== Run Guard ====================

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def _start_run(
        self,
        period: BillingPeriod,
        trigger: JobTrigger,
    ) -> tuple[str, "asyncio.Task[InvoiceJobInfo]"]:
        """Claim the run flag and start the run in its own task.

        Must stay synchronous so the flag is taken before the caller
        yields to the event loop.

        Raises:
            InvoiceRunInProgressError: A run is already executing.
        """
        if self._processing:
            raise InvoiceRunInProgressError(self._current_job_id)
        job_id = new_job_id(self._clock())
        self._processing = True
        self._current_job_id = job_id
        BILLING_RUN_IN_PROGRESS.set(1)
        try:
            task = asyncio.get_running_loop().create_task(
                self._run_claimed(job_id, period, trigger)
            )
        except BaseException:
            self._release()
            raise
        task.add_done_callback(self._on_run_done)
        self._current_task = task
        return job_id, task

    def _on_run_done(self, task: "asyncio.Task[InvoiceJobInfo]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_error(logger, f"Invoice run failed before completion: {error}", error)

    def _release(self) -> None:
        self._processing = False
        self._current_job_id = None
        BILLING_RUN_IN_PROGRESS.set(0)

    async def _run_claimed(
        self,
        job_id: str,
        period: BillingPeriod,
        trigger: JobTrigger,
    ) -> InvoiceJobInfo:
        try:
            return await self._execute(job_id, period, trigger)
        finally:
            self._release()

    async def run_invoice_job(
        self,
        period: BillingPeriod,
        trigger: JobTrigger = JobTrigger.MANUAL,
    ) -> InvoiceJobInfo:
        """Bill every tenant for ``period`` and wait for the run to finish.

        Cancelling the caller does not cancel the run itself.

        Raises:
            InvoiceRunInProgressError: A run is already executing.
        """
        _, task = self._start_run(period, trigger)
        return await asyncio.shield(task)

    async def trigger_manual_run(self, period: Optional[BillingPeriod] = None) -> str:
        """Start a run in the background and return its job id immediately.

        Args:
            period: Period to bill, last month when omitted

        Raises:
            InvoiceRunInProgressError: A run is already executing.
        """
        job_id, _ = self._start_run(period or self.last_month(), JobTrigger.MANUAL)
        log_info(logger, f"Manual invoice run {job_id} triggered", job_id=job_id)
        return job_id

    # ==================== Run Execution ====================

    async def _execute(
        self,
        job_id: str,
        period: BillingPeriod,
        trigger: JobTrigger,
    ) -> InvoiceJobInfo:
        set_correlation_id(job_id)
        started = self._clock()
        progress = RunProgress()
        status = InvoiceJobStatus.FAILED

        try:
            await self.job_repo.create_job(job_id, trigger, period.start, period.end, started)
            log_info(
                logger,
                f"Invoice run {job_id} started for {period} ({trigger.value})",
                job_id=job_id,
            )

            try:
                tenants = await self.tenant_repo.list_billable_tenants()
                progress.total_tenants = len(tenants)
                await self.job_repo.update_job(
                    job_id,
                    status=InvoiceJobStatus.RUNNING,
                    total_tenants=len(tenants),
                )

                for index, tenant in enumerate(tenants):
                    if index > 0 and self.tenant_delay > 0:
                        await self._sleep(self.tenant_delay)
                    outcome = await self._process_tenant(tenant, period)
                    progress.record(outcome)
                    await self.job_repo.update_job(job_id, **progress.as_fields())

                if progress.all_failed:
                    progress.errors.append("Every tenant failed")
                else:
                    status = InvoiceJobStatus.COMPLETED
            except Exception as e:
                log_error(logger, f"Invoice run {job_id} aborted: {e}", e, job_id=job_id)
                progress.errors.append(f"Run aborted: {e}")

            return await self.job_repo.update_job(
                job_id,
                status=status,
                end_time=self._clock(),
                **progress.as_fields(),
            )
        except Exception as e:
            # Job store unavailable: the run still gets its audit entry below
            status = InvoiceJobStatus.FAILED
            progress.errors.append(f"Job store error: {e}")
            log_error(logger, f"Could not persist invoice run {job_id}: {e}", e, job_id=job_id)
            raise
        finally:
            duration = (self._clock() - started).total_seconds()
            BILLING_RUNS_TOTAL.labels(status=status.value, trigger=trigger.value).inc()
            BILLING_RUN_DURATION_SECONDS.labels(trigger=trigger.value).observe(duration)
            log_info(
                logger,
                f"Invoice run {job_id} {status.value}: {progress.successful} invoiced, "
                f"{progress.failed} failed, {progress.skipped} skipped in {duration:.1f}s",
                job_id=job_id,
            )
            await self._audit_run(job_id, trigger, period, status, progress, duration)
            clear_correlation_id()

    async def _process_tenant(self, tenant: TenantInfo, period: BillingPeriod) -> TenantOutcome:
        """Generate one tenant's invoice; any error becomes a failed outcome."""
        try:
            result = await self.invoice_service.generate(tenant.id, period.start, period.end)
        except Exception as e:
            log_error(logger, f"Unexpected error billing tenant {tenant.id}", e)
            return FailedOutcome(tenant_id=tenant.id, error=str(e), error_type=classify_error(e))

        if not result.success:
            return FailedOutcome(
                tenant_id=tenant.id,
                error=result.error or "Unknown error",
                error_type=result.error_type or ErrorType.INTERNAL,
            )
        if result.skipped:
            return SkippedOutcome(tenant_id=tenant.id, reason="No billable usage")
        return InvoicedOutcome(
            tenant_id=tenant.id,
            invoice_id=result.invoice_id,
            stripe_invoice_id=result.stripe_invoice_id,
            amount=result.amount or 0,
        )

    async def _audit_run(
        self,
        job_id: str,
        trigger: JobTrigger,
        period: BillingPeriod,
        status: InvoiceJobStatus,
        progress: RunProgress,
        duration: float,
    ) -> None:
        succeeded = status == InvoiceJobStatus.COMPLETED
        metadata = {
            "job_id": job_id,
            "trigger": trigger.value,
            "period_start": period.start.isoformat(),
            "period_end": period.end.isoformat(),
            "duration_seconds": duration,
            **progress.as_fields(),
        }
        try:
            await self.audit_service.record_audit_event(
                AuditAction.AUTOMATED_INVOICE_GENERATION
                if succeeded
                else AuditAction.AUTOMATED_INVOICE_GENERATION_ERROR,
                AuditOutcome.SUCCESS if succeeded else AuditOutcome.FAILURE,
                metadata,
            )
        except Exception as e:
            log_error(logger, f"Could not write audit entry for invoice run {job_id}", e)

    # ==================== Catch-up ====================

    async def find_missed_periods(self) -> list[BillingPeriod]:
        """Past months not covered by a completed job, oldest first.

        Without any completed job only last month is considered, and only
        once the grace days at the start of the month have passed.
        """
        today = self.local_now().date()
        current = BillingPeriod.containing(today)
        last_job = await self.job_repo.get_last_successful_job()

        if last_job is None:
            if today.day > self.grace_days:
                return [current.previous()]
            return []

        missed = []
        period = BillingPeriod.containing(last_job.period_end).next()
        while period.start < current.start:
            missed.append(period)
            period = period.next()
        return missed

    async def run_catch_up(self) -> list[InvoiceJobInfo]:
        """Bill missed periods one after another, oldest first.

        Stops at the first failed run so later periods are never billed
        ahead of an earlier one.
        """
        periods = await self.find_missed_periods()
        if not periods:
            return []

        log_info(
            logger,
            f"Catching up {len(periods)} missed billing period(s): "
            + ", ".join(str(p) for p in periods),
        )
        jobs = []
        for index, period in enumerate(periods):
            if index > 0 and self.catch_up_pause > 0:
                await self._sleep(self.catch_up_pause)
            try:
                job = await self.run_invoice_job(period, JobTrigger.CATCH_UP)
            except InvoiceRunInProgressError:
                log_warning(logger, "Catch-up stopped: another invoice run is in progress")
                break
            jobs.append(job)
            if job.status != InvoiceJobStatus.COMPLETED:
                log_warning(logger, f"Catch-up stopped after failed run for {period}")
                break
        return jobs

    # ==================== Steady-state Trigger ====================

    async def tick(self) -> Optional[InvoiceJobInfo]:
        """Run last month's billing when the billing slot is reached."""
        now = self.local_now()
        if now.day != self.billing_day or now.hour != self.billing_hour:
            return None
        if self._processing:
            return None

        period = BillingPeriod.containing(now.date()).previous()
        if await self.job_repo.find_completed_job(period.start, period.end):
            return None
        return await self.run_invoice_job(period, JobTrigger.SCHEDULED)

    async def _run_loop(self) -> None:
        try:
            await self.run_catch_up()
        except Exception as e:
            log_error(logger, "Invoice catch-up failed", e)

        while True:
            await self._sleep(self.tick_seconds)
            try:
                await self.tick()
            except Exception as e:
                log_error(logger, "Invoice scheduler tick failed", e)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Recover interrupted jobs, then start catch-up and the tick loop."""
        if self.is_running:
            return
        interrupted = await self.job_repo.fail_unfinished_jobs(
            "Interrupted by process restart", self._clock()
        )
        if interrupted:
            log_warning(logger, f"Marked {interrupted} interrupted invoice job(s) as failed")
        self._loop_task = asyncio.create_task(self._run_loop())
        log_info(
            logger,
            f"Invoice scheduler started; next billing slot {self.next_scheduled_run().isoformat()}",
        )

    async def stop(self) -> None:
        """Stop the tick loop and wait for an in-flight run to finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._current_task is not None and not self._current_task.done():
            log_info(logger, "Waiting for in-flight invoice run to finish")
            await asyncio.wait([self._current_task])
        log_info(logger, "Invoice scheduler stopped")

    # ==================== Operator Queries ====================

    async def get_job(self, job_id: str) -> Optional[InvoiceJobInfo]:
        return await self.job_repo.get_job(job_id)

    async def list_jobs(
        self,
        status: Optional[InvoiceJobStatus] = None,
        limit: int = 10,
    ) -> list[InvoiceJobInfo]:
        return await self.job_repo.list_jobs(status=status, limit=limit)

    async def get_system_status(self) -> SchedulerStatus:
        current_job_id = self._current_job_id
        current_job = await self.job_repo.get_job(current_job_id) if current_job_id else None
        return SchedulerStatus(
            running=self.is_running,
            processing=self._processing,
            current_job_id=current_job_id,
            current_job=current_job,
            last_successful_job=await self.job_repo.get_last_successful_job(),
            pending_jobs=await self.job_repo.count_jobs(InvoiceJobStatus.PENDING),
            failed_jobs=await self.job_repo.count_jobs(InvoiceJobStatus.FAILED),
            next_scheduled_run=self.next_scheduled_run(),
            resilience=get_resilience_health(self.breakers),
        )
