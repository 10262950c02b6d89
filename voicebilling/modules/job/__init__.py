"""Invoice job module.

Scheduling, catch-up and tracking of billing runs across all tenants.
"""

from voicebilling.modules.job.models import InvoiceJob, InvoiceJobStatus, JobTrigger
from voicebilling.modules.job.periods import BillingPeriod
from voicebilling.modules.job.repository import InvoiceJobRepository
from voicebilling.modules.job.scheduler import InvoiceScheduler
from voicebilling.modules.job.schemas import (
    FailedOutcome,
    InvoicedOutcome,
    InvoiceJobInfo,
    SchedulerStatus,
    SkippedOutcome,
)

__all__ = [
    "InvoiceJob",
    "InvoiceJobStatus",
    "JobTrigger",
    "BillingPeriod",
    "InvoiceJobRepository",
    "InvoiceScheduler",
    "FailedOutcome",
    "InvoicedOutcome",
    "InvoiceJobInfo",
    "SchedulerStatus",
    "SkippedOutcome",
]
