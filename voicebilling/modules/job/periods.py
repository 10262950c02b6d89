"""Calendar-month billing periods and clock helpers."""

import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _month_end(day: date) -> date:
    next_start = date(day.year + 1, 1, 1) if day.month == 12 else date(day.year, day.month + 1, 1)
    return next_start - timedelta(days=1)


def is_whole_month(start: date, end: date) -> bool:
    return start.day == 1 and end == _month_end(start)


@dataclass(frozen=True, order=True)
class BillingPeriod:
    """A whole calendar month, both ends inclusive.

    Raises:
        ValueError: ``start``..``end`` is not exactly one calendar month.
    """
    start: date
    end: date

    def __post_init__(self) -> None:
        if not is_whole_month(self.start, self.end):
            raise ValueError(
                f"Billing period {self.start.isoformat()}..{self.end.isoformat()} "
                "must cover exactly one calendar month"
            )

    @classmethod
    def for_month(cls, year: int, month: int) -> "BillingPeriod":
        start = date(year, month, 1)
        return cls(start=start, end=_month_end(start))

    @classmethod
    def containing(cls, day: date) -> "BillingPeriod":
        return cls.for_month(day.year, day.month)

    def next(self) -> "BillingPeriod":
        return BillingPeriod.containing(self.end + timedelta(days=1))

    def previous(self) -> "BillingPeriod":
        return BillingPeriod.containing(self.start - timedelta(days=1))

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


def new_job_id(now: datetime) -> str:
    """Job id of the form ``invoice_job_<epoch-ms>_<8 hex chars>``."""
    return f"invoice_job_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"
