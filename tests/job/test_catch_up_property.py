"""Property-based tests for missed billing period detection.

**Property: Catch-up Enqueues Exactly The Gap Months, Oldest First**
**Property: The Current Month Is Never Billed**
"""

from datetime import date, datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st

from voicebilling.core.errors import ErrorType
from voicebilling.modules.job.models import InvoiceJobStatus, JobTrigger
from voicebilling.modules.job.periods import BillingPeriod
from tests.fakes import SchedulerHarness


year_strategy = st.integers(min_value=2020, max_value=2035)
month_strategy = st.integers(min_value=1, max_value=12)
gap_strategy = st.integers(min_value=1, max_value=14)
day_strategy = st.integers(min_value=1, max_value=28)


def add_months(year: int, month: int, count: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + count
    return index // 12, index % 12 + 1


def noon_utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 12, 0, tzinfo=timezone.utc)


class TestBillingPeriod:
    """Tests for calendar-month periods."""

    @given(year=year_strategy, month=month_strategy)
    @settings(max_examples=100)
    def test_month_bounds(self, year, month):
        period = BillingPeriod.for_month(year, month)

        assert period.start == date(year, month, 1)
        assert period.end.month == month
        assert period.next().start.toordinal() == period.end.toordinal() + 1
        assert period.next().previous() == period

    def test_leap_february(self):
        assert BillingPeriod.for_month(2024, 2).end == date(2024, 2, 29)
        assert BillingPeriod.for_month(2023, 2).end == date(2023, 2, 28)
        assert str(BillingPeriod.for_month(2023, 12)) == "2023-12-01..2023-12-31"

    @given(
        start=st.dates(min_value=date(2020, 1, 1), max_value=date(2035, 12, 31)),
        length=st.integers(min_value=0, max_value=62),
    )
    @settings(max_examples=100)
    def test_only_whole_months_are_periods(self, start, length):
        """For any range other than exactly one calendar month, construction SHALL fail."""
        end = date.fromordinal(start.toordinal() + length)
        whole = BillingPeriod.containing(start)

        if (start, end) == (whole.start, whole.end):
            assert BillingPeriod(start=start, end=end) == whole
        else:
            with pytest.raises(ValueError):
                BillingPeriod(start=start, end=end)


class TestFindMissedPeriods:
    """Tests for InvoiceScheduler.find_missed_periods."""

    @given(year=year_strategy, month=month_strategy, gap=gap_strategy, day=day_strategy)
    @settings(max_examples=100)
    @pytest.mark.asyncio
    async def test_missed_periods_are_gap_months_in_order(self, year, month, gap, day):
        """For a last completed job in month M and today in M+gap, periods M+1..M+gap-1 SHALL be missed."""
        now_year, now_month = add_months(year, month, gap)
        harness = SchedulerHarness(noon_utc(now_year, now_month, day))
        last = BillingPeriod.for_month(year, month)
        harness.jobs.add(last.start, last.end)

        missed = await harness.scheduler.find_missed_periods()

        expected = [BillingPeriod.for_month(*add_months(year, month, n)) for n in range(1, gap)]
        assert missed == expected, f"Expected {expected}, got {missed}"
        current = BillingPeriod.for_month(now_year, now_month)
        assert current not in missed, "Current month must never be enqueued"

    @pytest.mark.asyncio
    async def test_three_month_example(self):
        harness = SchedulerHarness(noon_utc(2024, 4, 10))
        harness.jobs.add(date(2024, 1, 1), date(2024, 1, 31))

        missed = await harness.scheduler.find_missed_periods()

        assert missed == [BillingPeriod.for_month(2024, 2), BillingPeriod.for_month(2024, 3)]

    @given(day=day_strategy)
    @settings(max_examples=28)
    @pytest.mark.asyncio
    async def test_without_history_last_month_after_grace_days(self, day):
        """With no completed job, last month SHALL be enqueued only after day 3."""
        harness = SchedulerHarness(noon_utc(2024, 5, day))

        missed = await harness.scheduler.find_missed_periods()

        if day > 3:
            assert missed == [BillingPeriod.for_month(2024, 4)]
        else:
            assert missed == []

    @pytest.mark.asyncio
    async def test_failed_jobs_do_not_count_as_covered(self):
        harness = SchedulerHarness(noon_utc(2024, 4, 10))
        harness.jobs.add(date(2024, 1, 1), date(2024, 1, 31))
        harness.jobs.add(date(2024, 2, 1), date(2024, 2, 29), status=InvoiceJobStatus.FAILED)

        missed = await harness.scheduler.find_missed_periods()

        assert missed[0] == BillingPeriod.for_month(2024, 2)

    @pytest.mark.asyncio
    async def test_month_boundary_uses_billing_timezone(self):
        # 23:30 UTC on April 30th is already May 1st in Vienna
        harness = SchedulerHarness(datetime(2024, 4, 30, 23, 30, tzinfo=timezone.utc))
        harness.jobs.add(date(2024, 3, 1), date(2024, 3, 31))

        missed = await harness.scheduler.find_missed_periods()

        assert missed == [BillingPeriod.for_month(2024, 4)]


class TestRunCatchUp:
    """Tests for InvoiceScheduler.run_catch_up."""

    @pytest.mark.asyncio
    async def test_runs_each_missed_period_oldest_first(self):
        harness = SchedulerHarness(noon_utc(2024, 4, 10), tenants=2)
        harness.jobs.add(date(2023, 12, 1), date(2023, 12, 31))

        jobs = await harness.scheduler.run_catch_up()

        assert [(j.period_start, j.period_end) for j in jobs] == [
            (date(2024, 1, 1), date(2024, 1, 31)),
            (date(2024, 2, 1), date(2024, 2, 29)),
            (date(2024, 3, 1), date(2024, 3, 31)),
        ]
        assert all(j.trigger == JobTrigger.CATCH_UP for j in jobs)
        assert all(j.status == InvoiceJobStatus.COMPLETED for j in jobs)
        billed_periods = [(start, end) for _, start, end in harness.service.calls]
        assert billed_periods == sorted(billed_periods)
        assert harness.sleep.delays.count(5.0) == 2, "Expected a pause between the three runs"
        assert await harness.scheduler.find_missed_periods() == []

    @pytest.mark.asyncio
    async def test_stops_after_failed_run(self):
        harness = SchedulerHarness(noon_utc(2024, 4, 10), tenants=1)
        harness.jobs.add(date(2023, 12, 1), date(2023, 12, 31))
        harness.service.fail(harness.tenant_ids[0], ErrorType.EXTERNAL_SERVICE, "Stripe unavailable")

        jobs = await harness.scheduler.run_catch_up()

        assert len(jobs) == 1
        assert jobs[0].status == InvoiceJobStatus.FAILED
        assert jobs[0].period_start == date(2024, 1, 1)

    @pytest.mark.asyncio
    async def test_nothing_to_catch_up(self):
        harness = SchedulerHarness(noon_utc(2024, 4, 10), tenants=1)
        harness.jobs.add(date(2024, 3, 1), date(2024, 3, 31))

        assert await harness.scheduler.run_catch_up() == []
        assert harness.service.calls == []
