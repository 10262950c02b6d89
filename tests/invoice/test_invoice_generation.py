"""Tests for invoice generation and payment retry.

**Property: An Already Billed Period Is Rejected Without External Writes**
**Property: Failures Are Returned As Typed Results**
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from voicebilling.core.errors import ErrorType, PersistenceError
from voicebilling.modules.audit.models import AuditAction, AuditOutcome
from voicebilling.modules.billing.models import UsageKind
from voicebilling.modules.billing.schemas import FixedDiscount, PercentDiscount, PlanSnapshot
from voicebilling.modules.invoice.interface import PaymentProcessorError
from voicebilling.modules.invoice.models import InvoiceStatus
from voicebilling.modules.invoice.service import calculate_discount, generate_idempotency_key
from tests.fakes import InvoiceHarness


def starter_plan() -> PlanSnapshot:
    return PlanSnapshot(
        id=uuid.uuid4(),
        name="Starter",
        monthly_price=Decimal("29.00"),
        free_voice_bot_minutes=100,
        voice_bot_rate_per_minute_cents=Decimal("5"),
    )


def billable_harness(**kwargs) -> InvoiceHarness:
    """Tenant on the Starter plan with 140 voice bot minutes and 10 calls: 3120 cents."""
    harness = InvoiceHarness(plan=starter_plan(), **kwargs)
    harness.add_usage(UsageKind.VOICE_BOT_MINUTE, 140)
    harness.add_usage(UsageKind.CALL, 10)
    return harness


class TestInvoiceGeneration:
    """Tests for InvoiceService.generate."""

    @pytest.mark.asyncio
    async def test_generates_and_finalizes_invoice(self):
        harness = billable_harness()

        result = await harness.generate()

        assert result.success, result.error
        assert result.amount == 3120
        assert result.skipped is False

        operations = [op for op, _ in harness.processor.calls]
        assert operations == [
            "create_draft_invoice",
            "add_invoice_item",
            "add_invoice_item",
            "add_invoice_item",
            "finalize_invoice",
        ], f"Unexpected call sequence {operations}"

        external = harness.processor.invoices[result.stripe_invoice_id]
        assert external.status == "open"
        assert external.total == 3120

        invoice = harness.invoices.invoices[result.invoice_id]
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.stripe_invoice_id == result.stripe_invoice_id
        assert invoice.total_amount == 3120
        assert invoice.currency == "EUR"
        assert invoice.hosted_invoice_url == external.hosted_invoice_url
        assert invoice.line_items["subtotal"] == 3120
        assert invoice.line_items["plan_name"] == "Starter"
        assert [item["kind"] for item in invoice.line_items["line_items"]] == [
            "base_fee",
            "voice_bot_minute",
            "call",
        ]

    @given(status=st.sampled_from([InvoiceStatus.PENDING, InvoiceStatus.PAID]))
    @settings(max_examples=10)
    @pytest.mark.asyncio
    async def test_existing_invoice_rejects_with_zero_external_writes(self, status):
        """For a period with a pending or paid invoice, generate SHALL fail as duplicate."""
        harness = billable_harness()
        existing = harness.invoices.add(
            tenant_id=harness.tenant.id,
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 31),
            status=status,
        )

        result = await harness.generate()

        assert not result.success
        assert result.error_type == ErrorType.DUPLICATE
        assert str(existing.id) in result.error
        assert harness.processor.external_writes == 0, (
            f"Duplicate generation made {harness.processor.external_writes} external calls"
        )
        assert len(harness.invoices.invoices) == 1

    @pytest.mark.asyncio
    async def test_failed_invoice_does_not_block_regeneration(self):
        harness = billable_harness()
        harness.invoices.add(
            tenant_id=harness.tenant.id,
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 31),
            status=InvoiceStatus.FAILED,
        )

        result = await harness.generate()

        assert result.success, result.error

    @pytest.mark.asyncio
    async def test_second_generation_for_same_period_is_duplicate(self):
        harness = billable_harness()

        first = await harness.generate()
        writes = harness.processor.external_writes
        second = await harness.generate()

        assert first.success
        assert second.error_type == ErrorType.DUPLICATE
        assert harness.processor.external_writes == writes

    @pytest.mark.asyncio
    async def test_zero_total_short_circuits_without_external_calls(self):
        harness = InvoiceHarness(plan=None)

        result = await harness.generate()

        assert result.success
        assert result.skipped is True
        assert result.amount == 0
        assert result.invoice_id is None
        assert harness.processor.external_writes == 0
        assert harness.invoices.invoices == {}

    @pytest.mark.asyncio
    async def test_missing_billing_account_is_validation_failure(self):
        harness = InvoiceHarness(plan=starter_plan(), with_account=False)

        result = await harness.generate()

        assert not result.success
        assert result.error_type == ErrorType.VALIDATION
        assert harness.processor.external_writes == 0

    @pytest.mark.asyncio
    async def test_missing_customer_reference_is_validation_failure(self):
        harness = billable_harness(stripe_customer_id=None)

        result = await harness.generate()

        assert result.error_type == ErrorType.VALIDATION
        action, outcome, metadata = harness.audit.entries[-1]
        assert action == AuditAction.INVOICE_GENERATION.value
        assert outcome == AuditOutcome.FAILURE.value
        assert metadata["tenant_id"] == str(harness.tenant.id)
        assert metadata["period_start"] == "2024-01-01"
        assert metadata["error_type"] == "validation"

    @pytest.mark.asyncio
    async def test_processor_failure_marks_invoice_failed(self):
        harness = billable_harness()
        harness.processor.fail(
            "finalize_invoice",
            PaymentProcessorError("Invalid tax settings", status_code=400, code="invalid_request"),
        )

        result = await harness.generate()

        assert not result.success
        assert result.error_type == ErrorType.EXTERNAL_SERVICE
        assert result.invoice_id is not None
        invoice = harness.invoices.invoices[result.invoice_id]
        assert invoice.status == InvoiceStatus.FAILED
        assert "Invalid tax settings" in invoice.error_message
        assert harness.audit.entries[-1][1] == AuditOutcome.FAILURE.value

    @pytest.mark.asyncio
    async def test_transient_processor_failure_is_retried(self):
        harness = billable_harness()
        harness.processor.fail("add_invoice_item", ConnectionError("connection reset"))

        result = await harness.generate()

        assert result.success, result.error
        assert len(harness.sleep.delays) == 1
        assert len(harness.processor.items) == 3

    @pytest.mark.asyncio
    async def test_local_write_failure_after_finalize_keeps_invoice_pending(self):
        """For a finalized Stripe invoice whose local record fails to save, regeneration SHALL be blocked."""
        harness = billable_harness()
        complete_invoice = harness.invoices.complete_invoice
        attempts = 0

        async def unavailable_once(*args, **kwargs):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise PersistenceError("complete_invoice failed: connection refused")
            return await complete_invoice(*args, **kwargs)

        harness.invoices.complete_invoice = unavailable_once

        first = await harness.generate()

        assert not first.success
        assert first.error_type == ErrorType.PERSISTENCE
        assert first.stripe_invoice_id is not None
        invoice = harness.invoices.invoices[first.invoice_id]
        assert invoice.status == InvoiceStatus.PENDING, "Row must keep blocking the period"
        assert invoice.stripe_invoice_id == first.stripe_invoice_id
        assert harness.audit.entries[-1][2]["stripe_invoice_id"] == first.stripe_invoice_id

        # Stripe forgets idempotency keys after a day
        harness.processor._responses.clear()
        second = await harness.generate()

        assert second.error_type == ErrorType.DUPLICATE
        live = [i for i in harness.processor.invoices.values() if i.status == "open"]
        assert len(live) == 1, f"Expected one live Stripe invoice, got {live}"

        retry = await harness.service.retry_invoice_payment(first.invoice_id)
        assert retry.success, retry.error
        assert harness.processor.invoices[first.stripe_invoice_id].status == "paid"

    @pytest.mark.asyncio
    async def test_partial_month_period_is_rejected(self):
        harness = billable_harness()

        result = await harness.service.generate(harness.tenant.id, date(2024, 1, 1), date(2024, 1, 10))

        assert not result.success
        assert result.error_type == ErrorType.VALIDATION
        assert harness.processor.external_writes == 0
        assert harness.invoices.invoices == {}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_returned_not_raised(self):
        harness = billable_harness()

        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        harness.adjustments.list_adjustments = broken

        result = await harness.generate()

        assert not result.success
        assert result.error_type == ErrorType.INTERNAL
        assert harness.processor.external_writes == 0


class TestDiscounts:
    """Tests for adjustment handling."""

    @pytest.mark.asyncio
    async def test_percent_and_fixed_discounts_add_one_negative_item(self):
        harness = billable_harness()
        harness.adjustments.adjustments.extend([
            PercentDiscount(tenant_id=harness.tenant.id, percent=Decimal(10), valid_from=date(2023, 1, 1)),
            FixedDiscount(
                tenant_id=harness.tenant.id,
                amount_cents=500,
                valid_from=date(2024, 1, 10),
                valid_until=date(2024, 2, 10),
            ),
            # Expired before the period
            FixedDiscount(
                tenant_id=harness.tenant.id,
                amount_cents=9999,
                valid_from=date(2023, 1, 1),
                valid_until=date(2023, 12, 31),
            ),
        ])

        result = await harness.generate()

        # 10% of 3120 = 312, plus 500
        assert result.amount == 3120 - 812
        external = harness.processor.invoices[result.stripe_invoice_id]
        negative = [i for i in harness.processor.items.values() if i.amount < 0]
        assert [i.amount for i in negative] == [-812]
        assert external.total == 2308

        snapshot = harness.invoices.invoices[result.invoice_id].line_items
        assert snapshot["discount"] == 812
        assert snapshot["line_items"][-1]["kind"] == "discount"
        assert snapshot["line_items"][-1]["total_amount"] == -812

    @given(
        subtotal=st.integers(min_value=-1000, max_value=1_000_000),
        percents=st.lists(st.integers(min_value=0, max_value=100), max_size=3),
        fixed=st.lists(st.integers(min_value=0, max_value=500_000), max_size=3),
    )
    @settings(max_examples=100)
    def test_discount_is_bounded_by_subtotal(self, subtotal, percents, fixed):
        """For any adjustments, the discount SHALL lie in [0, max(subtotal, 0)]."""
        tenant_id = uuid.uuid4()
        adjustments = [
            PercentDiscount(tenant_id=tenant_id, percent=Decimal(p), valid_from=date(2024, 1, 1))
            for p in percents
        ] + [
            FixedDiscount(tenant_id=tenant_id, amount_cents=f, valid_from=date(2024, 1, 1))
            for f in fixed
        ]

        discount = calculate_discount(subtotal, adjustments)

        assert 0 <= discount <= max(subtotal, 0), (
            f"Discount {discount} outside [0, {max(subtotal, 0)}]"
        )

    def test_percent_discount_rounds_half_up(self):
        adjustment = PercentDiscount(tenant_id=uuid.uuid4(), percent=Decimal(50), valid_from=date(2024, 1, 1))
        assert calculate_discount(3, [adjustment]) == 2


class TestPaymentRetry:
    """Tests for InvoiceService.retry_invoice_payment."""

    @pytest.mark.asyncio
    async def test_retry_marks_invoice_paid_once(self):
        harness = billable_harness()
        invoice = harness.invoices.add(tenant_id=harness.tenant.id, stripe_invoice_id="in_failed")

        first = await harness.service.retry_invoice_payment(invoice.id)
        second = await harness.service.retry_invoice_payment(invoice.id)

        assert first.success
        assert first.status == InvoiceStatus.PAID
        assert harness.invoices.invoices[invoice.id].payment_retry_count == 1
        assert not second.success
        assert second.error_type == ErrorType.VALIDATION
        assert [op for op, _ in harness.processor.calls] == ["pay_invoice"]

    @pytest.mark.asyncio
    async def test_retry_counts_even_when_payment_fails(self):
        harness = billable_harness()
        invoice = harness.invoices.add(tenant_id=harness.tenant.id, stripe_invoice_id="in_failed")
        harness.processor.fail(
            "pay_invoice",
            PaymentProcessorError("Your card was declined.", status_code=402, code="card_declined"),
        )

        result = await harness.service.retry_invoice_payment(invoice.id)

        assert not result.success
        assert result.error_type == ErrorType.EXTERNAL_SERVICE
        assert harness.invoices.invoices[invoice.id].payment_retry_count == 1
        assert harness.invoices.invoices[invoice.id].status == InvoiceStatus.PENDING
        assert harness.audit.entries[-1][0] == AuditAction.INVOICE_PAYMENT_RETRY.value

    @pytest.mark.asyncio
    async def test_open_invoice_stays_pending(self):
        harness = InvoiceHarness(plan=starter_plan(), pay_status="open")
        invoice = harness.invoices.add(tenant_id=harness.tenant.id, stripe_invoice_id="in_open")

        result = await harness.service.retry_invoice_payment(invoice.id)

        assert result.success
        assert result.status == InvoiceStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejects_unknown_paid_and_unsent_invoices(self):
        harness = billable_harness()
        paid = harness.invoices.add(stripe_invoice_id="in_paid", status=InvoiceStatus.PAID)
        unsent = harness.invoices.add(stripe_invoice_id=None)

        for invoice_id in (uuid.uuid4(), paid.id, unsent.id):
            result = await harness.service.retry_invoice_payment(invoice_id)
            assert not result.success
            assert result.error_type == ErrorType.VALIDATION

        assert harness.processor.external_writes == 0

    @pytest.mark.asyncio
    async def test_get_invoice(self):
        harness = billable_harness()
        invoice = harness.invoices.add(tenant_id=harness.tenant.id)

        assert (await harness.service.get_invoice(invoice.id)).id == invoice.id
        assert await harness.service.get_invoice(uuid.uuid4()) is None


class TestPaymentIntents:
    """Tests for InvoiceService.create_payment_intent."""

    @pytest.mark.asyncio
    async def test_intent_for_generated_invoice_is_idempotent(self):
        harness = billable_harness()
        generated = await harness.generate()

        first = await harness.service.create_payment_intent(generated.invoice_id)
        second = await harness.service.create_payment_intent(generated.invoice_id)

        assert first.success, first.error
        assert first.amount == 3120
        assert first.client_secret is not None
        assert second.payment_intent_id == first.payment_intent_id
        assert len(harness.processor.payment_intents) == 1
        operation, key = harness.processor.calls[-1]
        assert operation == "create_payment_intent"
        assert key == generate_idempotency_key("payment_intent", harness.tenant.id, generated.invoice_id)

    @pytest.mark.asyncio
    async def test_intent_rejects_unpayable_invoices(self):
        harness = billable_harness()
        paid = harness.invoices.add(tenant_id=harness.tenant.id, status=InvoiceStatus.PAID)
        empty = harness.invoices.add(tenant_id=harness.tenant.id, total_amount=0)
        no_account = harness.invoices.add(tenant_id=uuid.uuid4())

        for invoice_id in (uuid.uuid4(), paid.id, empty.id, no_account.id):
            result = await harness.service.create_payment_intent(invoice_id)
            assert not result.success
            assert result.error_type == ErrorType.VALIDATION

        assert harness.processor.payment_intents == {}

    @pytest.mark.asyncio
    async def test_intent_processor_failure_is_typed(self):
        harness = billable_harness()
        invoice = harness.invoices.add(tenant_id=harness.tenant.id)
        harness.processor.fail(
            "create_payment_intent",
            PaymentProcessorError("Amount must be at least 50 cents", status_code=400, code="amount_too_small"),
        )

        result = await harness.service.create_payment_intent(invoice.id)

        assert not result.success
        assert result.error_type == ErrorType.EXTERNAL_SERVICE
        assert "Amount must be at least 50 cents" in result.error


class TestInvoiceDetails:
    """Tests for InvoiceService.get_invoice_details."""

    @pytest.mark.asyncio
    async def test_details_include_live_stripe_invoice(self):
        harness = billable_harness()
        generated = await harness.generate()

        details = await harness.service.get_invoice_details(generated.invoice_id)

        assert details.invoice.id == generated.invoice_id
        assert details.stripe_invoice.id == generated.stripe_invoice_id
        assert details.stripe_invoice.status == "open"
        assert details.stripe_error is None

    @pytest.mark.asyncio
    async def test_stripe_lookup_failure_is_only_reported(self):
        harness = billable_harness()
        generated = await harness.generate()
        harness.processor.fail("retrieve_invoice", *[ConnectionError("connection reset")] * 3)

        details = await harness.service.get_invoice_details(generated.invoice_id)

        assert details.invoice.id == generated.invoice_id
        assert details.stripe_invoice is None
        assert "retrieve_invoice failed after 3 attempts" in details.stripe_error
        assert harness.breakers.get_breaker("stripe_lookup").failure_count == 1
        assert harness.breakers.get_breaker("stripe").failure_count == 0

    @pytest.mark.asyncio
    async def test_details_without_stripe_invoice_skip_lookup(self):
        harness = billable_harness()
        unsent = harness.invoices.add(tenant_id=harness.tenant.id)
        harness.processor.fail("retrieve_invoice", ConnectionError("must not be called"))

        details = await harness.service.get_invoice_details(unsent.id)

        assert details.stripe_invoice is None
        assert details.stripe_error is None
        assert harness.processor.failures["retrieve_invoice"], "Lookup was attempted"
        assert await harness.service.get_invoice_details(uuid.uuid4()) is None
