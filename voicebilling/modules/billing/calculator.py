"""Usage pricing for a tenant and billing period.

Quantities accumulate as Decimal. Money only ever exists as integer minor
units, rounded half-up at each multiplication.
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from voicebilling.core.config import settings
from voicebilling.modules.billing.models import MINUTE_KINDS, UsageKind
from voicebilling.modules.billing.schemas import (
    BillingLineItem,
    LineItemKind,
    MinuteUsage,
    PlanSnapshot,
    PricedBreakdown,
    UsageEventRecord,
)

logger = logging.getLogger(__name__)


# Pay-as-you-go rates in cents per unit. TTS and LLM are 1 cent per 500 units.
DEFAULT_RATES_CENTS: dict[UsageKind, Decimal] = {
    UsageKind.VOICE_BOT_MINUTE: Decimal("5"),
    UsageKind.FORWARDING_MINUTE: Decimal("3"),
    UsageKind.CALL: Decimal("2"),
    UsageKind.STT_REQUEST: Decimal("1"),
    UsageKind.TTS_CHAR: Decimal("0.002"),
    UsageKind.LLM_TOKEN: Decimal("0.002"),
}

_LINE_ITEM_LABELS: dict[UsageKind, tuple[str, str]] = {
    UsageKind.VOICE_BOT_MINUTE: ("Voice bot minutes", "Voice bot usage (pay per use)"),
    UsageKind.FORWARDING_MINUTE: ("Forwarding minutes", "Call forwarding minutes (pay per use)"),
    UsageKind.CALL: ("Call initiation", "Per inbound call"),
    UsageKind.STT_REQUEST: ("Speech recognition", "Per speech-to-text request"),
    UsageKind.TTS_CHAR: ("Speech synthesis", "Per 500 text-to-speech characters"),
    UsageKind.LLM_TOKEN: ("AI processing", "Per 500 AI tokens processed"),
}

_LINE_ITEM_ORDER = {kind: index for index, kind in enumerate(LineItemKind)}

ZERO = Decimal(0)


def default_rate(kind: UsageKind) -> Decimal:
    """Default rate for ``kind``; unknown kinds price at zero instead of raising."""
    return DEFAULT_RATES_CENTS.get(kind, ZERO)


def to_minor_units(quantity: Decimal, rate_cents: Decimal) -> int:
    """quantity x rate rounded half-up to whole cents."""
    return int((quantity * rate_cents).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def major_to_minor(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def aggregate_usage(events: Iterable[UsageEventRecord]) -> dict[UsageKind, Decimal]:
    """Sum quantities per kind. Every kind is present, defaulting to zero."""
    totals = {kind: ZERO for kind in UsageKind}
    for event in events:
        totals[event.kind] += Decimal(event.quantity)
    return totals


def usage_window(
    period_start: date,
    period_end: date,
    tz_name: str = settings.BILLING_TIMEZONE,
) -> tuple[datetime, datetime]:
    """Half-open datetime window covering the inclusive date period."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(period_start, time.min, tzinfo=tz)
    end = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def price_usage(
    tenant_id: uuid.UUID,
    period_start: date,
    period_end: date,
    usage_totals: dict[UsageKind, Decimal],
    plan: Optional[PlanSnapshot],
    currency: str = settings.BILLING_CURRENCY,
) -> PricedBreakdown:
    """Price aggregated usage against an optional plan.

    With a plan, minute kinds are billed only above the free allowance at
    the plan's overage rate (default rate when the plan has none). Without
    a plan, minute kinds are billed in full at the default rate. All other
    kinds are always billed at the default rate.
    """
    items: list[BillingLineItem] = []
    minute_breakdown: dict[UsageKind, MinuteUsage] = {}

    if plan is not None:
        items.append(
            BillingLineItem(
                kind=LineItemKind.BASE_FEE,
                name=f"{plan.name} - monthly fee",
                description=f"Monthly base fee for the {plan.name} plan",
                quantity=Decimal(1),
                rate_per_unit=Decimal(major_to_minor(plan.monthly_price)),
                total_amount=major_to_minor(plan.monthly_price),
            )
        )

    for kind in MINUTE_KINDS:
        used = usage_totals.get(kind, ZERO)
        name, description = _LINE_ITEM_LABELS[kind]

        if plan is not None:
            free = plan.free_allowance(kind)
            plan_rate = plan.overage_rate(kind)
            rate = plan_rate if plan_rate is not None else default_rate(kind)
            overage = max(ZERO, used - free)
            minute_breakdown[kind] = MinuteUsage(
                used=used, free=free, overage=overage, rate_per_minute_cents=rate
            )
            if overage > 0:
                items.append(
                    BillingLineItem(
                        kind=LineItemKind(kind.value),
                        name=f"{name} (overage)",
                        description=f"{name} above the {free} included in the plan",
                        quantity=overage,
                        rate_per_unit=rate,
                        total_amount=to_minor_units(overage, rate),
                        free_allowance=free,
                        free_allowance_consumed=min(used, free),
                    )
                )
        else:
            rate = default_rate(kind)
            minute_breakdown[kind] = MinuteUsage(
                used=used, free=ZERO, overage=used, rate_per_minute_cents=rate
            )
            if used > 0:
                items.append(
                    BillingLineItem(
                        kind=LineItemKind(kind.value),
                        name=name,
                        description=description,
                        quantity=used,
                        rate_per_unit=rate,
                        total_amount=to_minor_units(used, rate),
                    )
                )

    for kind in UsageKind:
        if kind in MINUTE_KINDS:
            continue
        used = usage_totals.get(kind, ZERO)
        if used <= 0:
            continue
        name, description = _LINE_ITEM_LABELS[kind]
        rate = default_rate(kind)
        items.append(
            BillingLineItem(
                kind=LineItemKind(kind.value),
                name=name,
                description=description,
                quantity=used,
                rate_per_unit=rate,
                total_amount=to_minor_units(used, rate),
            )
        )

    items.sort(key=lambda item: (-item.total_amount, _LINE_ITEM_ORDER[item.kind]))
    subtotal = sum(item.total_amount for item in items)

    return PricedBreakdown(
        tenant_id=tenant_id,
        period_start=period_start,
        period_end=period_end,
        plan_id=plan.id if plan is not None else None,
        plan_name=plan.name if plan is not None else None,
        currency=currency,
        line_items=items,
        subtotal=subtotal,
        tax=0,
        total=subtotal,
        usage_totals=dict(usage_totals),
        minute_breakdown=minute_breakdown,
    )


class BillingCalculator:
    """Prices a tenant's usage for a billing period."""

    def __init__(
        self,
        usage_repo,
        tenant_repo,
        plan_repo,
        timezone: str = settings.BILLING_TIMEZONE,
        currency: str = settings.BILLING_CURRENCY,
    ):
        self.usage_repo = usage_repo
        self.tenant_repo = tenant_repo
        self.plan_repo = plan_repo
        self.timezone = timezone
        self.currency = currency

    async def get_active_plan(self, tenant_id: uuid.UUID) -> Optional[PlanSnapshot]:
        """The tenant's plan when its billing account points at an active one."""
        account = await self.tenant_repo.get_billing_account(tenant_id)
        if account is None or account.plan_id is None:
            return None
        plan = await self.plan_repo.get_plan(account.plan_id)
        if plan is None or not plan.is_active:
            return None
        return plan

    async def calculate(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
    ) -> PricedBreakdown:
        """Price usage for the inclusive date period ``[period_start, period_end]``.

        Args:
            tenant_id: Tenant to bill
            period_start: First day of the period
            period_end: Last day of the period

        Returns:
            PricedBreakdown whose total equals the sum of its line items
        """
        start, end = usage_window(period_start, period_end, self.timezone)
        events = await self.usage_repo.list_usage_events(tenant_id, start, end)
        plan = await self.get_active_plan(tenant_id)

        breakdown = price_usage(
            tenant_id,
            period_start,
            period_end,
            aggregate_usage(events),
            plan,
            self.currency,
        )
        logger.debug(
            f"Priced tenant {tenant_id} for {period_start}..{period_end}: "
            f"{len(breakdown.line_items)} items, total {breakdown.total}"
        )
        return breakdown

    async def current_usage(self, tenant_id: uuid.UUID, now: datetime) -> PricedBreakdown:
        """Month-to-date pricing for dashboards."""
        local_now = now.astimezone(ZoneInfo(self.timezone))
        period_start = local_now.date().replace(day=1)
        return await self.calculate(tenant_id, period_start, local_now.date())
