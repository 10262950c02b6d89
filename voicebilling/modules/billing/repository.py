"""Repositories for tenant, plan, usage and adjustment reads.

Each operation opens its own short session so a retried call always
starts from a clean transaction.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicebilling.core.resilience import with_database_retry
from voicebilling.modules.billing.models import (
    AdjustmentType,
    BillingAccount,
    BillingAdjustment,
    SubscriptionPlan,
    Tenant,
    UsageEvent,
    UsageKind,
)
from voicebilling.modules.billing.schemas import (
    Adjustment,
    BillingAccountInfo,
    FixedDiscount,
    PercentDiscount,
    PlanSnapshot,
    TenantInfo,
    UsageEventRecord,
)


class TenantRepository:
    """Tenant and billing account lookups."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_tenants(self) -> list[TenantInfo]:
        async def _query() -> list[TenantInfo]:
            async with self.session_factory() as session:
                result = await session.execute(select(Tenant).order_by(Tenant.created_at))
                return [TenantInfo.model_validate(t) for t in result.scalars().all()]

        return await with_database_retry(_query, "list_tenants")

    async def list_billable_tenants(self) -> list[TenantInfo]:
        """Tenants with an active billing account that has a Stripe customer."""
        async def _query() -> list[TenantInfo]:
            async with self.session_factory() as session:
                query = (
                    select(Tenant)
                    .join(BillingAccount, BillingAccount.tenant_id == Tenant.id)
                    .where(
                        and_(
                            BillingAccount.status == "active",
                            BillingAccount.stripe_customer_id.is_not(None),
                            BillingAccount.stripe_customer_id != "",
                        )
                    )
                    .order_by(Tenant.created_at)
                )
                result = await session.execute(query)
                return [TenantInfo.model_validate(t) for t in result.scalars().all()]

        return await with_database_retry(_query, "list_billable_tenants")

    async def get_billing_account(self, tenant_id: uuid.UUID) -> Optional[BillingAccountInfo]:
        async def _query() -> Optional[BillingAccountInfo]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(BillingAccount).where(BillingAccount.tenant_id == tenant_id)
                )
                account = result.scalar_one_or_none()
                return BillingAccountInfo.model_validate(account) if account else None

        return await with_database_retry(_query, "get_billing_account")


class PlanRepository:
    """Subscription plan lookups."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_plan(self, plan_id: uuid.UUID) -> Optional[PlanSnapshot]:
        async def _query() -> Optional[PlanSnapshot]:
            async with self.session_factory() as session:
                plan = await session.get(SubscriptionPlan, plan_id)
                return PlanSnapshot.model_validate(plan) if plan else None

        return await with_database_retry(_query, "get_plan")


class UsageRepository:
    """Read-only access to the usage ledger."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_usage_events(
        self,
        tenant_id: uuid.UUID,
        start: datetime,
        end: datetime,
    ) -> list[UsageEventRecord]:
        """Usage events with ``start <= timestamp < end``."""
        async def _query() -> list[UsageEventRecord]:
            async with self.session_factory() as session:
                query = select(UsageEvent).where(
                    and_(
                        UsageEvent.tenant_id == tenant_id,
                        UsageEvent.timestamp >= start,
                        UsageEvent.timestamp < end,
                    )
                )
                result = await session.execute(query)
                return [
                    UsageEventRecord(
                        tenant_id=e.tenant_id,
                        bot_id=e.bot_id,
                        kind=UsageKind(e.kind),
                        quantity=e.quantity,
                        timestamp=e.timestamp,
                        metadata=e.event_metadata or {},
                    )
                    for e in result.scalars().all()
                ]

        return await with_database_retry(_query, "list_usage_events")


class AdjustmentRepository:
    """Billing adjustments (discounts) per tenant."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_adjustments(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
    ) -> list[Adjustment]:
        """Adjustments whose validity window overlaps the period."""
        async def _query() -> list[Adjustment]:
            async with self.session_factory() as session:
                query = select(BillingAdjustment).where(
                    and_(
                        BillingAdjustment.tenant_id == tenant_id,
                        BillingAdjustment.valid_from <= period_end,
                        or_(
                            BillingAdjustment.valid_until.is_(None),
                            BillingAdjustment.valid_until >= period_start,
                        ),
                    )
                )
                result = await session.execute(query)
                return [_to_adjustment(a) for a in result.scalars().all()]

        return await with_database_retry(_query, "list_adjustments")


def _to_adjustment(row: BillingAdjustment) -> Adjustment:
    if row.adjustment_type == AdjustmentType.PERCENT_DISCOUNT.value:
        return PercentDiscount(
            tenant_id=row.tenant_id,
            percent=row.value,
            valid_from=row.valid_from,
            valid_until=row.valid_until,
            description=row.description,
        )
    return FixedDiscount(
        tenant_id=row.tenant_id,
        amount_cents=int(row.value),
        valid_from=row.valid_from,
        valid_until=row.valid_until,
        description=row.description,
    )
