"""Billing module.

Prices tenant usage against subscription plans.
"""

from voicebilling.modules.billing.calculator import (
    DEFAULT_RATES_CENTS,
    BillingCalculator,
    price_usage,
)
from voicebilling.modules.billing.models import (
    AdjustmentType,
    BillingAccount,
    BillingAdjustment,
    SubscriptionPlan,
    Tenant,
    UsageEvent,
    UsageKind,
)
from voicebilling.modules.billing.repository import (
    AdjustmentRepository,
    PlanRepository,
    TenantRepository,
    UsageRepository,
)
from voicebilling.modules.billing.schemas import (
    BillingLineItem,
    FixedDiscount,
    LineItemKind,
    PercentDiscount,
    PlanSnapshot,
    PricedBreakdown,
)

__all__ = [
    "DEFAULT_RATES_CENTS",
    "BillingCalculator",
    "price_usage",
    "AdjustmentType",
    "BillingAccount",
    "BillingAdjustment",
    "SubscriptionPlan",
    "Tenant",
    "UsageEvent",
    "UsageKind",
    "AdjustmentRepository",
    "PlanRepository",
    "TenantRepository",
    "UsageRepository",
    "BillingLineItem",
    "FixedDiscount",
    "LineItemKind",
    "PercentDiscount",
    "PlanSnapshot",
    "PricedBreakdown",
]
