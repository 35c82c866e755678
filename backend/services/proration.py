"""Proration Calculator - advisory quote for a plan or cycle change.

The quote is shown to the tenant before paying; the payment gateway computes
the actual charge. Rules:
- cycle lengths are nominal (30/90/180/365 days), not calendar-accurate
- days remaining are FLOORED: 30.9 days left credits 30, never 31
- unused time is the only credit; it is never carried forward as days
- amount due floors at zero (no refund path for downgrade-sized credit)
- the new period always starts now
"""
import math
from datetime import datetime, timedelta
from typing import Optional, Union

from models import BillingCycle, Plan, PlanTier, ProrationQuote, SubscriptionRecord
from services.plan_registry import PlanRegistryService, plan_registry

SECONDS_PER_DAY = 86400


def days_remaining_in_period(
    current_period_end: Optional[datetime],
    now: datetime,
    cycle_days: int,
) -> int:
    """Whole days left, clamped to [0, cycle_days]; full cycle when the end is unknown."""
    if current_period_end is None:
        return cycle_days
    days = math.floor((current_period_end - now).total_seconds() / SECONDS_PER_DAY)
    return min(max(0, days), cycle_days)


def calculate_proration(
    current_plan: Union[Plan, PlanTier, str],
    current_cycle: Union[BillingCycle, str],
    current_period_end: Optional[datetime],
    target_plan: Union[Plan, PlanTier, str],
    target_cycle: Union[BillingCycle, str],
    now: datetime,
    catalog: PlanRegistryService = plan_registry,
    credit_unused_time: bool = True,
) -> ProrationQuote:
    current = catalog.get_plan(current_plan)
    target = catalog.get_plan(target_plan)

    current_price = catalog.price_for(current, current_cycle)
    new_price = catalog.price_for(target, target_cycle)
    total_days = catalog.cycle_days(current_cycle)

    days_remaining = days_remaining_in_period(current_period_end, now, total_days) if credit_unused_time else 0
    daily_rate = current_price / total_days
    unused_credit = daily_rate * days_remaining
    amount_due = max(0.0, new_price - unused_credit)

    new_period_days = catalog.cycle_days(target_cycle)

    return ProrationQuote(
        current_price=current_price,
        new_price=new_price,
        total_days=total_days,
        daily_rate=round(daily_rate, 2),
        days_remaining=days_remaining,
        unused_credit=round(unused_credit, 2),
        amount_due=round(amount_due, 2),
        new_period_days=new_period_days,
        new_period_end=now + timedelta(days=new_period_days),
        is_upgrade=catalog.is_upgrade(current.id, target.id),
    )


def preview_change(
    subscription: SubscriptionRecord,
    target_plan: Union[PlanTier, str],
    target_cycle: Union[BillingCycle, str],
    now: datetime,
    catalog: PlanRegistryService = plan_registry,
) -> ProrationQuote:
    """Quote a change for a loaded subscription. Trials have no paid time to credit."""
    return calculate_proration(
        subscription.plan_id,
        subscription.billing_cycle,
        subscription.current_period_end,
        target_plan,
        target_cycle,
        now,
        catalog,
        credit_unused_time=not subscription.is_trial,
    )
