"""Scheduled Changes - applying an accepted downgrade at the period boundary.

The backend accepts POST subscription/downgrade and reports the pending change
back as `scheduledChange`. Two things keep entitlements honest once the
boundary passes:

1. effective_subscription() projects the change locally the moment it is due,
   so checks never keep the old tier past the boundary.
2. sweep_due_changes() (run by APScheduler) silently revalidates every live
   session whose change has come due, so the backend's applied record replaces
   the local projection.
"""
from datetime import datetime, timedelta
from typing import Any, Optional
import logging

from errors import EngineError, Unauthenticated
from models import SubscriptionRecord
from services.plan_registry import plan_registry
from services.subscription_store import RefreshMode

logger = logging.getLogger(__name__)


def change_effective_at(record: SubscriptionRecord) -> Optional[datetime]:
    change = record.scheduled_change
    if change is None:
        return None
    # Without an explicit date the change lands at the end of the current period
    return change.effective_at or record.current_period_end


def is_change_due(record: Optional[SubscriptionRecord], now: datetime) -> bool:
    if record is None or record.scheduled_change is None:
        return False
    effective_at = change_effective_at(record)
    return effective_at is not None and now >= effective_at


def effective_subscription(record: Optional[SubscriptionRecord], now: datetime) -> Optional[SubscriptionRecord]:
    """The record as entitlements should see it at `now`."""
    if not is_change_due(record, now):
        return record

    change = record.scheduled_change
    boundary = change_effective_at(record)
    return record.model_copy(update={
        "plan_id": change.plan_id,
        "billing_cycle": change.billing_cycle,
        "current_period_start": boundary,
        "current_period_end": boundary + timedelta(days=plan_registry.cycle_days(change.billing_cycle)),
        "scheduled_change": None,
    })


async def sweep_due_changes(registry: Any, now: datetime) -> int:
    """
    Revalidate sessions whose scheduled change is due. Returns sessions refreshed.

    One failing session never stops the sweep: a rejected token drops its
    session, any other engine error is logged and retried on the next run.
    """
    refreshed = 0
    for session in registry.sessions():
        if not is_change_due(session.store.subscription, now):
            continue
        try:
            await session.store.refresh(RefreshMode.SILENT, force=True)
        except Unauthenticated:
            logger.error(f"Session {session.session_id} rejected during scheduled change sweep; dropping it")
            await registry.drop(session.session_id)
            continue
        except EngineError as e:
            logger.warning(f"Scheduled change revalidation failed for session {session.session_id}: {e.message}")
            continue
        refreshed += 1
        logger.info(f"Revalidated session {session.session_id} after scheduled plan change")
    return refreshed
