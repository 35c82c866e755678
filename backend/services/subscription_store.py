"""Subscription Store - the single in-memory SubscriptionRecord slot per tenant.

Refresh modes:
- INITIAL: first load; toggles `loading` so the UI can show a spinner
- SILENT:  background revalidation; no visible state change

Whichever response completes last is what the slot holds. The backend of
record is the only source of truth, so an older response is just stale
data, not a conflict, and no versioning is needed.

A TTL-bounded read-through cache sits in front of GET subscription/current.
force=True bypasses it; invalidate() clears cache and slot on sign-out.
"""
import os
import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from cachetools import TTLCache

from backend_api import BackendApiClient
from errors import GatewayFailure, NotProvisioned, ValidationFailure
from models import BillingCycle, PlanTier, Resource, SubscriptionRecord
from services.billing_events import BillingEvent, BillingEventBus
from utils.timers import SystemClock

logger = logging.getLogger(__name__)

SUBSCRIPTION_CACHE_TTL = float(os.getenv("SUBSCRIPTION_CACHE_TTL", "60"))
CACHE_KEY = "subscription"

# Counters the backend can increment; storage is tracked by uploads
INCREMENTABLE_USAGE = frozenset({
    Resource.SALES_ORDERS.value,
    Resource.PURCHASE_ORDERS.value,
    Resource.INVOICES.value,
    Resource.TRANSACTIONS.value,
    Resource.PRODUCTS.value,
    Resource.CUSTOMERS.value,
    Resource.SUPPLIERS.value,
    Resource.USERS.value,
})


class RefreshMode(str, Enum):
    INITIAL = "initial"
    SILENT = "silent"


class SubscriptionStore:
    """Holds one tenant's subscription; all mutation goes through here."""

    def __init__(
        self,
        api: BackendApiClient,
        clock: Optional[Any] = None,
        cache_ttl: Optional[float] = None,
        events: Optional[BillingEventBus] = None,
    ):
        self.api = api
        self.clock = clock or SystemClock()
        self.events = events
        self.subscription: Optional[SubscriptionRecord] = None
        self._initial_loads = 0
        self.last_error: Optional[GatewayFailure] = None
        ttl = SUBSCRIPTION_CACHE_TTL if cache_ttl is None else cache_ttl
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl, timer=lambda: self.clock.now().timestamp())

    @property
    def loading(self) -> bool:
        """True while any INITIAL load is in flight."""
        return self._initial_loads > 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def refresh(self, mode: RefreshMode = RefreshMode.SILENT, force: bool = False) -> Optional[SubscriptionRecord]:
        """
        Load the subscription into the slot.

        A GatewayFailure leaves the slot untouched. It is re-raised for INITIAL
        loads and swallowed with a warning for SILENT ones.
        """
        if not force:
            cached = self._cache.get(CACHE_KEY)
            if cached is not None:
                self.subscription = cached
                return cached

        if mode == RefreshMode.INITIAL:
            self._initial_loads += 1
        try:
            record = await self._fetch_current()
        except GatewayFailure as e:
            self.last_error = e
            if mode == RefreshMode.INITIAL:
                raise
            logger.warning(f"Silent subscription refresh failed: {e.message}")
            return self.subscription
        finally:
            if mode == RefreshMode.INITIAL:
                self._initial_loads = max(0, self._initial_loads - 1)

        self.last_error = None
        self._apply(record)
        return record

    async def _fetch_current(self) -> SubscriptionRecord:
        try:
            return await self.api.get_current_subscription()
        except NotProvisioned:
            logger.info("No subscription provisioned for tenant; initializing default trial")
            return await self.api.initialize_subscription()

    def _apply(self, record: SubscriptionRecord) -> None:
        self.subscription = record
        self._cache[CACHE_KEY] = record
        if self.events is not None:
            self.events.emit(BillingEvent.SUBSCRIPTION_REFRESHED, {
                "planId": record.plan_id.value,
                "status": record.status.value,
            })

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def increment_usage(self, usage_type: str, amount: int = 1) -> SubscriptionRecord:
        if usage_type not in INCREMENTABLE_USAGE:
            raise ValidationFailure(["type"])
        if amount < 1:
            raise ValidationFailure(["amount"])
        record = await self.api.increment_usage(usage_type, amount)
        self._apply(record)
        return record

    async def request_downgrade(
        self,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
    ) -> Dict[str, Any]:
        """Schedule a downgrade for the period end, then silently revalidate."""
        result = await self.api.request_downgrade(plan_id, billing_cycle)
        logger.info(f"Downgrade to {PlanTier(plan_id).value}/{BillingCycle(billing_cycle).value} scheduled")
        await self.refresh(RefreshMode.SILENT, force=True)
        return result

    def invalidate(self) -> None:
        self._cache.clear()
        self.subscription = None
        self._initial_loads = 0
        self.last_error = None
