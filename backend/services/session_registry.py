"""Session Registry - one TenantSession per bearer token.

A session owns everything with a lifetime: the subscription slot and cache,
the event bus, and the payment watchers and their timers. sign_out() tears
all of it down so no poll keeps running against a dead session.

The registry is bounded: a session idle for SESSION_IDLE_TTL seconds, or
pushed out once SESSION_MAX_COUNT is reached, is torn down on eviction, and a
session the backend rejects as unauthenticated is dropped.
"""
import hashlib
import os
import logging
from typing import Any, Callable, List, Optional

from cachetools import TTLCache

from backend_api import BackendApiClient
from models import SubscriptionRecord
from services.access_guard import AccessGuardService
from services.billing_events import BillingEventBus
from services.entitlement_service import EntitlementService
from services.payment_confirmation import PaymentConfirmationService
from services.plan_registry import PlanRegistryService, plan_registry
from services.scheduled_changes import effective_subscription
from services.subscription_store import SubscriptionStore
from utils.timers import AsyncioTimerFactory, SystemClock

logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
SESSION_IDLE_TTL = float(os.getenv("SESSION_IDLE_TTL", "1800"))
SESSION_MAX_COUNT = int(os.getenv("SESSION_MAX_COUNT", "1000"))


def session_id_for(token: str) -> str:
    """Stable, non-reversible key for a bearer token (safe to log)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class TenantSession:
    """Engine services wired together for one signed-in tenant."""

    def __init__(
        self,
        token: str,
        api: BackendApiClient,
        clock: Any,
        timers: Any,
        catalog: PlanRegistryService = plan_registry,
        cache_ttl: Optional[float] = None,
        frontend_url: Optional[str] = None,
    ):
        self.session_id = session_id_for(token)
        self.api = api
        self.clock = clock
        self.catalog = catalog
        self.closed = False
        self.events = BillingEventBus()
        self.store = SubscriptionStore(api, clock, cache_ttl, self.events)
        self.entitlements = EntitlementService(catalog, self.current_subscription, self.events, clock)
        self.access = AccessGuardService(catalog, self.current_subscription, clock, self.entitlements)
        self.payments = PaymentConfirmationService(
            api, self.store, timers, clock, self.events, frontend_url or FRONTEND_URL
        )

    def current_subscription(self) -> Optional[SubscriptionRecord]:
        """The slot as entitlements see it: a due scheduled change is already applied."""
        return effective_subscription(self.store.subscription, self.clock.now())

    def detach(self) -> None:
        """Stop watchers and clear state; the HTTP client is closed by close()."""
        if self.closed:
            return
        self.closed = True
        self.payments.close_all()
        self.store.invalidate()
        self.events.clear()

    async def close(self) -> None:
        self.detach()
        await self.api.aclose()


class SessionCache(TTLCache):
    """TTLCache of sessions that reports every session it evicts."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float], on_evict: Callable[[TenantSession], None]):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self.on_evict = on_evict

    def popitem(self):
        key, session = super().popitem()
        self.on_evict(session)
        return key, session

    def expire(self, time=None):
        expired = super().expire(time)
        for _, session in expired:
            self.on_evict(session)
        return expired


class SessionRegistry:
    """Live tenant sessions keyed by bearer token."""

    def __init__(
        self,
        api_factory: Optional[Callable[[str], BackendApiClient]] = None,
        clock: Optional[Any] = None,
        timers: Optional[Any] = None,
        catalog: PlanRegistryService = plan_registry,
        idle_ttl: Optional[float] = None,
        max_sessions: Optional[int] = None,
    ):
        self.api_factory = api_factory or (lambda token: BackendApiClient(token))
        self.clock = clock or SystemClock()
        self.timers = timers or AsyncioTimerFactory()
        self.catalog = catalog
        self._pending_close: List[TenantSession] = []
        self._sessions = SessionCache(
            maxsize=max_sessions or SESSION_MAX_COUNT,
            ttl=SESSION_IDLE_TTL if idle_ttl is None else idle_ttl,
            timer=lambda: self.clock.now().timestamp(),
            on_evict=self._evicted,
        )

    def _evicted(self, session: TenantSession) -> None:
        if session.closed:
            return
        session.detach()
        self._pending_close.append(session)
        logger.info(f"Evicted tenant session {session.session_id}")

    def get(self, token: str) -> Optional[TenantSession]:
        self._sessions.expire()
        return self._sessions.get(session_id_for(token))

    def get_or_create(self, token: str) -> TenantSession:
        key = session_id_for(token)
        self._sessions.expire()
        session = self._sessions.get(key)
        if session is None:
            session = TenantSession(token, self.api_factory(token), self.clock, self.timers, self.catalog)
            logger.info(f"Opened tenant session {key}")
        # Re-inserting restarts the idle timer
        self._sessions[key] = session
        return session

    def sessions(self) -> List[TenantSession]:
        self._sessions.expire()
        return list(self._sessions.values())

    async def reap(self) -> int:
        """Close the HTTP clients of evicted sessions."""
        pending, self._pending_close = self._pending_close, []
        for session in pending:
            await session.api.aclose()
        return len(pending)

    async def drop(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        logger.info(f"Closed tenant session {session_id}")
        return True

    async def sign_out(self, token: str) -> bool:
        return await self.drop(session_id_for(token))

    async def close_all(self) -> None:
        self._sessions.expire()
        sessions = list(self._sessions.values())
        for session in sessions:
            await session.close()
        self._sessions.clear()
        await self.reap()
        logger.info(f"Closed {len(sessions)} tenant session(s)")


# Singleton instance
session_registry = SessionRegistry()
