"""
Session lifecycle, asyncio timers, billing event bus and the scheduled
change sweep job.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from errors import Unauthenticated
from job_runner import run_scheduled_change_sweep
from models import BillingCycle, PlanTier, ScheduledChange
from services.billing_events import BillingEvent, BillingEventBus
from services.scheduled_changes import sweep_due_changes
from services.session_registry import SessionRegistry
from utils.timers import AsyncioTimerFactory
from fakes import FakeBackendApi, FakeClock, FakeTimers, make_subscription


class TestAsyncioTimers:
    @pytest.mark.asyncio
    async def test_every_runs_until_cancelled(self):
        calls = []
        handle = AsyncioTimerFactory().every(0.01, lambda: calls.append(1))
        await asyncio.sleep(0.055)
        handle.cancel()
        count = len(calls)
        await asyncio.sleep(0.03)
        assert count >= 2
        assert len(calls) == count
        assert handle.active is False

    @pytest.mark.asyncio
    async def test_once_with_coroutine_callback(self):
        done = asyncio.Event()

        async def callback():
            done.set()

        AsyncioTimerFactory().once(0.01, callback)
        await asyncio.wait_for(done.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_cancelled_once_never_fires(self):
        calls = []
        handle = AsyncioTimerFactory().once(0.02, lambda: calls.append(1))
        handle.cancel()
        await asyncio.sleep(0.04)
        assert calls == []

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_timer(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        handle = AsyncioTimerFactory().every(0.01, flaky)
        await asyncio.sleep(0.045)
        handle.cancel()
        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_timer_can_cancel_itself(self):
        calls = []
        holder = {}

        def callback():
            calls.append(1)
            holder["handle"].cancel()

        holder["handle"] = AsyncioTimerFactory().every(0.01, callback)
        await asyncio.sleep(0.05)
        assert calls == [1]


class TestBillingEventBus:
    def test_subscribe_and_unsubscribe(self):
        bus = BillingEventBus()
        received = []
        unsubscribe = bus.subscribe(BillingEvent.PAYMENT_CONFIRMED, lambda e, p: received.append(p))
        bus.emit(BillingEvent.PAYMENT_CONFIRMED, {"id": 1})
        unsubscribe()
        bus.emit(BillingEvent.PAYMENT_CONFIRMED, {"id": 2})
        assert received == [{"id": 1}]

    def test_broken_handler_does_not_block_others(self):
        bus = BillingEventBus()
        received = []

        def broken(event, payload):
            raise ValueError("bad handler")

        bus.subscribe(BillingEvent.UPGRADE_REQUIRED, broken)
        bus.subscribe(BillingEvent.UPGRADE_REQUIRED, lambda e, p: received.append(p))
        bus.emit(BillingEvent.UPGRADE_REQUIRED, {"reason": "limit"})
        assert received == [{"reason": "limit"}]

    def test_backlog_is_bounded_and_drained(self):
        bus = BillingEventBus(backlog_size=3)
        for i in range(5):
            bus.emit(BillingEvent.SUBSCRIPTION_REFRESHED, {"n": i})
        drained = bus.drain()
        assert [e["payload"]["n"] for e in drained] == [2, 3, 4]
        assert bus.drain() == []


class TestSessionRegistry:
    def _registry(self):
        clock = FakeClock()
        apis = {}

        def factory(token):
            apis[token] = FakeBackendApi(clock, make_subscription(PlanTier.BASICO))
            return apis[token]

        return SessionRegistry(api_factory=factory, clock=clock, timers=FakeTimers(clock)), apis

    def test_one_session_per_token(self):
        registry, apis = self._registry()
        first = registry.get_or_create("token-a")
        assert registry.get_or_create("token-a") is first
        assert registry.get_or_create("token-b") is not first
        assert len(registry.sessions()) == 2

    @pytest.mark.asyncio
    async def test_sign_out_tears_down_watchers(self):
        registry, apis = self._registry()
        session = registry.get_or_create("token-a")
        await session.store.refresh()
        await session.payments.start_pix(PlanTier.INTERMEDIARIO, BillingCycle.MONTHLY)

        assert await registry.sign_out("token-a") is True

        assert session.payments.watchers == {}
        assert session.store.subscription is None
        assert apis["token-a"].closed is True
        assert registry.get("token-a") is None
        assert await registry.sign_out("token-a") is False

    @pytest.mark.asyncio
    async def test_current_subscription_applies_due_change(self):
        registry, apis = self._registry()
        session = registry.get_or_create("token-a")
        change = ScheduledChange(plan_id=PlanTier.BASICO, billing_cycle=BillingCycle.MONTHLY)
        apis["token-a"].record = make_subscription(PlanTier.AVANCADO, scheduled_change=change)
        await session.store.refresh()

        assert session.current_subscription().plan_id == PlanTier.AVANCADO
        session.clock.advance(timedelta(days=10).total_seconds())
        assert session.current_subscription().plan_id == PlanTier.BASICO
        assert session.entitlements.can_create_invoice().allowed is False

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry, apis = self._registry()
        registry.get_or_create("token-a")
        registry.get_or_create("token-b")
        await registry.close_all()
        assert registry.sessions() == []
        assert all(api.closed for api in apis.values())


class TestScheduledChangeJob:
    @pytest.mark.asyncio
    async def test_job_reports_count(self):
        registry = SessionRegistry(clock=FakeClock(), timers=FakeTimers(FakeClock()))
        with patch("services.scheduled_changes.sweep_due_changes", new=AsyncMock(return_value=3)):
            result = await run_scheduled_change_sweep(registry)
        assert result == {"message": "Sessions revalidated: 3", "count": 3}

    @pytest.mark.asyncio
    async def test_job_reraises(self):
        with patch("services.scheduled_changes.sweep_due_changes", new=AsyncMock(side_effect=RuntimeError("down"))):
            with pytest.raises(RuntimeError):
                await run_scheduled_change_sweep(SessionRegistry())

    @pytest.mark.asyncio
    async def test_rejected_session_does_not_stop_sweep(self):
        clock = FakeClock()
        apis = {}

        def factory(token):
            apis[token] = FakeBackendApi(clock)
            return apis[token]

        registry = SessionRegistry(api_factory=factory, clock=clock, timers=FakeTimers(clock))
        change = ScheduledChange(plan_id=PlanTier.BASICO, billing_cycle=BillingCycle.MONTHLY)
        stale = registry.get_or_create("stale-token")
        healthy = registry.get_or_create("healthy-token")
        for session in (stale, healthy):
            session.store.subscription = make_subscription(PlanTier.AVANCADO, scheduled_change=change)
        apis["stale-token"].current_error = Unauthenticated()
        apis["healthy-token"].record = make_subscription(PlanTier.BASICO)

        count = await sweep_due_changes(registry, clock.now() + timedelta(days=11))

        assert count == 1
        assert healthy.store.subscription.plan_id == PlanTier.BASICO
        assert registry.get("stale-token") is None
        assert apis["stale-token"].closed is True
        assert registry.get("healthy-token") is healthy


class TestSessionEviction:
    """Idle, overflowing and rejected sessions are torn down."""

    def _registry(self, **kwargs):
        clock = FakeClock()
        timers = FakeTimers(clock)
        apis = {}

        def factory(token):
            apis[token] = FakeBackendApi(clock, make_subscription(PlanTier.BASICO))
            return apis[token]

        return SessionRegistry(api_factory=factory, clock=clock, timers=timers, **kwargs), apis, clock, timers

    @pytest.mark.asyncio
    async def test_idle_session_is_closed(self):
        registry, apis, clock, timers = self._registry(idle_ttl=600)
        session = registry.get_or_create("token-a")
        await session.store.refresh()
        await session.payments.start_pix(PlanTier.INTERMEDIARIO, BillingCycle.MONTHLY)

        clock.advance(601)

        assert registry.sessions() == []
        assert session.closed is True
        assert timers.active() == []
        assert await registry.reap() == 1
        assert apis["token-a"].closed is True

    def test_activity_keeps_session_alive(self):
        registry, apis, clock, timers = self._registry(idle_ttl=600)
        session = registry.get_or_create("token-a")
        clock.advance(400)
        assert registry.get_or_create("token-a") is session
        clock.advance(400)
        assert registry.sessions() == [session]
        assert session.closed is False

    @pytest.mark.asyncio
    async def test_registry_is_bounded(self):
        registry, apis, clock, timers = self._registry(max_sessions=2)
        for i in range(5):
            registry.get_or_create(f"bogus-{i}")

        assert len(registry.sessions()) == 2
        assert await registry.reap() == 3
        assert sum(api.closed for api in apis.values()) == 3

    @pytest.mark.asyncio
    async def test_close_all_closes_evicted_clients(self):
        registry, apis, clock, timers = self._registry(idle_ttl=600)
        registry.get_or_create("token-a")
        clock.advance(601)
        registry.get_or_create("token-b")

        await registry.close_all()

        assert all(api.closed for api in apis.values())
        assert registry.sessions() == []
