"""Payment Confirmation Protocol - card, PIX and Boleto.

Card:   the backend either modifies an existing card subscription at once
        (upgraded=True, hard refresh) or returns a hosted checkout URL. A
        redirect changes nothing locally until the tenant comes back.
PIX:    intent with QR payload; poll every 5s, 1s countdown "{h}h {m}m {s}s".
Boleto: needs name/email/tax_id before any request; poll every 10s,
        countdown "{d}d {h}h {m}m" (settlement takes up to 3 business days).

Every PaymentWatcher owns its timer handles and cancels them on success,
expiry, close or session teardown. Expiry is computed locally from
expires_at and never waits on a poll. Success is latched before the reload
is scheduled, so repeated "succeeded" polls have no further effect.

Closing a watcher never cancels the server-side intent: it stays payable and
resume_watch() can pick it up again while unexpired.
"""
from typing import Any, Dict, List, Optional, Union
import logging

from backend_api import BackendApiClient
from errors import GatewayFailure, PaymentWindowExpired, Unauthenticated, ValidationFailure
from models import (
    BillingCycle, BillingDetails, CardCheckoutResult, PaymentIntent,
    PaymentIntentStatus, PaymentMethod, PlanTier,
)
from services.billing_events import BillingEvent, BillingEventBus
from services.subscription_store import RefreshMode, SubscriptionStore
from utils.timers import TimerHandle

logger = logging.getLogger(__name__)

POLL_INTERVALS = {
    PaymentMethod.PIX: 5.0,
    PaymentMethod.BOLETO: 10.0,
}
COUNTDOWN_INTERVAL = 1.0
RELOAD_DELAY = 2.0
CHECKOUT_RETURN_REFRESH_DELAY = 2.0
EXPIRED_LABEL = "Expired"

BOLETO_REQUIRED_FIELDS = ("name", "email", "tax_id")


def format_countdown(channel: PaymentMethod, remaining_seconds: float) -> str:
    if remaining_seconds <= 0:
        return EXPIRED_LABEL
    remaining = int(remaining_seconds)
    if channel == PaymentMethod.BOLETO:
        days = remaining // 86400
        hours = (remaining % 86400) // 3600
        minutes = (remaining % 3600) // 60
        return f"{days}d {hours}h {minutes}m"
    hours = remaining // 3600
    minutes = (remaining % 3600) // 60
    seconds = remaining % 60
    return f"{hours}h {minutes}m {seconds}s"


def missing_billing_fields(details: Optional[BillingDetails]) -> List[str]:
    if details is None:
        return list(BOLETO_REQUIRED_FIELDS)
    return [field for field in BOLETO_REQUIRED_FIELDS if not getattr(details, field, "").strip()]


# ============================================================================
# PAYMENT WATCHER (one per intent)
# ============================================================================
class PaymentWatcher:
    """Polls one PIX/Boleto intent and counts down to its expiry."""

    def __init__(
        self,
        intent: PaymentIntent,
        api: BackendApiClient,
        store: SubscriptionStore,
        timers: Any,
        clock: Any,
        events: Optional[BillingEventBus] = None,
        reload_delay: float = RELOAD_DELAY,
    ):
        self.intent = intent
        self.api = api
        self.store = store
        self.timers = timers
        self.clock = clock
        self.events = events
        self.reload_delay = reload_delay
        self.poll_interval = POLL_INTERVALS[intent.channel]
        self.time_remaining = ""
        self.closed = False
        self._started = False
        self._confirmed = False
        self._poll_handle: Optional[TimerHandle] = None
        self._countdown_handle: Optional[TimerHandle] = None
        self._reload_handle: Optional[TimerHandle] = None

    @property
    def confirmed(self) -> bool:
        return self._confirmed

    @property
    def expired(self) -> bool:
        return self.intent.status == PaymentIntentStatus.EXPIRED

    @property
    def watching(self) -> bool:
        return self._started and not self.closed and not self.intent.is_terminal

    def remaining_seconds(self) -> float:
        return (self.intent.expires_at - self.clock.now()).total_seconds()

    def start(self) -> "PaymentWatcher":
        if self._started:
            return self
        self._started = True
        self._tick()
        if self.intent.is_terminal:
            # Already expired: no poll is ever scheduled
            return self
        self._poll_handle = self.timers.every(self.poll_interval, self.poll)
        self._countdown_handle = self.timers.every(COUNTDOWN_INTERVAL, self._tick)
        logger.info(
            f"Watching {self.intent.channel.value} intent {self.intent.id} "
            f"(poll every {self.poll_interval:.0f}s, {self.time_remaining} left)"
        )
        return self

    def refresh_countdown(self) -> None:
        """Recompute time left; marks the intent expired once it is due."""
        self._tick()

    def _tick(self) -> None:
        if self.intent.is_terminal:
            return
        remaining = self.remaining_seconds()
        self.time_remaining = format_countdown(self.intent.channel, remaining)
        if remaining <= 0:
            self._expire()

    async def poll(self) -> PaymentIntentStatus:
        if self.intent.is_terminal or self.closed:
            return self.intent.status
        try:
            status = await self.api.check_payment_status(self.intent.id)
        except GatewayFailure as e:
            # Transient; the next tick polls again
            logger.warning(f"Payment status check failed for {self.intent.id}: {e.message}")
            return self.intent.status
        except Unauthenticated:
            logger.error(f"Session expired while watching intent {self.intent.id}; stopping watcher")
            self.close()
            return self.intent.status

        if status == PaymentIntentStatus.SUCCEEDED.value:
            self._confirm()
        return self.intent.status

    def _confirm(self) -> None:
        if self._confirmed:
            return
        self._confirmed = True
        self.intent.status = PaymentIntentStatus.SUCCEEDED
        self._cancel_watch_timers()
        logger.info(f"{self.intent.channel.value.upper()} payment confirmed: {self.intent.id}")
        if self.events is not None:
            self.events.emit(BillingEvent.PAYMENT_CONFIRMED, {
                "paymentIntentId": self.intent.id,
                "channel": self.intent.channel.value,
                "planId": self.intent.plan_id.value if self.intent.plan_id else None,
            })
        self._reload_handle = self.timers.once(self.reload_delay, self._reload)

    async def _reload(self) -> None:
        await self.store.refresh(RefreshMode.SILENT, force=True)

    def _expire(self) -> None:
        if self.intent.is_terminal:
            return
        self.intent.status = PaymentIntentStatus.EXPIRED
        self.time_remaining = EXPIRED_LABEL
        self._cancel_watch_timers()
        logger.info(f"{self.intent.channel.value.upper()} intent {self.intent.id} expired")
        if self.events is not None:
            self.events.emit(BillingEvent.PAYMENT_EXPIRED, {
                "paymentIntentId": self.intent.id,
                "channel": self.intent.channel.value,
            })

    def _cancel_watch_timers(self) -> None:
        for handle in (self._poll_handle, self._countdown_handle):
            if handle is not None:
                handle.cancel()
        self._poll_handle = None
        self._countdown_handle = None

    def close(self, teardown: bool = False) -> None:
        """Stop watching. Teardown also drops a pending post-success reload."""
        self.closed = True
        self._cancel_watch_timers()
        if teardown and self._reload_handle is not None:
            self._reload_handle.cancel()
            self._reload_handle = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            **self.intent.model_dump(by_alias=True, mode="json"),
            "timeRemaining": self.time_remaining,
            "confirmed": self.confirmed,
            "expired": self.expired,
            "watching": self.watching,
            "pollInterval": self.poll_interval,
        }


# ============================================================================
# PAYMENT CONFIRMATION SERVICE (per tenant session)
# ============================================================================
class PaymentConfirmationService:
    """Starts payments on each channel and owns the session's watchers."""

    def __init__(
        self,
        api: BackendApiClient,
        store: SubscriptionStore,
        timers: Any,
        clock: Any,
        events: Optional[BillingEventBus] = None,
        frontend_url: Optional[str] = None,
    ):
        self.api = api
        self.store = store
        self.timers = timers
        self.clock = clock
        self.events = events
        self.frontend_url = frontend_url
        self.watchers: Dict[str, PaymentWatcher] = {}
        self._checkout_refresh: Optional[TimerHandle] = None

    # -------------------------------------------------------------------------
    # Card
    # -------------------------------------------------------------------------

    async def start_card_checkout(
        self,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
        frontend_url: Optional[str] = None,
    ) -> CardCheckoutResult:
        result = await self.api.create_checkout_session(plan_id, billing_cycle, frontend_url or self.frontend_url or "")
        if result.upgraded:
            logger.info(f"Card subscription changed in place to {PlanTier(plan_id).value}")
            await self.store.refresh(RefreshMode.SILENT, force=True)
            if self.events is not None:
                self.events.emit(BillingEvent.PAYMENT_CONFIRMED, {
                    "channel": PaymentMethod.CREDIT_CARD.value,
                    "planId": PlanTier(plan_id).value,
                })
        elif result.checkout_url:
            logger.info("Card checkout requires hosted page redirect")
        return result

    def handle_checkout_return(self, success: bool) -> Optional[TimerHandle]:
        """Hosted checkout came back. Success schedules a forced refresh; cancel does nothing."""
        if not success:
            logger.info("Card checkout canceled by tenant; subscription unchanged")
            return None
        if self._checkout_refresh is not None:
            self._checkout_refresh.cancel()
        self._checkout_refresh = self.timers.once(
            CHECKOUT_RETURN_REFRESH_DELAY,
            lambda: self.store.refresh(RefreshMode.SILENT, force=True),
        )
        return self._checkout_refresh

    # -------------------------------------------------------------------------
    # PIX / Boleto
    # -------------------------------------------------------------------------

    async def start_pix(
        self,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
    ) -> PaymentWatcher:
        reusable = self._find_reusable(PaymentMethod.PIX, plan_id, billing_cycle)
        if reusable is not None:
            return self.resume_watch(reusable.intent.id)
        intent = await self.api.create_pix_payment(plan_id, billing_cycle)
        return self._watch(intent)

    async def start_boleto(
        self,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
        billing_details: Optional[BillingDetails],
    ) -> PaymentWatcher:
        missing = missing_billing_fields(billing_details)
        if missing:
            raise ValidationFailure(missing)
        reusable = self._find_reusable(PaymentMethod.BOLETO, plan_id, billing_cycle)
        if reusable is not None:
            return self.resume_watch(reusable.intent.id)
        intent = await self.api.create_boleto_payment(plan_id, billing_cycle, billing_details)
        return self._watch(intent)

    def _watch(self, intent: PaymentIntent) -> PaymentWatcher:
        watcher = PaymentWatcher(intent, self.api, self.store, self.timers, self.clock, self.events)
        self.watchers[intent.id] = watcher
        return watcher.start()

    def _find_reusable(
        self,
        channel: PaymentMethod,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
    ) -> Optional[PaymentWatcher]:
        now = self.clock.now()
        for watcher in self.watchers.values():
            intent = watcher.intent
            if (
                intent.channel == channel
                and intent.plan_id == PlanTier(plan_id)
                and intent.billing_cycle == BillingCycle(billing_cycle)
                and intent.status == PaymentIntentStatus.PENDING
                and intent.expires_at > now
            ):
                return watcher
        return None

    def get_watcher(self, intent_id: str) -> PaymentWatcher:
        return self.watchers[intent_id]

    def resume_watch(self, intent_id: str) -> PaymentWatcher:
        """Watch a prior intent again. Raises KeyError when unknown."""
        watcher = self.watchers[intent_id]
        watcher.refresh_countdown()
        if watcher.expired:
            raise PaymentWindowExpired(intent_id)
        if watcher.confirmed or watcher.watching:
            return watcher
        return self._watch(watcher.intent)

    def close_watch(self, intent_id: str) -> None:
        watcher = self.watchers.get(intent_id)
        if watcher is not None:
            watcher.close()

    def close_all(self) -> None:
        """Session teardown: no timer of this session survives."""
        for watcher in self.watchers.values():
            watcher.close(teardown=True)
        if self._checkout_refresh is not None:
            self._checkout_refresh.cancel()
            self._checkout_refresh = None
        logger.info(f"Closed {len(self.watchers)} payment watcher(s)")
        self.watchers.clear()
