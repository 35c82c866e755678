"""Billing Routes - plan changes and payment confirmation.

Endpoints:
- POST /api/billing/preview                      - Proration quote for a plan/cycle change
- POST /api/billing/checkout                     - Start a card, PIX or Boleto payment
- POST /api/billing/checkout/return              - Tenant came back from hosted card checkout
- POST /api/billing/downgrade                    - Schedule a downgrade for the period end
- GET  /api/billing/payments/{intent_id}         - Watcher snapshot (status + countdown)
- POST /api/billing/payments/{intent_id}/resume  - Watch a prior pending intent again
- POST /api/billing/payments/{intent_id}/close   - Stop watching (intent stays payable)
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional
import logging

from middleware import require_session, require_subscription
from models import BillingCycle, BillingDetails, PaymentMethod, PlanTier
from services.proration import preview_change

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class PlanChangeRequest(BaseModel):
    """Target plan and billing cycle."""
    plan_id: PlanTier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class CheckoutRequest(BaseModel):
    """Request to start a payment. Boleto needs billing details."""
    plan_id: PlanTier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    billing_details: Optional[BillingDetails] = None
    frontend_url: Optional[str] = None


class CheckoutReturnRequest(BaseModel):
    """Outcome reported by the hosted checkout redirect."""
    success: bool


@router.post("/preview")
async def preview_plan_change(request: Request, body: PlanChangeRequest):
    """Quote the amount due now for moving to another plan or cycle."""
    session = await require_subscription(request)
    subscription = session.current_subscription()
    quote = preview_change(subscription, body.plan_id, body.billing_cycle, session.clock.now(), session.catalog)
    return quote.model_dump(by_alias=True, mode="json")


@router.post("/checkout")
async def create_checkout(request: Request, body: CheckoutRequest):
    """
    Start a payment for the requested plan.

    Card: either changes the existing card subscription in place or returns
    the hosted checkout URL. PIX/Boleto: creates (or reuses) a payment intent
    and starts watching it.
    """
    session = await require_session(request)

    if body.payment_method == PaymentMethod.CREDIT_CARD:
        result = await session.payments.start_card_checkout(body.plan_id, body.billing_cycle, body.frontend_url)
        return {
            "payment_method": body.payment_method.value,
            **result.model_dump(by_alias=True, mode="json"),
            "requires_redirect": result.requires_redirect,
        }

    if body.payment_method == PaymentMethod.PIX:
        watcher = await session.payments.start_pix(body.plan_id, body.billing_cycle)
    else:
        watcher = await session.payments.start_boleto(body.plan_id, body.billing_cycle, body.billing_details)

    return {"payment_method": body.payment_method.value, **watcher.snapshot()}


@router.post("/checkout/return")
async def checkout_return(request: Request, body: CheckoutReturnRequest):
    session = await require_session(request)
    handle = session.payments.handle_checkout_return(body.success)
    return {"success": body.success, "refresh_scheduled": handle is not None}


@router.post("/downgrade")
async def request_downgrade(request: Request, body: PlanChangeRequest):
    """Downgrades take effect at the end of the current period; upgrades go through checkout."""
    session = await require_subscription(request)
    subscription = session.current_subscription()

    if session.catalog.is_upgrade(subscription.plan_id, body.plan_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Upgrades must go through checkout"
        )
    if body.plan_id == subscription.plan_id and body.billing_cycle == subscription.billing_cycle:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Already on this plan and billing cycle"
        )

    result = await session.store.request_downgrade(body.plan_id, body.billing_cycle)
    record = session.store.subscription
    return {
        "success": True,
        "result": result,
        "subscription": record.model_dump(by_alias=True, mode="json") if record else None,
    }


def _get_watcher(session, intent_id: str):
    try:
        return session.payments.get_watcher(intent_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown payment intent: {intent_id}"
        )


@router.get("/payments/{intent_id}")
async def get_payment(request: Request, intent_id: str):
    session = await require_session(request)
    watcher = _get_watcher(session, intent_id)
    watcher.refresh_countdown()
    return watcher.snapshot()


@router.post("/payments/{intent_id}/resume")
async def resume_payment(request: Request, intent_id: str):
    """Resume watching a pending intent; 410 once its window has passed."""
    session = await require_session(request)
    _get_watcher(session, intent_id)
    watcher = session.payments.resume_watch(intent_id)
    return watcher.snapshot()


@router.post("/payments/{intent_id}/close")
async def close_payment(request: Request, intent_id: str):
    session = await require_session(request)
    _get_watcher(session, intent_id)
    session.payments.close_watch(intent_id)
    return {"success": True, "message": "Payment dialog closed; the intent remains payable until it expires"}
