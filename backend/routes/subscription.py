"""Subscription Routes - plan catalog, entitlements, usage and access.

Endpoints:
- GET  /api/subscription/plans             - Plan catalog with per-cycle totals
- GET  /api/subscription/matrix            - Feature/limit matrix per plan
- GET  /api/subscription/current           - Current subscription (loads on first call)
- POST /api/subscription/refresh           - Forced silent revalidation
- GET  /api/subscription/entitlements      - Every resource check plus feature flags
- GET  /api/subscription/check/{resource}  - One resource check (raises upsell on denial)
- POST /api/subscription/check-upload      - File size / storage check
- GET  /api/subscription/usage             - Usage overview, warnings and one-shot alerts
- GET  /api/subscription/usage/export      - Machine-readable usage export (API access)
- POST /api/subscription/usage/increment   - Bump a usage counter
- GET  /api/subscription/access            - Access verdict + module gate for a view
- POST /api/subscription/modules/{view}/open - Module gate that raises upsell on denial
- GET  /api/subscription/trial             - Trial time left
- POST /api/subscription/upgrade-prompt    - Raise an upsell prompt
- GET  /api/subscription/events            - Drain queued billing events
- POST /api/subscription/sign-out          - Tear down the tenant session
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field
from typing import Optional
import logging

from middleware import get_bearer_token, get_registry, require_feature, require_session, require_subscription
from models import BillingCycle, Feature, PlanTier, Resource
from services.plan_registry import plan_registry, TRIAL_DURATION_DAYS, TRIAL_PLAN
from services.subscription_store import RefreshMode

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class UploadCheckRequest(BaseModel):
    size_mb: float = Field(gt=0)


class IncrementUsageRequest(BaseModel):
    type: str
    amount: int = 1


class UpgradePromptRequest(BaseModel):
    reason: str
    required_plan: Optional[PlanTier] = None


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


@router.get("/plans")
async def get_plans():
    """Get all plans in display order, with cycle totals and savings."""
    plans = []
    for plan in plan_registry.get_all_plans():
        cycles = {}
        for cycle in BillingCycle:
            cycles[cycle.value] = {
                "label": plan_registry.billing_cycle_label(cycle),
                "monthly_equivalent": plan_registry.price_for(plan, cycle),
                "total": plan_registry.cycle_total(plan, cycle),
                "savings": plan_registry.calculate_savings(plan, cycle),
                "formatted_total": plan_registry.format_price(plan_registry.cycle_total(plan, cycle)),
            }
        plans.append({**_dump(plan), "cycles": cycles})

    return {
        "plans": plans,
        "trial": {"plan": TRIAL_PLAN.value, "duration_days": TRIAL_DURATION_DAYS},
    }


@router.get("/matrix")
async def get_entitlement_matrix():
    return plan_registry.get_entitlement_matrix()


@router.get("/current")
async def get_current_subscription(request: Request):
    """Current subscription; the first call per session is an INITIAL load."""
    session = await require_session(request)
    mode = RefreshMode.INITIAL if session.store.subscription is None else RefreshMode.SILENT
    await session.store.refresh(mode)

    effective = session.current_subscription()
    return {
        "subscription": _dump(session.store.subscription) if session.store.subscription else None,
        "effective_plan": session.catalog.effective_tier(effective).value if effective else None,
        "loading": session.store.loading,
    }


@router.post("/refresh")
async def refresh_subscription(request: Request):
    session = await require_session(request)
    record = await session.store.refresh(RefreshMode.SILENT, force=True)
    return {"subscription": _dump(record) if record else None}


@router.get("/entitlements")
async def get_entitlements(request: Request):
    session = await require_subscription(request)
    ent = session.entitlements
    return {
        "checks": {
            Resource.SALES_ORDERS.value: _dump(ent.can_create_sales_order()),
            Resource.PURCHASE_ORDERS.value: _dump(ent.can_create_purchase_order()),
            Resource.INVOICES.value: _dump(ent.can_create_invoice()),
            Resource.TRANSACTIONS.value: _dump(ent.can_create_transaction()),
            Resource.PRODUCTS.value: _dump(ent.can_create_product()),
            Resource.CUSTOMERS.value: _dump(ent.can_create_customer()),
            Resource.SUPPLIERS.value: _dump(ent.can_create_supplier()),
            Resource.USERS.value: _dump(ent.can_create_user()),
        },
        "features": {feature.value: ent.has_feature(feature) for feature in Feature},
    }


@router.get("/check/{resource}")
async def check_resource(request: Request, resource: Resource, current_count: Optional[int] = None):
    """Check one resource before creating it; a denial also queues an upsell event."""
    session = await require_subscription(request)
    if resource == Resource.STORAGE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Use /check-upload for storage"
        )
    return _dump(session.entitlements.guard_action(resource, current_count))


@router.post("/check-upload")
async def check_upload(request: Request, body: UploadCheckRequest):
    session = await require_subscription(request)
    result = session.entitlements.can_upload_file(body.size_mb)
    if not result.allowed:
        session.entitlements.trigger_upgrade(result.reason or "", result.required_plan, feature_name=result.feature_name)
    return _dump(result)


@router.get("/usage")
async def get_usage(request: Request):
    session = await require_subscription(request)
    overview = session.entitlements.get_usage_overview()
    return {
        "overview": {key: _dump(metric) for key, metric in overview.items()} if overview else None,
        "warnings": session.entitlements.get_usage_warnings(),
        "alerts": session.entitlements.get_usage_alerts(),
    }


@router.get("/usage/export")
@require_feature(Feature.API_ACCESS)
async def export_usage(request: Request):
    """Usage export for integrations, with the limits of every tier for comparison."""
    session = request.state.session
    overview = session.entitlements.get_usage_overview() or {}
    subscription = session.current_subscription()
    return {
        "plan": session.catalog.effective_tier(subscription).value,
        "billing_cycle": subscription.billing_cycle.value,
        "period_start": subscription.current_period_start.isoformat() if subscription.current_period_start else None,
        "period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
        "usage": {key: _dump(metric) for key, metric in overview.items()},
        "warnings": session.entitlements.get_usage_warnings(),
        "limits_by_plan": session.catalog.get_entitlement_matrix()["limits"],
    }


@router.post("/usage/increment")
async def increment_usage(request: Request, body: IncrementUsageRequest):
    session = await require_subscription(request)
    record = await session.store.increment_usage(body.type, body.amount)
    return {"subscription": _dump(record)}


@router.get("/access")
async def check_access(request: Request, view: str):
    session = await require_subscription(request)
    return _dump(session.access.check_navigation(view))


@router.get("/modules/{view}")
async def check_module(request: Request, view: str):
    session = await require_subscription(request)
    return _dump(session.access.check_module_access(view))


@router.post("/modules/{view}/open")
async def open_module(request: Request, view: str):
    session = await require_subscription(request)
    allowed = session.access.try_access_module(view)
    return {"view": view, "allowed": allowed}


@router.get("/trial")
async def get_trial_status(request: Request):
    session = await require_subscription(request)
    time_left = session.access.trial_time_left()
    if time_left is None:
        return {"is_trial": False}
    days, hours = time_left
    return {"is_trial": True, "days": days, "hours": hours}


@router.post("/upgrade-prompt")
async def upgrade_prompt(request: Request, body: UpgradePromptRequest):
    session = await require_session(request)
    return _dump(session.entitlements.trigger_upgrade(body.reason, body.required_plan))


@router.get("/events")
async def drain_events(request: Request):
    session = await require_session(request)
    return {"events": session.events.drain()}


@router.post("/sign-out")
async def sign_out(request: Request):
    token = get_bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    closed = await get_registry(request).sign_out(token)
    return {"signed_out": closed}
