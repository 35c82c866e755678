"""Access Guard - coarse access state machine plus per-module gating.

evaluate_access() is a pure function of (subscription, now, view); nothing is
stored between calls. Evaluation order:

1. No subscription loaded        -> UNKNOWN (permissive until resolved)
2. Allowlisted view              -> ALLOWED (billing must stay reachable)
3. Trial past trial_end_date     -> BLOCKED_TRIAL_EXPIRED
4. One-shot plan past period end -> BLOCKED_PLAN_EXPIRED
5. Status expired / canceled     -> BLOCKED_CANCELED
6. Otherwise                     -> ALLOWED

Trial expiry is checked first so a lapsed trial is never reported as a
canceled plan. Recurring (card) subscriptions never hit step 4: their lapse
arrives as a status change from the backend.

check_module_access() is the narrower gate for tenants who are let in: a tier
can still lack a module (fiscal invoicing, finance).
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from pydantic import BaseModel

from models import (
    AccessState, AccessVerdict, BlockKind, Feature, ModuleAccessResult,
    PlanTier, Resource, SubscriptionRecord, SubscriptionStatus,
)
from services.plan_registry import PlanRegistryService, plan_registry

logger = logging.getLogger(__name__)


# ============================================================================
# VIEW LISTS
# ============================================================================

# Always reachable, even when blocked, so the tenant can pay
ALLOWLISTED_VIEWS = frozenset({
    "billing",
    "myPlan",
    "changePlan",
    "checkoutSuccess",
    "checkoutCancel",
    "profile",
})

# Included in every tier
ALWAYS_AVAILABLE_MODULES = frozenset({
    "dashboard",
    "inventory",
    "purchases",
    "sales",
    "customers",
    "suppliers",
    "priceTables",
    "reports",
    "company",
    "usersPermissions",
    "emailSettings",
    "billing",
    "myPlan",
    "changePlan",
    "checkoutSuccess",
    "checkoutCancel",
    "profile",
    "productCategories",
    "stockLocations",
    "manufacturingBatches",
    "salespeople",
    "buyers",
    "chartOfAccounts",
    "costCenters",
    "digitalCertificate",
    "testePersistencia",
    "systemAudit",
})

# Gated modules: requirement kind and human label
MODULE_RULES: Dict[str, Dict[str, Any]] = {
    "taxInvoicing": {"label": "Fiscal Invoicing (NF-e)", "feature": Feature.FISCAL_MODULE},
    "financialTransactions": {"label": "Financial Transactions", "resource": Resource.TRANSACTIONS},
    "accountsPayableReceivable": {"label": "Accounts Payable/Receivable", "min_tier": PlanTier.AVANCADO},
    "balanceReconciliation": {"label": "Bank Reconciliation", "min_tier": PlanTier.AVANCADO},
    "cashFlow": {"label": "Cash Flow", "min_tier": PlanTier.AVANCADO},
}


# ============================================================================
# BLOCKED SCREENS
# ============================================================================
BLOCK_SCREENS = {
    AccessState.BLOCKED_TRIAL_EXPIRED: {
        "title": "Trial period ended",
        "call_to_action": "See plans and subscribe",
    },
    AccessState.BLOCKED_PLAN_EXPIRED: {
        "title": "Your plan period has ended",
        "call_to_action": "Subscribe to a new plan",
    },
    AccessState.BLOCKED_CANCELED: {
        "title": "Plan canceled",
        "call_to_action": "Reactivate subscription",
    },
}


def _blocked(state: AccessState, view: Optional[str], reason: str, expiration_date: Optional[datetime]) -> AccessVerdict:
    screen = BLOCK_SCREENS[state]
    return AccessVerdict(
        state=state,
        allowed=False,
        view=view,
        title=screen["title"],
        reason=reason,
        expiration_date=expiration_date,
        call_to_action=screen["call_to_action"],
    )


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d/%m/%Y") if value else "an unknown date"


def evaluate_access(
    subscription: Optional[SubscriptionRecord],
    now: datetime,
    view: Optional[str] = None,
) -> AccessVerdict:
    if subscription is None:
        return AccessVerdict(state=AccessState.UNKNOWN, allowed=True, view=view)

    if view in ALLOWLISTED_VIEWS:
        return AccessVerdict(state=AccessState.ALLOWED, allowed=True, view=view)

    if subscription.status == SubscriptionStatus.TRIAL and subscription.trial_end_date and now > subscription.trial_end_date:
        return _blocked(
            AccessState.BLOCKED_TRIAL_EXPIRED,
            view,
            f"Your free trial ended on {_format_date(subscription.trial_end_date)}. "
            f"Choose a paid plan to keep using the ERP.",
            subscription.trial_end_date,
        )

    if not subscription.is_recurring and subscription.current_period_end and now > subscription.current_period_end:
        method = subscription.payment_method.value.upper() if subscription.payment_method else "one-time"
        return _blocked(
            AccessState.BLOCKED_PLAN_EXPIRED,
            view,
            f"Your {method} plan has expired. It was a one-time payment, so subscribe again to continue.",
            subscription.current_period_end,
        )

    if subscription.status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELED):
        return _blocked(
            AccessState.BLOCKED_CANCELED,
            view,
            "Your plan was canceled. Choose a new plan to continue.",
            subscription.canceled_at,
        )

    return AccessVerdict(state=AccessState.ALLOWED, allowed=True, view=view)


def trial_time_left(subscription: Optional[SubscriptionRecord], now: datetime) -> Optional[Tuple[int, int]]:
    """(days, hours) left in a trial, floored at zero; None when not trialing."""
    if subscription is None or not subscription.is_trial or not subscription.trial_end_date:
        return None
    seconds = max(0, int((subscription.trial_end_date - now).total_seconds()))
    return seconds // 86400, (seconds % 86400) // 3600


# ============================================================================
# MODULE ACCESS
# ============================================================================

def required_plan_for_module(view: str, catalog: PlanRegistryService = plan_registry) -> Optional[PlanTier]:
    rule = MODULE_RULES.get(view)
    if not rule:
        return None
    if "feature" in rule:
        return catalog.minimum_plan_for_feature(rule["feature"])
    if "resource" in rule:
        return catalog.minimum_plan_for_limit(rule["resource"], 1)
    return rule["min_tier"]


def check_module_access(
    subscription: Optional[SubscriptionRecord],
    view: str,
    catalog: PlanRegistryService = plan_registry,
) -> ModuleAccessResult:
    if subscription is None:
        return ModuleAccessResult(allowed=False, reason="Subscription not found", requires_upgrade=True)

    if view in ALWAYS_AVAILABLE_MODULES:
        return ModuleAccessResult(allowed=True)

    rule = MODULE_RULES.get(view)
    if rule is None:
        # Modules without a rule are part of every plan
        return ModuleAccessResult(allowed=True)

    tier = catalog.effective_tier(subscription)
    if "feature" in rule:
        allowed = catalog.is_feature_available(tier, rule["feature"])
    elif "resource" in rule:
        allowed = catalog.get_limit(tier, rule["resource"]) > 0
    else:
        allowed = catalog.tier_index(tier) >= catalog.tier_index(rule["min_tier"])

    if allowed:
        return ModuleAccessResult(allowed=True)

    required = required_plan_for_module(view, catalog)
    plan_name = catalog.get_plan(tier).name
    required_name = catalog.get_plan(required).name if required else "a higher"
    return ModuleAccessResult(
        allowed=False,
        reason=f"The {rule['label']} module is not available on the {plan_name} plan. "
               f"Upgrade to {required_name} or higher to get access.",
        requires_upgrade=True,
        required_plan=required,
    )


class NavigationDecision(BaseModel):
    view: str
    allowed: bool
    # True while no subscription is loaded; caller should resolve and re-check
    pending: bool = False
    access: AccessVerdict
    module: Optional[ModuleAccessResult] = None


def check_navigation(
    subscription: Optional[SubscriptionRecord],
    now: datetime,
    view: str,
    catalog: PlanRegistryService = plan_registry,
) -> NavigationDecision:
    """Access state first, then the module gate for tenants let in."""
    verdict = evaluate_access(subscription, now, view)
    if verdict.state == AccessState.UNKNOWN:
        return NavigationDecision(view=view, allowed=True, pending=True, access=verdict)
    if not verdict.allowed:
        return NavigationDecision(view=view, allowed=False, access=verdict)
    module = check_module_access(subscription, view, catalog)
    return NavigationDecision(view=view, allowed=module.allowed, access=verdict, module=module)


# ============================================================================
# ACCESS GUARD SERVICE (per tenant session)
# ============================================================================
class AccessGuardService:
    """Access checks bound to one tenant's subscription and clock."""

    def __init__(
        self,
        catalog: PlanRegistryService,
        subscription_accessor: Callable[[], Optional[SubscriptionRecord]],
        clock: Any,
        entitlements: Optional[Any] = None,
    ):
        self.catalog = catalog
        self._subscription = subscription_accessor
        self.clock = clock
        self.entitlements = entitlements

    def evaluate(self, view: Optional[str] = None) -> AccessVerdict:
        return evaluate_access(self._subscription(), self.clock.now(), view)

    def check_module_access(self, view: str) -> ModuleAccessResult:
        return check_module_access(self._subscription(), view, self.catalog)

    def check_navigation(self, view: str) -> NavigationDecision:
        return check_navigation(self._subscription(), self.clock.now(), view, self.catalog)

    def try_access_module(self, view: str) -> bool:
        """Check a module and raise an upsell prompt when it is gated."""
        access = self.check_module_access(view)
        if not access.allowed and self.entitlements is not None:
            logger.info(f"Module {view} gated: {access.reason}")
            self.entitlements.trigger_upgrade(
                access.reason or "Module not available on your plan",
                access.required_plan,
                kind=BlockKind.MODULE_GATED,
                feature_name=MODULE_RULES.get(view, {}).get("label"),
            )
        return access.allowed

    def trial_time_left(self) -> Optional[Tuple[int, int]]:
        return trial_time_left(self._subscription(), self.clock.now())
