"""Entitlement Evaluator - limit and feature checks against the plan catalog.

Every check is a pure function of (subscription, catalog). Denials are values
(CheckResult / BlockedResult), never exceptions: hitting a limit is an expected
steady-state outcome that routes to the upsell flow, so it is logged at INFO.

Fail-closed default: with no subscription loaded every check is denied with
reason "no subscription", has_feature is False, the overview is None and the
warning list is empty.

EntitlementService wraps the pure functions for one tenant session. It is
constructed with a catalog and a subscription accessor, so it holds no
global state and can be built per request in tests.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union
import logging

from models import (
    BlockedResult, BlockKind, CheckResult, Feature, PlanTier, Resource,
    SubscriptionRecord, UsageMetric,
)
from services.billing_events import BillingEvent, BillingEventBus
from services.plan_registry import PlanRegistryService, plan_registry
from utils.timers import SystemClock

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_REASON = "no subscription"
NEAR_LIMIT_RATIO = 0.8
ALERT_THRESHOLDS = (100, 90, 80)
TRIAL_ALERT_DAYS = (3, 1)


# ============================================================================
# RESOURCE METADATA - usage field, label and limit message
# ============================================================================
RESOURCE_METADATA = {
    Resource.SALES_ORDERS: {
        "usage_field": "sales_orders",
        "label": "Sales Orders",
        "limit_message": "Limit of {max} sales orders/month reached. Upgrade your plan.",
        "warning": "You have used {current} of {max} sales orders this month.",
    },
    Resource.PURCHASE_ORDERS: {
        "usage_field": "purchase_orders",
        "label": "Purchase Orders",
        "limit_message": "Limit of {max} purchase orders/month reached. Upgrade your plan.",
        "warning": "You have used {current} of {max} purchase orders this month.",
    },
    Resource.INVOICES: {
        "usage_field": "invoices",
        "label": "NF-e Issuing",
        "limit_message": "Limit of {max} NF-es/month reached. Upgrade your plan.",
        "warning": "You have issued {current} of {max} NF-es this month.",
    },
    Resource.TRANSACTIONS: {
        "usage_field": "transactions",
        "label": "Financial Transactions",
        "limit_message": "Limit of {max} transactions/month reached. Upgrade your plan.",
        "warning": "You have created {current} of {max} transactions this month.",
    },
    Resource.PRODUCTS: {
        "usage_field": "products",
        "label": "Products",
        "limit_message": "Limit of {max} products reached. Upgrade your plan.",
        "warning": "You have {current} of {max} products registered.",
    },
    Resource.CUSTOMERS: {
        "usage_field": "customers",
        "label": "Customers",
        "limit_message": "Limit of {max} customers reached. Upgrade your plan.",
        "warning": "You have {current} of {max} customers registered.",
    },
    Resource.SUPPLIERS: {
        "usage_field": "suppliers",
        "label": "Suppliers",
        "limit_message": "Limit of {max} suppliers reached. Upgrade your plan.",
        "warning": "You have {current} of {max} suppliers registered.",
    },
    Resource.USERS: {
        "usage_field": "users",
        "label": "Users",
        "limit_message": "Limit of {max} users reached. Upgrade your plan.",
        "warning": "You have {current} of {max} users.",
    },
    Resource.STORAGE: {
        "usage_field": "storage_mb",
        "label": "Storage",
        "limit_message": "Storage limit of {max} MB reached. Upgrade your plan.",
        "warning": "You have used {current:.2f} MB of {max} MB of storage.",
    },
}

# Overview order; storage is reported but checked through can_upload_file
OVERVIEW_RESOURCES = [
    Resource.SALES_ORDERS,
    Resource.PURCHASE_ORDERS,
    Resource.INVOICES,
    Resource.TRANSACTIONS,
    Resource.STORAGE,
    Resource.PRODUCTS,
    Resource.CUSTOMERS,
    Resource.SUPPLIERS,
    Resource.USERS,
]


def _no_subscription(feature_name: Optional[str] = None) -> CheckResult:
    return CheckResult(allowed=False, reason=NO_SUBSCRIPTION_REASON, feature_name=feature_name)


def _usage_value(subscription: SubscriptionRecord, resource: Resource) -> float:
    return getattr(subscription.usage, RESOURCE_METADATA[resource]["usage_field"])


# ============================================================================
# PURE CHECKS
# ============================================================================

def check_resource(
    subscription: Optional[SubscriptionRecord],
    resource: Union[Resource, str],
    current_count: Optional[int] = None,
    catalog: PlanRegistryService = plan_registry,
) -> CheckResult:
    """
    Can one more unit of `resource` be created?

    allowed = current < max (strict). A resource gated behind a feature flag
    is blocked outright when the flag is off, whatever its numeric limit.
    """
    resource = Resource(resource)
    meta = RESOURCE_METADATA[resource]
    if subscription is None:
        return _no_subscription(meta["label"])

    tier = catalog.effective_tier(subscription)

    gate = catalog.feature_gate_for(resource)
    if gate and not catalog.is_feature_available(tier, gate):
        required = catalog.minimum_plan_for_feature(gate)
        feature_info = catalog.get_feature_metadata(gate) or {}
        required_name = catalog.get_plan(required).name if required else "a higher plan"
        return CheckResult(
            allowed=False,
            reason=f"{feature_info.get('name', gate.value)} is not available on your plan. "
                   f"Upgrade to {required_name} or higher.",
            feature_name=meta["label"],
            blocked_by_feature=gate,
            required_plan=required,
        )

    max_allowed = catalog.get_limit(tier, resource)
    current = current_count if current_count is not None else _usage_value(subscription, resource)

    if catalog.is_unlimited(max_allowed) or current < max_allowed:
        return CheckResult(allowed=True, current=current, max=max_allowed, feature_name=meta["label"])

    return CheckResult(
        allowed=False,
        reason=meta["limit_message"].format(max=max_allowed),
        limit_reached=True,
        current=current,
        max=max_allowed,
        feature_name=meta["label"],
        required_plan=catalog.minimum_plan_for_limit(resource, current + 1),
    )


def can_upload_file(
    subscription: Optional[SubscriptionRecord],
    size_mb: float,
    catalog: PlanRegistryService = plan_registry,
) -> CheckResult:
    """Per-file size and total storage must both pass; the failing one is reported."""
    if subscription is None:
        return _no_subscription("Storage")

    limits = catalog.get_plan(catalog.effective_tier(subscription)).limits
    storage = subscription.usage.storage_mb

    if size_mb > limits.max_file_upload_mb:
        required = next(
            (plan.id for plan in catalog.get_all_plans() if plan.limits.max_file_upload_mb >= size_mb),
            None,
        )
        return CheckResult(
            allowed=False,
            reason=f"File too large. Maximum allowed: {limits.max_file_upload_mb} MB.",
            limit_reached=True,
            current=size_mb,
            max=limits.max_file_upload_mb,
            feature_name="File size",
            required_plan=required,
        )

    if storage + size_mb > limits.max_storage_mb:
        return CheckResult(
            allowed=False,
            reason=f"Insufficient storage. Available: {limits.max_storage_mb - storage:.2f} MB.",
            limit_reached=True,
            current=storage,
            max=limits.max_storage_mb,
            feature_name="Storage",
            required_plan=catalog.minimum_plan_for_limit(Resource.STORAGE, storage + size_mb),
        )

    return CheckResult(allowed=True, current=storage, max=limits.max_storage_mb, feature_name="Storage")


def has_feature(
    subscription: Optional[SubscriptionRecord],
    feature: Union[Feature, str],
    catalog: PlanRegistryService = plan_registry,
) -> bool:
    if subscription is None:
        return False
    return catalog.is_feature_available(catalog.effective_tier(subscription), feature)


def usage_metric(current: float, max_allowed: float, catalog: PlanRegistryService = plan_registry) -> UsageMetric:
    # Unlimited and not-included (max 0) limits never produce a percentage
    if catalog.is_unlimited(max_allowed) or max_allowed <= 0:
        return UsageMetric(
            current=current,
            max=max_allowed,
            percentage=0,
            near_limit=False,
            unlimited=catalog.is_unlimited(max_allowed),
        )
    return UsageMetric(
        current=current,
        max=max_allowed,
        percentage=round(current / max_allowed * 100, 2),
        near_limit=current >= max_allowed * NEAR_LIMIT_RATIO,
    )


def get_usage_overview(
    subscription: Optional[SubscriptionRecord],
    catalog: PlanRegistryService = plan_registry,
) -> Optional[Dict[str, UsageMetric]]:
    if subscription is None:
        return None
    tier = catalog.effective_tier(subscription)
    return {
        resource.value: usage_metric(
            _usage_value(subscription, resource), catalog.get_limit(tier, resource), catalog
        )
        for resource in OVERVIEW_RESOURCES
    }


def get_usage_warnings(
    subscription: Optional[SubscriptionRecord],
    catalog: PlanRegistryService = plan_registry,
) -> List[str]:
    overview = get_usage_overview(subscription, catalog)
    if not overview:
        return []
    warnings = []
    for resource in OVERVIEW_RESOURCES:
        metric = overview[resource.value]
        if metric.near_limit:
            warnings.append(_format_warning(resource, metric))
    return warnings


def get_usage_alerts(
    subscription: Optional[SubscriptionRecord],
    now: datetime,
    already_shown: Set[str],
    catalog: PlanRegistryService = plan_registry,
) -> List[Dict[str, Any]]:
    """
    One-shot threshold alerts (80/90/100 %) and trial countdown alerts.

    Keys already in `already_shown` are skipped; emitted keys are added to it,
    so each level fires once per session.
    """
    overview = get_usage_overview(subscription, catalog)
    if not overview:
        return []

    alerts = []
    for resource in OVERVIEW_RESOURCES:
        metric = overview[resource.value]
        if metric.unlimited or metric.max <= 0:
            continue
        # Raw ratio, not the rounded display percentage, so alerts agree with near_limit
        percent = metric.current / metric.max * 100
        reached = next((t for t in ALERT_THRESHOLDS if percent >= t), None)
        if reached is None:
            continue
        key = f"{resource.value}-{reached}"
        if key in already_shown:
            continue
        already_shown.add(key)
        alerts.append({
            "key": key,
            "resource": resource.value,
            "threshold": reached,
            "severity": "critical" if reached >= 100 else "warning",
            "current": metric.current,
            "max": metric.max,
            "message": _format_warning(resource, metric),
        })

    if subscription.is_trial and subscription.trial_end_date:
        days_left = (subscription.trial_end_date - now).days
        key = None
        if days_left in TRIAL_ALERT_DAYS:
            key = f"trial-{days_left}-days"
            message = f"Only {days_left} day(s) left in your trial. Upgrade to keep access."
        elif subscription.trial_end_date <= now:
            key = "trial-expired"
            message = "Your trial has ended. Choose a plan to continue."
        if key and key not in already_shown:
            already_shown.add(key)
            alerts.append({"key": key, "resource": "trial", "severity": "warning", "message": message})

    return alerts


def _format_warning(resource: Resource, metric: UsageMetric) -> str:
    current = metric.current if resource == Resource.STORAGE else int(metric.current)
    return RESOURCE_METADATA[resource]["warning"].format(current=current, max=int(metric.max))


def to_blocked_result(check: CheckResult) -> BlockedResult:
    kind = BlockKind.FEATURE_GATED if check.blocked_by_feature else BlockKind.LIMIT_REACHED
    if check.reason == NO_SUBSCRIPTION_REASON:
        kind = BlockKind.NO_SUBSCRIPTION
    return BlockedResult(
        kind=kind,
        reason=check.reason or "",
        required_plan=check.required_plan,
        feature_name=check.feature_name,
    )


# ============================================================================
# ENTITLEMENT SERVICE (per tenant session)
# ============================================================================
class EntitlementService:
    """Entitlement checks bound to one tenant's subscription accessor."""

    def __init__(
        self,
        catalog: PlanRegistryService,
        subscription_accessor: Callable[[], Optional[SubscriptionRecord]],
        events: Optional[BillingEventBus] = None,
        clock: Optional[Any] = None,
    ):
        self.catalog = catalog
        self._subscription = subscription_accessor
        self.events = events or BillingEventBus()
        self.clock = clock or SystemClock()
        self._shown_alerts: Set[str] = set()

    @property
    def subscription(self) -> Optional[SubscriptionRecord]:
        return self._subscription()

    # -------------------------------------------------------------------------
    # Resource checks
    # -------------------------------------------------------------------------

    def check(self, resource: Union[Resource, str], current_count: Optional[int] = None) -> CheckResult:
        return check_resource(self.subscription, resource, current_count, self.catalog)

    def can_create_sales_order(self) -> CheckResult:
        return self.check(Resource.SALES_ORDERS)

    def can_create_purchase_order(self) -> CheckResult:
        return self.check(Resource.PURCHASE_ORDERS)

    def can_create_invoice(self) -> CheckResult:
        return self.check(Resource.INVOICES)

    def can_create_transaction(self) -> CheckResult:
        return self.check(Resource.TRANSACTIONS)

    def can_create_product(self, current_count: Optional[int] = None) -> CheckResult:
        return self.check(Resource.PRODUCTS, current_count)

    def can_create_customer(self, current_count: Optional[int] = None) -> CheckResult:
        return self.check(Resource.CUSTOMERS, current_count)

    def can_create_supplier(self, current_count: Optional[int] = None) -> CheckResult:
        return self.check(Resource.SUPPLIERS, current_count)

    def can_create_user(self, current_count: Optional[int] = None) -> CheckResult:
        return self.check(Resource.USERS, current_count)

    def can_upload_file(self, size_mb: float) -> CheckResult:
        return can_upload_file(self.subscription, size_mb, self.catalog)

    def has_feature(self, feature: Union[Feature, str]) -> bool:
        return has_feature(self.subscription, feature, self.catalog)

    # -------------------------------------------------------------------------
    # Dashboards
    # -------------------------------------------------------------------------

    def get_usage_overview(self) -> Optional[Dict[str, UsageMetric]]:
        return get_usage_overview(self.subscription, self.catalog)

    def get_usage_warnings(self) -> List[str]:
        return get_usage_warnings(self.subscription, self.catalog)

    def get_usage_alerts(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        if now is None:
            now = self.clock.now()
        return get_usage_alerts(self.subscription, now, self._shown_alerts, self.catalog)

    def reset_alerts(self) -> None:
        self._shown_alerts.clear()

    # -------------------------------------------------------------------------
    # Upsell
    # -------------------------------------------------------------------------

    def trigger_upgrade(self, reason: str, required_plan: Optional[Union[PlanTier, str]] = None,
                        kind: BlockKind = BlockKind.LIMIT_REACHED, feature_name: Optional[str] = None) -> BlockedResult:
        """Hand a denial to whoever presents upsell prompts."""
        blocked = BlockedResult(
            kind=kind,
            reason=reason,
            required_plan=PlanTier(required_plan) if required_plan else None,
            feature_name=feature_name,
        )
        self.events.emit(BillingEvent.UPGRADE_REQUIRED, blocked.model_dump(by_alias=True, mode="json"))
        return blocked

    def guard_action(self, resource: Union[Resource, str], current_count: Optional[int] = None) -> CheckResult:
        """Check a resource and raise an upsell prompt when it is denied."""
        result = self.check(resource, current_count)
        if not result.allowed:
            logger.info(f"Entitlement denied for {Resource(resource).value}: {result.reason}")
            blocked = to_blocked_result(result)
            self.trigger_upgrade(blocked.reason, blocked.required_plan, blocked.kind, blocked.feature_name)
        return result
