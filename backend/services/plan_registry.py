"""Canonical Plan Registry - Single Source of Truth for all plan definitions.

This is the AUTHORITATIVE source for:
- Plan tiers and their fixed upgrade order
- Per-cycle pricing and discounts (BRL)
- Resource limits per billing period
- Feature flags per tier

NON-NEGOTIABLE RULES:
1. The catalog is static data - no I/O, no errors for known tiers
2. Upgrade/downgrade is decided by tier order only, never by price
3. A limit >= UNLIMITED_THRESHOLD is unlimited and skipped by usage math
4. Trial subscriptions are entitled as TRIAL_PLAN, whatever plan they store

Plan Structure:
- basico: Básico (1 user, R$ 49,90/mo, no fiscal module, no finance)
- intermediario: Intermediário (3 users, R$ 69,90/mo, NF-e + transactions)
- avancado: Avançado (10 users, R$ 109,90/mo, all modules)
- ilimitado: Ilimitado (unlimited, R$ 139,90/mo, everything)

Prices are per-month equivalents: the quarterly price is what one month costs
when billed quarterly. Use cycle_total() for the amount charged per cycle.
"""
from typing import Dict, List, Optional, Any, Union
from models import (
    Plan, PlanTier, BillingCycle, Feature, Resource,
    SubscriptionRecord, SubscriptionStatus,
)
import logging

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================
TRIAL_DURATION_DAYS = 14
TRIAL_PLAN = PlanTier.ILIMITADO
DEFAULT_CURRENCY = "BRL"
UNLIMITED_THRESHOLD = 99999

# Fixed display and upgrade order
PLAN_ORDER: List[PlanTier] = [
    PlanTier.BASICO,
    PlanTier.INTERMEDIARIO,
    PlanTier.AVANCADO,
    PlanTier.ILIMITADO,
]

CYCLE_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.SEMIANNUAL: 180,
    BillingCycle.YEARLY: 365,
}

CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.SEMIANNUAL: 6,
    BillingCycle.YEARLY: 12,
}

CYCLE_LABELS = {
    BillingCycle.MONTHLY: "Mensal",
    BillingCycle.QUARTERLY: "Trimestral",
    BillingCycle.SEMIANNUAL: "Semestral",
    BillingCycle.YEARLY: "Anual",
}

_STANDARD_DISCOUNT = {"quarterly": 5, "semiannual": 10, "yearly": 20}
_UNLIMITED = 999999


# ============================================================================
# PLAN DEFINITIONS - Complete plan configuration
# ============================================================================
PLAN_DEFINITIONS: Dict[PlanTier, Dict[str, Any]] = {
    PlanTier.BASICO: {
        "id": "basico",
        "name": "Básico",
        "description": "Ideal for getting started",
        "price": {"monthly": 49.90, "quarterly": 47.41, "semiannual": 44.91, "yearly": 39.92},
        "discountPct": _STANDARD_DISCOUNT,
        "limits": {
            "maxUsers": 1,
            "maxProducts": 500,
            "maxCustomers": 200,
            "maxSuppliers": 50,
            "maxSalesOrders": 100,
            "maxPurchaseOrders": 50,
            "maxInvoices": 0,          # no NF-e
            "maxTransactions": 0,      # no financial module
            "maxStorageMB": 512,
            "maxFileUploadMB": 5,
            "features": {
                "fiscalModule": False,
                "multipleWarehouses": False,
                "advancedReports": True,
                "apiAccess": False,
                "whiteLabel": False,
                "prioritySupport": False,
                "customIntegrations": False,
                "auditLog": False,
                "bulkImport": True,
                "customFields": False,
            },
        },
        "highlights": [
            "1 user",
            "Up to 500 products",
            "Up to 200 customers",
            "Up to 100 sales orders/month",
            "No NF-e",
            "No financial module",
            "512 MB storage",
            "Email support",
        ],
    },
    PlanTier.INTERMEDIARIO: {
        "id": "intermediario",
        "name": "Intermediário",
        "description": "For small businesses",
        "price": {"monthly": 69.90, "quarterly": 66.41, "semiannual": 62.91, "yearly": 55.92},
        "discountPct": _STANDARD_DISCOUNT,
        "limits": {
            "maxUsers": 3,
            "maxProducts": 2000,
            "maxCustomers": 1000,
            "maxSuppliers": 200,
            "maxSalesOrders": 300,
            "maxPurchaseOrders": 150,
            "maxInvoices": 100,
            "maxTransactions": 200,
            "maxStorageMB": 2048,
            "maxFileUploadMB": 20,
            "features": {
                "fiscalModule": True,
                "multipleWarehouses": False,
                "advancedReports": True,
                "apiAccess": False,
                "whiteLabel": False,
                "prioritySupport": False,
                "customIntegrations": False,
                "auditLog": True,
                "bulkImport": True,
                "customFields": False,
            },
        },
        "highlights": [
            "Up to 3 users",
            "NF-e issuing (100/month)",
            "Financial transactions",
            "Up to 2,000 products",
            "Up to 300 sales orders/month",
            "Audit log",
            "2 GB storage",
        ],
        "popular": True,
    },
    PlanTier.AVANCADO: {
        "id": "avancado",
        "name": "Avançado",
        "description": "All modules included",
        "price": {"monthly": 109.90, "quarterly": 104.41, "semiannual": 98.91, "yearly": 87.92},
        "discountPct": _STANDARD_DISCOUNT,
        "limits": {
            "maxUsers": 10,
            "maxProducts": 10000,
            "maxCustomers": 5000,
            "maxSuppliers": 1000,
            "maxSalesOrders": 1000,
            "maxPurchaseOrders": 500,
            "maxInvoices": 500,
            "maxTransactions": 2000,
            "maxStorageMB": 10240,
            "maxFileUploadMB": 50,
            "features": {
                "fiscalModule": True,
                "multipleWarehouses": True,
                "advancedReports": True,
                "apiAccess": True,
                "whiteLabel": False,
                "prioritySupport": True,
                "customIntegrations": False,
                "auditLog": True,
                "bulkImport": True,
                "customFields": True,
            },
        },
        "highlights": [
            "Up to 10 users",
            "All modules included",
            "NF-e issuing (500/month)",
            "Accounts payable/receivable",
            "Bank reconciliation",
            "Cash flow",
            "Multiple warehouses",
            "REST API",
            "10 GB storage",
            "Priority support",
        ],
        "highlighted": True,
    },
    PlanTier.ILIMITADO: {
        "id": "ilimitado",
        "name": "Ilimitado",
        "description": "No limits to grow",
        "price": {"monthly": 139.90, "quarterly": 132.91, "semiannual": 125.91, "yearly": 111.92},
        "discountPct": _STANDARD_DISCOUNT,
        "limits": {
            "maxUsers": _UNLIMITED,
            "maxProducts": _UNLIMITED,
            "maxCustomers": _UNLIMITED,
            "maxSuppliers": _UNLIMITED,
            "maxSalesOrders": _UNLIMITED,
            "maxPurchaseOrders": _UNLIMITED,
            "maxInvoices": _UNLIMITED,
            "maxTransactions": _UNLIMITED,
            "maxStorageMB": 102400,
            "maxFileUploadMB": 200,
            "features": {
                "fiscalModule": True,
                "multipleWarehouses": True,
                "advancedReports": True,
                "apiAccess": True,
                "whiteLabel": True,
                "prioritySupport": True,
                "customIntegrations": True,
                "auditLog": True,
                "bulkImport": True,
                "customFields": True,
            },
        },
        "highlights": [
            "Everything unlimited",
            "All modules included",
            "White label",
            "Custom integrations",
            "100 GB storage",
            "24/7 VIP support",
        ],
    },
}

PLANS: Dict[PlanTier, Plan] = {
    tier: Plan.model_validate(definition) for tier, definition in PLAN_DEFINITIONS.items()
}


# ============================================================================
# FEATURE METADATA - Human-readable feature info
# ============================================================================
FEATURE_METADATA = {
    Feature.FISCAL_MODULE: {"name": "Fiscal Module (NF-e)", "category": "fiscal"},
    Feature.MULTIPLE_WAREHOUSES: {"name": "Multiple Warehouses", "category": "inventory"},
    Feature.ADVANCED_REPORTS: {"name": "Advanced Reports", "category": "reporting"},
    Feature.API_ACCESS: {"name": "API Access", "category": "integration"},
    Feature.WHITE_LABEL: {"name": "White Label", "category": "advanced"},
    Feature.PRIORITY_SUPPORT: {"name": "Priority Support", "category": "support"},
    Feature.CUSTOM_INTEGRATIONS: {"name": "Custom Integrations", "category": "integration"},
    Feature.AUDIT_LOG: {"name": "Audit Log", "category": "advanced"},
    Feature.BULK_IMPORT: {"name": "Bulk Import", "category": "data"},
    Feature.CUSTOM_FIELDS: {"name": "Custom Fields", "category": "data"},
}


# ============================================================================
# RESOURCE LIMITS - Which limit governs each countable resource
# ============================================================================
RESOURCE_LIMIT_FIELDS = {
    Resource.SALES_ORDERS: "max_sales_orders",
    Resource.PURCHASE_ORDERS: "max_purchase_orders",
    Resource.INVOICES: "max_invoices",
    Resource.TRANSACTIONS: "max_transactions",
    Resource.PRODUCTS: "max_products",
    Resource.CUSTOMERS: "max_customers",
    Resource.SUPPLIERS: "max_suppliers",
    Resource.USERS: "max_users",
    Resource.STORAGE: "max_storage_mb",
}

# Resources that are blocked outright when the flag is off
RESOURCE_FEATURE_GATES = {
    Resource.INVOICES: Feature.FISCAL_MODULE,
}


PlanRef = Union[Plan, PlanTier, str]


# ============================================================================
# PLAN REGISTRY SERVICE
# ============================================================================
class PlanRegistryService:
    """Central service for all plan catalog lookups."""

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    def get_plan(self, plan: PlanRef) -> Plan:
        """Get complete plan definition by tier (enum or string value)."""
        if isinstance(plan, Plan):
            return plan
        return PLANS[PlanTier(plan)]

    def get_all_plans(self) -> List[Plan]:
        """Get all plans in display order."""
        return [PLANS[tier] for tier in PLAN_ORDER]

    def price_for(self, plan: PlanRef, cycle: Union[BillingCycle, str]) -> float:
        """Per-month-equivalent price of a plan on a billing cycle."""
        return getattr(self.get_plan(plan).price, BillingCycle(cycle).value)

    def cycle_total(self, plan: PlanRef, cycle: Union[BillingCycle, str]) -> float:
        """Amount charged for one full billing cycle."""
        cycle = BillingCycle(cycle)
        return round(self.price_for(plan, cycle) * CYCLE_MONTHS[cycle], 2)

    def calculate_savings(self, plan: PlanRef, cycle: Union[BillingCycle, str]) -> float:
        """Savings of a cycle versus paying monthly for the same months."""
        cycle = BillingCycle(cycle)
        monthly_equivalent = self.price_for(plan, BillingCycle.MONTHLY) * CYCLE_MONTHS[cycle]
        return round(monthly_equivalent - self.cycle_total(plan, cycle), 2)

    # -------------------------------------------------------------------------
    # Tier Ordering
    # -------------------------------------------------------------------------

    def tier_index(self, tier: Union[PlanTier, str]) -> int:
        return PLAN_ORDER.index(PlanTier(tier))

    def is_upgrade(self, from_tier: Union[PlanTier, str], to_tier: Union[PlanTier, str]) -> bool:
        """True when to_tier sits strictly after from_tier in the catalog order."""
        return self.tier_index(to_tier) > self.tier_index(from_tier)

    def is_downgrade(self, from_tier: Union[PlanTier, str], to_tier: Union[PlanTier, str]) -> bool:
        return self.tier_index(to_tier) < self.tier_index(from_tier)

    def effective_tier(self, subscription: SubscriptionRecord) -> PlanTier:
        """Tier whose limits apply; a trial is entitled as TRIAL_PLAN."""
        if subscription.status == SubscriptionStatus.TRIAL:
            return TRIAL_PLAN
        return subscription.plan_id

    # -------------------------------------------------------------------------
    # Billing Cycles
    # -------------------------------------------------------------------------

    def cycle_days(self, cycle: Union[BillingCycle, str]) -> int:
        return CYCLE_DAYS[BillingCycle(cycle)]

    def cycle_months(self, cycle: Union[BillingCycle, str]) -> int:
        return CYCLE_MONTHS[BillingCycle(cycle)]

    def billing_cycle_label(self, cycle: Union[BillingCycle, str]) -> str:
        return CYCLE_LABELS[BillingCycle(cycle)]

    def format_price(self, amount: float) -> str:
        """Format an amount as BRL currency, e.g. R$ 1.234,56."""
        sign = "-" if amount < 0 else ""
        grouped = f"{abs(amount):,.2f}"
        # 1,234.56 -> 1.234,56
        localized = grouped.replace(",", "_").replace(".", ",").replace("_", ".")
        return f"{sign}R$ {localized}"

    # -------------------------------------------------------------------------
    # Limits and Features
    # -------------------------------------------------------------------------

    def get_limit(self, plan: PlanRef, resource: Union[Resource, str]) -> int:
        field = RESOURCE_LIMIT_FIELDS[Resource(resource)]
        return getattr(self.get_plan(plan).limits, field)

    def is_unlimited(self, limit: float) -> bool:
        return limit >= UNLIMITED_THRESHOLD

    def is_feature_available(self, plan: PlanRef, feature: Union[Feature, str]) -> bool:
        return self.get_plan(plan).limits.features.is_enabled(Feature(feature))

    def feature_gate_for(self, resource: Union[Resource, str]) -> Optional[Feature]:
        return RESOURCE_FEATURE_GATES.get(Resource(resource))

    def get_feature_metadata(self, feature: Union[Feature, str]) -> Optional[Dict[str, str]]:
        return FEATURE_METADATA.get(Feature(feature))

    def minimum_plan_for_feature(self, feature: Union[Feature, str]) -> Optional[PlanTier]:
        """Lowest tier whose flag for the feature is on."""
        for tier in PLAN_ORDER:
            if self.is_feature_available(tier, feature):
                return tier
        return None

    def minimum_plan_for_limit(self, resource: Union[Resource, str], needed: float) -> Optional[PlanTier]:
        """
        Lowest tier whose limit admits `needed` units of the resource.

        Feature-gated resources also require the gating flag.
        """
        gate = self.feature_gate_for(resource)
        for tier in PLAN_ORDER:
            if gate and not self.is_feature_available(tier, gate):
                continue
            limit = self.get_limit(tier, resource)
            if self.is_unlimited(limit) or limit >= needed:
                return tier
        return None

    # -------------------------------------------------------------------------
    # Entitlement Matrix (for docs / plan comparison screens)
    # -------------------------------------------------------------------------

    def get_entitlement_matrix(self) -> Dict[str, Any]:
        """Generate complete feature/plan matrix for documentation."""
        features = {}
        for feature, info in FEATURE_METADATA.items():
            min_plan = self.minimum_plan_for_feature(feature)
            features[feature.value] = {
                "name": info["name"],
                "category": info["category"],
                "minimum_plan": min_plan.value if min_plan else None,
                "plans": {
                    tier.value: self.is_feature_available(tier, feature)
                    for tier in PLAN_ORDER
                },
            }

        limits = {}
        for resource in RESOURCE_LIMIT_FIELDS:
            limits[resource.value] = {
                tier.value: self.get_limit(tier, resource) for tier in PLAN_ORDER
            }

        return {
            "features": features,
            "limits": limits,
            "plans": {
                plan.id.value: {
                    "name": plan.name,
                    "monthly_price": plan.price.monthly,
                    "formatted_price": self.format_price(plan.price.monthly),
                    "popular": plan.popular,
                    "highlighted": plan.highlighted,
                }
                for plan in self.get_all_plans()
            },
            "trial": {
                "plan": TRIAL_PLAN.value,
                "duration_days": TRIAL_DURATION_DAYS,
            },
        }


# Singleton instance
plan_registry = PlanRegistryService()
