from pydantic import BaseModel, Field, ConfigDict, AliasChoices, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanTier(str, Enum):
    BASICO = "basico"
    INTERMEDIARIO = "intermediario"
    AVANCADO = "avancado"
    ILIMITADO = "ilimitado"

class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    YEARLY = "yearly"

class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PAUSED = "paused"

class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PIX = "pix"
    BOLETO = "boleto"

class PaymentIntentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"

class Resource(str, Enum):
    """Countable resources checked against a plan limit."""
    SALES_ORDERS = "salesOrders"
    PURCHASE_ORDERS = "purchaseOrders"
    INVOICES = "invoices"
    TRANSACTIONS = "transactions"
    PRODUCTS = "products"
    CUSTOMERS = "customers"
    SUPPLIERS = "suppliers"
    USERS = "users"
    STORAGE = "storage"

class Feature(str, Enum):
    FISCAL_MODULE = "fiscalModule"
    MULTIPLE_WAREHOUSES = "multipleWarehouses"
    ADVANCED_REPORTS = "advancedReports"
    API_ACCESS = "apiAccess"
    WHITE_LABEL = "whiteLabel"
    PRIORITY_SUPPORT = "prioritySupport"
    CUSTOM_INTEGRATIONS = "customIntegrations"
    AUDIT_LOG = "auditLog"
    BULK_IMPORT = "bulkImport"
    CUSTOM_FIELDS = "customFields"

class AccessState(str, Enum):
    UNKNOWN = "unknown"
    ALLOWED = "allowed"
    BLOCKED_TRIAL_EXPIRED = "blocked_trial_expired"
    BLOCKED_PLAN_EXPIRED = "blocked_plan_expired"
    BLOCKED_CANCELED = "blocked_canceled"

class BlockKind(str, Enum):
    LIMIT_REACHED = "LIMIT_REACHED"
    FEATURE_GATED = "FEATURE_GATED"
    MODULE_GATED = "MODULE_GATED"
    ACCESS_BLOCKED = "ACCESS_BLOCKED"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    """Base for models exchanged with the backend of record (camelCase JSON)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

# ============================================================================
# PLAN CATALOG
# ============================================================================

class PlanFeatures(WireModel):
    fiscal_module: bool = Field(False, alias="fiscalModule")
    multiple_warehouses: bool = Field(False, alias="multipleWarehouses")
    advanced_reports: bool = Field(False, alias="advancedReports")
    api_access: bool = Field(False, alias="apiAccess")
    white_label: bool = Field(False, alias="whiteLabel")
    priority_support: bool = Field(False, alias="prioritySupport")
    custom_integrations: bool = Field(False, alias="customIntegrations")
    audit_log: bool = Field(False, alias="auditLog")
    bulk_import: bool = Field(False, alias="bulkImport")
    custom_fields: bool = Field(False, alias="customFields")

    def is_enabled(self, feature: Feature) -> bool:
        return bool(self.model_dump(by_alias=True).get(Feature(feature).value, False))


class PlanLimits(WireModel):
    max_users: int = Field(alias="maxUsers")
    max_products: int = Field(alias="maxProducts")
    max_customers: int = Field(alias="maxCustomers")
    max_suppliers: int = Field(alias="maxSuppliers")
    max_sales_orders: int = Field(alias="maxSalesOrders")
    max_purchase_orders: int = Field(alias="maxPurchaseOrders")
    max_invoices: int = Field(alias="maxInvoices")
    max_transactions: int = Field(alias="maxTransactions")
    max_storage_mb: int = Field(alias="maxStorageMB")
    max_file_upload_mb: int = Field(alias="maxFileUploadMB")
    features: PlanFeatures


class PlanPrice(WireModel):
    monthly: float
    quarterly: float
    semiannual: float
    yearly: float


class PlanDiscount(WireModel):
    quarterly: int = 0
    semiannual: int = 0
    yearly: int = 0


class Plan(WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: PlanTier
    name: str
    description: str
    price: PlanPrice
    discount_pct: PlanDiscount = Field(alias="discountPct")
    limits: PlanLimits
    highlights: List[str] = []
    popular: bool = False
    highlighted: bool = False

# ============================================================================
# SUBSCRIPTION RECORD
# ============================================================================

class Usage(WireModel):
    """Per-period usage counters; reset externally at the period boundary."""
    sales_orders: int = Field(0, alias="salesOrders")
    purchase_orders: int = Field(0, alias="purchaseOrders")
    invoices: int = 0
    transactions: int = 0
    storage_mb: float = Field(0.0, validation_alias=AliasChoices("storageMB", "storageMb", "storage_mb"), serialization_alias="storageMB")
    # Catalog-size counters; older backends omit them
    users: int = 0
    products: int = 0
    customers: int = 0
    suppliers: int = 0


class ScheduledChange(WireModel):
    """A downgrade accepted by the backend, effective at the period boundary."""
    plan_id: PlanTier = Field(alias="planId")
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    effective_at: Optional[datetime] = Field(None, alias="effectiveAt")
    requested_at: Optional[datetime] = Field(None, alias="requestedAt")

    normalize_dates = field_validator("effective_at", "requested_at")(_as_utc)


class SubscriptionRecord(WireModel):
    id: str = ""
    tenant_id: Optional[str] = Field(None, validation_alias=AliasChoices("tenantId", "userId", "tenant_id"), serialization_alias="tenantId")
    plan_id: PlanTier = Field(alias="planId")
    status: SubscriptionStatus
    billing_cycle: BillingCycle = Field(BillingCycle.MONTHLY, alias="billingCycle")

    trial_start_date: Optional[datetime] = Field(None, alias="trialStartDate")
    trial_end_date: Optional[datetime] = Field(None, validation_alias=AliasChoices("trialEndDate", "trialEnd", "trial_end_date"), serialization_alias="trialEndDate")
    start_date: Optional[datetime] = Field(None, alias="startDate")
    current_period_start: Optional[datetime] = Field(None, alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(None, alias="currentPeriodEnd")
    canceled_at: Optional[datetime] = Field(None, alias="canceledAt")

    payment_method: Optional[PaymentMethod] = Field(None, alias="paymentMethod")
    # Absent means recurring: only one-shot PIX/Boleto purchases send false
    is_recurring: bool = Field(True, alias="isRecurring")
    amount: Optional[float] = None
    currency: str = "BRL"

    usage: Usage = Field(default_factory=Usage)
    scheduled_change: Optional[ScheduledChange] = Field(None, alias="scheduledChange")

    normalize_dates = field_validator(
        "trial_start_date", "trial_end_date", "start_date",
        "current_period_start", "current_period_end", "canceled_at",
    )(_as_utc)

    @field_validator("payment_method", mode="before")
    @classmethod
    def _blank_payment_method(cls, value):
        return value or None

    @property
    def is_trial(self) -> bool:
        return self.status == SubscriptionStatus.TRIAL

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

# ============================================================================
# PAYMENTS
# ============================================================================

class PaymentIntent(WireModel):
    id: str = Field(validation_alias=AliasChoices("paymentIntentId", "intentId", "id"), serialization_alias="paymentIntentId")
    channel: PaymentMethod
    amount: float
    expires_at: datetime = Field(alias="expiresAt")
    channel_data: Dict[str, Any] = Field(default_factory=dict, alias="channelData")
    status: PaymentIntentStatus = PaymentIntentStatus.PENDING
    plan_id: Optional[PlanTier] = Field(None, alias="planId")
    billing_cycle: Optional[BillingCycle] = Field(None, alias="billingCycle")

    @field_validator("expires_at", mode="before")
    @classmethod
    def _parse_expiry(cls, value):
        # Gateway sends unix seconds; stored intents round-trip as ISO strings
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        return value

    normalize_dates = field_validator("expires_at")(_as_utc)

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentIntentStatus.PENDING


class BillingDetails(WireModel):
    name: str = ""
    email: str = ""
    tax_id: str = Field("", validation_alias=AliasChoices("taxId", "tax_id"), serialization_alias="taxId")


class CardCheckoutResult(WireModel):
    upgraded: bool = False
    message: Optional[str] = None
    checkout_url: Optional[str] = Field(None, alias="checkoutUrl")

    @property
    def requires_redirect(self) -> bool:
        return not self.upgraded and bool(self.checkout_url)

# ============================================================================
# ENTITLEMENT RESULTS
# ============================================================================

class CheckResult(WireModel):
    allowed: bool
    reason: Optional[str] = None
    limit_reached: bool = Field(False, alias="limitReached")
    current: float = 0
    max: float = 0
    feature_name: Optional[str] = Field(None, alias="featureName")
    blocked_by_feature: Optional[Feature] = Field(None, alias="blockedByFeature")
    required_plan: Optional[PlanTier] = Field(None, alias="requiredPlan")


class UsageMetric(WireModel):
    current: float
    max: float
    percentage: float
    near_limit: bool = Field(alias="nearLimit")
    unlimited: bool = False


class BlockedResult(WireModel):
    """Structured denial handed to the UI layer; presentation is its concern."""
    kind: BlockKind
    reason: str
    required_plan: Optional[PlanTier] = Field(None, alias="requiredPlan")
    feature_name: Optional[str] = Field(None, alias="featureName")


class AccessVerdict(WireModel):
    state: AccessState
    allowed: bool
    view: Optional[str] = None
    title: Optional[str] = None
    reason: Optional[str] = None
    expiration_date: Optional[datetime] = Field(None, alias="expirationDate")
    call_to_action: Optional[str] = Field(None, alias="callToAction")
    # Blocked screens are left only by navigating to an allowlisted view
    dismissible: bool = False


class ModuleAccessResult(WireModel):
    allowed: bool
    reason: Optional[str] = None
    requires_upgrade: bool = Field(False, alias="requiresUpgrade")
    required_plan: Optional[PlanTier] = Field(None, alias="requiredPlan")


class ProrationQuote(WireModel):
    current_price: float = Field(alias="currentPrice")
    new_price: float = Field(alias="newPrice")
    total_days: int = Field(alias="totalDays")
    daily_rate: float = Field(alias="dailyRate")
    days_remaining: int = Field(alias="daysRemaining")
    unused_credit: float = Field(alias="unusedCredit")
    amount_due: float = Field(alias="amountDue")
    new_period_days: int = Field(alias="newPeriodDays")
    new_period_end: datetime = Field(alias="newPeriodEnd")
    is_upgrade: bool = Field(alias="isUpgrade")
