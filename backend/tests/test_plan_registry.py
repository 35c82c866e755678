"""
Plan registry tests.
Catalog values, tier ordering, per-cycle pricing (quarterly included),
minimum-plan lookups and the entitlement matrix.
"""
import pytest

from models import BillingCycle, Feature, PlanTier, Resource, SubscriptionStatus
from services.plan_registry import (
    plan_registry,
    PLAN_ORDER,
    TRIAL_DURATION_DAYS,
    TRIAL_PLAN,
    UNLIMITED_THRESHOLD,
)
from fakes import make_subscription


class TestPlanCatalog:
    """Static catalog lookups."""

    def test_plans_in_fixed_order(self):
        assert [p.id for p in plan_registry.get_all_plans()] == [
            PlanTier.BASICO, PlanTier.INTERMEDIARIO, PlanTier.AVANCADO, PlanTier.ILIMITADO,
        ]

    def test_get_plan_accepts_enum_and_string(self):
        assert plan_registry.get_plan("avancado") is plan_registry.get_plan(PlanTier.AVANCADO)

    def test_basico_limits(self):
        limits = plan_registry.get_plan(PlanTier.BASICO).limits
        assert limits.max_users == 1
        assert limits.max_sales_orders == 100
        assert limits.max_invoices == 0
        assert limits.max_transactions == 0
        assert limits.max_storage_mb == 512
        assert limits.max_file_upload_mb == 5

    def test_ilimitado_counts_are_unlimited(self):
        for resource in Resource:
            if resource == Resource.STORAGE:
                continue
            assert plan_registry.is_unlimited(plan_registry.get_limit(PlanTier.ILIMITADO, resource))
        assert not plan_registry.is_unlimited(plan_registry.get_limit(PlanTier.ILIMITADO, Resource.STORAGE))

    def test_unlimited_threshold(self):
        assert plan_registry.is_unlimited(UNLIMITED_THRESHOLD)
        assert not plan_registry.is_unlimited(UNLIMITED_THRESHOLD - 1)

    def test_feature_flags(self):
        assert plan_registry.is_feature_available(PlanTier.BASICO, Feature.ADVANCED_REPORTS)
        assert not plan_registry.is_feature_available(PlanTier.BASICO, Feature.FISCAL_MODULE)
        assert plan_registry.is_feature_available(PlanTier.INTERMEDIARIO, Feature.AUDIT_LOG)
        assert not plan_registry.is_feature_available(PlanTier.AVANCADO, Feature.WHITE_LABEL)
        assert all(plan_registry.is_feature_available(PlanTier.ILIMITADO, f) for f in Feature)

    def test_only_intermediario_is_popular(self):
        popular = [p.id for p in plan_registry.get_all_plans() if p.popular]
        assert popular == [PlanTier.INTERMEDIARIO]

    def test_trial_constants(self):
        assert TRIAL_DURATION_DAYS == 14
        assert TRIAL_PLAN == PlanTier.ILIMITADO


class TestTierOrdering:
    """Upgrade/downgrade is decided by tier index, never price."""

    def test_is_upgrade(self):
        assert plan_registry.is_upgrade(PlanTier.BASICO, PlanTier.INTERMEDIARIO)
        assert plan_registry.is_upgrade("intermediario", "ilimitado")
        assert not plan_registry.is_upgrade(PlanTier.AVANCADO, PlanTier.AVANCADO)
        assert not plan_registry.is_upgrade(PlanTier.ILIMITADO, PlanTier.BASICO)

    def test_is_downgrade(self):
        assert plan_registry.is_downgrade(PlanTier.AVANCADO, PlanTier.BASICO)
        assert not plan_registry.is_downgrade(PlanTier.BASICO, PlanTier.BASICO)

    def test_effective_tier_pins_trial_to_ilimitado(self):
        trial = make_subscription(PlanTier.BASICO, SubscriptionStatus.TRIAL)
        active = make_subscription(PlanTier.BASICO, SubscriptionStatus.ACTIVE)
        assert plan_registry.effective_tier(trial) == PlanTier.ILIMITADO
        assert plan_registry.effective_tier(active) == PlanTier.BASICO


class TestCyclePricing:
    """Per-month-equivalent prices and cycle totals for every cycle."""

    def test_price_for_each_cycle(self):
        assert plan_registry.price_for(PlanTier.INTERMEDIARIO, BillingCycle.MONTHLY) == 69.90
        assert plan_registry.price_for(PlanTier.INTERMEDIARIO, BillingCycle.QUARTERLY) == 66.41
        assert plan_registry.price_for(PlanTier.INTERMEDIARIO, "semiannual") == 62.91
        assert plan_registry.price_for(PlanTier.INTERMEDIARIO, "yearly") == 55.92

    def test_cycle_days(self):
        assert plan_registry.cycle_days(BillingCycle.MONTHLY) == 30
        assert plan_registry.cycle_days(BillingCycle.QUARTERLY) == 90
        assert plan_registry.cycle_days(BillingCycle.SEMIANNUAL) == 180
        assert plan_registry.cycle_days(BillingCycle.YEARLY) == 365

    def test_quarterly_total_and_savings(self):
        assert plan_registry.cycle_total(PlanTier.BASICO, BillingCycle.QUARTERLY) == pytest.approx(142.23)
        # 3 x 49.90 = 149.70
        assert plan_registry.calculate_savings(PlanTier.BASICO, BillingCycle.QUARTERLY) == pytest.approx(7.47)

    def test_yearly_savings(self):
        # 12 x 49.90 = 598.80, 12 x 39.92 = 479.04
        assert plan_registry.calculate_savings(PlanTier.BASICO, BillingCycle.YEARLY) == pytest.approx(119.76)

    def test_monthly_has_no_savings(self):
        for plan in plan_registry.get_all_plans():
            assert plan_registry.calculate_savings(plan, BillingCycle.MONTHLY) == 0

    def test_cycle_labels(self):
        assert plan_registry.billing_cycle_label(BillingCycle.QUARTERLY) == "Trimestral"
        assert plan_registry.billing_cycle_label("yearly") == "Anual"

    def test_format_price(self):
        assert plan_registry.format_price(49.9) == "R$ 49,90"
        assert plan_registry.format_price(1234.56) == "R$ 1.234,56"
        assert plan_registry.format_price(-5) == "-R$ 5,00"


class TestMinimumPlans:
    """Lowest tier satisfying a feature or a limit."""

    def test_minimum_plan_for_feature(self):
        assert plan_registry.minimum_plan_for_feature(Feature.BULK_IMPORT) == PlanTier.BASICO
        assert plan_registry.minimum_plan_for_feature(Feature.FISCAL_MODULE) == PlanTier.INTERMEDIARIO
        assert plan_registry.minimum_plan_for_feature(Feature.API_ACCESS) == PlanTier.AVANCADO
        assert plan_registry.minimum_plan_for_feature(Feature.WHITE_LABEL) == PlanTier.ILIMITADO

    def test_minimum_plan_for_limit(self):
        assert plan_registry.minimum_plan_for_limit(Resource.SALES_ORDERS, 100) == PlanTier.BASICO
        assert plan_registry.minimum_plan_for_limit(Resource.SALES_ORDERS, 101) == PlanTier.INTERMEDIARIO
        assert plan_registry.minimum_plan_for_limit(Resource.USERS, 11) == PlanTier.ILIMITADO

    def test_minimum_plan_for_gated_limit_requires_flag(self):
        assert plan_registry.minimum_plan_for_limit(Resource.INVOICES, 1) == PlanTier.INTERMEDIARIO

    def test_storage_beyond_every_plan(self):
        assert plan_registry.minimum_plan_for_limit(Resource.STORAGE, 200000) is None


class TestEntitlementMatrix:
    """Documentation matrix covers every feature, resource and plan."""

    def test_matrix_shape(self):
        matrix = plan_registry.get_entitlement_matrix()
        assert set(matrix["features"]) == {f.value for f in Feature}
        assert set(matrix["limits"]) == {r.value for r in Resource}
        assert list(matrix["plans"]) == [t.value for t in PLAN_ORDER]
        assert matrix["features"]["fiscalModule"]["minimum_plan"] == "intermediario"
        assert matrix["limits"]["salesOrders"]["basico"] == 100
        assert matrix["plans"]["avancado"]["formatted_price"] == "R$ 109,90"
        assert matrix["trial"] == {"plan": "ilimitado", "duration_days": 14}
