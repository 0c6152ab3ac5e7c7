"""
Tests for the entitlement reconciler.

Tests entitlement selection, plan classification and source precedence.
"""
from horse_manager.subscription.models import (
    BackendStatus,
    PlanType,
    PremiumSource,
    SubscriptionState
)
from horse_manager.subscription.reconciler import (
    EntitlementReconciler,
    build_product_catalog,
    classify_plan,
    select_best_entitlement
)
from tests.fakes import make_customer_info, make_entitlement, utc


CATALOG = {"mhm_monthly": PlanType.MONTHLY, "mhm_annual": PlanType.ANNUAL}


# ========== Entitlement Selection ==========

def test_select_no_entitlements():
    assert select_best_entitlement({}) is None


def test_select_single_entitlement():
    only = make_entitlement("pro", expiration_date=utc(2026, 1, 1))

    assert select_best_entitlement({"pro": only}) is only


def test_select_latest_expiration():
    """Overlapping entitlements resolve to the longest-lived one."""
    a = make_entitlement("a", "mhm_monthly", utc(2025, 1, 1), will_renew=True)
    b = make_entitlement("b", "mhm_annual", utc(2026, 6, 1), will_renew=False)
    c = make_entitlement("c", "mhm_monthly", utc(2025, 9, 1))

    for order in ([a, b, c], [c, b, a], [b, a, c]):
        selected = select_best_entitlement({e.identifier: e for e in order})
        assert selected is b


def test_select_dated_beats_undated():
    undated = make_entitlement("lifetime", "legacy_lifetime", None)
    dated = make_entitlement("pro", "mhm_monthly", utc(2025, 1, 1))

    assert select_best_entitlement({"lifetime": undated, "pro": dated}) is dated
    assert select_best_entitlement({"pro": dated, "lifetime": undated}) is dated


def test_select_undated_first_encountered_and_stable():
    first = make_entitlement("first", "mhm_monthly", None)
    second = make_entitlement("second", "mhm_annual", None)
    entitlements = {"first": first, "second": second}

    results = [select_best_entitlement(entitlements) for _ in range(5)]

    assert all(result is first for result in results)


def test_select_equal_expiration_keeps_first():
    first = make_entitlement("first", "mhm_monthly", utc(2026, 1, 1))
    second = make_entitlement("second", "mhm_annual", utc(2026, 1, 1))

    assert select_best_entitlement({"first": first, "second": second}) is first


# ========== Plan Classification ==========

def test_classify_known_products():
    assert classify_plan("mhm_monthly", CATALOG) == PlanType.MONTHLY
    assert classify_plan("mhm_annual", CATALOG) == PlanType.ANNUAL


def test_classify_requires_exact_match():
    assert classify_plan("mhm_monthly_v2", CATALOG) == PlanType.NONE
    assert classify_plan("legacy.mhm_annual", CATALOG) == PlanType.NONE
    assert classify_plan("unknown_sku", CATALOG) == PlanType.NONE
    assert classify_plan(None, CATALOG) == PlanType.NONE


def test_build_product_catalog():
    catalog = build_product_catalog("m", "a")

    assert catalog == {"m": PlanType.MONTHLY, "a": PlanType.ANNUAL}


# ========== Reconciliation ==========

def test_reconcile_no_signals_is_free():
    reconciler = EntitlementReconciler(CATALOG, [])

    state = reconciler.reconcile(None, None)

    assert state == SubscriptionState()
    assert state.is_premium is False
    assert state.premium_source == PremiumSource.NONE


def test_reconcile_purchase_service_scenario():
    reconciler = EntitlementReconciler(CATALOG, [])
    info = make_customer_info(
        "user_1",
        make_entitlement("A", "mhm_monthly", utc(2025, 1, 1), will_renew=True),
        make_entitlement("B", "mhm_annual", utc(2026, 6, 1), will_renew=False)
    )

    state = reconciler.reconcile(info, BackendStatus())

    assert state.is_premium is True
    assert state.premium_source == PremiumSource.PURCHASE_SERVICE
    assert state.active_product_id == "mhm_annual"
    assert state.plan_type == PlanType.ANNUAL
    assert state.renewal_date == utc(2026, 6, 1)
    assert state.will_renew is False


def test_reconcile_monthly_plan():
    reconciler = EntitlementReconciler(CATALOG, [])
    info = make_customer_info("user_1", make_entitlement("pro", "mhm_monthly", utc(2026, 12, 1)))

    state = reconciler.reconcile(info, None)

    assert state.plan_type == PlanType.MONTHLY
    assert state.will_renew is True


def test_reconcile_unknown_product_still_premium():
    reconciler = EntitlementReconciler(CATALOG, [])
    info = make_customer_info("user_1", make_entitlement("pro", "unknown_sku", utc(2026, 12, 1)))

    state = reconciler.reconcile(info, None)

    assert state.is_premium is True
    assert state.plan_type == PlanType.NONE
    assert state.active_product_id == "unknown_sku"


def test_reconcile_inactive_entitlements_ignored():
    reconciler = EntitlementReconciler(CATALOG, [])
    info = make_customer_info(
        "user_1",
        make_entitlement("pro", "mhm_monthly", utc(2024, 1, 1), is_active=False)
    )

    state = reconciler.reconcile(info, None)

    assert state.is_premium is False


def test_reconcile_admin_overrides_everything():
    reconciler = EntitlementReconciler(CATALOG, [])
    info = make_customer_info("user_1", make_entitlement("pro", "mhm_annual", utc(2026, 6, 1)))
    backend = BackendStatus(is_admin=True, is_premium_manual=True, expires_at=utc(2030, 1, 1))

    state = reconciler.reconcile(info, backend)

    assert state.is_admin is True
    assert state.is_premium is True
    assert state.renewal_date is None
    assert state.premium_source == PremiumSource.ADMIN


def test_reconcile_purchase_service_beats_backend_manual():
    reconciler = EntitlementReconciler(CATALOG, [])
    info = make_customer_info("user_1", make_entitlement("pro", "mhm_monthly", utc(2026, 2, 1)))
    backend = BackendStatus(is_premium_manual=True, expires_at=utc(2030, 1, 1))

    state = reconciler.reconcile(info, backend)

    assert state.premium_source == PremiumSource.PURCHASE_SERVICE
    assert state.renewal_date == utc(2026, 2, 1)


def test_reconcile_backend_manual():
    reconciler = EntitlementReconciler(CATALOG, [])
    backend = BackendStatus(is_premium_manual=True, expires_at=utc(2027, 3, 1))

    state = reconciler.reconcile(make_customer_info("user_1"), backend)

    assert state.is_premium is True
    assert state.premium_source == PremiumSource.BACKEND_MANUAL
    assert state.renewal_date == utc(2027, 3, 1)
    assert state.plan_type == PlanType.NONE
    assert state.is_admin is False


def test_reconcile_downgrade_leaves_nothing_behind():
    """A cancelled subscription must not leave premium from an earlier pass."""
    reconciler = EntitlementReconciler(CATALOG, [])
    premium_info = make_customer_info("user_1", make_entitlement("pro", "mhm_monthly", utc(2026, 2, 1)))

    assert reconciler.reconcile(premium_info, None).is_premium is True

    state = reconciler.reconcile(make_customer_info("user_1"), BackendStatus())

    assert state == SubscriptionState()


def test_reconcile_is_idempotent():
    reconciler = EntitlementReconciler(CATALOG, [])
    info = make_customer_info(
        "user_1",
        make_entitlement("A", "mhm_monthly", utc(2025, 1, 1)),
        make_entitlement("B", "mhm_annual", utc(2026, 6, 1), will_renew=False)
    )
    backend = BackendStatus(is_premium_manual=True)

    first = reconciler.reconcile(info, backend)
    second = reconciler.reconcile(info, backend)

    assert first == second
    assert first.model_dump() == second.model_dump()


def test_reconcile_configured_entitlement_ids():
    reconciler = EntitlementReconciler(CATALOG, ["My Horse Manager Pro"])
    other = make_customer_info("user_1", make_entitlement("beta_access", "mhm_monthly", utc(2026, 2, 1)))
    pro = make_customer_info("user_1", make_entitlement("My Horse Manager Pro", "mhm_annual", utc(2026, 2, 1)))

    assert reconciler.reconcile(other, None).is_premium is False
    assert reconciler.reconcile(pro, None).plan_type == PlanType.ANNUAL
