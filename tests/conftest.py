"""
Shared fixtures for subscription tests.
"""
import pytest
from unittest.mock import AsyncMock, Mock

from horse_manager.identity.binder import IdentityBinder
from horse_manager.purchases.adapter import PurchaseServiceAdapter
from horse_manager.subscription.manager import SubscriptionManager
from horse_manager.subscription.models import BackendStatus, PlanType
from horse_manager.subscription.reconciler import EntitlementReconciler
from tests.fakes import FakePurchasesSDK


# ========== Fixtures ==========

@pytest.fixture
def fake_sdk():
    """Fake purchase SDK."""
    return FakePurchasesSDK()


@pytest.fixture
def binder():
    """Identity binder without persistence."""
    return IdentityBinder()


@pytest.fixture
def adapter(fake_sdk, binder):
    """Adapter over the fake SDK."""
    return PurchaseServiceAdapter(fake_sdk, binder)


@pytest.fixture
def mock_backend_fetcher():
    """Backend fetcher reporting no backend premium."""
    fetcher = Mock()
    fetcher.fetch = AsyncMock(return_value=BackendStatus())
    return fetcher


@pytest.fixture
def reconciler():
    """Reconciler with the production product identifiers."""
    return EntitlementReconciler(
        product_catalog={"mhm_monthly": PlanType.MONTHLY, "mhm_annual": PlanType.ANNUAL},
        entitlement_ids=[]
    )


@pytest.fixture
def manager(adapter, binder, mock_backend_fetcher, reconciler):
    """Subscription manager wired to fakes."""
    return SubscriptionManager(
        adapter=adapter,
        binder=binder,
        backend_fetcher=mock_backend_fetcher,
        reconciler=reconciler,
        api_key="appl_test_key"
    )
