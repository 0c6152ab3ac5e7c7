"""
Tests for the purchase service adapter.

Tests configuration lifecycle, error absorption and identity guarding.
"""
import httpx
import pytest

from horse_manager.identity.binder import IdentityBinder
from horse_manager.purchases.adapter import PurchaseServiceAdapter
from horse_manager.purchases.models import Package
from horse_manager.purchases.revenuecat import RevenueCatClient
from horse_manager.purchases.sdk import PurchasesError
from tests.fakes import make_customer_info, make_entitlement, utc


MONTHLY = Package(identifier="$rc_monthly", product_identifier="mhm_monthly", offering_identifier="default")


# ========== Configuration ==========

@pytest.mark.asyncio
async def test_configure_once(adapter, fake_sdk):
    assert await adapter.configure("appl_key") is True
    assert await adapter.configure("appl_key") is True

    assert fake_sdk.call_names().count("configure") == 1
    assert adapter.is_configured is True


@pytest.mark.asyncio
async def test_configure_resumes_identity(adapter, fake_sdk):
    await adapter.configure("appl_key", app_user_id="user_123")

    assert fake_sdk.calls[0] == ("configure", "user_123")
    assert adapter.session_app_user_id == "user_123"


@pytest.mark.asyncio
async def test_configure_without_key_fails(adapter, fake_sdk):
    assert await adapter.configure(None) is False
    assert await adapter.configure("appl_key") is False

    assert fake_sdk.calls == []
    assert adapter.configure_failed is True


@pytest.mark.asyncio
async def test_configure_without_sdk_fails():
    adapter = PurchaseServiceAdapter(None, IdentityBinder())

    assert await adapter.configure("appl_key") is False
    assert await adapter.fetch_customer_info() is None
    assert await adapter.restore() is None
    assert adapter.subscribe_to_updates(lambda info: None) is False


@pytest.mark.asyncio
async def test_configure_error_is_terminal(adapter, fake_sdk):
    fake_sdk.configure_error = PurchasesError("INVALID_CREDENTIALS", "bad key")

    assert await adapter.configure("appl_key") is False

    fake_sdk.configure_error = None
    assert await adapter.configure("appl_key") is False
    assert fake_sdk.call_names().count("configure") == 1


# ========== Unconfigured Behaviour ==========

@pytest.mark.asyncio
async def test_calls_before_configure_return_defaults(adapter, fake_sdk):
    assert await adapter.login("user_123") is None
    assert await adapter.fetch_customer_info() is None
    assert await adapter.fetch_offerings() is None
    await adapter.logout()

    result = await adapter.purchase(MONTHLY)

    assert result.error_message is not None
    assert fake_sdk.calls == []


# ========== Session ==========

@pytest.mark.asyncio
async def test_login_and_fetch(adapter, fake_sdk):
    fake_sdk.customers["user_123"] = make_customer_info(
        "user_123",
        make_entitlement("pro", "mhm_annual", utc(2027, 1, 1))
    )
    await adapter.configure("appl_key")

    info = await adapter.login("user_123")

    assert info.original_app_user_id == "user_123"
    assert "pro" in info.active_entitlements
    assert adapter.session_app_user_id == "user_123"


@pytest.mark.asyncio
async def test_login_error_swallowed(adapter, fake_sdk):
    await adapter.configure("appl_key")
    fake_sdk.login_error = PurchasesError("NETWORK_ERROR", "offline")

    assert await adapter.login("user_123") is None


@pytest.mark.asyncio
async def test_fetch_errors_swallowed(adapter, fake_sdk):
    await adapter.configure("appl_key")

    fake_sdk.fetch_error = PurchasesError("NETWORK_ERROR", "offline")
    assert await adapter.fetch_customer_info() is None

    fake_sdk.fetch_error = httpx.ConnectError("refused")
    assert await adapter.fetch_customer_info() is None


@pytest.mark.asyncio
async def test_logout_skipped_for_anonymous_session(adapter, fake_sdk):
    await adapter.configure("appl_key")

    await adapter.logout()

    assert "log_out" not in fake_sdk.call_names()


@pytest.mark.asyncio
async def test_logout_clears_session(adapter, fake_sdk):
    await adapter.configure("appl_key")
    await adapter.login("user_123")

    await adapter.logout()

    assert fake_sdk.is_anonymous is True


# ========== Purchases ==========

@pytest.mark.asyncio
async def test_purchase_relogs_mismatched_session(adapter, fake_sdk, binder):
    """A stale anonymous session is re-logged in before purchasing."""
    await adapter.configure("appl_key")
    binder.bind("user_123")

    result = await adapter.purchase(MONTHLY)

    names = fake_sdk.call_names()
    assert names.index("log_in") < names.index("purchase_package")
    assert fake_sdk.calls[names.index("purchase_package")] == ("purchase_package", "user_123")
    assert result.succeeded is True
    assert "pro" in result.customer_info.active_entitlements


@pytest.mark.asyncio
async def test_purchase_aborts_when_relogin_fails(adapter, fake_sdk, binder):
    await adapter.configure("appl_key")
    binder.bind("user_123")
    fake_sdk.login_error = PurchasesError("NETWORK_ERROR", "offline")

    result = await adapter.purchase(MONTHLY)

    assert result.succeeded is False
    assert result.error_message is not None
    assert "purchase_package" not in fake_sdk.call_names()


@pytest.mark.asyncio
async def test_purchase_without_bound_identity_refused(adapter, fake_sdk):
    await adapter.configure("appl_key")

    result = await adapter.purchase(MONTHLY)

    assert result.succeeded is False
    assert "purchase_package" not in fake_sdk.call_names()


@pytest.mark.asyncio
async def test_purchase_cancelled(adapter, fake_sdk, binder):
    await adapter.configure("appl_key")
    binder.bind("user_123")
    await adapter.login("user_123")
    fake_sdk.purchase_error = PurchasesError("PURCHASE_CANCELLED", "cancelled", user_cancelled=True)

    result = await adapter.purchase(MONTHLY)

    assert result.user_cancelled is True
    assert result.error_message is None
    assert result.succeeded is False


@pytest.mark.asyncio
async def test_purchase_failure_has_message(adapter, fake_sdk, binder):
    await adapter.configure("appl_key")
    binder.bind("user_123")
    await adapter.login("user_123")
    fake_sdk.purchase_error = PurchasesError("STORE_PROBLEM", "The store is unavailable")

    result = await adapter.purchase(MONTHLY)

    assert result.user_cancelled is False
    assert result.error_message == "The store is unavailable"


@pytest.mark.asyncio
async def test_restore(adapter, fake_sdk, binder):
    fake_sdk.customers["user_123"] = make_customer_info(
        "user_123",
        make_entitlement("pro", "mhm_monthly", utc(2027, 1, 1))
    )
    await adapter.configure("appl_key")
    binder.bind("user_123")

    info = await adapter.restore()

    assert info.original_app_user_id == "user_123"
    assert fake_sdk.calls[-1] == ("restore_purchases", "user_123")


@pytest.mark.asyncio
async def test_restore_error_swallowed(adapter, fake_sdk, binder):
    await adapter.configure("appl_key")
    binder.bind("user_123")
    fake_sdk.restore_error = PurchasesError("STORE_PROBLEM", "no store")

    assert await adapter.restore() is None


@pytest.mark.asyncio
async def test_subscribe_to_updates(adapter, fake_sdk):
    async def listener(info):
        pass

    assert adapter.subscribe_to_updates(listener) is False

    await adapter.configure("appl_key")

    assert adapter.subscribe_to_updates(listener) is True
    assert fake_sdk.listeners == [listener]


# ========== Malformed Responses ==========

@pytest.mark.asyncio
async def test_malformed_service_responses_swallowed(binder):
    """Undecodable purchase service documents never escape the adapter."""
    bodies = {
        "/v1/subscribers/user_1": b'{"subscriber": {"entitlements": {"pro": {"expires_date": "not-a-date"}}}}',
        "/v1/subscribers/identify": b"<html>gateway</html>",
        "/v1/subscribers/user_1/offerings": b"<html>gateway</html>",
    }

    def handler(request):
        return httpx.Response(200, content=bodies[request.url.path])

    client = RevenueCatClient(api_url="https://api.revenuecat.test/v1", transport=httpx.MockTransport(handler))
    adapter = PurchaseServiceAdapter(client, binder)
    await adapter.configure("appl_key", app_user_id="user_1")

    assert await adapter.fetch_customer_info() is None
    assert await adapter.fetch_offerings() is None
    assert await adapter.login("user_2") is None
