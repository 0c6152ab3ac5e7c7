"""
Purchase service adapter.

Thin wrapper over the purchase SDK. Every call absorbs SDK and transport
errors into a definite return value plus a logged diagnostic, so callers
always arrive at a definite subscription state.
"""
import httpx
import structlog
from typing import Optional

from horse_manager.identity.binder import IdentityBinder
from horse_manager.purchases.models import CustomerInfo, Offerings, Package, PurchaseResult
from horse_manager.purchases.sdk import CustomerInfoListener, PurchasesError, PurchasesSDK


logger = structlog.get_logger()


# Errors the SDK layer may surface
SDK_ERRORS = (PurchasesError, httpx.HTTPError)


class PurchaseServiceAdapter:
    """
    Lifecycle-guarded access to the purchase SDK.

    `configure` succeeds at most once per process. A failed configuration is
    terminal: the adapter then answers every call with None/False and the
    session degrades to backend-only entitlement.
    """

    def __init__(self, sdk: Optional[PurchasesSDK], binder: IdentityBinder):
        """
        Initialize purchase service adapter.

        Args:
            sdk: Purchase SDK capability, None when unavailable
            binder: Identity binder holding the live external identity
        """
        self.sdk = sdk
        self.binder = binder
        self._configured = False
        self._configure_failed = False

    @property
    def is_configured(self) -> bool:
        return self._configured

    @property
    def configure_failed(self) -> bool:
        return self._configure_failed

    @property
    def session_app_user_id(self) -> Optional[str]:
        """External id the SDK session currently acts as."""
        if not self._configured:
            return None
        return self.sdk.app_user_id

    async def configure(self, platform_key: Optional[str], app_user_id: Optional[str] = None) -> bool:
        """
        Configure the purchase SDK once per process.

        Args:
            platform_key: Purchase service API key for this platform
            app_user_id: Customer id to resume, anonymous when omitted

        Returns:
            True if configured (now or earlier)
        """
        if self._configured:
            return True

        if self._configure_failed:
            return False

        if self.sdk is None or not platform_key:
            self._configure_failed = True
            logger.warning(
                "purchase_service_unavailable",
                sdk_available=self.sdk is not None,
                key_configured=bool(platform_key)
            )
            return False

        try:
            await self.sdk.configure(platform_key, app_user_id=app_user_id)
        except SDK_ERRORS as e:
            self._configure_failed = True
            logger.error("purchase_service_configure_failed", error=str(e))
            return False

        self._configured = True
        logger.info("purchase_service_configured", resumed_user_id=app_user_id)
        return True

    async def login(self, external_customer_id: str) -> Optional[CustomerInfo]:
        """
        Bind the SDK session to the given customer id.

        Returns:
            CustomerInfo after login, or None on failure
        """
        if not self._configured:
            return None

        try:
            result = await self.sdk.log_in(external_customer_id)
        except SDK_ERRORS as e:
            logger.error("purchase_service_login_failed", user_id=external_customer_id, error=str(e))
            return None

        logger.info(
            "purchase_service_logged_in",
            user_id=external_customer_id,
            created=result.created
        )
        return result.customer_info

    async def logout(self) -> None:
        """Clear the SDK session back to an anonymous customer."""
        if not self._configured:
            return

        if self.sdk.is_anonymous:
            return

        try:
            await self.sdk.log_out()
            logger.info("purchase_service_logged_out")
        except SDK_ERRORS as e:
            logger.error("purchase_service_logout_failed", error=str(e))

    async def fetch_customer_info(self) -> Optional[CustomerInfo]:
        """
        Fetch customer info for the current SDK session.

        Returns:
            CustomerInfo, or None if not configured or on error
        """
        if not self._configured:
            return None

        try:
            return await self.sdk.get_customer_info()
        except SDK_ERRORS as e:
            logger.error("purchase_service_fetch_failed", error=str(e))
            return None

    async def fetch_offerings(self) -> Optional[Offerings]:
        """Fetch offerings, None if not configured or on error."""
        if not self._configured:
            return None

        try:
            return await self.sdk.get_offerings()
        except SDK_ERRORS as e:
            logger.error("purchase_service_offerings_failed", error=str(e))
            return None

    async def ensure_session_identity(self) -> bool:
        """
        Make sure the SDK session acts as the currently bound identity.

        Re-logs in when the session drifted (stale or anonymous session).

        Returns:
            True if the session matches the bound identity afterwards
        """
        expected = self.binder.external_id
        if not self._configured or expected is None:
            return False

        current = self.sdk.app_user_id
        if current == expected:
            return True

        logger.warning(
            "purchase_service_identity_mismatch",
            current_user_id=current,
            expected_user_id=expected
        )

        if await self.login(expected) is None:
            return False

        return self.sdk.app_user_id == expected

    async def purchase(self, package: Package) -> PurchaseResult:
        """
        Purchase a package for the bound identity.

        The session identity is verified first so a stale or anonymous
        session can never be credited with the purchase.

        Returns:
            PurchaseResult with customer info, cancellation or error message
        """
        if not self._configured:
            return PurchaseResult(error_message="Subscription service unavailable")

        if not await self.ensure_session_identity():
            return PurchaseResult(
                error_message="Could not verify your account with the store. Please try again."
            )

        try:
            customer_info = await self.sdk.purchase_package(package)
        except PurchasesError as e:
            if e.user_cancelled:
                logger.info("purchase_cancelled", package=package.identifier)
                return PurchaseResult(user_cancelled=True)

            logger.error(
                "purchase_failed",
                package=package.identifier,
                code=e.code,
                error=e.message
            )
            return PurchaseResult(error_message=e.message or "The purchase could not be completed")
        except httpx.HTTPError as e:
            logger.error("purchase_failed", package=package.identifier, error=str(e))
            return PurchaseResult(error_message="The purchase could not be completed")

        logger.info(
            "purchase_completed",
            package=package.identifier,
            product_id=package.product_identifier,
            user_id=self.binder.external_id
        )
        return PurchaseResult(customer_info=customer_info)

    async def restore(self) -> Optional[CustomerInfo]:
        """
        Restore store purchases for the bound identity.

        Returns:
            Fresh CustomerInfo, or None on failure
        """
        if not self._configured:
            return None

        if not await self.ensure_session_identity():
            return None

        try:
            customer_info = await self.sdk.restore_purchases()
        except SDK_ERRORS as e:
            logger.error("restore_failed", error=str(e))
            return None

        logger.info("restore_completed", user_id=self.binder.external_id)
        return customer_info

    def subscribe_to_updates(self, callback: CustomerInfoListener) -> bool:
        """
        Register a listener for asynchronous customer info changes.

        Returns:
            True if registered
        """
        if not self._configured:
            return False

        self.sdk.add_customer_info_update_listener(callback)
        return True

    async def close(self) -> None:
        if self.sdk is not None:
            await self.sdk.close()
