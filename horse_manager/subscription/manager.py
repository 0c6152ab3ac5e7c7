"""
Subscription manager.

Owns the single process-wide SubscriptionState and drives it from explicit
events: app start, login/logout/switch, refresh requests, purchase-service
pushes, purchases and restores. Only the manager writes the state.
"""
import asyncio
import structlog
from pathlib import Path
from typing import Optional

from horse_manager.identity.binder import IdentityBinder
from horse_manager.identity.cache import IdentityCache
from horse_manager.identity.models import LocalUser
from horse_manager.purchases.adapter import PurchaseServiceAdapter
from horse_manager.purchases.models import CustomerInfo, Offering
from horse_manager.purchases.revenuecat import RevenueCatClient
from horse_manager.purchases.sdk import PurchasesSDK
from horse_manager.subscription.backend_status import BackendStatusFetcher
from horse_manager.subscription.models import (
    BackendStatus,
    PremiumSource,
    PurchaseOutcome,
    SessionPhase,
    SubscriptionState,
    SubscriptionStatus
)
from horse_manager.subscription.reconciler import EntitlementReconciler
from horse_manager.config import settings


logger = structlog.get_logger()


LOGIN_REQUIRED_PURCHASE = "Sign in to activate Premium"
LOGIN_REQUIRED_RESTORE = "Sign in to restore your purchases"
SERVICE_UNAVAILABLE = "Subscription service unavailable"
RESTORE_FAILED = "Your purchases could not be restored. Please try again."


class SubscriptionManager:
    """
    Reconciliation driver for one app session.

    Lifecycle: UNINITIALIZED -> CONFIGURING -> READY | CONFIG_FAILED.
    CONFIG_FAILED is terminal and leaves the backend as the only signal.

    Identity transitions are serialized. Refreshes may run concurrently:
    each one recomputes fully and the last to finish wins. A pass is
    discarded when the bound identity changed while it was in flight.
    """

    def __init__(
        self,
        adapter: PurchaseServiceAdapter,
        binder: IdentityBinder,
        backend_fetcher: BackendStatusFetcher,
        reconciler: EntitlementReconciler,
        api_key: Optional[str] = None
    ):
        """
        Initialize subscription manager.

        Args:
            adapter: Purchase service adapter
            binder: Identity binder shared with the adapter
            backend_fetcher: Backend status fetcher
            reconciler: Entitlement reconciler
            api_key: Purchase service key for this platform
        """
        self.adapter = adapter
        self.binder = binder
        self.backend_fetcher = backend_fetcher
        self.reconciler = reconciler
        self.api_key = api_key

        self._state = SubscriptionState()
        self._phase = SessionPhase.UNINITIALIZED
        self._auth_token: Optional[str] = None
        self._offering: Optional[Offering] = None
        self._initialized = False
        self._pending_refreshes = 0

        # Last-known-good inputs, retained across transient failures
        self._last_customer_info: Optional[CustomerInfo] = None
        self._last_backend_status: Optional[BackendStatus] = None

        self._transition_lock = asyncio.Lock()

    # ========== Read Interface ==========

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def loading(self) -> bool:
        return not self._initialized or self._pending_refreshes > 0

    @property
    def status(self) -> SubscriptionStatus:
        if self.loading:
            return SubscriptionStatus.LOADING
        return SubscriptionStatus.PREMIUM if self._state.is_premium else SubscriptionStatus.FREE

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_configured(self) -> bool:
        return self.adapter.is_configured

    @property
    def current_app_user_id(self) -> Optional[str]:
        return self.adapter.session_app_user_id

    @property
    def offering(self) -> Optional[Offering]:
        return self._offering

    # ========== Lifecycle ==========

    async def initialize(self, user: Optional[LocalUser], token: Optional[str]) -> SubscriptionState:
        """
        Run the ordered start-up sequence.

        configure -> identity login (or anonymous) -> offerings -> backend
        check. Each step depends on adapter state set by the previous one.
        """
        async with self._transition_lock:
            if self._phase == SessionPhase.UNINITIALIZED:
                await self._initialize_locked(user, token)
            return self._state

    async def resume(self) -> SubscriptionState:
        """
        Initialize at app start from the persisted identity.

        The restored user is resumed without a backend token until the app
        announces its session.
        """
        user_id = self.binder.last_known_user_id
        return await self.initialize(LocalUser(id=user_id) if user_id else None, None)

    @staticmethod
    def _user_id(user: Optional[LocalUser]) -> Optional[str]:
        if user is None:
            return None
        return IdentityBinder.normalize_user_id(user.id) or None

    async def _initialize_locked(self, user: Optional[LocalUser], token: Optional[str]) -> None:
        self._phase = SessionPhase.CONFIGURING
        logger.info("subscription_initializing", user_id=user.id if user else None)

        configured = await self.adapter.configure(
            self.api_key,
            app_user_id=self.binder.last_known_user_id
        )

        if configured:
            self._phase = SessionPhase.READY
            self.adapter.subscribe_to_updates(self._handle_customer_info_update)
        else:
            self._phase = SessionPhase.CONFIG_FAILED
            logger.warning("subscription_backend_only")

        self._auth_token = token
        await self._apply_identity(user)

        if configured:
            await self.refresh_offerings()

        await self._reconcile()
        self._initialized = True

        logger.info(
            "subscription_initialized",
            phase=self._phase.value,
            is_premium=self._state.is_premium,
            premium_source=self._state.premium_source.value
        )

    async def handle_auth_change(self, user: Optional[LocalUser], token: Optional[str]) -> SubscriptionState:
        """
        React to local login, logout or account switch.

        A switch always logs the previous identity out completely before the
        new one logs in.
        """
        async with self._transition_lock:
            if self._phase == SessionPhase.UNINITIALIZED:
                await self._initialize_locked(user, token)
                return self._state

            new_user_id = self._user_id(user)
            identity_changed = new_user_id != self.binder.local_user_id
            token_changed = token != self._auth_token
            self._auth_token = token

            if not identity_changed:
                if token_changed:
                    await self._reconcile()
                return self._state

            await self._apply_identity(user)

            if new_user_id is not None:
                await self._reconcile()

            return self._state

    async def _apply_identity(self, user: Optional[LocalUser]) -> None:
        new_user_id = self._user_id(user)
        previous_user_id = self.binder.last_known_user_id

        if previous_user_id is not None and previous_user_id != new_user_id:
            logger.info(
                "subscription_identity_logout",
                previous_user_id=previous_user_id,
                user_id=new_user_id
            )
            await self.adapter.logout()
            self.binder.unbind()
            self._reset_state()

        if new_user_id is not None and new_user_id != self.binder.local_user_id:
            external_id = self.binder.bind(new_user_id)
            await self.adapter.login(external_id)

    def _reset_state(self) -> None:
        self._state = SubscriptionState()
        self._last_customer_info = None
        self._last_backend_status = None

    async def close(self) -> None:
        await self.adapter.close()

    # ========== Reconciliation ==========

    async def refresh(self) -> SubscriptionState:
        """
        Explicit refresh request; recomputes from current signals.

        Runs the start-up sequence first when nothing initialized the session.
        """
        if self._phase == SessionPhase.UNINITIALIZED:
            return await self.resume()

        self._pending_refreshes += 1
        try:
            return await self._reconcile()
        finally:
            self._pending_refreshes -= 1

    async def refresh_offerings(self) -> Optional[Offering]:
        offerings = await self.adapter.fetch_offerings()
        if offerings is not None and offerings.current is not None:
            self._offering = offerings.current
            logger.info("offerings_loaded", offering=offerings.current.identifier)
        return self._offering

    async def _handle_customer_info_update(self, customer_info: CustomerInfo) -> None:
        logger.info("customer_info_pushed", app_user_id=customer_info.original_app_user_id)
        await self.refresh()

    async def _fetch_trusted_customer_info(self) -> Optional[CustomerInfo]:
        """
        Fetch customer info and only accept it for the bound identity.

        A session acting as a different customer is re-logged in before
        any result is trusted.
        """
        session_user_id = self.adapter.session_app_user_id
        customer_info = await self.adapter.fetch_customer_info()
        if customer_info is None:
            return None

        expected = self.binder.external_id
        if expected is None or session_user_id == expected == self.adapter.session_app_user_id:
            return customer_info

        logger.warning(
            "customer_info_identity_mismatch",
            session_user_id=session_user_id,
            expected_user_id=expected
        )

        if not await self.adapter.ensure_session_identity():
            return None

        return await self.adapter.fetch_customer_info()

    def _trusted_result(self, customer_info: Optional[CustomerInfo]) -> Optional[CustomerInfo]:
        """Accept customer info returned by a purchase or restore for the bound identity only."""
        expected = self.binder.external_id
        if customer_info is None or expected is None or self.adapter.session_app_user_id != expected:
            return None
        return customer_info

    async def _reconcile(self, customer_info: Optional[CustomerInfo] = None) -> SubscriptionState:
        """
        Recompute the state and commit it unless the identity changed meanwhile.

        Args:
            customer_info: Customer info already obtained for the bound
                identity; fetched when omitted
        """
        generation = self.binder.generation

        if customer_info is None:
            customer_info = await self._fetch_trusted_customer_info()
        backend_status = await self.backend_fetcher.fetch(self._auth_token)

        if generation != self.binder.generation:
            logger.info(
                "reconciliation_discarded",
                started_generation=generation,
                current_generation=self.binder.generation
            )
            return self._state

        if customer_info is not None:
            self._last_customer_info = customer_info
        if backend_status is not None:
            self._last_backend_status = backend_status

        self._state = self.reconciler.reconcile(self._last_customer_info, self._last_backend_status)

        logger.info(
            "subscription_reconciled",
            user_id=self.binder.local_user_id,
            is_premium=self._state.is_premium,
            premium_source=self._state.premium_source.value,
            plan_type=self._state.plan_type.value,
            purchase_signal_fresh=customer_info is not None,
            backend_signal_fresh=backend_status is not None
        )
        return self._state

    # ========== Purchases ==========

    async def purchase_package(self, package_identifier: str) -> PurchaseOutcome:
        """
        Purchase a package from the current offering.

        Returns:
            PurchaseOutcome; cancellations carry no message
        """
        if not self.binder.is_bound:
            logger.warning("purchase_blocked_without_user")
            return PurchaseOutcome(success=False, message=LOGIN_REQUIRED_PURCHASE, state=self._state)

        if not self.adapter.is_configured:
            return PurchaseOutcome(success=False, message=SERVICE_UNAVAILABLE, state=self._state)

        package = self._offering.get_package(package_identifier) if self._offering else None
        if package is None:
            logger.warning("purchase_unknown_package", package=package_identifier)
            return PurchaseOutcome(
                success=False,
                message=f"Unknown package: {package_identifier}",
                state=self._state
            )

        self._pending_refreshes += 1
        try:
            result = await self.adapter.purchase(package)

            if result.user_cancelled:
                return PurchaseOutcome(success=False, user_cancelled=True, state=self._state)

            if not result.succeeded:
                return PurchaseOutcome(success=False, message=result.error_message, state=self._state)

            state = await self._reconcile(self._trusted_result(result.customer_info))
            return PurchaseOutcome(success=True, state=state)
        finally:
            self._pending_refreshes -= 1

    async def restore_purchases(self) -> PurchaseOutcome:
        """
        Restore store purchases for the bound user.

        Returns:
            PurchaseOutcome, successful iff a store entitlement grants premium
            afterwards
        """
        if not self.binder.is_bound:
            logger.warning("restore_blocked_without_user")
            return PurchaseOutcome(success=False, message=LOGIN_REQUIRED_RESTORE, state=self._state)

        if not self.adapter.is_configured:
            return PurchaseOutcome(success=False, message=SERVICE_UNAVAILABLE, state=self._state)

        self._pending_refreshes += 1
        try:
            customer_info = await self.adapter.restore()
            if customer_info is None:
                return PurchaseOutcome(success=False, message=RESTORE_FAILED, state=self._state)

            state = await self._reconcile(self._trusted_result(customer_info))
            restored = state.premium_source == PremiumSource.PURCHASE_SERVICE
            return PurchaseOutcome(success=restored, state=state)
        finally:
            self._pending_refreshes -= 1


def create_subscription_manager(
    sdk: Optional[PurchasesSDK] = None,
    backend_fetcher: Optional[BackendStatusFetcher] = None
) -> SubscriptionManager:
    """
    Assemble a manager from settings.

    The purchase SDK is only provided when a key for this platform is set.
    """
    if sdk is None and settings.purchase_api_key:
        sdk = RevenueCatClient()

    binder = IdentityBinder(IdentityCache(Path(settings.data_dir) / settings.identity_cache_file))

    return SubscriptionManager(
        adapter=PurchaseServiceAdapter(sdk, binder),
        binder=binder,
        backend_fetcher=backend_fetcher or BackendStatusFetcher(),
        reconciler=EntitlementReconciler(),
        api_key=settings.purchase_api_key
    )


_subscription_manager: Optional[SubscriptionManager] = None


def get_subscription_manager() -> SubscriptionManager:
    """Dependency injection for the process-wide subscription manager."""
    global _subscription_manager
    if _subscription_manager is None:
        _subscription_manager = create_subscription_manager()
    return _subscription_manager
