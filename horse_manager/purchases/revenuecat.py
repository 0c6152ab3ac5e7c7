"""
RevenueCat SDK implementation.

Implements the purchase SDK capability on top of the RevenueCat REST API.
The store purchase sheet itself is delegated to an injected StoreCheckout.
"""
import asyncio
import uuid
import httpx
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import quote

from horse_manager.purchases.models import (
    CustomerInfo,
    EntitlementInfo,
    LogInResult,
    Offering,
    Offerings,
    Package,
    ensure_utc
)
from horse_manager.purchases.sdk import CustomerInfoListener, PurchasesError, StoreCheckout
from horse_manager.config import settings


logger = structlog.get_logger()


ANONYMOUS_ID_PREFIX = "$RCAnonymousID:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a RevenueCat ISO8601 timestamp."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class RevenueCatClient:
    """
    Purchase SDK backed by the RevenueCat REST API.

    Keeps the current app user id (anonymous until logged in) and the last
    customer info it fetched. Listeners are notified whenever a fetch
    returns customer info that differs from the cached one.
    """

    def __init__(
        self,
        platform: Optional[str] = None,
        store: Optional[StoreCheckout] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        """
        Initialize RevenueCat client.

        Args:
            platform: Store platform sent as X-Platform (ios or android)
            store: Store checkout used for purchases and restores
            api_url: RevenueCat REST base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport
            clock: Current time source used to evaluate expirations
        """
        self.platform = platform or settings.platform
        self.store = store
        self.api_url = (api_url or settings.revenuecat_api_url).rstrip("/")
        self.timeout = timeout or settings.revenuecat_timeout
        self._transport = transport
        self._clock = clock

        self._api_key: Optional[str] = None
        self._app_user_id: Optional[str] = None
        self._cached_customer_info: Optional[CustomerInfo] = None
        self._listeners: List[CustomerInfoListener] = []
        self._listener_tasks: Set[asyncio.Task] = set()

    # ========== Session ==========

    @property
    def app_user_id(self) -> Optional[str]:
        return self._app_user_id

    @property
    def is_anonymous(self) -> bool:
        return self._app_user_id is None or self._app_user_id.startswith(ANONYMOUS_ID_PREFIX)

    @staticmethod
    def _generate_anonymous_id() -> str:
        return f"{ANONYMOUS_ID_PREFIX}{uuid.uuid4().hex}"

    async def configure(self, api_key: str, app_user_id: Optional[str] = None) -> None:
        """
        Configure the client with the platform API key.

        Args:
            api_key: RevenueCat public SDK key
            app_user_id: Customer id to resume, anonymous when omitted

        Raises:
            PurchasesError: If the key is missing
        """
        if not api_key or not api_key.strip():
            raise PurchasesError("INVALID_CREDENTIALS", "RevenueCat API key not configured")

        self._api_key = api_key
        self._app_user_id = app_user_id or self._generate_anonymous_id()
        self._cached_customer_info = None

        logger.info(
            "revenuecat_configured",
            platform=self.platform,
            anonymous=self.is_anonymous
        )

    async def log_in(self, app_user_id: str) -> LogInResult:
        """
        Switch the session to the given customer id.

        Logging in as the current user only refreshes customer info.
        """
        self._require_configured()

        if app_user_id == self._app_user_id:
            return LogInResult(customer_info=await self.get_customer_info(), created=False)

        response = await self._request(
            "POST",
            "/subscribers/identify",
            json={"app_user_id": self._app_user_id, "new_app_user_id": app_user_id}
        )

        self._app_user_id = app_user_id
        customer_info = self._read_customer_info(response)
        self._update_cache(customer_info)

        return LogInResult(
            customer_info=customer_info,
            created=response.status_code == 201
        )

    async def log_out(self) -> CustomerInfo:
        """
        Reset the session to a fresh anonymous customer.

        Raises:
            PurchasesError: If the session is already anonymous
        """
        self._require_configured()

        if self.is_anonymous:
            raise PurchasesError(
                "LOGOUT_CALLED_WITH_ANONYMOUS_USER",
                "Called logOut but the current user is anonymous"
            )

        self._app_user_id = self._generate_anonymous_id()
        self._cached_customer_info = None
        return await self.get_customer_info()

    # ========== Customer Info ==========

    async def get_customer_info(self) -> CustomerInfo:
        """Fetch customer info for the current session."""
        self._require_configured()

        response = await self._request("GET", f"/subscribers/{quote(self._app_user_id, safe='')}")
        customer_info = self._read_customer_info(response)
        self._update_cache(customer_info)
        return customer_info

    async def get_offerings(self) -> Offerings:
        """Fetch offerings configured for the current customer."""
        self._require_configured()

        response = await self._request(
            "GET",
            f"/subscribers/{quote(self._app_user_id, safe='')}/offerings"
        )
        return self._read_offerings(response)

    # ========== Purchases ==========

    async def purchase_package(self, package: Package) -> CustomerInfo:
        """
        Buy a package through the store and post the receipt.

        Raises:
            PurchasesError: On store failure, cancellation or service error
        """
        self._require_configured()
        store = self._require_store()

        fetch_token = await store.purchase(package.product_identifier)

        response = await self._request(
            "POST",
            "/receipts",
            json={
                "app_user_id": self._app_user_id,
                "fetch_token": fetch_token,
                "product_id": package.product_identifier,
                "presented_offering_identifier": package.offering_identifier
            }
        )

        customer_info = self._read_customer_info(response)
        self._update_cache(customer_info)

        logger.info(
            "revenuecat_purchase_posted",
            product_id=package.product_identifier,
            app_user_id=self._app_user_id
        )
        return customer_info

    async def restore_purchases(self) -> CustomerInfo:
        """Re-post every store receipt and return fresh customer info."""
        self._require_configured()
        store = self._require_store()

        fetch_tokens = await store.restore()

        for fetch_token in fetch_tokens:
            await self._request(
                "POST",
                "/receipts",
                json={
                    "app_user_id": self._app_user_id,
                    "fetch_token": fetch_token,
                    "is_restore": True
                }
            )

        logger.info("revenuecat_restore_posted", receipts=len(fetch_tokens))
        return await self.get_customer_info()

    # ========== Listeners ==========

    def add_customer_info_update_listener(self, listener: CustomerInfoListener) -> None:
        self._listeners.append(listener)

    def _update_cache(self, customer_info: CustomerInfo) -> None:
        previous = self._cached_customer_info
        self._cached_customer_info = customer_info

        if previous is not None and previous != customer_info:
            self._notify_listeners(customer_info)

    def _notify_listeners(self, customer_info: CustomerInfo) -> None:
        loop = asyncio.get_running_loop()
        for listener in self._listeners:
            task = loop.create_task(listener(customer_info))
            self._listener_tasks.add(task)
            task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("customer_info_listener_failed", error=str(task.exception()))

    async def close(self) -> None:
        """Cancel listener callbacks still in flight."""
        for task in list(self._listener_tasks):
            task.cancel()
        self._listener_tasks.clear()

    # ========== HTTP ==========

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "X-Platform": self.platform
        }

    def _require_configured(self) -> None:
        if self._api_key is None:
            raise PurchasesError("NOT_CONFIGURED", "RevenueCat client is not configured")

    def _require_store(self) -> StoreCheckout:
        if self.store is None:
            raise PurchasesError("STORE_PROBLEM", "No store checkout available on this device")
        return self.store

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Call the RevenueCat REST API.

        Raises:
            PurchasesError: On transport errors and non-2xx responses
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                transport=self._transport,
                timeout=self.timeout
            ) as client:
                response = await client.request(method, path, headers=self._get_headers(), json=json)
                response.raise_for_status()
                return response

        except httpx.HTTPStatusError as e:
            raise PurchasesError(
                "SERVICE_ERROR",
                f"RevenueCat returned status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise PurchasesError("NETWORK_ERROR", f"RevenueCat request failed: {e}") from e

    # ========== Parsing ==========

    def _read_customer_info(self, response: httpx.Response) -> CustomerInfo:
        """
        Decode a subscriber response.

        Raises:
            PurchasesError: If the body is not a usable subscriber document
        """
        try:
            return self._parse_customer_info(response.json().get("subscriber") or {})
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise PurchasesError("INVALID_RESPONSE", f"Unexpected RevenueCat response: {e}") from e

    def _read_offerings(self, response: httpx.Response) -> Offerings:
        try:
            return self._parse_offerings(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise PurchasesError("INVALID_RESPONSE", f"Unexpected RevenueCat response: {e}") from e

    def _parse_customer_info(self, subscriber: Dict[str, Any]) -> CustomerInfo:
        """
        Convert a RevenueCat subscriber document into CustomerInfo.

        An entitlement is active while its expiration (or grace period) lies
        in the future, or when it has no expiration at all. It renews unless
        it is lifetime access or an unsubscribe/billing issue was detected.
        """
        now = self._clock()
        subscriptions = subscriber.get("subscriptions") or {}

        entitlements: Dict[str, EntitlementInfo] = {}
        for identifier, data in (subscriber.get("entitlements") or {}).items():
            product_id = data.get("product_identifier") or ""
            expires_at = _parse_date(data.get("expires_date"))
            grace_expires_at = _parse_date(data.get("grace_period_expires_date"))
            subscription = subscriptions.get(product_id) or {}

            is_active = (
                expires_at is None
                or expires_at > now
                or (grace_expires_at is not None and grace_expires_at > now)
            )
            will_renew = (
                expires_at is not None
                and bool(subscription)
                and subscription.get("unsubscribe_detected_at") is None
                and subscription.get("billing_issues_detected_at") is None
            )

            entitlements[identifier] = EntitlementInfo(
                identifier=identifier,
                product_identifier=product_id,
                is_active=is_active,
                will_renew=will_renew,
                expiration_date=expires_at,
                purchase_date=_parse_date(data.get("purchase_date"))
            )

        return CustomerInfo(
            original_app_user_id=subscriber.get("original_app_user_id") or self._app_user_id or "",
            entitlements=entitlements
        )

    @staticmethod
    def _parse_offerings(data: Dict[str, Any]) -> Offerings:
        offerings: Dict[str, Offering] = {}
        for item in data.get("offerings") or []:
            identifier = item.get("identifier")
            if not identifier:
                continue
            offerings[identifier] = Offering(
                identifier=identifier,
                description=item.get("description"),
                packages=[
                    Package(
                        identifier=package["identifier"],
                        product_identifier=package.get("platform_product_identifier") or "",
                        offering_identifier=identifier
                    )
                    for package in item.get("packages") or []
                    if package.get("identifier")
                ]
            )

        current_id = data.get("current_offering_id")
        return Offerings(current=offerings.get(current_id) if current_id else None, all=offerings)
