"""
Purchase SDK capability.

The purchase/entitlement SDK is injected at startup as an optional
capability. Anything implementing `PurchasesSDK` can back the adapter.
"""
from typing import Awaitable, Callable, List, Optional, Protocol

from horse_manager.purchases.models import CustomerInfo, LogInResult, Offerings, Package


CustomerInfoListener = Callable[[CustomerInfo], Awaitable[None]]


class PurchasesError(Exception):
    """Error reported by the purchase SDK or the store."""

    def __init__(self, code: str, message: str, user_cancelled: bool = False):
        self.code = code
        self.message = message
        self.user_cancelled = user_cancelled
        super().__init__(message)


class StoreCheckout(Protocol):
    """Platform store flow that produces receipts for the purchase service."""

    async def purchase(self, product_identifier: str) -> str:
        """
        Run the store purchase sheet.

        Returns:
            Store fetch token (receipt or purchase token)

        Raises:
            PurchasesError: With user_cancelled=True when the user backs out
        """
        ...

    async def restore(self) -> List[str]:
        """Return fetch tokens for every purchase the store knows about."""
        ...


class PurchasesSDK(Protocol):
    """Operations consumed from the purchase/entitlement SDK."""

    @property
    def app_user_id(self) -> Optional[str]:
        ...

    @property
    def is_anonymous(self) -> bool:
        ...

    async def configure(self, api_key: str, app_user_id: Optional[str] = None) -> None:
        ...

    async def log_in(self, app_user_id: str) -> LogInResult:
        ...

    async def log_out(self) -> CustomerInfo:
        ...

    async def get_customer_info(self) -> CustomerInfo:
        ...

    async def get_offerings(self) -> Offerings:
        ...

    async def purchase_package(self, package: Package) -> CustomerInfo:
        ...

    async def restore_purchases(self) -> CustomerInfo:
        ...

    def add_customer_info_update_listener(self, listener: CustomerInfoListener) -> None:
        ...

    async def close(self) -> None:
        ...
