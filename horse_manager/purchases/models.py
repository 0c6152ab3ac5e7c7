"""
Purchase service models.

Customer info, entitlements and offerings as reported by the
purchase/entitlement service.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, List
from datetime import datetime, timezone


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so they compare with aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ========== Entitlements ==========

class EntitlementInfo(BaseModel):
    """A named grant of access tied to the product that unlocked it."""
    identifier: str
    product_identifier: str
    is_active: bool = True
    will_renew: bool = False
    expiration_date: Optional[datetime] = Field(
        default=None,
        description="Expiration/renewal instant, None for lifetime access"
    )
    purchase_date: Optional[datetime] = None

    @field_validator("expiration_date", "purchase_date")
    @classmethod
    def _normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class CustomerInfo(BaseModel):
    """Purchase service view of one customer."""
    original_app_user_id: str
    entitlements: Dict[str, EntitlementInfo] = Field(
        default_factory=dict,
        description="All entitlements keyed by identifier, in service order"
    )

    @property
    def active_entitlements(self) -> Dict[str, EntitlementInfo]:
        """Active entitlements, preserving service order."""
        return {
            key: entitlement
            for key, entitlement in self.entitlements.items()
            if entitlement.is_active
        }


class LogInResult(BaseModel):
    """Result of binding the purchase-service session to a customer id."""
    customer_info: CustomerInfo
    created: bool = False


# ========== Offerings ==========

class Package(BaseModel):
    """A purchasable package from an offering."""
    identifier: str
    product_identifier: str
    offering_identifier: Optional[str] = None


class Offering(BaseModel):
    """A group of packages presented together on the paywall."""
    identifier: str
    description: Optional[str] = None
    packages: List[Package] = Field(default_factory=list)

    def get_package(self, identifier: str) -> Optional[Package]:
        """Find a package by identifier."""
        for package in self.packages:
            if package.identifier == identifier:
                return package
        return None


class Offerings(BaseModel):
    """All offerings plus the one currently configured as default."""
    current: Optional[Offering] = None
    all: Dict[str, Offering] = Field(default_factory=dict)


# ========== Purchase Results ==========

class PurchaseResult(BaseModel):
    """Outcome of a purchase attempt at the adapter boundary."""
    customer_info: Optional[CustomerInfo] = None
    user_cancelled: bool = False
    error_message: Optional[str] = Field(
        default=None,
        description="Actionable message for non-cancellation failures"
    )

    @property
    def succeeded(self) -> bool:
        return self.customer_info is not None and not self.user_cancelled and self.error_message is None
