"""
Subscription models and schemas.

Defines the reconciled subscription state, the backend status signal and
API response models.
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from datetime import datetime
from enum import Enum

from horse_manager.purchases.models import Offering, ensure_utc


# ========== Enums ==========

class PlanType(str, Enum):
    """Plan derived from the active product identifier."""
    MONTHLY = "monthly"
    ANNUAL = "annual"
    NONE = "none"


class PremiumSource(str, Enum):
    """Signal currently responsible for granting premium."""
    PURCHASE_SERVICE = "purchase_service"
    ADMIN = "admin"
    BACKEND_MANUAL = "backend_manual"
    NONE = "none"


class SessionPhase(str, Enum):
    """Purchase service lifecycle for the running session."""
    UNINITIALIZED = "uninitialized"
    CONFIGURING = "configuring"
    READY = "ready"
    CONFIG_FAILED = "config_failed"


class SubscriptionStatus(str, Enum):
    """Coarse status consumed by screens and the limit policy."""
    LOADING = "loading"
    PREMIUM = "premium"
    FREE = "free"


# ========== Subscription State ==========

class SubscriptionState(BaseModel):
    """
    Authoritative entitlement decision for the session.

    Always produced whole by the reconciler, never patched.
    """
    is_premium: bool = False
    active_product_id: Optional[str] = None
    plan_type: PlanType = PlanType.NONE
    renewal_date: Optional[datetime] = None
    will_renew: bool = False
    premium_source: PremiumSource = PremiumSource.NONE
    is_admin: bool = False

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _admin_never_expires(self) -> "SubscriptionState":
        if self.is_admin and (not self.is_premium or self.renewal_date is not None):
            raise ValueError("Admin access is premium and has no renewal date")
        return self


# ========== Backend Signal ==========

class BackendStatus(BaseModel):
    """Admin / manually granted premium as reported by the backend."""
    is_admin: bool = False
    is_premium_manual: bool = False
    expires_at: Optional[datetime] = None
    premium_source: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class SubscriptionStatusPayload(BaseModel):
    """Wire format of GET /api/user/subscription-status."""
    is_admin: bool = False
    is_premium: bool = False
    premium_expires_at: Optional[datetime] = None
    premium_source: Optional[str] = None

    def to_backend_status(self) -> BackendStatus:
        return BackendStatus(
            is_admin=self.is_admin,
            is_premium_manual=self.is_premium,
            expires_at=self.premium_expires_at,
            premium_source=self.premium_source
        )


# ========== Purchase Outcome ==========

class PurchaseOutcome(BaseModel):
    """User-facing outcome of a purchase or restore attempt."""
    success: bool
    user_cancelled: bool = False
    message: Optional[str] = Field(
        default=None,
        description="Actionable message for failures, None on success or cancellation"
    )
    state: SubscriptionState


# ========== API Request/Response Models ==========

class SessionRequest(BaseModel):
    """Request announcing the authenticated local user."""
    user_id: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None


class PurchaseRequest(BaseModel):
    """Request to buy a package from the current offering."""
    package_identifier: str = Field(..., min_length=1)


class SubscriptionStatusResponse(BaseModel):
    """Response for GET /subscription/status."""
    status: SubscriptionStatus
    state: SubscriptionState
    loading: bool
    phase: SessionPhase
    is_configured: bool
    current_app_user_id: Optional[str] = None


class OfferingResponse(BaseModel):
    """Response for GET /subscription/offerings."""
    current: Optional[Offering] = None


class LimitCheckResponse(BaseModel):
    """Response for GET /subscription/limits/{resource_kind}."""
    resource_kind: str
    count: int
    limit: Optional[int] = Field(description="None when unlimited")
    can_add_more: bool
    show_limit_popup: bool


class FeatureCheckResponse(BaseModel):
    """Response for GET /subscription/features/{feature}."""
    feature: str
    available: bool
