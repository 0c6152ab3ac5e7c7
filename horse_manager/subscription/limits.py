"""
Free-tier limit policy.

Pure functions deciding whether a resource can be added and whether the
upgrade popup should be shown. Premium sessions are unlimited.
"""
from enum import Enum
from typing import Dict, Optional, Union

from horse_manager.subscription.models import SubscriptionState, SubscriptionStatus


class ResourceKind(str, Enum):
    """Bounded resource kinds."""
    HORSES = "horses"
    RIDERS = "riders"
    SUPPLIERS = "suppliers"
    COMPETITIONS = "competitions"
    PALMARES = "palmares"
    EXPENSES = "expenses"
    REMINDERS = "reminders"
    PHOTOS = "photos"  # per item


class PremiumFeature(str, Enum):
    """Features locked for free users."""
    EXPORT_CSV = "export_csv"
    ADVANCED_REPORTS = "advanced_reports"
    UNLIMITED_ITEMS = "unlimited_items"
    UNLIMITED_PHOTOS = "unlimited_photos"


FREE_LIMITS: Dict[ResourceKind, int] = {
    ResourceKind.HORSES: 1,
    ResourceKind.RIDERS: 1,
    ResourceKind.SUPPLIERS: 1,
    ResourceKind.COMPETITIONS: 1,
    ResourceKind.PALMARES: 1,
    ResourceKind.EXPENSES: 3,
    ResourceKind.REMINDERS: 1,
    ResourceKind.PHOTOS: 1,
}


SubscriptionInput = Union[SubscriptionState, SubscriptionStatus, bool]


def resolve_status(subscription: SubscriptionInput, loading: bool = False) -> SubscriptionStatus:
    """
    Collapse the accepted inputs into a SubscriptionStatus.

    Args:
        subscription: Reconciled state, a status, or a plain premium flag
        loading: Whether the subscription status is still being resolved
    """
    if isinstance(subscription, SubscriptionStatus):
        return subscription
    if loading:
        return SubscriptionStatus.LOADING

    is_premium = subscription.is_premium if isinstance(subscription, SubscriptionState) else bool(subscription)
    return SubscriptionStatus.PREMIUM if is_premium else SubscriptionStatus.FREE


def can_add_more(
    subscription: SubscriptionInput,
    resource_kind: ResourceKind,
    current_count: int,
    loading: bool = False
) -> bool:
    """
    Check whether one more item of a resource kind may be added.

    Nothing is blocked while the status is still loading.
    """
    status = resolve_status(subscription, loading)
    if status != SubscriptionStatus.FREE:
        return True
    return current_count < FREE_LIMITS[ResourceKind(resource_kind)]


def should_show_limit_popup(
    subscription: SubscriptionInput,
    resource_kind: ResourceKind,
    current_count: int,
    loading: bool = False
) -> bool:
    """
    Check whether the upgrade popup should be shown.

    Never shown while loading or for premium sessions.
    """
    status = resolve_status(subscription, loading)
    if status != SubscriptionStatus.FREE:
        return False
    return current_count >= FREE_LIMITS[ResourceKind(resource_kind)]


def get_limit(subscription: SubscriptionInput, resource_kind: ResourceKind) -> Optional[int]:
    """Free limit for a resource kind, None when unlimited."""
    if resolve_status(subscription) == SubscriptionStatus.PREMIUM:
        return None
    return FREE_LIMITS[ResourceKind(resource_kind)]


def can_use_feature(subscription: SubscriptionInput, feature: PremiumFeature) -> bool:
    """Premium features are only available to premium sessions."""
    return resolve_status(subscription) == SubscriptionStatus.PREMIUM
