"""
Subscription API routes.

Entitlement-query interface consumed by the app screens.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from horse_manager.identity.models import LocalUser
from horse_manager.subscription.dependencies import get_subscription_manager_dependency
from horse_manager.subscription.limits import (
    PremiumFeature,
    ResourceKind,
    can_add_more,
    can_use_feature,
    get_limit,
    should_show_limit_popup
)
from horse_manager.subscription.manager import SubscriptionManager
from horse_manager.subscription.models import (
    FeatureCheckResponse,
    LimitCheckResponse,
    OfferingResponse,
    PurchaseOutcome,
    PurchaseRequest,
    SessionRequest,
    SubscriptionStatusResponse
)


logger = structlog.get_logger()
router = APIRouter(prefix="/subscription", tags=["subscription"])


def _status_response(manager: SubscriptionManager) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        status=manager.status,
        state=manager.state,
        loading=manager.loading,
        phase=manager.phase,
        is_configured=manager.is_configured,
        current_app_user_id=manager.current_app_user_id
    )


# ========== Status Endpoints ==========

@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """
    Get the reconciled subscription state.

    Includes the coarse status (loading, premium, free), the premium source
    and the purchase-service lifecycle phase.
    """
    return _status_response(manager)


@router.post("/refresh", response_model=SubscriptionStatusResponse)
async def refresh_subscription_status(
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """Recompute the subscription state from the purchase service and backend."""
    await manager.refresh()
    return _status_response(manager)


# ========== Session Endpoints ==========

@router.post("/session", response_model=SubscriptionStatusResponse)
async def start_session(
    request: SessionRequest,
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """
    Announce the authenticated local user.

    Initializes the subscription layer on first use. A different user than
    the bound one triggers logout-then-login.
    """
    user = LocalUser(id=request.user_id, email=request.email, name=request.name)
    await manager.handle_auth_change(user, request.token)
    return _status_response(manager)


@router.delete("/session", response_model=SubscriptionStatusResponse)
async def end_session(
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """Local logout; clears the purchase-service session and resets state."""
    await manager.handle_auth_change(None, None)
    return _status_response(manager)


# ========== Offerings & Purchases ==========

@router.get("/offerings", response_model=OfferingResponse)
async def get_offerings(
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """Get the current offering, fetching it if not loaded yet."""
    offering = manager.offering or await manager.refresh_offerings()
    return OfferingResponse(current=offering)


@router.post("/purchase", response_model=PurchaseOutcome)
async def purchase_package(
    request: PurchaseRequest,
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """
    Purchase a package from the current offering.

    Cancellation returns success=false without a message; other failures
    carry a message meant for the user.
    """
    return await manager.purchase_package(request.package_identifier)


@router.post("/restore", response_model=PurchaseOutcome)
async def restore_purchases(
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """Restore store purchases for the signed-in user."""
    return await manager.restore_purchases()


# ========== Limits & Features ==========

@router.get("/limits/{resource_kind}", response_model=LimitCheckResponse)
async def check_limit(
    resource_kind: str,
    count: int = Query(..., ge=0),
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """
    Check a free-tier limit for a resource kind.

    Screens call this before adding an item with their current item count.
    """
    try:
        kind = ResourceKind(resource_kind)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown resource kind: {resource_kind}"
        )

    subscription = manager.status

    return LimitCheckResponse(
        resource_kind=kind.value,
        count=count,
        limit=get_limit(subscription, kind),
        can_add_more=can_add_more(subscription, kind, count),
        show_limit_popup=should_show_limit_popup(subscription, kind, count)
    )


@router.get("/features/{feature}", response_model=FeatureCheckResponse)
async def check_feature(
    feature: str,
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
):
    """Check whether a premium feature is available."""
    try:
        premium_feature = PremiumFeature(feature)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown feature: {feature}"
        )

    return FeatureCheckResponse(
        feature=premium_feature.value,
        available=can_use_feature(manager.state, premium_feature)
    )
