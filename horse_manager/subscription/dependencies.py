"""
Subscription dependencies for FastAPI route protection.

Provides reusable dependencies to gate premium-only features.
"""
from fastapi import Depends, HTTPException, status
import structlog

from horse_manager.subscription.manager import SubscriptionManager, get_subscription_manager
from horse_manager.subscription.models import SubscriptionState


logger = structlog.get_logger()


def get_subscription_manager_dependency() -> SubscriptionManager:
    """Dependency to get the subscription manager."""
    return get_subscription_manager()


async def require_premium(
    manager: SubscriptionManager = Depends(get_subscription_manager_dependency)
) -> SubscriptionState:
    """
    Dependency that requires an active premium entitlement.

    Use this dependency on routes backing premium-only features:

    ```python
    @router.get("/reports/export")
    async def export_csv(state: SubscriptionState = Depends(require_premium)):
        ...
    ```

    Returns:
        Current SubscriptionState

    Raises:
        HTTPException: 403 if the session is not premium
    """
    state = manager.state

    if not state.is_premium:
        logger.warning(
            "premium_required",
            user_id=manager.binder.local_user_id,
            message="User attempted to access a premium feature without premium"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Premium required. Upgrade to My Horse Manager Pro to use this feature."
        )

    return state
