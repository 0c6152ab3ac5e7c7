"""
Entitlement reconciler.

Merges the purchase-service and backend signals into one SubscriptionState.
Every call recomputes the state from scratch; nothing from a previous pass
survives into the next.
"""
import structlog
from typing import Dict, Iterable, Mapping, Optional

from horse_manager.purchases.models import CustomerInfo, EntitlementInfo
from horse_manager.subscription.models import (
    BackendStatus,
    PlanType,
    PremiumSource,
    SubscriptionState
)
from horse_manager.config import settings


logger = structlog.get_logger()


def select_best_entitlement(
    active_entitlements: Mapping[str, EntitlementInfo]
) -> Optional[EntitlementInfo]:
    """
    Pick the entitlement that determines effective access.

    With several active entitlements the one expiring furthest in the future
    wins. An entitlement without expiration is chosen only when no dated one
    exists; ties go to the first encountered.

    Args:
        active_entitlements: Active entitlements in service order

    Returns:
        Selected entitlement, or None if there are none
    """
    best: Optional[EntitlementInfo] = None

    for entitlement in active_entitlements.values():
        if entitlement.expiration_date is not None:
            if best is None or best.expiration_date is None or entitlement.expiration_date > best.expiration_date:
                best = entitlement
        elif best is None:
            best = entitlement

    return best


def build_product_catalog(
    monthly_product_id: Optional[str] = None,
    annual_product_id: Optional[str] = None
) -> Dict[str, PlanType]:
    """Closed set of known product identifiers mapped to plan types."""
    return {
        monthly_product_id or settings.product_id_monthly: PlanType.MONTHLY,
        annual_product_id or settings.product_id_annual: PlanType.ANNUAL,
    }


def classify_plan(product_id: Optional[str], catalog: Mapping[str, PlanType]) -> PlanType:
    """Exact-match a product identifier against the catalog."""
    if not product_id:
        return PlanType.NONE
    return catalog.get(product_id, PlanType.NONE)


class EntitlementReconciler:
    """
    Computes the authoritative SubscriptionState.

    Source precedence, first match wins:
    admin > purchase service > backend manual > none.
    """

    def __init__(
        self,
        product_catalog: Optional[Mapping[str, PlanType]] = None,
        entitlement_ids: Optional[Iterable[str]] = None
    ):
        """
        Initialize reconciler.

        Args:
            product_catalog: Known product identifiers and their plans
            entitlement_ids: Entitlements that grant premium, empty for any
        """
        self.product_catalog = dict(product_catalog) if product_catalog is not None else build_product_catalog()
        ids = settings.entitlement_ids if entitlement_ids is None else entitlement_ids
        self.entitlement_ids = frozenset(ids)

    def premium_entitlements(self, customer_info: Optional[CustomerInfo]) -> Dict[str, EntitlementInfo]:
        """Active entitlements that count towards premium."""
        if customer_info is None:
            return {}

        active = customer_info.active_entitlements
        if not self.entitlement_ids:
            return active

        return {key: value for key, value in active.items() if key in self.entitlement_ids}

    def reconcile(
        self,
        customer_info: Optional[CustomerInfo],
        backend_status: Optional[BackendStatus]
    ) -> SubscriptionState:
        """
        Recompute the subscription state from the current signals.

        Args:
            customer_info: Purchase service view, None when unavailable
            backend_status: Backend view, None when unavailable

        Returns:
            Fresh SubscriptionState
        """
        backend = backend_status or BackendStatus()

        if backend.is_admin:
            return SubscriptionState(
                is_premium=True,
                premium_source=PremiumSource.ADMIN,
                is_admin=True
            )

        entitlement = select_best_entitlement(self.premium_entitlements(customer_info))

        if entitlement is not None:
            plan_type = classify_plan(entitlement.product_identifier, self.product_catalog)
            if plan_type == PlanType.NONE:
                logger.warning(
                    "unknown_product_id",
                    product_id=entitlement.product_identifier,
                    entitlement=entitlement.identifier
                )

            return SubscriptionState(
                is_premium=True,
                active_product_id=entitlement.product_identifier or None,
                plan_type=plan_type,
                renewal_date=entitlement.expiration_date,
                will_renew=entitlement.will_renew,
                premium_source=PremiumSource.PURCHASE_SERVICE
            )

        if backend.is_premium_manual:
            return SubscriptionState(
                is_premium=True,
                renewal_date=backend.expires_at,
                premium_source=PremiumSource.BACKEND_MANUAL
            )

        return SubscriptionState()
