"""
Backend subscription status fetcher.

Queries the application backend for admin or manually granted premium.
"""
import httpx
import structlog
from pydantic import ValidationError
from typing import Optional

from horse_manager.subscription.models import BackendStatus, SubscriptionStatusPayload
from horse_manager.config import settings


logger = structlog.get_logger()


SUBSCRIPTION_STATUS_PATH = "/api/user/subscription-status"


class BackendStatusFetcher:
    """
    Fetches the backend view of a user's premium status.

    A failed fetch returns None, which is distinct from the all-false
    BackendStatus() returned for unauthenticated sessions, so a transient
    outage is never mistaken for "no premium".
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize backend status fetcher.

        Args:
            base_url: Backend base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport
        """
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.timeout = timeout or settings.backend_timeout
        self._transport = transport

    async def fetch(self, auth_token: Optional[str]) -> Optional[BackendStatus]:
        """
        Fetch subscription status for the authenticated user.

        Args:
            auth_token: Backend bearer token, None when logged out

        Returns:
            BackendStatus, or None if the backend could not be reached
        """
        if not auth_token:
            return BackendStatus()

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}{SUBSCRIPTION_STATUS_PATH}",
                    headers={"Authorization": f"Bearer {auth_token}"},
                    timeout=self.timeout
                )

                response.raise_for_status()
                data = response.json()

            status = SubscriptionStatusPayload(**data).to_backend_status()

        except httpx.HTTPStatusError as e:
            logger.warning(
                "backend_status_http_error",
                status_code=e.response.status_code
            )
            return None
        except (httpx.HTTPError, ValueError, TypeError, ValidationError) as e:
            logger.warning("backend_status_fetch_failed", error=str(e))
            return None

        logger.info(
            "backend_status_fetched",
            is_admin=status.is_admin,
            is_premium_manual=status.is_premium_manual
        )
        return status
