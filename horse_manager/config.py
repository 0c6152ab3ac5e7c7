"""
Application configuration management.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "My Horse Manager"
    environment: str = "development"
    debug: bool = False
    log_level: str = "info"

    # Local entitlement API
    host: str = "127.0.0.1"
    port: int = 8000

    # Application backend
    backend_url: str = "https://web-production-2e659.up.railway.app"
    backend_timeout: float = 10.0  # seconds

    # Purchase service (RevenueCat)
    platform: str = "ios"  # ios, android
    revenuecat_api_key_apple: Optional[str] = None
    revenuecat_api_key_google: Optional[str] = None
    revenuecat_api_url: str = "https://api.revenuecat.com/v1"
    revenuecat_timeout: float = 30.0

    # Known entitlement identifiers (empty = any active entitlement counts)
    entitlement_ids: List[str] = []

    # Product IDs for plan classification
    product_id_monthly: str = "mhm_monthly"
    product_id_annual: str = "mhm_annual"

    # Storage
    data_dir: str = "./data"
    identity_cache_file: str = "identity.json"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def purchase_api_key(self) -> Optional[str]:
        """Purchase service API key for the configured platform."""
        if self.platform == "android":
            return self.revenuecat_api_key_google
        return self.revenuecat_api_key_apple


# Global settings instance
settings = Settings()
