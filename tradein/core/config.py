"""Backend configuration settings."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional


class BackendSettings(BaseSettings):
    """API server configuration."""

    # API Settings
    api_port: int = Field(default=3000, description="API server port")
    api_workers: int = Field(default=2, description="Number of API workers")
    debug: bool = Field(default=False, description="Debug mode")
    app_env: str = Field(default="development", description="development | production")
    expose_api_docs: Optional[bool] = Field(default=None, description="Serve /docs; defaults to on outside production")

    # CORS Settings
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins"
    )

    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="trade_in_system", description="Database name")

    # Shared secrets
    api_secret: str = Field(default="", description="Shared secret expected in the X-API-Key header")
    cron_secret: str = Field(default="", description="Shared secret for the automatic backup trigger")
    jwt_secret_key: str = Field(
        default="tradein-secret-key-change-in-production",
        description="Key used to verify staff session tokens"
    )
    jwt_algorithm: str = Field(default="HS256")

    # Shopify Settings (read-only content snapshots)
    shopify_shop: Optional[str] = Field(default=None, description="Shop domain, e.g. my-store.myshopify.com")
    shopify_access_token: Optional[str] = Field(default=None)
    shopify_api_version: str = Field(default="2024-10")
    shopify_timeout: float = Field(default=30.0, description="Per-request timeout in seconds")

    # Email Settings
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587)
    smtp_user: Optional[str] = Field(default=None)
    smtp_pass: Optional[str] = Field(default=None)
    smtp_from: Optional[str] = Field(default=None)
    admin_email: Optional[str] = Field(default=None, description="Recipient of backup failure alerts")

    # Backup Settings
    backup_scheduler_enabled: bool = Field(
        default=True,
        description="Run the in-process backup timer (disable for serverless deployments)"
    )
    backup_lock_minutes: int = Field(default=30, ge=1, description="Backup lock lifetime")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def shopify_configured(self) -> bool:
        return bool(self.shopify_shop and self.shopify_access_token)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_pass)


settings = BackendSettings()
