"""Application configuration management using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="storefront-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")
    supabase_signing_key_jwk: str = Field(default="", description="Signing key JWK (JSON string) for JWT verification")
    jwt_algorithms: str = Field(default="ES256", description="Comma-separated JWT algorithms accepted")
    jwt_audience: str = Field(default="authenticated", description="Expected JWT audience; empty disables the check")
    admin_roles: str = Field(default="admin", description="Comma-separated roles allowed on admin endpoints")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key (for frontend)")

    # Pricing
    currency: str = Field(default="inr", description="ISO currency code for all orders")
    delivery_charge_cents: int = Field(default=4000, ge=0, description="Delivery charge in minor units")
    free_delivery_threshold_cents: int = Field(
        default=50000, ge=0, description="Subtotal from which delivery is free (minor units)"
    )

    # Payment lifecycle
    payment_window_minutes: int = Field(default=30, gt=0, description="Minutes a gateway order may stay unpaid")
    payment_retry_extension_minutes: int = Field(
        default=15, gt=0, description="Minutes added to an expired window when payment is retried"
    )
    max_failed_payment_attempts: int = Field(
        default=3, gt=0, description="Failed attempts after which an order is marked PAYMENT_FAILED"
    )
    payment_expiry_sweep_enabled: bool = Field(default=True, description="Run the expiry sweep in-process")
    payment_expiry_sweep_interval_seconds: int = Field(default=60, gt=0, description="Seconds between expiry sweeps")
    payment_expiry_sweep_batch_size: int = Field(default=100, gt=0, description="Orders expired per sweep")

    # Orders
    order_update_max_retries: int = Field(default=5, gt=0, description="Optimistic write retries per order mutation")
    order_cache_size: int = Field(default=1000, gt=0, description="Maximum cached orders")
    order_cache_ttl: int = Field(default=30, gt=0, description="Seconds an order read stays cached")

    @model_validator(mode="after")
    def normalize_currency(self) -> "Settings":
        """Stripe expects lowercase currency codes."""
        self.currency = self.currency.lower()
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def jwt_algorithms_list(self) -> list[str]:
        """Parse accepted JWT algorithms into a list."""
        return [alg.strip() for alg in self.jwt_algorithms.split(",") if alg.strip()]

    @property
    def admin_roles_set(self) -> set[str]:
        """Parse admin roles into a set."""
        return {role.strip() for role in self.admin_roles.split(",") if role.strip()}

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
