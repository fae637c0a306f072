"""TrainKit – Application Configuration.

Pydantic Settings, loaded from a .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000

    # --- Database ---
    database_url: str = ""

    # --- Stripe ---
    stripe_webhook_secret: str = ""  # whsec_... from the Stripe dashboard
    stripe_webhook_tolerance_seconds: int = 300

    # --- Billing policy ---
    # True: a failed invoice only marks the tenant PAST_DUE, the account keeps running
    # until the subscription itself is deleted.
    billing_past_due_grace: bool = True

    # --- Webhook ledger ---
    webhook_stale_after_minutes: int = 60

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
