"""Voice Billing Engine – Application Configuration.

Pydantic Settings, loaded from .env file or environment variables.
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

    # --- Database ---
    database_url: str = ""

    # --- Stripe ---
    stripe_webhook_secret: str = ""  # whsec_... used to verify gateway webhooks

    # --- Credit ledger ---
    credit_floor_cents: int = 0           # deductions never take the balance below this
    overdraft_limit_cents: int = 0        # soft negative allowance for call overage
    low_balance_threshold_cents: int = 500
    free_tier_credits_cents: int = 1000

    # --- Partner credits (billing-exempt workspaces) ---
    partner_per_minute_rate_cents: int = 15
    partner_low_balance_threshold_cents: int = 1000

    # --- Usage billing ---
    billing_max_retries: int = 3          # optimistic-lock retries per call
    postpaid_period_days: int = 30

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
