"""
Configuration management for the Control Number Payment Gateway.

Loads settings from .env via pydantic-settings.

Notes:
    - validate_production_settings() refuses to boot production without
      signing secrets, and with simulation or wildcard CORS enabled
    - api_keys is a comma-separated list of merchant_id:key pairs
"""
import logging
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/payment_gateway.db"

    # ── Control Numbers ─────────────────────────────────────────────
    control_number_prefix: str = "CN"
    control_number_random_length: int = 6
    control_number_max_attempts: int = 10   # collision retry budget
    control_number_expiry_hours: int = 24
    control_number_validity_days: int = 7
    control_number_batch_limit: int = 1000

    # ── Money ───────────────────────────────────────────────────────
    default_currency: str = "TZS"
    allowed_currencies: str = "TZS,USD"

    # ── Payment Providers ───────────────────────────────────────────
    provider_base_url: str = "https://sandbox.payments.example/api"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 15.0
    webhook_secret: str = ""
    simulation_mode: bool = True  # in-process simulated rail, no outbound calls

    # ── Service Delivery ────────────────────────────────────────────
    default_service_duration_days: Optional[int] = None
    sweep_interval_seconds: int = 300

    # ── Auth ────────────────────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "payment-gateway"
    jwt_access_ttl_minutes: int = 15
    api_keys: str = ""
    validate_rate_limit_per_minute: int = 30

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def allowed_currencies_list(self) -> List[str]:
        return [c.strip().upper() for c in self.allowed_currencies.split(",") if c.strip()]

    @property
    def api_key_map(self) -> Dict[str, str]:
        """Map each configured API key to the merchant that owns it."""
        keys = {}
        for pair in self.api_keys.split(","):
            pair = pair.strip()
            if not pair or ":" not in pair:
                continue
            merchant_id, key = pair.split(":", 1)
            keys[key.strip()] = merchant_id.strip()
        return keys

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if self.simulation_mode:
                raise ValueError(
                    "SIMULATION_MODE must be false in production. "
                    "The simulated rail completes payments without real money."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to verify merchant user tokens."
                )
            if not self.webhook_secret:
                raise ValueError(
                    "WEBHOOK_SECRET must be set in production. "
                    "Provider webhooks cannot be verified without it."
                )
            logger.info("✅ Production settings validated")
        else:
            warnings = []
            if self.simulation_mode:
                warnings.append("SIMULATION_MODE=true (payments settle in-process)")
            if not self.webhook_secret:
                warnings.append("WEBHOOK_SECRET unset (all webhooks will be rejected)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
