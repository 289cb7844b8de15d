"""Application configuration using pydantic-settings.

All environment variables are read through the settings object rather than
``os.getenv()`` inside services, so that POS, TSE and terminal provider
configuration is validated once at startup and documented in one place.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./data/kassa.db"

    # Security
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240

    # CORS - comma-separated origins
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # ==========================================================================
    # POS core
    # ==========================================================================
    pos_currency: str = "EUR"
    # Default connected terminal provider used for terminal_bridge / terminal checkouts
    pos_payment_provider: str = "bridge"
    pos_audit_max_attempts: int = 8
    pos_agent_online_window_seconds: int = 30
    pos_agent_max_wait_seconds: int = 25
    pos_agent_poll_interval_seconds: float = 1.0
    pos_status_poll_min_interval_seconds: float = 2.0
    pos_default_terminal_port: int = 22000
    pos_invoice_threshold_b2b_cents: int = 20_000
    pos_invoice_threshold_b2c_cents: int = 100_000

    # Documents (receipts, invoices, contracts)
    pos_documents_dir: str = "./data/documents"
    pos_documents_base_url: Optional[str] = None
    # Defaults for the admin-editable POS settings stored in pos_settings
    pos_brand_name: str = "ARTCLUB"
    pos_seller_name: str = "Artclub"
    pos_seller_address_line1: str = "Seller address line 1"
    pos_seller_address_line2: str = "Seller address line 2"
    pos_seller_vat_id: Optional[str] = None
    pos_seller_tax_id: Optional[str] = None
    pos_seller_email: str = ""
    pos_seller_phone: str = ""

    # ==========================================================================
    # TSE (fiscal signing)
    # ==========================================================================
    pos_tse_provider: Literal["noop", "fiskaly"] = "noop"
    pos_tse_allow_noop_fallback: bool = False
    pos_tse_strict: bool = False

    fiskaly_env: Literal["test", "live"] = "test"
    fiskaly_api_key: str = ""
    fiskaly_api_secret: str = ""
    fiskaly_tss_id: str = ""
    fiskaly_client_id: str = ""
    fiskaly_api_base_url: Optional[str] = None
    fiskaly_timeout_seconds: float = 15.0

    # ==========================================================================
    # Verifone terminal payments
    # ==========================================================================
    verifone_api_base_url: str = ""
    verifone_auth_mode: Literal["oauth", "apikey"] = "oauth"
    verifone_client_id: str = ""
    verifone_client_secret: str = ""
    verifone_api_key: str = ""
    verifone_merchant_id: str = ""
    verifone_webhook_secret: str = ""
    verifone_terminal_command_mode: str = "cloud"
    verifone_timeout_seconds: float = 15.0

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit_requests: int = 100  # requests per window
    rate_limit_window: int = 60  # window in seconds

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if v == "change-me-in-production":
            import warnings
            warnings.warn(
                "Using default SECRET_KEY is insecure! Set SECRET_KEY environment variable.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator("pos_agent_max_wait_seconds")
    @classmethod
    def validate_agent_wait(cls, v: int) -> int:
        if v < 0:
            raise ValueError("POS_AGENT_MAX_WAIT_SECONDS must not be negative")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Refuse insecure settings outside debug mode."""
        if not self.debug:
            if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
                raise ValueError(
                    "FATAL: Cannot start in production mode without a secure SECRET_KEY "
                    "(minimum 32 characters)."
                )
            if self.pos_tse_provider == "noop" and self.pos_tse_strict:
                raise ValueError("FATAL: POS_TSE_STRICT requires a real TSE provider")
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
