# app/core/config.py

from pydantic_settings import BaseSettings, SettingsConfigDict
import urllib.parse

class Settings(BaseSettings):
    # Read env from .env; ignore unknown keys so extra lines don't crash startup
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Database ---
    # DATABASE_URL wins when set (tests use sqlite+aiosqlite)
    DATABASE_URL: str | None = None
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "agenda"
    POSTGRES_USER: str = "agenda"
    POSTGRES_PASSWORD: str = ""
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    # A pool checkout slower than this surfaces as TransientStoreError (503)
    DB_POOL_TIMEOUT_SECONDS: float = 10.0

    # --- Scheduling ---
    DEFAULT_TIMEZONE: str = "Africa/Maputo"
    SLOT_GRANULARITY_MINUTES: int = 30

    # --- Billing ---
    PLATFORM_FEE_PERCENT: float = 8.0
    DEFAULT_BILLING_PERIOD_MONTHS: int = 1
    DEFAULT_PLAN_NAME: str = "Plano Básico"
    TRIAL_DAYS: int = 3
    EXPIRY_REMINDER_DAYS: int = 3

    # --- Payment gateways (secrets resolved through app.utils.secrets) ---
    CARD_WEBHOOK_SECRET: str | None = None
    MOBILE_MONEY_BASE_URL: str = "https://mpesaemolatech.com"
    MOBILE_MONEY_CLIENT_ID: str | None = None
    MPESA_WALLET_ID: str | None = None
    EMOLA_WALLET_ID: str | None = None
    MPESA_ACCESS_TOKEN: str | None = None
    EMOLA_ACCESS_TOKEN: str | None = None
    MOBILE_MONEY_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_TIMEOUT_SECONDS: float = 20.0

    # --- Notifications ---
    RESEND_API_KEY: str | None = None
    RESEND_BASE_URL: str = "https://api.resend.com"
    EMAIL_FROM: str = "no-reply@agenda.local"

    # --- Security ---
    ADMIN_API_KEY: str | None = None

    # --- Monitoring & Logging ---
    APP_ENV: str = "production"
    LOG_LEVEL: str = "INFO"
    LOG_REQUESTS: bool = False
    LOG_RESPONSES: bool = False
    MAX_LOG_LENGTH: int = 200
    SLOW_REQUEST_THRESHOLD: float = 2.0

    # Sync URI (Alembic)
    @property
    def sync_db_uri(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace("+asyncpg", "").replace("+aiosqlite", "")
        pwd = urllib.parse.quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql://{self.POSTGRES_USER}:{pwd}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Async URI (SQLAlchemy engine)
    @property
    def async_db_uri(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        pwd = urllib.parse.quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{pwd}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def platform_fee_rate(self) -> float:
        return self.PLATFORM_FEE_PERCENT / 100.0

    # Monitoring helpers
    @property
    def is_development(self) -> bool:
        return self.APP_ENV.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() in ("production", "prod")

# Singleton
settings = Settings()
