"""
Application configuration with environment variables.
"""
import warnings
from typing import List, Literal, Optional

from pydantic import ConfigDict, model_validator
from pydantic_settings import BaseSettings

# Values that must never reach production as credentials
_DEFAULT_CREDENTIALS = frozenset({
    "your-secret-key-change-in-production",
    "change-me-in-production",
    "secret",
    "changeme",
    "password",
    "postgres",
    "warehouse",
    "",
})

_MIN_SECRET_KEY_LENGTH = 32


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Warehouse Workflow Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str = "your-secret-key-change-in-production"

    # Database; DATABASE_URL wins over the POSTGRES_* parts
    POSTGRES_USER: str = "warehouse"
    POSTGRES_PASSWORD: str = "warehouse"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "warehouse_workflow"
    DATABASE_URL: Optional[str] = None

    # Redis (RQ queues)
    REDIS_URL: str = "redis://redis:6379/0"

    # Bearer tokens
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # =========================================
    # Workflow Settings
    # =========================================

    # Default lifetime of an RFQ sent to a warehouse
    RFQ_VALIDITY_DAYS: int = 7

    # Booking window opened when a quote is confirmed
    BOOKING_DEFAULT_DAYS: int = 7

    # Page size for the per-role pending action inbox
    PENDING_ACTIONS_LIMIT: int = 50

    # Payment terms applied when an invoice request has no due date
    INVOICE_DUE_DAYS: int = 30

    # Delay before a failed delivery order is retried by the worker
    DELIVERY_ORDER_RETRY_DELAY_SECONDS: int = 60

    # =========================================
    # Notifications
    # =========================================

    # "queue" hands emails to the RQ worker, "log" only writes them to the log
    NOTIFICATION_BACKEND: Literal["queue", "log"] = "queue"
    NOTIFICATION_FROM: str = "no-reply@warehouse-workflow.local"

    # Shared team inboxes for internal roles
    PURCHASE_SUPPORT_EMAIL: Optional[str] = None
    SALES_SUPPORT_EMAIL: Optional[str] = None
    SUPERVISOR_EMAIL: Optional[str] = None
    ACCOUNTS_EMAIL: Optional[str] = None

    @model_validator(mode="after")
    def finalize(self) -> "Settings":
        """Assemble DATABASE_URL; default secrets are fatal in production and a warning under DEBUG."""
        problems = []
        if self.SECRET_KEY in _DEFAULT_CREDENTIALS or len(self.SECRET_KEY) < _MIN_SECRET_KEY_LENGTH:
            problems.append("SECRET_KEY is weak or default (generate one with: openssl rand -hex 32)")

        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
            if self.POSTGRES_PASSWORD in _DEFAULT_CREDENTIALS:
                problems.append("POSTGRES_PASSWORD is set to a default value")

        if not problems:
            return self
        if not self.DEBUG:
            raise ValueError("; ".join(problems))
        for problem in problems:
            warnings.warn(f"{problem}. Set a strong value before deploying.", UserWarning, stacklevel=2)
        return self


settings = Settings()
