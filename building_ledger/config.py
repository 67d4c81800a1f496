# building_ledger/config.py
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # --- Database ---
    database_url: str = "sqlite:///building_ledger/ledger_dev.db"
    transaction_retry_attempts: int = 3

    # --- Logging ---
    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    log_json: bool = False

    # --- API ---
    cors_allow_origins: list[str] = ["http://localhost:5173"]

    # --- Billing ---
    currency_code: str = "ILS"
    currency_symbol: str = "₪"
    default_monthly_fee: Decimal = Decimal("0")
    subscription_due_position: Literal["first", "last"] = "last"

    # --- Collections ---
    collections_notifications_enabled: bool = True

    # --- Email ---
    email_backend: Literal["local", "smtp"] = "local"
    email_from_address: str | None = None
    email_from_name: str = "Building Management"
    email_output_dir: str = "uploads/emails"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True


@dataclass(frozen=True)
class BillingConfig:
    """Snapshot of the settings the billing services depend on."""

    currency_code: str = "ILS"
    currency_symbol: str = "₪"
    default_monthly_fee: Decimal = Decimal("0")
    subscription_due_position: str = "last"
    notifications_enabled: bool = True

    def format_amount(self, amount: Decimal) -> str:
        return f"{self.currency_symbol}{amount:.2f}"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_billing_config() -> BillingConfig:
    current = get_settings()
    return BillingConfig(
        currency_code=current.currency_code,
        currency_symbol=current.currency_symbol,
        default_monthly_fee=current.default_monthly_fee,
        subscription_due_position=current.subscription_due_position,
        notifications_enabled=current.collections_notifications_enabled,
    )


settings = get_settings()

# Ensure path directory exists (for SQLite)
if settings.database_url.startswith("sqlite:///"):
    db_path = Path(settings.database_url.replace("sqlite:///", ""))
    db_path.parent.mkdir(parents=True, exist_ok=True)

# --- SQLAlchemy setup ---
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False}
    if settings.database_url.startswith("sqlite")
    else {},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
