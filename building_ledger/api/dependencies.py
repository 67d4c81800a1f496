from typing import Generator, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from ..config import BillingConfig, SessionLocal, get_billing_config
from ..core.request_context import get_actor


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_config() -> BillingConfig:
    return get_billing_config()


def get_current_actor(request: Request) -> Optional[str]:
    return get_actor(request)
