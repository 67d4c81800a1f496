import sys
from collections.abc import Callable, Generator
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from building_ledger.config import Base, BillingConfig  # noqa: E402
import building_ledger.config as app_config  # noqa: E402
import building_ledger.main as app_main  # noqa: E402
# Import the full models module so all tables register with Base metadata.
from building_ledger.models import models as _all_models  # noqa: E402,F401
from building_ledger.models.models import Apartment, Building, CollectionStage  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _configure_global_test_db(tmp_path_factory):
    """Configure the app-wide SessionLocal/engine so TestClient uses a DB with all tables."""
    db_dir = tmp_path_factory.mktemp("globaldb")
    db_path = db_dir / "app.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    app_config.SessionLocal = SessionLocal
    app_config.engine = engine
    app_main.SessionLocal = SessionLocal
    app_main.engine = engine
    yield
    engine.dispose()


@pytest.fixture(autouse=True)
def _local_email_outbox(tmp_path, monkeypatch):
    monkeypatch.setattr(app_config.settings, "email_backend", "local")
    monkeypatch.setattr(app_config.settings, "email_output_dir", str(tmp_path / "emails"))


@pytest.fixture
def db_engine(tmp_path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(bind=db_engine)


@pytest.fixture
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Provide a fresh SQLite database for each test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        currency_code="ILS",
        currency_symbol="₪",
        default_monthly_fee=Decimal("0"),
        subscription_due_position="last",
        notifications_enabled=False,
    )


@pytest.fixture
def create_building(db_session: Session) -> Callable[..., Building]:
    counter = {"value": 0}

    def _create(name: Optional[str] = None, monthly_fee: Decimal = Decimal("0")) -> Building:
        counter["value"] += 1
        building = Building(
            name=name or f"Building {counter['value']}",
            address=f"{counter['value']} Herzl Street",
            monthly_fee=monthly_fee,
        )
        db_session.add(building)
        db_session.commit()
        return building

    return _create


@pytest.fixture
def create_apartment(db_session: Session, create_building: Callable[..., Building]) -> Callable[..., Apartment]:
    counter = {"value": 0}

    def _create(
        building: Optional[Building] = None,
        number: Optional[str] = None,
        status: str = "occupied",
        subscription_amount: Optional[Decimal] = None,
        contact_email: Optional[str] = "resident@example.com",
        occupancy_start=None,
    ) -> Apartment:
        counter["value"] += 1
        building = building or create_building()
        apartment = Apartment(
            building_id=building.id,
            apartment_number=number or str(counter["value"]),
            status=status,
            subscription_amount=subscription_amount,
            contact_email=contact_email,
            occupancy_start=occupancy_start,
            cached_balance=Decimal("0"),
        )
        db_session.add(apartment)
        db_session.commit()
        return apartment

    return _create


@pytest.fixture
def create_stage(db_session: Session) -> Callable[..., CollectionStage]:
    def _create(
        stage_number: int,
        days_overdue: int,
        action_type: str = "email_reminder",
        name: Optional[str] = None,
        is_active: bool = True,
    ) -> CollectionStage:
        stage = CollectionStage(
            stage_number=stage_number,
            name=name or f"Stage {stage_number}",
            days_overdue=days_overdue,
            action_type=action_type,
            settings={},
            is_active=is_active,
        )
        db_session.add(stage)
        db_session.commit()
        return stage

    return _create
