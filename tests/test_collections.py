from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from building_ledger.config import settings
from building_ledger.core.errors import ConflictError, ExternalActionError, NotFoundError, ValidationError
from building_ledger.models.models import Apartment, AuditLog, CollectionLogEntry, CollectionStage, utcnow
from building_ledger.services.collections import (
    delete_stage,
    ensure_default_stages,
    list_collection_log,
    list_stages,
    process_collections,
    upsert_stage,
)
from building_ledger.services.expenses import create_expense
from building_ledger.services.payments import record_payment


class RecordingSender:
    def __init__(self):
        self.calls = []

    def send_stage_action(self, session, apartment, stage):
        self.calls.append((apartment.id, stage.stage_number))


class FailingSender:
    def send_stage_action(self, session, apartment, stage):
        raise ExternalActionError("mail server unavailable")


def _indebted_apartment(db_session, create_building, create_apartment, amount="50"):
    building = create_building()
    apartment = create_apartment(building=building)
    create_expense(db_session, building.id, "Debt", Decimal(amount), date(2025, 1, 1))
    db_session.refresh(apartment)
    return apartment


def test_stage_triggers_once_when_threshold_crossed(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    stage = create_stage(1, days_overdue=5)
    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    day_zero = apartment.debt_since
    sender = RecordingSender()

    first = process_collections(db_session, sender=sender, now=day_zero + timedelta(days=6), config=billing_config)
    second = process_collections(db_session, sender=sender, now=day_zero + timedelta(days=7), config=billing_config)

    assert (first.processed_count, first.actions_triggered_count) == (1, 1)
    assert (second.processed_count, second.actions_triggered_count) == (1, 0)
    assert sender.calls == [(apartment.id, 1)]
    db_session.refresh(apartment)
    assert apartment.collection_stage_id == stage.id
    log = db_session.query(CollectionLogEntry).all()
    assert len(log) == 1
    assert log[0].action_taken == "email_reminder"
    assert log[0].details["days_overdue"] == 6


def test_nothing_happens_before_first_threshold(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    create_stage(1, days_overdue=5)
    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    sender = RecordingSender()

    result = process_collections(
        db_session, sender=sender, now=apartment.debt_since + timedelta(days=2), config=billing_config
    )

    assert result.actions_triggered_count == 0
    assert sender.calls == []
    db_session.refresh(apartment)
    assert apartment.collection_stage_id is None


def test_multiple_crossings_land_on_highest_stage_only(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    create_stage(1, days_overdue=5)
    create_stage(2, days_overdue=30, action_type="formal_notice")
    top = create_stage(3, days_overdue=60, action_type="final_warning")
    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    sender = RecordingSender()

    process_collections(db_session, sender=sender, now=apartment.debt_since + timedelta(days=90), config=billing_config)

    assert sender.calls == [(apartment.id, 3)]
    assert [entry.stage_id for entry in list_collection_log(db_session, apartment_id=apartment.id)] == [top.id]


def test_inactive_stages_are_skipped(db_session, create_building, create_apartment, create_stage, billing_config):
    first = create_stage(1, days_overdue=5)
    create_stage(2, days_overdue=10, is_active=False)
    apartment = _indebted_apartment(db_session, create_building, create_apartment)

    process_collections(
        db_session, sender=RecordingSender(), now=apartment.debt_since + timedelta(days=20), config=billing_config
    )

    db_session.refresh(apartment)
    assert apartment.collection_stage_id == first.id


def test_stage_never_regresses_when_thresholds_are_edited(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    first = create_stage(1, days_overdue=5)
    second = create_stage(2, days_overdue=10)
    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    day_zero = apartment.debt_since
    sender = RecordingSender()
    process_collections(db_session, sender=sender, now=day_zero + timedelta(days=12), config=billing_config)

    upsert_stage(db_session, {"days_overdue": 40}, stage_id=second.id)
    upsert_stage(db_session, {"days_overdue": 1}, stage_id=first.id)
    process_collections(db_session, sender=sender, now=day_zero + timedelta(days=13), config=billing_config)

    db_session.refresh(apartment)
    assert apartment.collection_stage_id == second.id
    assert sender.calls == [(apartment.id, 2)]
    assert db_session.query(CollectionLogEntry).count() == 1


def test_notification_failure_keeps_stage_advance(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    stage = create_stage(1, days_overdue=5)
    apartment = _indebted_apartment(db_session, create_building, create_apartment)

    result = process_collections(
        db_session, sender=FailingSender(), now=apartment.debt_since + timedelta(days=6), config=billing_config
    )

    assert result.actions_triggered_count == 1
    assert result.notification_failures == 1
    db_session.refresh(apartment)
    assert apartment.collection_stage_id == stage.id
    assert db_session.query(CollectionLogEntry).count() == 1


def test_paid_up_apartment_leaves_collections(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    create_stage(1, days_overdue=5)
    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    process_collections(
        db_session, sender=RecordingSender(), now=apartment.debt_since + timedelta(days=6), config=billing_config
    )
    record_payment(db_session, apartment.id, Decimal("50"))

    result = process_collections(db_session, sender=RecordingSender(), config=billing_config)

    assert result.cleared_count == 1
    db_session.refresh(apartment)
    assert apartment.collection_stage_id is None
    assert apartment.debt_since is None
    assert db_session.query(CollectionLogEntry).count() == 1


def test_scan_sets_missing_debt_since(db_session, create_apartment, create_stage, billing_config):
    create_stage(1, days_overdue=0)
    apartment = create_apartment()
    row = db_session.get(Apartment, apartment.id)
    row.cached_balance = Decimal("-10.00")
    db_session.commit()
    sender = RecordingSender()

    result = process_collections(db_session, sender=sender, config=billing_config)

    db_session.refresh(apartment)
    assert apartment.debt_since is not None
    assert result.actions_triggered_count == 1
    assert sender.calls == [(apartment.id, 1)]


def test_default_sender_writes_local_email(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    create_stage(1, days_overdue=5, action_type="formal_notice")
    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    config = replace(billing_config, notifications_enabled=True)

    result = process_collections(db_session, now=apartment.debt_since + timedelta(days=6), config=config)

    assert result.notification_failures == 0
    outbox = list(Path(settings.email_output_dir).glob("*.txt"))
    assert len(outbox) == 1
    contents = outbox[0].read_text()
    assert "Formal notice: overdue balance for apartment" in contents
    assert "₪50.00" in contents
    assert "resident@example.com" in contents


def test_missing_contact_email_is_a_notification_failure(
    db_session, create_building, create_stage, create_apartment, billing_config
):
    create_stage(1, days_overdue=0)
    building = create_building()
    apartment = create_apartment(building=building, contact_email=None)
    create_expense(db_session, building.id, "Debt", Decimal("10"), date(2025, 1, 1))
    config = replace(billing_config, notifications_enabled=True)

    result = process_collections(db_session, config=config)

    assert result.notification_failures == 1
    db_session.refresh(apartment)
    assert apartment.collection_stage_id is not None


def test_stage_configuration_rules(db_session, create_building, create_apartment, create_stage, billing_config):
    stage = upsert_stage(
        db_session, {"stage_number": 1, "name": "Reminder", "days_overdue": 3, "action_type": "email_reminder"}
    )
    assert [item.id for item in list_stages(db_session)] == [stage.id]

    with pytest.raises(ConflictError):
        upsert_stage(db_session, {"stage_number": 1, "name": "Dup", "days_overdue": 9, "action_type": "custom"})
    with pytest.raises(ValidationError):
        upsert_stage(db_session, {"stage_number": 2, "name": "Bad", "days_overdue": -1, "action_type": "custom"})
    with pytest.raises(ValidationError):
        upsert_stage(db_session, {"stage_number": 2, "name": "Bad", "days_overdue": 1, "action_type": "sms"})
    with pytest.raises(NotFoundError):
        upsert_stage(db_session, {"name": "Missing"}, stage_id=999)

    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    process_collections(
        db_session, sender=RecordingSender(), now=apartment.debt_since + timedelta(days=5), config=billing_config
    )
    with pytest.raises(ConflictError):
        delete_stage(db_session, stage.id)

    upsert_stage(db_session, {"is_active": False}, stage_id=stage.id)
    assert list_stages(db_session, include_inactive=False) == []

    spare = create_stage(5, days_overdue=100)
    delete_stage(db_session, spare.id)
    assert db_session.get(CollectionStage, spare.id) is None
    with pytest.raises(NotFoundError):
        delete_stage(db_session, spare.id)


def test_ensure_default_stages_seeds_once(db_session):
    created = ensure_default_stages(db_session)

    assert [stage.stage_number for stage in created] == [1, 2, 3]
    assert ensure_default_stages(db_session) == []
    assert [stage.days_overdue for stage in list_stages(db_session)] == [7, 30, 60]


def test_repaid_debt_restarts_the_overdue_clock(
    db_session, create_building, create_apartment, create_stage, billing_config
):
    create_stage(1, days_overdue=5)
    apartment = _indebted_apartment(db_session, create_building, create_apartment)
    old_debt_since = utcnow() - timedelta(days=20)
    apartment.debt_since = old_debt_since
    db_session.commit()

    record_payment(db_session, apartment.id, Decimal("50"))
    db_session.refresh(apartment)
    assert apartment.debt_since is None

    create_expense(db_session, apartment.building_id, "New debt", Decimal("10"), date(2025, 2, 1))
    db_session.refresh(apartment)
    assert apartment.debt_since > old_debt_since
    sender = RecordingSender()

    result = process_collections(db_session, sender=sender, config=billing_config)

    assert result.actions_triggered_count == 0
    assert sender.calls == []
    db_session.refresh(apartment)
    assert apartment.collection_stage_id is None


def test_vacant_apartments_are_not_escalated(db_session, create_apartment, create_stage, billing_config):
    create_stage(1, days_overdue=0)
    apartment = create_apartment(status="vacant")
    row = db_session.get(Apartment, apartment.id)
    row.cached_balance = Decimal("-25.00")
    row.debt_since = utcnow() - timedelta(days=3)
    db_session.commit()
    sender = RecordingSender()

    result = process_collections(db_session, sender=sender, config=billing_config)

    assert result.processed_count == 0
    assert sender.calls == []


def test_stage_changes_are_audited_in_the_same_unit(db_session):
    stage = upsert_stage(
        db_session,
        {"stage_number": 4, "name": "Call", "days_overdue": 14, "action_type": "custom"},
        actor="manager",
    )
    upsert_stage(db_session, {"name": "Phone call"}, stage_id=stage.id, actor="manager")
    with pytest.raises(ConflictError):
        upsert_stage(
            db_session,
            {"stage_number": 4, "name": "Duplicate", "days_overdue": 1, "action_type": "custom"},
            actor="manager",
        )
    delete_stage(db_session, stage.id, actor="manager")

    rows = db_session.query(AuditLog).order_by(AuditLog.id).all()
    assert [row.action for row in rows] == [
        "collections.stage.create",
        "collections.stage.update",
        "collections.stage.delete",
    ]
    assert {row.actor for row in rows} == {"manager"}
    assert rows[0].target_entity_id == str(stage.id)
