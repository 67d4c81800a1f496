from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import BillingConfig, get_billing_config
from ..constants import COLLECTION_ACTION_TYPES, DEFAULT_COLLECTION_STAGES
from ..core.errors import ConflictError, ExternalActionError, NotFoundError, ValidationError
from ..core.money import to_money
from ..core.transactions import run_atomic
from ..models.models import (
    Apartment,
    CollectionLogEntry,
    CollectionStage,
    NotificationTemplate,
    utcnow,
)
from .audit import audit_log
from .ledger import lock_apartment
from .stage_actions import EmailStageActionSender, StageActionSender

logger = logging.getLogger(__name__)

STAGE_FIELDS = ("stage_number", "name", "days_overdue", "action_type", "template_id", "settings", "is_active")


@dataclass
class CollectionRunResult:
    processed_count: int = 0
    actions_triggered_count: int = 0
    cleared_count: int = 0
    notification_failures: int = 0
    failed_apartments: List[int] = field(default_factory=list)


def _next_stage(session: Session, apartment: Apartment, days_overdue: int) -> Optional[CollectionStage]:
    """Highest active stage the apartment qualifies for beyond the one it already reached."""
    current_number = apartment.collection_stage.stage_number if apartment.collection_stage else 0
    return (
        session.query(CollectionStage)
        .filter(
            CollectionStage.is_active.is_(True),
            CollectionStage.stage_number > current_number,
            CollectionStage.days_overdue <= days_overdue,
        )
        .order_by(CollectionStage.stage_number.desc())
        .first()
    )


def _step_apartment(session: Session, apartment_id: int, now: datetime) -> Tuple[str, Optional[int]]:
    apartment = lock_apartment(session, apartment_id)
    balance = to_money(apartment.cached_balance)

    if balance >= 0:
        if apartment.collection_stage_id is None and apartment.debt_since is None:
            return "idle", None
        logger.info("Apartment %s left collections (balance %s)", apartment_id, balance)
        apartment.collection_stage_id = None
        apartment.debt_since = None
        session.add(apartment)
        session.flush()
        return "cleared", None

    if apartment.debt_since is None:
        apartment.debt_since = now
    days_overdue = max(0, (now - apartment.debt_since).days)

    stage = _next_stage(session, apartment, days_overdue)
    if stage is None:
        session.add(apartment)
        session.flush()
        return "unchanged", None

    previous_stage_id = apartment.collection_stage_id
    apartment.collection_stage_id = stage.id
    session.add(apartment)
    session.add(
        CollectionLogEntry(
            apartment_id=apartment.id,
            stage_id=stage.id,
            action_taken=stage.action_type,
            details={
                "stage_number": stage.stage_number,
                "stage_name": stage.name,
                "previous_stage_id": previous_stage_id,
                "days_overdue": days_overdue,
                "balance": str(balance),
            },
            triggered_at=now,
        )
    )
    session.flush()
    logger.info(
        "Apartment %s advanced to collection stage %s (%s days overdue)",
        apartment_id,
        stage.stage_number,
        days_overdue,
    )
    return "advanced", stage.id


def _notify(session: Session, sender: StageActionSender, apartment_id: int, stage_id: int) -> bool:
    apartment = session.get(Apartment, apartment_id)
    stage = session.get(CollectionStage, stage_id)
    try:
        sender.send_stage_action(session, apartment, stage)
    except ExternalActionError as exc:
        logger.warning(
            "Stage %s action for apartment %s was not delivered: %s", stage.stage_number, apartment_id, exc.detail
        )
        return False
    except Exception:
        logger.exception("Stage %s action for apartment %s failed", stage.stage_number, apartment_id)
        return False
    return True


def process_collections(
    session: Session,
    sender: Optional[StageActionSender] = None,
    now: Optional[datetime] = None,
    config: Optional[BillingConfig] = None,
) -> CollectionRunResult:
    """Advance indebted occupied apartments through the collection stages.

    Every apartment is committed on its own. Stage actions are sent after
    the commit, so a delivery failure never undoes the stage change or its
    log entry.
    """
    now = now or utcnow()
    config = config or get_billing_config()
    if sender is None and config.notifications_enabled:
        sender = EmailStageActionSender(config=config, now=now)

    candidate_ids = [
        row[0]
        for row in session.query(Apartment.id)
        .filter(
            Apartment.status == "occupied",
            or_(
                Apartment.cached_balance < 0,
                Apartment.collection_stage_id.isnot(None),
                Apartment.debt_since.isnot(None),
            )
        )
        .order_by(Apartment.id.asc())
        .all()
    ]

    result = CollectionRunResult()
    for apartment_id in candidate_ids:
        try:
            outcome, stage_id = run_atomic(
                session,
                lambda db, apartment_id=apartment_id: _step_apartment(db, apartment_id, now),
                name=f"collections for apartment {apartment_id}",
            )
        except Exception:
            logger.exception("Collections processing failed for apartment %s", apartment_id)
            result.failed_apartments.append(apartment_id)
            continue

        result.processed_count += 1
        if outcome == "cleared":
            result.cleared_count += 1
        elif outcome == "advanced":
            result.actions_triggered_count += 1
            if sender is not None and not _notify(session, sender, apartment_id, stage_id):
                result.notification_failures += 1

    logger.info(
        "Collections run: %s processed, %s actions, %s cleared, %s notification failures, %s errors",
        result.processed_count,
        result.actions_triggered_count,
        result.cleared_count,
        result.notification_failures,
        len(result.failed_apartments),
    )
    return result


# --- Stage configuration ---


def list_stages(session: Session, include_inactive: bool = True) -> List[CollectionStage]:
    query = session.query(CollectionStage)
    if not include_inactive:
        query = query.filter(CollectionStage.is_active.is_(True))
    return query.order_by(CollectionStage.stage_number.asc()).all()


def _validate_stage_values(session: Session, values: Mapping[str, Any], stage_id: Optional[int]) -> None:
    if "stage_number" in values:
        if values["stage_number"] is None or int(values["stage_number"]) < 1:
            raise ValidationError("Stage number must be a positive integer")
        clash = (
            session.query(CollectionStage.id)
            .filter(CollectionStage.stage_number == values["stage_number"], CollectionStage.id != (stage_id or 0))
            .first()
        )
        if clash:
            raise ConflictError(f"Stage number {values['stage_number']} is already in use")
    if "days_overdue" in values and (values["days_overdue"] is None or int(values["days_overdue"]) < 0):
        raise ValidationError("Days overdue must be zero or greater")
    if "action_type" in values and values["action_type"] not in COLLECTION_ACTION_TYPES:
        raise ValidationError(f"Unsupported action type {values['action_type']!r}")
    if "name" in values and not (values["name"] or "").strip():
        raise ValidationError("Stage name is required")
    if values.get("template_id") is not None and not session.get(NotificationTemplate, values["template_id"]):
        raise NotFoundError(f"Notification template {values['template_id']} not found")


def upsert_stage(
    session: Session,
    payload: Mapping[str, Any],
    stage_id: Optional[int] = None,
    actor: Optional[str] = None,
) -> CollectionStage:
    """Create a stage, or update the fields present in ``payload`` when ``stage_id`` is given."""
    values = {key: payload[key] for key in STAGE_FIELDS if key in payload}

    def _upsert(db: Session) -> CollectionStage:
        if stage_id is None:
            missing = [key for key in ("stage_number", "name", "days_overdue", "action_type") if values.get(key) is None]
            if missing:
                raise ValidationError(f"Missing stage field(s): {', '.join(missing)}")
            stage = CollectionStage(settings={}, is_active=True)
        else:
            stage = db.get(CollectionStage, stage_id)
            if not stage:
                raise NotFoundError(f"Collection stage {stage_id} not found")
        _validate_stage_values(db, values, stage_id)
        for key, value in values.items():
            if key == "settings" and value is None:
                value = {}
            setattr(stage, key, value)
        db.add(stage)
        db.flush()
        audit_log(
            db_session=db,
            actor=actor,
            action="collections.stage.create" if stage_id is None else "collections.stage.update",
            target_entity_type="CollectionStage",
            target_entity_id=str(stage.id),
            after=values,
        )
        return stage

    stage = run_atomic(session, _upsert, name="collection stage update")
    logger.info("Collection stage %s saved (number %s)", stage.id, stage.stage_number)
    return stage


def delete_stage(session: Session, stage_id: int, actor: Optional[str] = None) -> None:
    """Delete an unused stage. Stages with history or apartments on them can only be deactivated."""

    def _delete(db: Session) -> None:
        stage = db.get(CollectionStage, stage_id)
        if not stage:
            raise NotFoundError(f"Collection stage {stage_id} not found")
        in_use = db.query(Apartment.id).filter(Apartment.collection_stage_id == stage_id).count()
        if in_use:
            raise ConflictError(f"{in_use} apartment(s) are currently at this stage; deactivate it instead")
        if db.query(CollectionLogEntry.id).filter(CollectionLogEntry.stage_id == stage_id).first():
            raise ConflictError("Stage has collection history; deactivate it instead")
        db.delete(stage)
        db.flush()
        audit_log(
            db_session=db,
            actor=actor,
            action="collections.stage.delete",
            target_entity_type="CollectionStage",
            target_entity_id=str(stage_id),
        )

    run_atomic(session, _delete, name="collection stage deletion")
    logger.info("Collection stage %s deleted", stage_id)


def list_collection_log(
    session: Session, apartment_id: Optional[int] = None, limit: int = 100, offset: int = 0
) -> List[CollectionLogEntry]:
    query = session.query(CollectionLogEntry)
    if apartment_id is not None:
        query = query.filter(CollectionLogEntry.apartment_id == apartment_id)
    return (
        query.order_by(CollectionLogEntry.triggered_at.desc(), CollectionLogEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def ensure_default_stages(session: Session) -> List[CollectionStage]:
    """Seed the default escalation ladder when no stages are configured."""
    if session.query(CollectionStage.id).first():
        return []
    created = []
    for definition in DEFAULT_COLLECTION_STAGES:
        stage = CollectionStage(settings={}, is_active=True, **definition)
        session.add(stage)
        created.append(stage)
    session.commit()
    logger.info("Seeded %s default collection stages", len(created))
    return created
