import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from ..config import BillingConfig
from ..core.errors import ExternalActionError
from ..models.models import Apartment, CollectionStage, utcnow
from .email import SendResult, send_email
from .templates import render_stage_message

logger = logging.getLogger(__name__)


class StageActionSender(Protocol):
    def send_stage_action(self, session: Session, apartment: Apartment, stage: CollectionStage) -> SendResult:
        """Carry out ``stage``'s action for ``apartment``; raise ``ExternalActionError`` on failure."""


class EmailStageActionSender:
    """Emails the apartment contact the stage's rendered template."""

    def __init__(self, config: Optional[BillingConfig] = None, now: Optional[datetime] = None):
        self.config = config
        self.now = now

    def _days_overdue(self, apartment: Apartment) -> Optional[int]:
        if apartment.debt_since is None:
            return None
        return max(0, ((self.now or utcnow()) - apartment.debt_since).days)

    def send_stage_action(self, session: Session, apartment: Apartment, stage: CollectionStage) -> SendResult:
        if not apartment.contact_email:
            raise ExternalActionError(f"Apartment {apartment.id} has no contact email")
        message = render_stage_message(apartment, stage, days_overdue=self._days_overdue(apartment), config=self.config)
        result = send_email(message["subject"], message["body"], [apartment.contact_email])
        logger.info(
            "Stage %s action %s sent for apartment %s via %s",
            stage.stage_number,
            stage.action_type,
            apartment.id,
            result.backend,
        )
        return result
