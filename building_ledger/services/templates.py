from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from ..config import BillingConfig, get_billing_config
from ..constants import DEFAULT_STAGE_TEMPLATES
from ..models.models import Apartment, CollectionStage

MERGE_TAGS: List[Dict[str, str]] = [
    {
        "key": "apartment_number",
        "label": "Apartment number",
        "description": "Apartment identifier within its building.",
        "sample": "12",
    },
    {
        "key": "building_name",
        "label": "Building name",
        "description": "Name of the apartment's building.",
        "sample": "Herzl 14",
    },
    {
        "key": "balance",
        "label": "Outstanding balance",
        "description": "Amount owed, formatted in the billing currency.",
        "sample": "₪245.00",
    },
    {
        "key": "days_overdue",
        "label": "Days overdue",
        "description": "Days since the balance went negative.",
        "sample": "31",
    },
    {
        "key": "stage_name",
        "label": "Stage name",
        "description": "Name of the collection stage reached.",
        "sample": "Formal notice",
    },
    {
        "key": "current_date",
        "label": "Current date",
        "description": "Date of message generation.",
        "sample": "2025-11-08",
    },
]

TAG_PATTERN = re.compile(r"{{\s*([a-zA-Z0-9_]+)\s*}}")


def sample_merge_context() -> Dict[str, str]:
    return {tag["key"]: tag["sample"] for tag in MERGE_TAGS}


def build_merge_context(
    *,
    apartment: Optional[Apartment] = None,
    stage: Optional[CollectionStage] = None,
    days_overdue: Optional[int] = None,
    config: Optional[BillingConfig] = None,
) -> Dict[str, str]:
    config = config or get_billing_config()
    now = datetime.now(timezone.utc)
    context = sample_merge_context()
    context["current_date"] = now.date().isoformat()
    if apartment:
        owed = -Decimal(apartment.cached_balance or 0)
        context.update(
            {
                "apartment_number": apartment.apartment_number,
                "building_name": apartment.building.name if apartment.building else "",
                "balance": config.format_amount(max(owed, Decimal("0"))),
            }
        )
    if days_overdue is not None:
        context["days_overdue"] = str(days_overdue)
    if stage:
        context["stage_name"] = stage.name
    return context


def render_merge_tags(text: str, context: Dict[str, str]) -> str:
    if not text:
        return text

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return str(context.get(key, match.group(0)))

    return TAG_PATTERN.sub(_replace, text)


def render_template(subject: str, body: str, context: Dict[str, str]) -> Dict[str, str]:
    return {
        "subject": render_merge_tags(subject, context),
        "body": render_merge_tags(body, context),
    }


def render_stage_message(
    apartment: Apartment,
    stage: CollectionStage,
    days_overdue: Optional[int] = None,
    config: Optional[BillingConfig] = None,
) -> Dict[str, str]:
    """Subject and body for a stage action, from its template or the action type default."""
    if stage.template is not None:
        subject, body = stage.template.subject, stage.template.body
    else:
        fallback = DEFAULT_STAGE_TEMPLATES.get(stage.action_type, DEFAULT_STAGE_TEMPLATES["custom"])
        subject, body = fallback["subject"], fallback["body"]
    context = build_merge_context(apartment=apartment, stage=stage, days_overdue=days_overdue, config=config)
    return render_template(subject, body, context)
