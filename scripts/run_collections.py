#!/usr/bin/env python3
"""Advance indebted apartments through the collection stages."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from building_ledger.config import SessionLocal, settings  # noqa: E402
from building_ledger.core.logging import configure_logging  # noqa: E402
from building_ledger.services.collections import process_collections  # noqa: E402


def main() -> None:
    configure_logging(settings.log_level, json_logs=settings.log_json)
    with SessionLocal() as session:
        result = process_collections(session)
    print(
        f"Collections: {result.processed_count} processed, {result.actions_triggered_count} actions, "
        f"{result.cleared_count} cleared, {result.notification_failures} notification failures."
    )
    if result.failed_apartments:
        print(f"Failed apartments: {', '.join(str(apartment_id) for apartment_id in result.failed_apartments)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
