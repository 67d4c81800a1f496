#!/usr/bin/env python3
"""Materialize due recurring expenses and post this month's subscription charges."""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from building_ledger.config import SessionLocal, settings  # noqa: E402
from building_ledger.core.logging import configure_logging  # noqa: E402
from building_ledger.services.expenses import materialize_recurring_expenses  # noqa: E402
from building_ledger.services.subscriptions import post_subscription_charges  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Billing date (YYYY-MM-DD).")
    parser.add_argument("--skip-subscriptions", action="store_true", help="Only materialize recurring expenses.")
    args = parser.parse_args()

    configure_logging(settings.log_level, json_logs=settings.log_json)
    as_of = args.as_of or date.today()
    with SessionLocal() as session:
        created = materialize_recurring_expenses(session, as_of=as_of, actor="scheduler")
        print(f"Recurring expenses materialized: {created}")
        if not args.skip_subscriptions:
            result = post_subscription_charges(session, period=f"{as_of:%Y-%m}", actor="scheduler")
            print(
                f"Subscription charges for {result.period}: {result.charged_count} posted, "
                f"{result.skipped_count} skipped, {len(result.failures)} failed."
            )
            if result.failures:
                sys.exit(1)


if __name__ == "__main__":
    main()
