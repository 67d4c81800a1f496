#!/usr/bin/env python3
"""Apply migrations and run the ledger API with auto-reload.

Usage:
    python scripts/start_dev.py [--port 8000] [--skip-migrations]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import uvicorn
from alembic import command
from alembic.config import Config

ROOT = Path(__file__).resolve().parent.parent
PACKAGE_DIR = ROOT / "building_ledger"

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_PORT = os.environ.get("LEDGER_API_PORT", "8000")


def _run_migrations() -> None:
    print("[launcher] applying database migrations...")
    config = Config(str(PACKAGE_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(PACKAGE_DIR / "migrations"))
    command.upgrade(config, "head")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the ledger API for local development.")
    parser.add_argument("--port", type=int, default=int(DEFAULT_PORT))
    parser.add_argument("--skip-migrations", action="store_true")
    args = parser.parse_args()

    if not args.skip_migrations:
        _run_migrations()

    print(f"[launcher] API on http://127.0.0.1:{args.port}")
    uvicorn.run(
        "building_ledger.main:app",
        port=args.port,
        reload=True,
        reload_dirs=[str(PACKAGE_DIR)],
        log_level="info",
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n[launcher] interrupted by user.")
