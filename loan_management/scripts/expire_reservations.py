#!/usr/bin/env python3
"""Run the reservation expiry sweep once. Intended for cron."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.reservation_service import expire_stale_reservations  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expire pending/approved reservations whose window has ended.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LOAN_MANAGEMENT_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LOAN_MANAGEMENT_DB_URL env var.",
    )
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Reference time (ISO 8601); defaults to the current local time.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set LOAN_MANAGEMENT_DB_URL or pass --db-url.")

    logging.basicConfig(level=(os.environ.get("LOG_LEVEL") or "INFO").upper())
    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

    with SessionLocal() as db:
        count = expire_stale_reservations(db, now=args.now)
    print(f"OK expired={count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
