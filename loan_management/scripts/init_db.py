#!/usr/bin/env python3
"""Create the LoanManagement schema and optionally seed one staff user."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base  # noqa: E402
from models.loan_models import STAFF_ROLES, User  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create LoanManagement tables for a database.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LOAN_MANAGEMENT_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LOAN_MANAGEMENT_DB_URL env var.",
    )
    parser.add_argument("--admin-email", default=None, help="Create this staff user if missing.")
    parser.add_argument("--admin-role", choices=sorted(STAFF_ROLES), default="admin")
    parser.add_argument("--first-name", default="Lab")
    parser.add_argument("--last-name", default="Admin")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set LOAN_MANAGEMENT_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    Base.metadata.create_all(engine)
    print(f"OK tables={len(Base.metadata.tables)}")

    if args.admin_email:
        email = args.admin_email.strip().lower()
        with Session(engine) as db:
            user = db.execute(select(User).where(User.Email == email)).scalars().first()
            if user:
                print(f"User {email} already exists with id={user.UserID} role={user.Role}")
                return 0
            user = User(
                Role=args.admin_role,
                FirstName=args.first_name,
                LastName=args.last_name,
                Email=email,
                IsActive=True,
            )
            db.add(user)
            db.commit()
            print(f"Created {args.admin_role} id={user.UserID} email={email}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
