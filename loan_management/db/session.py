import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


LOAN_MANAGEMENT_DB_URL = _require_env("LOAN_MANAGEMENT_DB_URL")

engine_loans = create_engine(
    LOAN_MANAGEMENT_DB_URL,
    pool_pre_ping=True,
    future=True,
)

SessionLocalLoans = sessionmaker(
    bind=engine_loans,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
