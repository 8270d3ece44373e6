from __future__ import annotations

import os
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_LOAN_DAYS = 7
DEFAULT_PENALTY_PER_DAY = Decimal("10")


class LoanPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_loan_days: int = Field(DEFAULT_LOAN_DAYS, ge=1)
    penalty_per_day: Decimal = Field(DEFAULT_PENALTY_PER_DAY, ge=0)

    @classmethod
    def from_env(cls) -> "LoanPolicy":
        return cls(
            default_loan_days=os.environ.get("DEFAULT_LOAN_DAYS") or DEFAULT_LOAN_DAYS,
            penalty_per_day=os.environ.get("PENALTY_PER_DAY") or DEFAULT_PENALTY_PER_DAY,
        )
