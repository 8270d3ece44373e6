from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal


ONE_DAY = timedelta(days=1)


def days_late(due_at: datetime, return_at: datetime) -> int:
    if return_at <= due_at:
        return 0
    late = return_at - due_at
    whole_days = late // ONE_DAY
    # Any started day counts as a full day.
    if late % ONE_DAY:
        whole_days += 1
    return whole_days


def compute_penalty(due_at: datetime, return_at: datetime, per_day_rate: Decimal | int | str) -> Decimal:
    rate = Decimal(str(per_day_rate))
    return max(0, days_late(due_at, return_at)) * rate
