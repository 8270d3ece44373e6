from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.loan_models import ACTIVE_RESERVATION_STATUSES, Asset, Loan, Penalty, User
from schemas.policy import LoanPolicy
from services.asset_locks import asset_guard
from services.audit_service import log_audit
from services.errors import (
    AlreadyReturnedError,
    InvalidStateTransitionError,
    ItemUnavailableError,
    LoanNotFoundError,
    UserNotFoundError,
)
from services.inventory_service import has_open_loan, lock_asset, set_status
from services.notification_service import notify
from services.penalty_service import compute_penalty, days_late
from services.reservation_service import get_reservation, lock_reservation
from services.ticket_service import open_damage_ticket
from services.transactions import atomic


logger = logging.getLogger("loan_management.loans")


def get_loan(db: Session, loan_id: int) -> Loan:
    loan = db.get(Loan, loan_id)
    if not loan:
        raise LoanNotFoundError(f"Loan {loan_id} not found")
    return loan


def _lock_loan(db: Session, loan_id: int) -> Loan:
    loan = db.execute(
        select(Loan)
        .where(Loan.LoanID == loan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not loan:
        raise LoanNotFoundError(f"Loan {loan_id} not found")
    return loan


def _ensure_checkout_possible(db: Session, asset: Asset) -> None:
    if has_open_loan(db, asset.AssetID):
        raise ItemUnavailableError("Item is currently checked out")
    if asset.Status != "available":
        raise ItemUnavailableError("Item is not available for checkout")


def _open_loan(
    db: Session,
    asset: Asset,
    borrower_id: int,
    reservation_id: int | None,
    now: datetime,
    policy: LoanPolicy,
) -> Loan:
    loan = Loan(
        AssetID=asset.AssetID,
        UserID=borrower_id,
        ReservationID=reservation_id,
        CheckoutAt=now,
        DueAt=now + timedelta(days=policy.default_loan_days),
        Damaged=False,
    )
    db.add(loan)
    set_status(db, asset.AssetID, "checked_out", now=now)
    db.flush()
    return loan


def checkout_from_reservation(
    db: Session,
    actor_id: int,
    reservation_id: int,
    now: datetime | None = None,
    policy: LoanPolicy | None = None,
) -> Loan:
    now = now or datetime.now()
    policy = policy or LoanPolicy.from_env()
    asset_id = get_reservation(db, reservation_id).AssetID

    with asset_guard(asset_id):
        try:
            with atomic(db):
                asset = lock_asset(db, asset_id)
                reservation = lock_reservation(db, reservation_id)
                if reservation.Status not in ACTIVE_RESERVATION_STATUSES:
                    raise InvalidStateTransitionError(f"Reservation {reservation_id} not approved/confirmed")
                existing = db.execute(
                    select(Loan.LoanID).where(Loan.ReservationID == reservation_id)
                ).scalar()
                if existing is not None:
                    raise InvalidStateTransitionError(
                        f"Reservation {reservation_id} was already checked out as loan {existing}"
                    )
                _ensure_checkout_possible(db, asset)

                loan = _open_loan(db, asset, reservation.UserID, reservation_id, now, policy)
                reservation.Status = "confirmed"
                log_audit(
                    db,
                    "loan",
                    loan.LoanID,
                    "checkout_from_reservation",
                    {"reservation_id": reservation_id, "asset_id": asset_id, "due_at": loan.DueAt.isoformat()},
                    actor_id=actor_id,
                    occurred_at=now,
                )
                notify(
                    db,
                    reservation.UserID,
                    "loan",
                    {
                        "message": "Your item has been checked out from reservation",
                        "loan_id": loan.LoanID,
                        "reservation_id": reservation_id,
                        "asset_tag": asset.AssetTag,
                        "due_date": loan.DueAt.isoformat(),
                    },
                    created_at=now,
                )
        except ItemUnavailableError:
            logger.warning("Checkout of reservation %s refused: asset %s unavailable", reservation_id, asset_id)
            raise
        except IntegrityError as exc:
            logger.warning("Checkout of reservation %s hit the open-loan constraint", reservation_id)
            raise ItemUnavailableError("Item is currently checked out") from exc

    logger.info("Loan %s opened from reservation %s", loan.LoanID, reservation_id)
    return loan


def checkout_adhoc(
    db: Session,
    actor_id: int,
    borrower_id: int,
    asset_id: int,
    now: datetime | None = None,
    policy: LoanPolicy | None = None,
) -> Loan:
    now = now or datetime.now()
    policy = policy or LoanPolicy.from_env()

    with asset_guard(asset_id):
        try:
            with atomic(db):
                borrower = db.get(User, borrower_id)
                if not borrower or not borrower.IsActive:
                    raise UserNotFoundError(f"Borrower {borrower_id} not found")
                asset = lock_asset(db, asset_id)
                _ensure_checkout_possible(db, asset)
                loan = _open_loan(db, asset, borrower_id, None, now, policy)
                log_audit(
                    db,
                    "loan",
                    loan.LoanID,
                    "checkout_adhoc",
                    {"borrower_id": borrower_id, "asset_id": asset_id, "due_at": loan.DueAt.isoformat()},
                    actor_id=actor_id,
                    occurred_at=now,
                )
                notify(
                    db,
                    borrower_id,
                    "loan",
                    {
                        "message": f"You have checked out: {asset.AssetTag}",
                        "loan_id": loan.LoanID,
                        "asset_tag": asset.AssetTag,
                        "due_date": loan.DueAt.isoformat(),
                    },
                    created_at=now,
                )
        except ItemUnavailableError:
            logger.warning("Ad hoc checkout refused: asset %s unavailable", asset_id)
            raise
        except IntegrityError as exc:
            logger.warning("Ad hoc checkout of asset %s hit the open-loan constraint", asset_id)
            raise ItemUnavailableError("Item is currently checked out") from exc

    logger.info("Loan %s opened ad hoc for borrower %s on asset %s", loan.LoanID, borrower_id, asset_id)
    return loan


def return_loan(
    db: Session,
    actor_id: int,
    loan_id: int,
    damaged: bool = False,
    condition_notes: str | None = None,
    now: datetime | None = None,
    policy: LoanPolicy | None = None,
) -> Loan:
    now = now or datetime.now()
    policy = policy or LoanPolicy.from_env()
    damaged = bool(damaged)
    asset_id = get_loan(db, loan_id).AssetID

    with asset_guard(asset_id), atomic(db):
        asset = lock_asset(db, asset_id)
        loan = _lock_loan(db, loan_id)
        if loan.ReturnAt is not None:
            raise AlreadyReturnedError("Loan already returned")

        loan.ReturnAt = now
        loan.Damaged = damaged
        loan.ReturnCondition = condition_notes
        set_status(db, asset_id, "out_of_service" if damaged else "available", now=now)

        amount = compute_penalty(loan.DueAt, now, policy.penalty_per_day)
        if amount > 0:
            db.add(Penalty(LoanID=loan_id, UserID=loan.UserID, Amount=amount, Reason="overdue", CreatedAt=now))
            notify(
                db,
                loan.UserID,
                "penalty",
                {
                    "message": f"You have a penalty of {amount} for late return",
                    "loan_id": loan_id,
                    "amount": str(amount),
                    "days_late": days_late(loan.DueAt, now),
                    "item": asset.AssetTag,
                },
                created_at=now,
            )

        if damaged:
            open_damage_ticket(db, actor_id, loan, condition_notes, now=now)

        log_audit(
            db,
            "loan",
            loan_id,
            "return",
            {"damaged": damaged, "condition": condition_notes, "penalty": str(amount)},
            actor_id=actor_id,
            occurred_at=now,
        )
        notify(
            db,
            loan.UserID,
            "return",
            {
                "message": f"Thank you for returning {asset.AssetTag}",
                "loan_id": loan_id,
                "return_date": now.isoformat(),
            },
            created_at=now,
        )

    logger.info("Loan %s returned (damaged=%s, penalty=%s)", loan_id, damaged, amount)
    return loan


def is_overdue(loan: Loan, now: datetime | None = None) -> bool:
    return loan.ReturnAt is None and (now or datetime.now()) > loan.DueAt


def days_overdue(loan: Loan, now: datetime | None = None) -> int:
    reference = loan.ReturnAt or now or datetime.now()
    if reference <= loan.DueAt:
        return 0
    # Nearest whole day; halves round up.
    return int((reference - loan.DueAt) / timedelta(days=1) + 0.5)


def list_loans(db: Session, user_id: int | None = None, open_only: bool = False) -> list[Loan]:
    stmt = select(Loan)
    if user_id is not None:
        stmt = stmt.where(Loan.UserID == user_id)
    if open_only:
        stmt = stmt.where(Loan.ReturnAt.is_(None))
    return list(db.execute(stmt.order_by(Loan.CheckoutAt.desc())).scalars().all())


def serialize_loan(loan: Loan, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    return {
        "loanID": loan.LoanID,
        "assetID": loan.AssetID,
        "userID": loan.UserID,
        "reservationID": loan.ReservationID,
        "checkoutAt": loan.CheckoutAt,
        "dueAt": loan.DueAt,
        "returnAt": loan.ReturnAt,
        "damaged": bool(loan.Damaged),
        "returnCondition": loan.ReturnCondition,
        "isOverdue": is_overdue(loan, now),
        "daysOverdue": days_overdue(loan, now),
        "penalties": [
            {"penaltyID": penalty.PenaltyID, "amount": penalty.Amount, "reason": penalty.Reason}
            for penalty in loan.Penalties
        ],
    }
