from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.loan_models import ACTIVE_RESERVATION_STATUSES, Reservation
from services.asset_locks import asset_guard
from services.audit_service import log_audit
from services.errors import (
    AlreadyStartedError,
    InvalidIntervalError,
    InvalidStateTransitionError,
    MissingReasonError,
    OwnershipError,
    ReservationNotFoundError,
    ReservationOverlapError,
)
from services.inventory_service import get_asset, lock_asset
from services.notification_service import notify
from services.transactions import atomic


logger = logging.getLogger("loan_management.reservations")

APPROVABLE_STATES = {"pending", "approved", "confirmed"}
DENIABLE_STATES = {"pending", "approved"}
CANCELLABLE_STATES = {"pending", "approved"}
EXPIRABLE_STATES = ("pending", "approved")
TERMINAL_STATES = {"denied", "confirmed", "cancelled", "expired"}


def _period_payload(reservation: Reservation) -> dict:
    return {"start": reservation.StartAt.isoformat(), "end": reservation.EndAt.isoformat()}


def get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if not reservation:
        raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
    return reservation


def lock_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.execute(
        select(Reservation)
        .where(Reservation.ReservationID == reservation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not reservation:
        raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
    return reservation


def _overlap_exists(
    db: Session,
    asset_id: int,
    start_at: datetime,
    end_at: datetime,
    exclude_reservation_id: int | None = None,
) -> bool:
    # Half-open intervals: [a, b) and [c, d) intersect iff a < d and c < b.
    conditions = [
        Reservation.AssetID == asset_id,
        Reservation.Status.in_(ACTIVE_RESERVATION_STATUSES),
        Reservation.StartAt < end_at,
        Reservation.EndAt > start_at,
    ]
    if exclude_reservation_id is not None:
        conditions.append(Reservation.ReservationID != exclude_reservation_id)
    return bool(db.execute(select(exists().where(*conditions))).scalar())


def is_period_available(
    db: Session,
    asset_id: int,
    start_at: datetime,
    end_at: datetime,
    exclude_reservation_id: int | None = None,
) -> bool:
    if start_at >= end_at:
        raise InvalidIntervalError("Start must be before end")
    return not _overlap_exists(db, asset_id, start_at, end_at, exclude_reservation_id)


def request_reservation(
    db: Session,
    requester_id: int,
    asset_id: int,
    start_at: datetime,
    end_at: datetime,
    now: datetime | None = None,
) -> Reservation:
    if start_at >= end_at:
        raise InvalidIntervalError("Start must be before end")
    now = now or datetime.now()

    with atomic(db):
        asset = get_asset(db, asset_id)
        reservation = Reservation(
            AssetID=asset_id,
            UserID=requester_id,
            StartAt=start_at,
            EndAt=end_at,
            Status="pending",
            RequestedAt=now,
        )
        db.add(reservation)
        db.flush()
        log_audit(
            db,
            "reservation",
            reservation.ReservationID,
            "request",
            _period_payload(reservation),
            actor_id=requester_id,
            occurred_at=now,
        )
        notify(
            db,
            requester_id,
            "reservation",
            {
                "message": "Reservation request submitted successfully",
                "reservation_id": reservation.ReservationID,
                "asset_id": asset_id,
                "asset_tag": asset.AssetTag,
                "period": _period_payload(reservation),
                "status": "pending",
            },
            created_at=now,
        )

    logger.info("Reservation %s requested by %s for asset %s", reservation.ReservationID, requester_id, asset_id)
    return reservation


def approve_reservation(
    db: Session,
    approver_id: int,
    reservation_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    now = now or datetime.now()
    asset_id = get_reservation(db, reservation_id).AssetID

    with asset_guard(asset_id):
        try:
            with atomic(db):
                asset = lock_asset(db, asset_id)
                reservation = lock_reservation(db, reservation_id)
                if reservation.Status not in APPROVABLE_STATES:
                    raise InvalidStateTransitionError(
                        f"Reservation {reservation_id} cannot be approved from status {reservation.Status}"
                    )
                if _overlap_exists(db, asset_id, reservation.StartAt, reservation.EndAt, reservation_id):
                    raise ReservationOverlapError("Overlap with existing reservation on this item")

                if reservation.Status in ACTIVE_RESERVATION_STATUSES:
                    log_audit(
                        db,
                        "reservation",
                        reservation_id,
                        "approve",
                        {"idempotent": True, "status": reservation.Status},
                        actor_id=approver_id,
                        occurred_at=now,
                    )
                    return reservation

                reservation.Status = "approved"
                reservation.DecidedBy = approver_id
                reservation.DecisionReason = reason
                db.flush()
                log_audit(
                    db,
                    "reservation",
                    reservation_id,
                    "approve",
                    {"reason": reason, "period": _period_payload(reservation)},
                    actor_id=approver_id,
                    occurred_at=now,
                )
                notify(
                    db,
                    reservation.UserID,
                    "reservation",
                    {
                        "message": f"Your reservation for {asset.AssetTag} has been approved",
                        "reservation_id": reservation_id,
                        "asset_tag": asset.AssetTag,
                        "period": _period_payload(reservation),
                    },
                    created_at=now,
                )
        except ReservationOverlapError:
            logger.warning("Approval of reservation %s rejected: overlapping window", reservation_id)
            raise
        except IntegrityError as exc:
            # Exclusion constraint on PostgreSQL caught an overlap the scan missed.
            logger.warning("Approval of reservation %s hit the overlap constraint", reservation_id)
            raise ReservationOverlapError("Overlap with existing reservation on this item") from exc

    logger.info("Reservation %s approved by %s", reservation_id, approver_id)
    return reservation


def deny_reservation(
    db: Session,
    approver_id: int,
    reservation_id: int,
    reason: str | None,
    now: datetime | None = None,
) -> Reservation:
    reason = (reason or "").strip()
    if not reason:
        raise MissingReasonError("A reason is required when denying a reservation")
    now = now or datetime.now()
    asset_id = get_reservation(db, reservation_id).AssetID

    with asset_guard(asset_id), atomic(db):
        reservation = lock_reservation(db, reservation_id)
        if reservation.Status not in DENIABLE_STATES:
            raise InvalidStateTransitionError(
                f"Reservation {reservation_id} cannot be denied from status {reservation.Status}"
            )
        asset = get_asset(db, asset_id)
        reservation.Status = "denied"
        reservation.DecidedBy = approver_id
        reservation.DecisionReason = reason
        log_audit(db, "reservation", reservation_id, "deny", {"reason": reason}, actor_id=approver_id, occurred_at=now)
        notify(
            db,
            reservation.UserID,
            "reservation",
            {
                "message": f"Your reservation for {asset.AssetTag} was denied: {reason}",
                "reservation_id": reservation_id,
                "asset_tag": asset.AssetTag,
                "reason": reason,
            },
            created_at=now,
        )

    logger.info("Reservation %s denied by %s", reservation_id, approver_id)
    return reservation


def cancel_reservation(
    db: Session,
    actor_id: int,
    reservation_id: int,
    now: datetime | None = None,
) -> Reservation:
    now = now or datetime.now()
    asset_id = get_reservation(db, reservation_id).AssetID

    with asset_guard(asset_id), atomic(db):
        reservation = lock_reservation(db, reservation_id)
        if reservation.UserID != actor_id:
            raise OwnershipError("Only the reservation owner can cancel it")
        if reservation.StartAt <= now:
            raise AlreadyStartedError("Cannot cancel a reservation that has already started")
        if reservation.Status not in CANCELLABLE_STATES:
            raise InvalidStateTransitionError(
                f"Reservation {reservation_id} cannot be cancelled from status {reservation.Status}"
            )
        previous = reservation.Status
        reservation.Status = "cancelled"
        log_audit(db, "reservation", reservation_id, "cancel", {"from": previous}, actor_id=actor_id, occurred_at=now)
        notify(
            db,
            actor_id,
            "reservation",
            {
                "message": "Your reservation has been cancelled",
                "reservation_id": reservation_id,
                "period": _period_payload(reservation),
            },
            created_at=now,
        )

    logger.info("Reservation %s cancelled by owner %s", reservation_id, actor_id)
    return reservation


def _stale_conditions(now: datetime) -> list:
    return [Reservation.Status.in_(EXPIRABLE_STATES), Reservation.EndAt < now]


def expire_stale_reservations(db: Session, now: datetime | None = None) -> int:
    now = now or datetime.now()
    asset_ids = db.execute(
        select(Reservation.AssetID).where(*_stale_conditions(now)).distinct().order_by(Reservation.AssetID)
    ).scalars().all()

    expired = 0
    # One guarded transaction per asset; rows are re-read under the guard.
    for asset_id in asset_ids:
        with asset_guard(asset_id), atomic(db):
            stale = db.execute(
                select(Reservation)
                .where(Reservation.AssetID == asset_id, *_stale_conditions(now))
                .order_by(Reservation.ReservationID)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().all()
            for reservation in stale:
                previous = reservation.Status
                reservation.Status = "expired"
                log_audit(db, "reservation", reservation.ReservationID, "expire", {"from": previous}, occurred_at=now)
                notify(
                    db,
                    reservation.UserID,
                    "reservation",
                    {
                        "message": f"Your reservation for {reservation.Asset.AssetTag} has expired",
                        "reservation_id": reservation.ReservationID,
                        "asset_tag": reservation.Asset.AssetTag,
                    },
                    created_at=now,
                )
            expired += len(stale)

    if expired:
        logger.info("Expired %d stale reservations", expired)
    return expired


def list_reservations(db: Session, user_id: int | None = None, status: str | None = None) -> list[Reservation]:
    stmt = select(Reservation)
    if user_id is not None:
        stmt = stmt.where(Reservation.UserID == user_id)
    if status:
        stmt = stmt.where(Reservation.Status == status)
    return list(db.execute(stmt.order_by(Reservation.StartAt.desc())).scalars().all())


def serialize_reservation(reservation: Reservation) -> dict:
    return {
        "reservationID": reservation.ReservationID,
        "assetID": reservation.AssetID,
        "userID": reservation.UserID,
        "startAt": reservation.StartAt,
        "endAt": reservation.EndAt,
        "status": reservation.Status,
        "requestedAt": reservation.RequestedAt,
        "decidedBy": reservation.DecidedBy,
        "decisionReason": reservation.DecisionReason,
        "isTerminal": reservation.Status in TERMINAL_STATES,
    }
