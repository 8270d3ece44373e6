from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.loan_models import TICKET_SEVERITIES, TICKET_STATUSES, Loan, MaintenanceTicket, User
from services.audit_service import log_audit
from services.errors import InvalidAssigneeError, LoanNotFoundError, TicketNotFoundError
from services.inventory_service import get_asset
from services.notification_service import notify
from services.transactions import atomic


logger = logging.getLogger("loan_management.tickets")

DAMAGE_SEVERITY = "medium"
DAMAGE_DESCRIPTION = "Damaged on return"

_UNSET = object()


def _validate_severity(severity: str) -> None:
    if severity not in TICKET_SEVERITIES:
        raise ValueError(f"Invalid severity: {severity}")


def _validate_status(status: str) -> None:
    if status not in TICKET_STATUSES:
        raise ValueError(f"Invalid ticket status: {status}")


def get_ticket(db: Session, ticket_id: int) -> MaintenanceTicket:
    ticket = db.get(MaintenanceTicket, ticket_id)
    if not ticket:
        raise TicketNotFoundError(f"Ticket {ticket_id} not found")
    return ticket


def create_ticket(
    db: Session,
    opener_id: int,
    asset_id: int,
    severity: str,
    description: str | None = None,
    loan_id: int | None = None,
    now: datetime | None = None,
) -> MaintenanceTicket:
    _validate_severity(severity)
    now = now or datetime.now()

    with atomic(db):
        get_asset(db, asset_id)
        if loan_id is not None:
            loan = db.get(Loan, loan_id)
            if loan is None:
                raise LoanNotFoundError(f"Loan {loan_id} not found")
            if loan.AssetID != asset_id:
                raise ValueError(f"Loan {loan_id} is not for asset {asset_id}")
            if _find_loan_ticket(db, loan):
                raise ValueError(f"Loan {loan_id} already has a ticket for asset {asset_id}")
        ticket = MaintenanceTicket(
            AssetID=asset_id,
            LoanID=loan_id,
            OpenedBy=opener_id,
            Severity=severity,
            Status="open",
            Description=description,
            CreatedAt=now,
        )
        db.add(ticket)
        db.flush()
        log_audit(db, "ticket", ticket.TicketID, "open", {"asset_id": asset_id, "severity": severity}, actor_id=opener_id, occurred_at=now)

    logger.info("Ticket %s opened on asset %s by %s", ticket.TicketID, asset_id, opener_id)
    return ticket


def _find_loan_ticket(db: Session, loan: Loan) -> MaintenanceTicket | None:
    return db.execute(
        select(MaintenanceTicket).where(
            MaintenanceTicket.AssetID == loan.AssetID,
            MaintenanceTicket.LoanID == loan.LoanID,
        )
    ).scalars().first()


def open_damage_ticket(
    db: Session,
    opener_id: int,
    loan: Loan,
    condition_notes: str | None,
    now: datetime | None = None,
) -> MaintenanceTicket:
    """Open the damaged-return ticket for ``loan`` unless it already has one.

    Runs inside the caller's transaction. The unique (AssetID, LoanID) constraint backs up
    the lookup so one loan never yields two damage tickets for the same asset.
    """
    existing = _find_loan_ticket(db, loan)
    if existing:
        return existing

    now = now or datetime.now()
    ticket = MaintenanceTicket(
        AssetID=loan.AssetID,
        LoanID=loan.LoanID,
        OpenedBy=opener_id,
        Severity=DAMAGE_SEVERITY,
        Status="open",
        Description=condition_notes or DAMAGE_DESCRIPTION,
        CreatedAt=now,
    )
    db.flush()
    try:
        with db.begin_nested():
            db.add(ticket)
            db.flush()
    except IntegrityError:
        # Another writer opened it between the lookup and the insert.
        return _find_loan_ticket(db, loan)
    log_audit(db, "ticket", ticket.TicketID, "open", {"loan_id": loan.LoanID, "reason": "damaged_return"}, actor_id=opener_id, occurred_at=now)
    return ticket


def assign_ticket(
    db: Session,
    actor_id: int,
    ticket_id: int,
    technician_id: int | None,
    now: datetime | None = None,
) -> MaintenanceTicket:
    now = now or datetime.now()

    with atomic(db):
        ticket = get_ticket(db, ticket_id)
        if technician_id is not None:
            technician = db.get(User, technician_id)
            if not technician or technician.Role != "technician":
                raise InvalidAssigneeError(f"User {technician_id} is not a technician")
        ticket.AssignedTo = technician_id
        ticket.Status = "open" if technician_id is None else "in_progress"
        log_audit(db, "ticket", ticket_id, "assign", {"assigned_to": technician_id}, actor_id=actor_id, occurred_at=now)
        if technician_id is not None:
            notify(
                db,
                technician_id,
                "maintenance",
                {
                    "message": f"Ticket {ticket_id} has been assigned to you",
                    "ticket_id": ticket_id,
                    "asset_id": ticket.AssetID,
                    "severity": ticket.Severity,
                },
                created_at=now,
            )

    logger.info("Ticket %s assigned to %s", ticket_id, technician_id)
    return ticket


def update_ticket(
    db: Session,
    actor_id: int,
    ticket_id: int,
    *,
    status: str | None = None,
    severity: str | None = None,
    description=_UNSET,
    now: datetime | None = None,
) -> MaintenanceTicket:
    if status is not None:
        _validate_status(status)
    if severity is not None:
        _validate_severity(severity)
    now = now or datetime.now()
    changes: dict[str, object] = {}

    with atomic(db):
        ticket = get_ticket(db, ticket_id)
        if status is not None:
            if status == "closed" and ticket.Status != "closed":
                ticket.ClosedAt = now
            elif status != "closed":
                ticket.ClosedAt = None
            ticket.Status = status
            changes["status"] = status
        if severity is not None:
            ticket.Severity = severity
            changes["severity"] = severity
        if description is not _UNSET:
            ticket.Description = description
            changes["description"] = description
        if not changes:
            raise ValueError("No valid fields provided for update")
        log_audit(db, "ticket", ticket_id, "update", changes, actor_id=actor_id, occurred_at=now)

    return ticket


def serialize_ticket(ticket: MaintenanceTicket) -> dict:
    return {
        "ticketID": ticket.TicketID,
        "assetID": ticket.AssetID,
        "loanID": ticket.LoanID,
        "openedBy": ticket.OpenedBy,
        "assignedTo": ticket.AssignedTo,
        "severity": ticket.Severity,
        "status": ticket.Status,
        "description": ticket.Description,
        "createdAt": ticket.CreatedAt,
        "closedAt": ticket.ClosedAt,
    }
