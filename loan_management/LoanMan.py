import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_loans_db
from models.loan_models import STAFF_ROLES, User
from schemas.loans import (
    AdhocCheckoutRequest,
    AssetUpdate,
    AssignTicketRequest,
    CheckoutFromReservationRequest,
    CreateReservationDto,
    CreateTicketDto,
    ReservationDecisionRequest,
    ReturnRequest,
    UpdateTicketRequest,
)
from services.errors import LifecycleError
from services.inventory_service import get_asset, is_available, serialize_asset, update_asset
from services.loan_service import (
    checkout_adhoc,
    checkout_from_reservation,
    get_loan,
    list_loans,
    return_loan,
    serialize_loan,
)
from services.notification_service import list_notifications, mark_read, serialize_notification
from services.reservation_service import (
    approve_reservation,
    cancel_reservation,
    deny_reservation,
    expire_stale_reservations,
    get_reservation,
    is_period_available,
    list_reservations,
    request_reservation,
    serialize_reservation,
)
from services.ticket_service import assign_ticket, create_ticket, serialize_ticket, update_ticket

logging.basicConfig(level=(os.environ.get("LOG_LEVEL") or "INFO").upper())
logger = logging.getLogger("loan_management.api")

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(LifecycleError)
def handle_lifecycle_error(request: Request, exc: LifecycleError):
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": str(exc)})


@app.exception_handler(ValueError)
def handle_value_error(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"code": "INVALID_VALUE", "detail": str(exc)})


def _resolve_actor(db: Session, x_actor_id: str | None) -> User:
    raw = (x_actor_id or "").strip()
    if not raw.isdigit():
        raise HTTPException(status_code=401, detail="Missing or invalid X-Actor-ID header.")
    user = db.get(User, int(raw))
    if not user or not user.IsActive:
        raise HTTPException(status_code=401, detail="Unknown or inactive user.")
    return user


def _require_staff(user: User) -> None:
    if user.Role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Admin or technician role required.")


def _is_staff(user: User) -> bool:
    return user.Role in STAFF_ROLES


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_loans_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc
    return {"status": "ok", "db": "ok"}


@app.get("/api/assets/{asset_id}")
def get_asset_item(
    asset_id: int,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    _resolve_actor(db, x_actor_id)
    asset = get_asset(db, asset_id)
    return serialize_asset(asset, available=is_available(db, asset_id))


@app.patch("/api/assets/{asset_id}")
def patch_asset(
    asset_id: int,
    payload: AssetUpdate,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    fields = payload.model_dump(exclude_unset=True)
    changes = {}
    if "location" in fields:
        changes["location"] = fields["location"]
    if "lastServiced" in fields:
        changes["last_serviced"] = fields["lastServiced"]
    if "notes" in fields:
        changes["notes"] = fields["notes"]
    asset = update_asset(db, actor.UserID, asset_id, status=fields.get("status"), **changes)
    return serialize_asset(asset, available=is_available(db, asset_id))


@app.get("/api/reservations")
def get_reservations(
    status: str | None = Query(None),
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    user_filter = None if _is_staff(actor) else actor.UserID
    return [serialize_reservation(r) for r in list_reservations(db, user_id=user_filter, status=status)]


@app.get("/api/reservations/availability")
def get_period_availability(
    asset_id: int = Query(..., alias="assetID"),
    start_at: datetime = Query(..., alias="startAt"),
    end_at: datetime = Query(..., alias="endAt"),
    exclude_reservation_id: int | None = Query(None, alias="excludeReservationID"),
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    _resolve_actor(db, x_actor_id)
    get_asset(db, asset_id)
    available = is_period_available(db, asset_id, start_at, end_at, exclude_reservation_id)
    return {"assetID": asset_id, "startAt": start_at, "endAt": end_at, "available": available}


@app.get("/api/reservations/{reservation_id}")
def get_reservation_item(
    reservation_id: int,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    reservation = get_reservation(db, reservation_id)
    if not _is_staff(actor) and reservation.UserID != actor.UserID:
        raise HTTPException(status_code=403, detail="Not authorized")
    return serialize_reservation(reservation)


@app.post("/api/reservations", status_code=201)
def create_reservation(
    payload: CreateReservationDto,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    reservation = request_reservation(db, actor.UserID, payload.assetID, payload.startAt, payload.endAt)
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/approve")
def approve_reservation_route(
    reservation_id: int,
    payload: ReservationDecisionRequest | None = None,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    reason = payload.reason if payload else None
    reservation = approve_reservation(db, actor.UserID, reservation_id, reason)
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/deny")
def deny_reservation_route(
    reservation_id: int,
    payload: ReservationDecisionRequest,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    reservation = deny_reservation(db, actor.UserID, reservation_id, payload.reason)
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/cancel")
def cancel_reservation_route(
    reservation_id: int,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    reservation = cancel_reservation(db, actor.UserID, reservation_id)
    return serialize_reservation(reservation)


@app.get("/api/loans")
def get_loans(
    open_only: bool = Query(False, alias="openOnly"),
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    user_filter = None if _is_staff(actor) else actor.UserID
    return [serialize_loan(loan) for loan in list_loans(db, user_id=user_filter, open_only=open_only)]


@app.get("/api/loans/{loan_id}")
def get_loan_item(
    loan_id: int,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    loan = get_loan(db, loan_id)
    if not _is_staff(actor) and loan.UserID != actor.UserID:
        raise HTTPException(status_code=403, detail="Not authorized")
    return serialize_loan(loan)


@app.post("/api/loans/from-reservation", status_code=201)
def checkout_from_reservation_route(
    payload: CheckoutFromReservationRequest,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    loan = checkout_from_reservation(db, actor.UserID, payload.reservationID)
    return serialize_loan(loan)


@app.post("/api/loans/adhoc", status_code=201)
def checkout_adhoc_route(
    payload: AdhocCheckoutRequest,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    loan = checkout_adhoc(db, actor.UserID, payload.borrowerUserID, payload.assetID)
    return serialize_loan(loan)


@app.post("/api/loans/{loan_id}/return")
def return_loan_route(
    loan_id: int,
    payload: ReturnRequest,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    loan = get_loan(db, loan_id)
    if not _is_staff(actor) and loan.UserID != actor.UserID:
        raise HTTPException(status_code=403, detail="Not authorized to return this loan")
    loan = return_loan(db, actor.UserID, loan_id, payload.damaged, payload.condition)
    return serialize_loan(loan)


@app.post("/api/tickets", status_code=201)
def create_ticket_route(
    payload: CreateTicketDto,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    ticket = create_ticket(db, actor.UserID, payload.assetID, payload.severity, payload.description, payload.loanID)
    return serialize_ticket(ticket)


@app.put("/api/tickets/{ticket_id}/assign")
def assign_ticket_route(
    ticket_id: int,
    payload: AssignTicketRequest,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    ticket = assign_ticket(db, actor.UserID, ticket_id, payload.technicianID)
    return serialize_ticket(ticket)


@app.patch("/api/tickets/{ticket_id}")
def update_ticket_route(
    ticket_id: int,
    payload: UpdateTicketRequest,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    ticket = update_ticket(db, actor.UserID, ticket_id, **payload.model_dump(exclude_unset=True))
    return serialize_ticket(ticket)


@app.get("/api/notifications")
def get_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    return [serialize_notification(n) for n in list_notifications(db, actor.UserID, unread_only=unread_only)]


@app.post("/api/notifications/{notification_id}/read")
def read_notification(
    notification_id: int,
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    return {"updated": mark_read(db, actor.UserID, notification_id)}


@app.post("/api/admin/expire-reservations")
def expire_reservations_route(
    db: Session = Depends(get_loans_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
):
    actor = _resolve_actor(db, x_actor_id)
    _require_staff(actor)
    count = expire_stale_reservations(db)
    logger.info("Expiry sweep requested by %s expired %d reservations", actor.UserID, count)
    return {"message": f"Expired {count} old reservations", "count": count}
