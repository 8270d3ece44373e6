from sqlalchemy import (
    DDL,
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


USER_ROLES = ("student", "staff", "technician", "admin")
STAFF_ROLES = frozenset({"technician", "admin"})
ASSET_STATUSES = ("available", "checked_out", "out_of_service", "retired")
RESERVATION_STATUSES = ("pending", "approved", "denied", "confirmed", "cancelled", "expired")
ACTIVE_RESERVATION_STATUSES = ("approved", "confirmed")
TICKET_SEVERITIES = ("low", "medium", "high", "critical")
TICKET_STATUSES = ("open", "in_progress", "on_hold", "closed")
NOTIFICATION_TYPES = ("reservation", "loan", "return", "penalty", "maintenance", "system")


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f'"{column}" IN ({quoted})'


class User(Base):
    __tablename__ = "Users"
    __table_args__ = (CheckConstraint(_in_clause("Role", USER_ROLES), name="ck_users_role"),)

    UserID = Column(Integer, primary_key=True)
    Role = Column(String(20), nullable=False, default="student")
    FirstName = Column(String(100), nullable=False)
    LastName = Column(String(100), nullable=False)
    Email = Column(String(255), nullable=False, unique=True)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="Requester", foreign_keys="Reservation.UserID")
    Loans = relationship("Loan", back_populates="Borrower")


class Asset(Base):
    __tablename__ = "Assets"
    __table_args__ = (CheckConstraint(_in_clause("Status", ASSET_STATUSES), name="ck_assets_status"),)

    AssetID = Column(Integer, primary_key=True)
    AssetTag = Column(String(50), nullable=False, unique=True)
    Status = Column(String(20), nullable=False, default="available")
    Location = Column(String(200))
    PurchaseDate = Column(Date)
    LastServiced = Column(Date)
    Notes = Column(String(1000))
    UpdatedAt = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="Asset")
    Loans = relationship("Loan", back_populates="Asset")
    Tickets = relationship("MaintenanceTicket", back_populates="Asset")


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        CheckConstraint(_in_clause("Status", RESERVATION_STATUSES), name="ck_reservations_status"),
        CheckConstraint('"StartAt" < "EndAt"', name="ck_reservations_period_nonempty"),
        Index("ix_reservations_asset_period", "AssetID", "StartAt", "EndAt"),
    )

    ReservationID = Column(Integer, primary_key=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    StartAt = Column(DateTime, nullable=False)
    EndAt = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    RequestedAt = Column(DateTime, nullable=False, server_default=func.now())
    DecidedBy = Column(Integer, ForeignKey("Users.UserID"))
    DecisionReason = Column(String(1000))

    Asset = relationship("Asset", back_populates="Reservations")
    Requester = relationship("User", back_populates="Reservations", foreign_keys=[UserID])
    Loan = relationship("Loan", back_populates="Reservation", uselist=False)


class Loan(Base):
    __tablename__ = "Loans"
    __table_args__ = (
        CheckConstraint('"DueAt" > "CheckoutAt"', name="ck_loans_due_after_checkout"),
        CheckConstraint('"ReturnAt" IS NULL OR "ReturnAt" >= "CheckoutAt"', name="ck_loans_return_after_checkout"),
    )

    LoanID = Column(Integer, primary_key=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False, index=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"), unique=True)
    CheckoutAt = Column(DateTime, nullable=False)
    DueAt = Column(DateTime, nullable=False)
    ReturnAt = Column(DateTime)
    Damaged = Column(Boolean, nullable=False, default=False)
    ReturnCondition = Column(String(1000))

    Asset = relationship("Asset", back_populates="Loans")
    Borrower = relationship("User", back_populates="Loans")
    Reservation = relationship("Reservation", back_populates="Loan")
    Penalties = relationship("Penalty", back_populates="Loan")


# One open loan per asset.
Index(
    "ux_loans_open_asset",
    Loan.AssetID,
    unique=True,
    sqlite_where=Loan.ReturnAt.is_(None),
    postgresql_where=Loan.ReturnAt.is_(None),
)


class Penalty(Base):
    __tablename__ = "Penalties"
    __table_args__ = (CheckConstraint('"Amount" >= 0', name="ck_penalties_amount"),)

    PenaltyID = Column(Integer, primary_key=True)
    LoanID = Column(Integer, ForeignKey("Loans.LoanID"), nullable=False)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    Amount = Column(Numeric(10, 2), nullable=False)
    Reason = Column(String(200), nullable=False)
    CreatedAt = Column(DateTime, nullable=False, server_default=func.now())

    Loan = relationship("Loan", back_populates="Penalties")


class MaintenanceTicket(Base):
    __tablename__ = "MaintenanceTickets"
    __table_args__ = (
        CheckConstraint(_in_clause("Severity", TICKET_SEVERITIES), name="ck_tickets_severity"),
        CheckConstraint(_in_clause("Status", TICKET_STATUSES), name="ck_tickets_status"),
        UniqueConstraint("AssetID", "LoanID", name="uq_tickets_asset_loan"),
    )

    TicketID = Column(Integer, primary_key=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False, index=True)
    LoanID = Column(Integer, ForeignKey("Loans.LoanID"))
    OpenedBy = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    AssignedTo = Column(Integer, ForeignKey("Users.UserID"))
    Severity = Column(String(20), nullable=False)
    Status = Column(String(20), nullable=False, default="open")
    Description = Column(String(2000))
    CreatedAt = Column(DateTime, nullable=False, server_default=func.now())
    ClosedAt = Column(DateTime)

    Asset = relationship("Asset", back_populates="Tickets")


class Notification(Base):
    __tablename__ = "Notifications"
    __table_args__ = (
        CheckConstraint(_in_clause("NotificationType", NOTIFICATION_TYPES), name="ck_notifications_type"),
    )

    NotificationID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    NotificationType = Column(String(20), nullable=False)
    Payload = Column(JSON, nullable=False)
    CreatedAt = Column(DateTime, nullable=False, server_default=func.now())
    ReadAt = Column(DateTime)


class AuditEvent(Base):
    __tablename__ = "AuditEvents"

    EventID = Column(Integer, primary_key=True)
    OccurredAt = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    ActorUserID = Column(Integer, ForeignKey("Users.UserID"))
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(50), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(JSON)


event.listen(
    Base.metadata,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)

# Overlapping approved/confirmed windows on one asset are rejected by PostgreSQL itself.
event.listen(
    Reservation.__table__,
    "after_create",
    DDL(
        'ALTER TABLE "Reservations" ADD CONSTRAINT reservations_no_overlap '
        'EXCLUDE USING gist ("AssetID" WITH =, tsrange("StartAt", "EndAt", \'[)\') WITH &&) '
        "WHERE (\"Status\" IN ('approved', 'confirmed'))"
    ).execute_if(dialect="postgresql"),
)
