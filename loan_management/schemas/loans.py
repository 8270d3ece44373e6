from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: int
    startAt: datetime
    endAt: datetime


class ReservationDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None


class CheckoutFromReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reservationID: int


class AdhocCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerUserID: int
    assetID: int


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    damaged: bool = False
    condition: Optional[str] = None


class AssetUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Optional[Literal["available", "checked_out", "out_of_service", "retired"]] = None
    location: Optional[str] = None
    lastServiced: Optional[date] = None
    notes: Optional[str] = None


class CreateTicketDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: int
    loanID: Optional[int] = None
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    description: Optional[str] = None


class AssignTicketRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    technicianID: Optional[int] = None


class UpdateTicketRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Optional[Literal["open", "in_progress", "on_hold", "closed"]] = None
    severity: Optional[Literal["low", "medium", "high", "critical"]] = None
    description: Optional[str] = None
