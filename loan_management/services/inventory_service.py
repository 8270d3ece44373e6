from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from models.loan_models import ASSET_STATUSES, Asset, Loan
from services.asset_locks import asset_guard
from services.audit_service import log_audit
from services.errors import AssetNotFoundError
from services.transactions import atomic


logger = logging.getLogger("loan_management.inventory")

_UNSET = object()


def get_asset(db: Session, asset_id: int) -> Asset:
    asset = db.get(Asset, asset_id)
    if not asset:
        raise AssetNotFoundError(f"Asset {asset_id} not found")
    return asset


def lock_asset(db: Session, asset_id: int) -> Asset:
    asset = db.execute(
        select(Asset)
        .where(Asset.AssetID == asset_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not asset:
        raise AssetNotFoundError(f"Asset {asset_id} not found")
    return asset


def has_open_loan(db: Session, asset_id: int) -> bool:
    stmt = select(exists().where(Loan.AssetID == asset_id, Loan.ReturnAt.is_(None)))
    return bool(db.execute(stmt).scalar())


def is_available(db: Session, asset_id: int) -> bool:
    asset = get_asset(db, asset_id)
    return asset.Status == "available" and not has_open_loan(db, asset_id)


def set_status(db: Session, asset_id: int, new_status: str, now: datetime | None = None) -> Asset:
    if new_status not in ASSET_STATUSES:
        raise ValueError(f"Invalid asset status: {new_status}")
    asset = get_asset(db, asset_id)
    asset.Status = new_status
    asset.UpdatedAt = now or datetime.now()
    return asset


def update_asset(
    db: Session,
    actor_id: int | None,
    asset_id: int,
    *,
    status: str | None = None,
    location=_UNSET,
    last_serviced: date | None | object = _UNSET,
    notes=_UNSET,
) -> Asset:
    changes: dict[str, object] = {}
    with asset_guard(asset_id), atomic(db):
        asset = lock_asset(db, asset_id)
        if status is not None and status != asset.Status:
            if status == "checked_out" or asset.Status == "checked_out":
                # checked_out is owned by checkout/return so it always matches an open loan.
                raise ValueError("checked_out can only be set or cleared by checkout and return")
            set_status(db, asset_id, status)
            changes["status"] = status
        if location is not _UNSET:
            asset.Location = location
            changes["location"] = location
        if last_serviced is not _UNSET:
            asset.LastServiced = last_serviced
            changes["lastServiced"] = last_serviced.isoformat() if last_serviced else None
        if notes is not _UNSET:
            asset.Notes = notes
            changes["notes"] = notes
        asset.UpdatedAt = datetime.now()
        log_audit(db, "asset", asset_id, "update", changes, actor_id=actor_id)
    logger.info("Asset %s updated: %s", asset_id, sorted(changes))
    return asset


def serialize_asset(asset: Asset, available: bool | None = None) -> dict:
    payload = {
        "assetID": asset.AssetID,
        "assetTag": asset.AssetTag,
        "status": asset.Status,
        "location": asset.Location,
        "purchaseDate": asset.PurchaseDate,
        "lastServiced": asset.LastServiced,
        "notes": asset.Notes,
        "updatedAt": asset.UpdatedAt,
    }
    if available is not None:
        payload["isAvailable"] = available
    return payload
