from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.loan_models import NOTIFICATION_TYPES, Notification
from services.transactions import atomic


def notify(
    db: Session,
    user_id: int,
    notification_type: str,
    payload: dict[str, Any],
    created_at: datetime | None = None,
) -> Notification:
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")
    notification = Notification(
        UserID=user_id,
        NotificationType=notification_type,
        Payload=payload,
        CreatedAt=created_at or datetime.now(),
    )
    db.add(notification)
    return notification


def list_notifications(db: Session, user_id: int, unread_only: bool = False) -> list[Notification]:
    stmt = select(Notification).where(Notification.UserID == user_id)
    if unread_only:
        stmt = stmt.where(Notification.ReadAt.is_(None))
    return list(db.execute(stmt.order_by(Notification.NotificationID.desc())).scalars().all())


def mark_read(db: Session, user_id: int, notification_id: int, now: datetime | None = None) -> bool:
    with atomic(db):
        result = db.execute(
            update(Notification)
            .where(
                Notification.NotificationID == notification_id,
                Notification.UserID == user_id,
                Notification.ReadAt.is_(None),
            )
            .values(ReadAt=now or datetime.now())
        )
    return bool(result.rowcount)


def serialize_notification(notification: Notification) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "userID": notification.UserID,
        "type": notification.NotificationType,
        "payload": notification.Payload,
        "createdAt": notification.CreatedAt,
        "readAt": notification.ReadAt,
        "isUnread": notification.ReadAt is None,
    }
