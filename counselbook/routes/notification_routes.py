from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from counselbook.auth.dependencies import get_current_user, get_db
from counselbook.models.notification import Notification
from counselbook.models.user import User
from counselbook.routes.common import service_errors

router = APIRouter(tags=['notifications'])


class NotificationResponse(BaseModel):
    id: str
    kind: str
    title: str
    description: str | None = None
    data: dict[str, Any] | None = None
    is_read: bool
    created_at: datetime | None = None

    class Config:
        from_attributes = True


@router.get('', response_model=list[NotificationResponse])
def list_my_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with service_errors(db):
        query = db.query(Notification).filter(Notification.recipient_id == current_user.id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(Notification.created_at.desc()).limit(limit).all()


@router.post('/{notification_id}/read', response_model=NotificationResponse)
def mark_notification_read(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with service_errors(db):
        notification = db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.recipient_id == current_user.id,
        ).first()
        if notification is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Notification not found.')

        notification.is_read = True
        db.commit()
        db.refresh(notification)

        return notification
