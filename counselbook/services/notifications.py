"""
Best-effort notification dispatch.

Notifications are written after the state change that triggered them has
been committed, through a session of their own, so a failed insert can never
roll back or block the transition. Every failure is logged and reported as
``False``; nothing is raised to the caller.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from counselbook.database import SessionLocal
from counselbook.models.enums import NotificationKind
from counselbook.models.notification import Notification

logger = logging.getLogger(__name__)


def _when(payload: dict[str, Any]) -> str:
    scheduled_at = payload.get('scheduled_at')
    if isinstance(scheduled_at, datetime):
        return scheduled_at.strftime('%Y-%m-%d %H:%M UTC')
    return scheduled_at or ''


def _case_title(payload: dict[str, Any], fallback: str = 'Consultation') -> str:
    return payload.get('case_title') or fallback


TEMPLATES: dict[NotificationKind, Callable[[dict[str, Any]], tuple[str, str]]] = {
    NotificationKind.APPOINTMENT_REQUESTED: lambda p: (
        'New appointment request',
        f'{_case_title(p)} • {_when(p)}',
    ),
    NotificationKind.APPOINTMENT_ACCEPTED: lambda p: (
        'Lawyer accepted your request',
        f'{_case_title(p)} • {_when(p)}. Complete payment to confirm the booking.',
    ),
    NotificationKind.APPOINTMENT_REJECTED: lambda p: (
        'Lawyer declined your request',
        _case_title(p, 'Your pending appointment was rejected.'),
    ),
    NotificationKind.APPOINTMENT_CANCELLED: lambda p: (
        'Appointment cancelled',
        f'{_case_title(p)} • {_when(p)}',
    ),
    NotificationKind.APPOINTMENT_COMPLETED: lambda p: (
        'Appointment completed',
        _case_title(p),
    ),
    NotificationKind.PAYMENT_COMPLETED: lambda p: (
        'Payment Received' if p.get('role') == 'lawyer' else 'Payment Successful',
        f'Payment for "{_case_title(p, "consultation")}" has been confirmed.',
    ),
    NotificationKind.PAYMENT_FAILED: lambda p: (
        'Payment Failed',
        f'Payment failed for "{_case_title(p, "consultation")}". Please try again.',
    ),
}


def _jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
        elif hasattr(value, 'value'):
            data[key] = value.value
        elif value is None or isinstance(value, (str, int, float, bool)):
            data[key] = value
        else:
            data[key] = str(value)
    return data


class NotificationDispatcher:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory

    def notify(
        self,
        recipient_id: str | None,
        kind: NotificationKind,
        payload: dict[str, Any],
        actor_id: str | None = None,
    ) -> bool:
        if not recipient_id:
            logger.debug('Skipping %s notification without a recipient', kind.value)
            return False

        try:
            title, description = TEMPLATES[kind](payload)
            notification = Notification(
                recipient_id=recipient_id,
                created_by=actor_id or recipient_id,
                kind=kind.value,
                title=title,
                description=description,
                data=_jsonable(payload),
            )
            db = self.session_factory()
            try:
                db.add(notification)
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        except Exception:
            logger.exception('Failed to deliver %s notification to %s', kind.value, recipient_id)
            return False

        logger.info('Delivered %s notification to %s', kind.value, recipient_id)
        return True


def get_notifier() -> NotificationDispatcher:
    return NotificationDispatcher()
