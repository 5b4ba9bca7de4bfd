"""
Payment reconciliation.

Two callers drive the same algorithm for a checkout session: the processor's
webhook and the client's "verify this session" call made on return from the
hosted checkout page. Whichever observes the payment first performs the
whole completion sequence; the other sees a completed payment and exits
without writing anything.

The dedup guard is the conditional write on the payment row
(``status != 'completed'``). Zero rows affected means another caller already
completed it.

A second payment that completes an appointment another payment already
scheduled is flagged with ``duplicate_of`` for refund and never notified.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from counselbook.core import config
from counselbook.core.errors import Unauthorized, UnknownPaymentReference, ValidationError
from counselbook.core.timeutils import utcnow
from counselbook.models.appointment import Appointment
from counselbook.models.case import Case
from counselbook.models.enums import AppointmentStatus, CaseStatus, NotificationKind, PaymentStatus
from counselbook.models.payment import Payment
from counselbook.services.notifications import NotificationDispatcher
from counselbook.services.payment_gateway import (
    ProcessorPaymentStatus,
    ProcessorSnapshot,
    StripeGateway,
    snapshot_from_session,
)

logger = logging.getLogger(__name__)

SESSION_SUCCESS_EVENTS = {'checkout.session.completed', 'checkout.session.async_payment_succeeded'}
SESSION_FAILURE_EVENTS = {'checkout.session.async_payment_failed'}
INTENT_SUCCESS_EVENTS = {'payment_intent.succeeded'}
INTENT_FAILURE_EVENTS = {'payment_intent.payment_failed'}


class ReconciliationResult(str, Enum):
    ALREADY_COMPLETED = 'already_completed'
    COMPLETED_NOW = 'completed_now'
    STILL_PENDING = 'still_pending'
    FAILED = 'failed'


class WebhookEventData(BaseModel):
    object: dict[str, Any]


class WebhookEvent(BaseModel):
    id: str | None = None
    type: str
    data: WebhookEventData


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    handled: bool
    result: str | None = None


def get_payment_by_reference(db: Session, external_reference: str) -> Payment:
    payment = None
    if external_reference:
        payment = db.query(Payment).filter(Payment.external_reference == external_reference).first()
    if payment is None:
        raise UnknownPaymentReference(
            'No payment was created for this checkout session.',
            details={'external_reference': external_reference},
        )
    return payment


RECIPIENT_ROLES = (
    ('client', 'client_id', 'client_notified_at'),
    ('lawyer', 'lawyer_id', 'lawyer_notified_at'),
)


def _payment_notification_payload(db: Session, payment: Payment) -> dict[str, Any]:
    appointment = db.get(Appointment, payment.appointment_id)
    case = db.get(Case, payment.case_id) if payment.case_id else None
    return {
        'appointment_id': payment.appointment_id,
        'payment_id': payment.id,
        'case_id': payment.case_id,
        'case_title': case.title if case else None,
        'scheduled_at': appointment.start_time if appointment else None,
        'amount': str(payment.amount),
        'currency': payment.currency,
        'status': payment.status,
    }


def _deliver_payment_notifications(
    db: Session,
    payment: Payment,
    kind: NotificationKind,
    notifier: NotificationDispatcher,
) -> None:
    base = _payment_notification_payload(db, payment)
    for role, recipient_attr, _ in RECIPIENT_ROLES:
        recipient_id = getattr(payment, recipient_attr)
        if recipient_id:
            notifier.notify(recipient_id, kind, {**base, 'role': role})


def _missing_recipients(payment: Payment) -> list[tuple[str, str, str]]:
    return [
        (role, getattr(payment, recipient_attr), column)
        for role, recipient_attr, column in RECIPIENT_ROLES
        if getattr(payment, recipient_attr) and getattr(payment, column) is None
    ]


def _deliver_completion_tail(
    db: Session,
    payment_id: str,
    notifier: NotificationDispatcher,
    claimed_at: datetime,
) -> None:
    """Send the completion notice to every recipient that has not had it yet.

    Each recipient is claimed with a conditional write on its own column and
    released again when delivery fails, so a later retry only covers the
    recipients that are still missing.
    """
    payment = db.get(Payment, payment_id)
    base = _payment_notification_payload(db, payment)

    for role, recipient_id, column_name in _missing_recipients(payment):
        column = getattr(Payment, column_name)
        claimed = db.query(Payment).filter(
            Payment.id == payment_id,
            column.is_(None),
        ).update({column_name: claimed_at}, synchronize_session=False)
        db.commit()
        if not claimed:
            continue

        if not notifier.notify(recipient_id, NotificationKind.PAYMENT_COMPLETED, {**base, 'role': role}):
            db.query(Payment).filter(
                Payment.id == payment_id,
                column == claimed_at,
            ).update({column_name: None}, synchronize_session=False)
            db.commit()


def _send_completion_notifications(db: Session, payment_id: str, notifier: NotificationDispatcher) -> None:
    # Runs after the completion commit; failures here never undo the payment.
    try:
        _deliver_completion_tail(db, payment_id, notifier, utcnow())
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Could not record notification delivery for payment %s', payment_id)


def _resend_missing_notifications(
    db: Session,
    payment: Payment,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> None:
    if payment.completed_at is None or payment.duplicate_of is not None:
        return
    if not _missing_recipients(payment):
        return

    now = now or utcnow()
    if now - payment.completed_at < timedelta(seconds=config.NOTIFICATION_RETRY_GRACE_SECONDS):
        # The caller that completed the payment may still be sending them.
        return

    payment_id = payment.id
    logger.info('Re-sending missing completion notifications for payment %s', payment_id)
    try:
        _deliver_completion_tail(db, payment_id, notifier, now)
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Could not re-send notifications for payment %s', payment_id)


def reconcile(
    db: Session,
    external_reference: str,
    notifier: NotificationDispatcher,
    gateway: StripeGateway | None = None,
    observed: ProcessorSnapshot | None = None,
    now: datetime | None = None,
) -> ReconciliationResult:
    payment = get_payment_by_reference(db, external_reference)

    if payment.status == PaymentStatus.COMPLETED.value:
        _resend_missing_notifications(db, payment, notifier, now)
        return ReconciliationResult.ALREADY_COMPLETED

    if observed is None:
        if gateway is None:
            raise ValueError('reconcile needs either an observed snapshot or a gateway to fetch one')
        observed = gateway.fetch_snapshot(external_reference)

    if observed.reference != external_reference:
        raise UnknownPaymentReference('Processor returned a different checkout session.')
    stamped_payment_id = observed.metadata.get('payment_id')
    if stamped_payment_id and stamped_payment_id != payment.id:
        logger.warning(
            'Checkout session %s metadata names payment %s, local record is %s',
            external_reference,
            stamped_payment_id,
            payment.id,
        )
        raise UnknownPaymentReference('Checkout session does not match the local payment record.')

    if not observed.status.is_success:
        db.rollback()
        if observed.status in {ProcessorPaymentStatus.EXPIRED, ProcessorPaymentStatus.FAILED}:
            return ReconciliationResult.FAILED
        return ReconciliationResult.STILL_PENDING

    completed_at = now or utcnow()
    payment_id = payment.id
    appointment_id = payment.appointment_id
    case_id = payment.case_id

    try:
        updated = db.query(Payment).filter(
            Payment.id == payment_id,
            Payment.status != PaymentStatus.COMPLETED.value,
        ).update(
            {
                'status': PaymentStatus.COMPLETED.value,
                'payment_method': observed.payment_method or 'card',
                'payment_intent_id': observed.payment_intent_id,
                'completed_at': completed_at,
                'updated_at': completed_at,
            },
            synchronize_session=False,
        )
        if updated == 0:
            db.rollback()
            logger.info('Payment %s was completed by a concurrent reconciliation', payment_id)
            return ReconciliationResult.ALREADY_COMPLETED

        moved = db.query(Appointment).filter(
            Appointment.id == appointment_id,
            Appointment.status == AppointmentStatus.AWAITING_PAYMENT.value,
        ).update(
            {'status': AppointmentStatus.SCHEDULED.value, 'updated_at': completed_at},
            synchronize_session=False,
        )

        earlier = None
        if not moved:
            earlier = db.query(Payment.id).filter(
                Payment.appointment_id == appointment_id,
                Payment.id != payment_id,
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.duplicate_of.is_(None),
            ).order_by(Payment.completed_at.asc()).first()

        if earlier is not None:
            db.query(Payment).filter(Payment.id == payment_id).update(
                {'duplicate_of': earlier.id},
                synchronize_session=False,
            )
            db.commit()
            logger.warning(
                'Payment %s duplicates completed payment %s for appointment %s; flagged for refund',
                payment_id,
                earlier.id,
                appointment_id,
            )
            return ReconciliationResult.COMPLETED_NOW

        appointment_status = db.query(Appointment.status).filter(Appointment.id == appointment_id).scalar()
        if appointment_status == AppointmentStatus.SCHEDULED.value:
            if case_id:
                db.query(Case).filter(
                    Case.id == case_id,
                    Case.status == CaseStatus.OPEN.value,
                ).update(
                    {'status': CaseStatus.IN_PROGRESS.value, 'updated_at': completed_at},
                    synchronize_session=False,
                )
        else:
            logger.warning(
                'Payment %s captured for appointment %s in status %s; needs manual review',
                payment_id,
                appointment_id,
                appointment_status,
            )

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        'Payment %s completed for appointment %s (appointment %s)',
        payment_id,
        appointment_id,
        'scheduled' if moved else 'already advanced',
    )
    _send_completion_notifications(db, payment_id, notifier)
    return ReconciliationResult.COMPLETED_NOW


def verify_checkout_session(
    db: Session,
    session_id: str,
    client_id: str,
    gateway: StripeGateway,
    notifier: NotificationDispatcher,
) -> ReconciliationResult:
    """Client-driven fallback for slow webhooks; always re-fetches the processor's status."""
    if not session_id or not session_id.strip():
        raise ValidationError('Missing session ID')

    payment = get_payment_by_reference(db, session_id.strip())
    if payment.client_id != client_id:
        raise Unauthorized('This payment does not belong to the current user.')

    return reconcile(db, payment.external_reference, notifier, gateway=gateway)


def record_payment_failure(db: Session, payment: Payment, notifier: NotificationDispatcher) -> bool:
    payment_id = payment.id
    try:
        updated = db.query(Payment).filter(
            Payment.id == payment_id,
            Payment.status == PaymentStatus.PENDING.value,
        ).update(
            {'status': PaymentStatus.FAILED.value, 'updated_at': utcnow()},
            synchronize_session=False,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if not updated:
        logger.info('Ignoring failure event for payment %s; it is no longer pending', payment_id)
        return False

    logger.info('Payment %s failed; appointment %s stays awaiting payment', payment_id, payment.appointment_id)
    try:
        _deliver_payment_notifications(db, db.get(Payment, payment_id), NotificationKind.PAYMENT_FAILED, notifier)
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Could not load payment %s for failure notifications', payment_id)
    return True


def _payment_from_intent(db: Session, intent: dict[str, Any]) -> Payment:
    payment_id = (intent.get('metadata') or {}).get('payment_id')
    payment = db.get(Payment, payment_id) if payment_id else None
    if payment is None or not payment.external_reference:
        raise UnknownPaymentReference(
            'No payment was created for this payment intent.',
            details={'payment_intent': intent.get('id')},
        )
    return payment


def handle_webhook_event(db: Session, event: dict[str, Any], notifier: NotificationDispatcher) -> WebhookOutcome:
    """Route an already verified processor event to reconciliation."""
    try:
        parsed = WebhookEvent.model_validate(event)
    except PayloadValidationError as exc:
        raise ValidationError('Invalid webhook payload') from exc

    event_type = parsed.type
    obj = parsed.data.object
    logger.info('Processing webhook event %s (%s)', event_type, parsed.id)

    if event_type in SESSION_SUCCESS_EVENTS:
        if 'id' not in obj:
            raise ValidationError('Webhook session is missing its id')
        snapshot = snapshot_from_session(obj)
        result = reconcile(db, snapshot.reference, notifier, observed=snapshot)
        return WebhookOutcome(event_type=event_type, handled=True, result=result.value)

    if event_type in SESSION_FAILURE_EVENTS:
        payment = get_payment_by_reference(db, obj.get('id', ''))
        record_payment_failure(db, payment, notifier)
        return WebhookOutcome(event_type=event_type, handled=True, result=ReconciliationResult.FAILED.value)

    if event_type in INTENT_SUCCESS_EVENTS:
        payment = _payment_from_intent(db, obj)
        payment_method_types = obj.get('payment_method_types') or []
        snapshot = ProcessorSnapshot(
            reference=payment.external_reference,
            status=ProcessorPaymentStatus.PAID,
            payment_intent_id=obj.get('id'),
            payment_method=payment_method_types[0] if payment_method_types else 'card',
            metadata={key: str(value) for key, value in (obj.get('metadata') or {}).items() if value},
        )
        result = reconcile(db, payment.external_reference, notifier, observed=snapshot)
        return WebhookOutcome(event_type=event_type, handled=True, result=result.value)

    if event_type in INTENT_FAILURE_EVENTS:
        payment = _payment_from_intent(db, obj)
        record_payment_failure(db, payment, notifier)
        return WebhookOutcome(event_type=event_type, handled=True, result=ReconciliationResult.FAILED.value)

    logger.info('Unhandled webhook event type: %s', event_type)
    return WebhookOutcome(event_type=event_type, handled=False)
