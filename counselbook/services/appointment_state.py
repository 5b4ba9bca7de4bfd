"""
Appointment state machine.

Every appointment status change goes through one of the operations below.
Each one authorises the actor, checks the current status, and writes the new
status with a conditional update (``where status = <expected>``) so that a
competing transition that landed first makes this one fail cleanly instead of
overwriting it. Notifications are sent only after the commit and only when
the status actually changed.

    pending ──accept──> awaiting_payment ──(payment)──> scheduled ──complete──> completed
       └──reject──> rejected                               └──cancel──> cancelled
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from counselbook.core import config
from counselbook.core.errors import (
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    SlotConflictError,
    Unauthorized,
    ValidationError,
)
from counselbook.core.timeutils import to_naive_utc, utcnow
from counselbook.models.appointment import Appointment
from counselbook.models.case import Case
from counselbook.models.enums import AppointmentStatus, CaseStatus, NotificationKind, PaymentStatus, UserRole
from counselbook.models.payment import Payment
from counselbook.models.user import User
from counselbook.services.notifications import NotificationDispatcher
from counselbook.services.slot_conflicts import (
    ADVISORY_STATUSES,
    BINDING_STATUSES,
    has_conflict,
    load_lawyer_bookings,
)

logger = logging.getLogger(__name__)

# Re-accepting an appointment that has already moved past acceptance is a no-op.
ACCEPTED_STATUSES = {AppointmentStatus.AWAITING_PAYMENT.value, AppointmentStatus.SCHEDULED.value}


@dataclass
class CaseDraft:
    title: str
    description: str | None = None
    case_type: str | None = None


@dataclass
class TransitionResult:
    appointment: Appointment
    changed: bool
    payment: Payment | None = None


def consultation_fee(hourly_rate: Decimal, duration_minutes: int) -> Decimal:
    amount = Decimal(hourly_rate) * Decimal(duration_minutes) / Decimal(60)
    return amount.quantize(config.CONSULTATION_FEE_QUANTUM, rounding=ROUND_HALF_UP)


def get_appointment(db: Session, appointment_id: str) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound('Appointment not found.', details={'appointment_id': appointment_id})
    return appointment


def get_active_payment(db: Session, appointment_id: str) -> Payment | None:
    return db.query(Payment).filter(
        Payment.appointment_id == appointment_id,
        Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value]),
    ).order_by(Payment.created_at.desc()).first()


def _notification_payload(db: Session, appointment: Appointment, **extra) -> dict:
    case = db.get(Case, appointment.case_id)
    payload = {
        'appointment_id': appointment.id,
        'case_id': appointment.case_id,
        'case_title': case.title if case else None,
        'scheduled_at': appointment.start_time,
        'status': appointment.status,
    }
    payload.update(extra)
    return payload


def _transition(db: Session, appointment_id: str, expected: AppointmentStatus, values: dict) -> bool:
    values = {**values, 'updated_at': values.get('updated_at', utcnow())}
    updated = db.query(Appointment).filter(
        Appointment.id == appointment_id,
        Appointment.status == expected.value,
    ).update(values, synchronize_session=False)
    return updated == 1


def _lock_lawyer(db: Session, lawyer_id: str) -> User:
    # Serialises accept calls for the same lawyer where the dialect supports row locks.
    lawyer = db.query(User).filter(User.id == lawyer_id).with_for_update().one_or_none()
    if lawyer is None:
        raise NotFound('Lawyer not found.', details={'lawyer_id': lawyer_id})
    return lawyer


def request_appointment(
    db: Session,
    client_id: str,
    lawyer_id: str,
    case_draft: CaseDraft,
    start: datetime,
    duration_minutes: int,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
    notes: str | None = None,
) -> TransitionResult:
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationError('Duration must be a positive number of minutes.')

    start_time = to_naive_utc(start).replace(second=0, microsecond=0)
    if start_time <= (now or utcnow()):
        raise ValidationError('Appointments must be scheduled in the future.')

    title = (case_draft.title or '').strip()
    if not title:
        raise ValidationError('Case title is required.')

    client = db.get(User, client_id)
    if client is None or client.role != UserRole.CLIENT.value:
        raise Unauthorized('Only clients can request appointments.')

    lawyer = db.get(User, lawyer_id)
    if lawyer is None or lawyer.role != UserRole.LAWYER.value:
        raise NotFound('Lawyer not found.', details={'lawyer_id': lawyer_id})
    if lawyer.hourly_rate is None:
        raise ValidationError('This lawyer has not published an hourly rate yet.')

    end_time = start_time + timedelta(minutes=duration_minutes)
    existing = load_lawyer_bookings(
        db,
        lawyer_id,
        statuses=ADVISORY_STATUSES,
        window_start=start_time,
        window_end=end_time,
    )
    if has_conflict(lawyer_id, start_time, duration_minutes, existing):
        raise SlotConflictError(
            'The selected time is no longer available. Please choose a different slot.',
            details={'lawyer_id': lawyer_id, 'start_time': start_time.isoformat()},
        )

    try:
        case = Case(
            client_id=client_id,
            lawyer_id=lawyer_id,
            title=title,
            description=case_draft.description,
            case_type=case_draft.case_type,
            status=CaseStatus.OPEN.value,
            hourly_rate=lawyer.hourly_rate,
        )
        db.add(case)
        db.flush()

        appointment = Appointment(
            client_id=client_id,
            lawyer_id=lawyer_id,
            case_id=case.id,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=duration_minutes,
            status=AppointmentStatus.PENDING.value,
            notes=notes or (f'Initial consultation request for {case_draft.case_type}' if case_draft.case_type else None),
            request_message=case_draft.description or f'Appointment request for {title}',
        )
        db.add(appointment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Appointment %s requested by client %s with lawyer %s', appointment.id, client_id, lawyer_id)

    notifier.notify(
        lawyer_id,
        NotificationKind.APPOINTMENT_REQUESTED,
        _notification_payload(db, appointment),
        actor_id=client_id,
    )
    return TransitionResult(appointment=appointment, changed=True)


def accept_request(
    db: Session,
    appointment_id: str,
    lawyer_id: str,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> TransitionResult:
    try:
        appointment = get_appointment(db, appointment_id)
        if appointment.lawyer_id != lawyer_id:
            raise Unauthorized('Only the requested lawyer can accept this appointment.')

        if appointment.status in ACCEPTED_STATUSES:
            logger.info('Appointment %s already accepted; nothing to do', appointment_id)
            return TransitionResult(appointment=appointment, changed=False, payment=get_active_payment(db, appointment_id))

        if appointment.status != AppointmentStatus.PENDING.value:
            raise InvalidTransition(
                'This request is no longer pending.',
                details={'status': appointment.status},
            )

        responded_at = now or utcnow()
        if appointment.start_time <= responded_at:
            raise InvalidTransition(
                'The requested time has already passed.',
                details={'start_time': appointment.start_time.isoformat()},
            )

        _lock_lawyer(db, lawyer_id)
        scheduled = load_lawyer_bookings(
            db,
            lawyer_id,
            statuses=BINDING_STATUSES,
            exclude_appointment_id=appointment.id,
            window_start=appointment.start_time,
            window_end=appointment.end_time,
        )
        if has_conflict(lawyer_id, appointment.start_time, appointment.duration_minutes, scheduled):
            raise SlotConflictError(
                'You already have an appointment during this slot. Please propose a different time.',
                details={'appointment_id': appointment_id},
            )

        case = db.get(Case, appointment.case_id)
        if case is None or case.hourly_rate is None:
            raise PreconditionFailed('No hourly rate was recorded for this case.')
        amount = consultation_fee(case.hourly_rate, appointment.duration_minutes)

        if not _transition(
            db,
            appointment.id,
            AppointmentStatus.PENDING,
            {'status': AppointmentStatus.AWAITING_PAYMENT.value, 'responded_at': responded_at},
        ):
            raise InvalidTransition('This request is no longer pending.')

        payment = Payment(
            appointment_id=appointment.id,
            case_id=appointment.case_id,
            client_id=appointment.client_id,
            lawyer_id=lawyer_id,
            amount=amount,
            currency=config.DEFAULT_CURRENCY,
            status=PaymentStatus.PENDING.value,
            description=f'Payment for appointment {appointment.id}',
        )
        db.add(payment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    db.refresh(payment)
    logger.info('Appointment %s accepted by lawyer %s; payment %s pending', appointment.id, lawyer_id, payment.id)

    notifier.notify(
        appointment.client_id,
        NotificationKind.APPOINTMENT_ACCEPTED,
        _notification_payload(db, appointment, payment_id=payment.id, amount=str(payment.amount)),
        actor_id=lawyer_id,
    )
    return TransitionResult(appointment=appointment, changed=True, payment=payment)


def reject_request(
    db: Session,
    appointment_id: str,
    lawyer_id: str,
    notifier: NotificationDispatcher,
    now: datetime | None = None,
) -> TransitionResult:
    try:
        appointment = get_appointment(db, appointment_id)
        if appointment.lawyer_id != lawyer_id:
            raise Unauthorized('Only the requested lawyer can decline this appointment.')

        if appointment.status == AppointmentStatus.REJECTED.value:
            return TransitionResult(appointment=appointment, changed=False)

        if appointment.status != AppointmentStatus.PENDING.value:
            raise InvalidTransition('This request is no longer pending.', details={'status': appointment.status})

        if not _transition(
            db,
            appointment.id,
            AppointmentStatus.PENDING,
            {'status': AppointmentStatus.REJECTED.value, 'responded_at': now or utcnow()},
        ):
            raise InvalidTransition('This request is no longer pending.')
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Appointment %s rejected by lawyer %s', appointment.id, lawyer_id)

    notifier.notify(
        appointment.client_id,
        NotificationKind.APPOINTMENT_REJECTED,
        _notification_payload(db, appointment),
        actor_id=lawyer_id,
    )
    return TransitionResult(appointment=appointment, changed=True)


def cancel(
    db: Session,
    appointment_id: str,
    actor_id: str,
    notifier: NotificationDispatcher,
) -> TransitionResult:
    try:
        appointment = get_appointment(db, appointment_id)
        if actor_id not in {appointment.client_id, appointment.lawyer_id}:
            raise Unauthorized('Only the client or lawyer of this appointment can cancel it.')

        if appointment.status == AppointmentStatus.CANCELLED.value:
            return TransitionResult(appointment=appointment, changed=False)

        if appointment.status != AppointmentStatus.SCHEDULED.value:
            raise InvalidTransition(
                'Only scheduled appointments can be cancelled. Pending requests are declined instead.',
                details={'status': appointment.status},
            )

        if not _transition(
            db,
            appointment.id,
            AppointmentStatus.SCHEDULED,
            {'status': AppointmentStatus.CANCELLED.value, 'cancelled_by': actor_id},
        ):
            raise InvalidTransition('This appointment is no longer scheduled.')
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Appointment %s cancelled by %s', appointment.id, actor_id)

    counterparty = appointment.lawyer_id if actor_id == appointment.client_id else appointment.client_id
    notifier.notify(
        counterparty,
        NotificationKind.APPOINTMENT_CANCELLED,
        _notification_payload(db, appointment, cancelled_by=actor_id),
        actor_id=actor_id,
    )
    return TransitionResult(appointment=appointment, changed=True)


def complete(
    db: Session,
    appointment_id: str,
    lawyer_id: str,
    notifier: NotificationDispatcher,
) -> TransitionResult:
    try:
        appointment = get_appointment(db, appointment_id)
        if appointment.lawyer_id != lawyer_id:
            raise Unauthorized('Only the lawyer of this appointment can mark it completed.')

        if appointment.status == AppointmentStatus.COMPLETED.value:
            return TransitionResult(appointment=appointment, changed=False)

        if appointment.status != AppointmentStatus.SCHEDULED.value:
            raise InvalidTransition(
                'Only scheduled appointments can be marked completed.',
                details={'status': appointment.status},
            )

        if not _transition(
            db,
            appointment.id,
            AppointmentStatus.SCHEDULED,
            {'status': AppointmentStatus.COMPLETED.value},
        ):
            raise InvalidTransition('This appointment is no longer scheduled.')
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Appointment %s marked completed by lawyer %s', appointment.id, lawyer_id)

    notifier.notify(
        appointment.client_id,
        NotificationKind.APPOINTMENT_COMPLETED,
        _notification_payload(db, appointment),
        actor_id=lawyer_id,
    )
    return TransitionResult(appointment=appointment, changed=True)
