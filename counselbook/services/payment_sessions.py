import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session

from counselbook.core import config
from counselbook.core.errors import PreconditionFailed, Unauthorized, ValidationError
from counselbook.models.appointment import Appointment
from counselbook.models.case import Case
from counselbook.models.enums import AppointmentStatus, PaymentStatus
from counselbook.models.payment import Payment
from counselbook.services.appointment_state import get_appointment
from counselbook.services.payment_gateway import StripeGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    external_url: str | None
    payment_id: str
    external_reference: str


def _check_requested_amount(payment: Payment, amount, currency: str | None) -> None:
    if amount is not None:
        try:
            requested = Decimal(str(amount)).quantize(config.CONSULTATION_FEE_QUANTUM)
        except InvalidOperation as exc:
            raise ValidationError('Amount must be a number.') from exc
        if requested != Decimal(payment.amount):
            raise ValidationError(
                'Amount does not match the accepted consultation fee.',
                details={'expected': str(payment.amount), 'received': str(requested)},
            )
    if currency is not None and currency.upper() != payment.currency:
        raise ValidationError(
            'Currency does not match the accepted consultation fee.',
            details={'expected': payment.currency, 'received': currency.upper()},
        )


def _close_previous_session(gateway: StripeGateway, failed: Payment) -> None:
    # A declined attempt can leave its session open; it must not be payable next to the new one.
    _, previous = gateway.retrieve_checkout_session(failed.external_reference)
    if previous.status.is_success:
        raise PreconditionFailed(
            'Payment has already been captured. Verify the session instead.',
            details={'session_id': previous.reference},
        )
    if previous.is_open:
        gateway.expire_checkout_session(previous.reference)
        logger.info('Expired checkout session %s of failed payment %s', previous.reference, failed.id)


def _pending_payment_for(db: Session, appointment: Appointment, gateway: StripeGateway) -> Payment:
    payment = db.query(Payment).filter(
        Payment.appointment_id == appointment.id,
        Payment.status == PaymentStatus.PENDING.value,
    ).order_by(Payment.created_at.desc()).first()
    if payment is not None:
        return payment

    completed = db.query(Payment.id).filter(
        Payment.appointment_id == appointment.id,
        Payment.status == PaymentStatus.COMPLETED.value,
    ).first()
    if completed is not None:
        raise PreconditionFailed('This appointment has already been paid.')

    # Previous attempt failed: open a fresh payment at the amount that was accepted.
    last_failed = db.query(Payment).filter(
        Payment.appointment_id == appointment.id,
        Payment.status == PaymentStatus.FAILED.value,
    ).order_by(Payment.created_at.desc()).first()
    if last_failed is None:
        raise PreconditionFailed('No payment was prepared for this appointment.')

    if last_failed.external_reference:
        _close_previous_session(gateway, last_failed)

    payment = Payment(
        appointment_id=appointment.id,
        case_id=appointment.case_id,
        client_id=appointment.client_id,
        lawyer_id=appointment.lawyer_id,
        amount=last_failed.amount,
        currency=last_failed.currency,
        status=PaymentStatus.PENDING.value,
        description=last_failed.description,
    )
    db.add(payment)
    db.flush()
    logger.info('Opened payment %s to retry failed payment %s', payment.id, last_failed.id)
    return payment


def create_checkout_session(
    db: Session,
    appointment_id: str,
    client_id: str,
    gateway: StripeGateway,
    amount=None,
    currency: str | None = None,
) -> CheckoutSession:
    try:
        appointment = get_appointment(db, appointment_id)
        if appointment.client_id != client_id:
            raise Unauthorized('Appointment does not belong to this user.')
        if appointment.status != AppointmentStatus.AWAITING_PAYMENT.value:
            raise PreconditionFailed(
                'Appointment is not awaiting payment.',
                details={'status': appointment.status},
            )

        payment = _pending_payment_for(db, appointment, gateway)
        _check_requested_amount(payment, amount, currency)

        if payment.external_reference:
            _, existing = gateway.retrieve_checkout_session(payment.external_reference)
            if existing.status.is_success:
                raise PreconditionFailed(
                    'Payment has already been captured. Verify the session instead.',
                    details={'session_id': existing.reference},
                )
            if existing.is_open and existing.url:
                db.commit()
                return CheckoutSession(
                    external_url=existing.url,
                    payment_id=payment.id,
                    external_reference=existing.reference,
                )

        case = db.get(Case, appointment.case_id)
        metadata = {
            'appointment_id': appointment.id,
            'payment_id': payment.id,
            'client_id': appointment.client_id,
            'case_id': appointment.case_id,
            'lawyer_id': appointment.lawyer_id or '',
        }
        handle = gateway.create_checkout_session(
            amount=Decimal(payment.amount),
            currency=payment.currency,
            product_name=f'Consultation: {case.title if case else "Appointment"}',
            description=f'Payment for appointment {appointment.id}',
            metadata={key: value for key, value in metadata.items() if value},
        )

        # Reconciliation finds the payment by this reference; it must be stored before the redirect.
        payment.external_reference = handle.reference
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info('Checkout session %s created for payment %s', handle.reference, payment.id)
    return CheckoutSession(external_url=handle.url, payment_id=payment.id, external_reference=handle.reference)
