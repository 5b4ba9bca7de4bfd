import asyncio
import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from counselbook.auth.dependencies import get_current_user, get_db
from counselbook.models.user import User
from counselbook.routes.common import ensure_database_ready, service_errors
from counselbook.services import payment_sessions, reconciliation
from counselbook.services.notifications import NotificationDispatcher, get_notifier
from counselbook.services.payment_gateway import StripeGateway, get_gateway

router = APIRouter(tags=['payments'])

logger = logging.getLogger(__name__)


class CheckoutSessionRequest(BaseModel):
    appointment_id: str
    amount: Decimal | None = None
    currency: str | None = None

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and value <= 0:
            raise ValueError('Amount must be positive.')
        return value

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().upper()
        if len(normalized) != 3 or not normalized.isalpha():
            raise ValueError('Currency must be a three-letter ISO code.')
        return normalized


class CheckoutSessionResponse(BaseModel):
    url: str | None
    payment_id: str
    session_id: str


class VerifySessionRequest(BaseModel):
    session_id: str

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Missing session ID')
        return normalized


class VerifySessionResponse(BaseModel):
    success: bool
    status: str


class WebhookResponse(BaseModel):
    received: bool
    event_type: str
    handled: bool
    result: str | None = None


@router.post('/checkout-session', response_model=CheckoutSessionResponse)
def create_checkout_session(
    data: CheckoutSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    ensure_database_ready()

    with service_errors(db):
        session = payment_sessions.create_checkout_session(
            db,
            appointment_id=data.appointment_id,
            client_id=current_user.id,
            gateway=gateway,
            amount=data.amount,
            currency=data.currency,
        )

    return CheckoutSessionResponse(
        url=session.external_url,
        payment_id=session.payment_id,
        session_id=session.external_reference,
    )


@router.post('/verify', response_model=VerifySessionResponse)
def verify_payment(
    data: VerifySessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    ensure_database_ready()

    with service_errors(db):
        result = reconciliation.verify_checkout_session(db, data.session_id, current_user.id, gateway, notifier)

    logger.info('Verified checkout session %s: %s', data.session_id, result.value)
    return VerifySessionResponse(success=True, status=result.value)


def _process_webhook(
    payload: bytes,
    signature: str | None,
    db: Session,
    gateway: StripeGateway,
    notifier: NotificationDispatcher,
) -> reconciliation.WebhookOutcome:
    # Schema inspection, signature checks and database work all stay off the event loop.
    ensure_database_ready()
    event = gateway.parse_webhook(payload, signature)
    return reconciliation.handle_webhook_event(db, event, notifier)


@router.post('/webhook', response_model=WebhookResponse, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    payload = await request.body()
    signature = request.headers.get('stripe-signature')

    with service_errors(db):
        outcome = await asyncio.to_thread(_process_webhook, payload, signature, db, gateway, notifier)

    return WebhookResponse(
        received=True,
        event_type=outcome.event_type,
        handled=outcome.handled,
        result=outcome.result,
    )
