import asyncio
import json
import threading
from decimal import Decimal

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from conftest import NOW, SLOT_START, case_draft
from counselbook.core import config
from counselbook.models.appointment import Appointment
from counselbook.models.enums import AppointmentStatus, NotificationKind
from counselbook.routes import payment_routes
from counselbook.routes.payment_routes import (
    CheckoutSessionRequest,
    VerifySessionRequest,
    create_checkout_session,
    stripe_webhook,
    verify_payment,
)
from counselbook.services import appointment_state
from counselbook.services.payment_gateway import ProcessorPaymentStatus, StripeGateway


class _FakeRequest:
    def __init__(self, body: bytes, headers=None):
        self._body = body
        self.headers = headers or {}

    async def body(self):
        return self._body


@pytest.fixture(autouse=True)
def skip_schema_guard(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(payment_routes, 'ensure_database_ready', lambda: None)


@pytest.fixture
def accepted(db, client, lawyer, notifier):
    appointment = appointment_state.request_appointment(
        db,
        client_id=client.id,
        lawyer_id=lawyer.id,
        case_draft=case_draft(),
        start=SLOT_START,
        duration_minutes=60,
        notifier=notifier,
        now=NOW,
    ).appointment
    return appointment_state.accept_request(db, appointment.id, lawyer.id, notifier, now=NOW)


def test_checkout_session_request_normalizes_currency() -> None:
    request = CheckoutSessionRequest(appointment_id='apt-1', amount=Decimal('120.00'), currency=' usd ')

    assert request.currency == 'USD'


@pytest.mark.parametrize(
    'fields',
    [
        {'appointment_id': 'apt-1', 'amount': Decimal('0')},
        {'appointment_id': 'apt-1', 'amount': Decimal('-5')},
        {'appointment_id': 'apt-1', 'currency': 'dollars'},
    ],
)
def test_checkout_session_request_rejects_invalid_input(fields) -> None:
    with pytest.raises(ValidationError):
        CheckoutSessionRequest(**fields)


def test_verify_session_request_requires_session_id() -> None:
    with pytest.raises(ValidationError):
        VerifySessionRequest(session_id='   ')


def test_create_checkout_session_returns_hosted_url(db, client, gateway, accepted) -> None:
    response = create_checkout_session(
        CheckoutSessionRequest(appointment_id=accepted.appointment.id),
        current_user=client,
        db=db,
        gateway=gateway,
    )

    assert response.session_id == 'cs_test_1'
    assert response.url == 'https://checkout.stripe.test/cs_test_1'
    assert response.payment_id == accepted.payment.id


def test_create_checkout_session_for_other_users_appointment_is_forbidden(db, lawyer, gateway, accepted) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_checkout_session(
            CheckoutSessionRequest(appointment_id=accepted.appointment.id),
            current_user=lawyer,
            db=db,
            gateway=gateway,
        )

    assert exception_info.value.status_code == 403


def test_create_checkout_session_when_processor_is_down_is_bad_gateway(db, client, gateway, accepted) -> None:
    gateway.unavailable = True

    with pytest.raises(HTTPException) as exception_info:
        create_checkout_session(
            CheckoutSessionRequest(appointment_id=accepted.appointment.id),
            current_user=client,
            db=db,
            gateway=gateway,
        )

    assert exception_info.value.status_code == 502
    assert exception_info.value.detail['retryable'] is True


def test_verify_payment_reports_reconciliation_result(db, client, gateway, notifier, accepted) -> None:
    create_checkout_session(
        CheckoutSessionRequest(appointment_id=accepted.appointment.id),
        current_user=client,
        db=db,
        gateway=gateway,
    )

    pending = verify_payment(VerifySessionRequest(session_id='cs_test_1'), current_user=client, db=db, gateway=gateway, notifier=notifier)
    gateway.set_status('cs_test_1', ProcessorPaymentStatus.PAID)
    completed = verify_payment(VerifySessionRequest(session_id='cs_test_1'), current_user=client, db=db, gateway=gateway, notifier=notifier)
    repeated = verify_payment(VerifySessionRequest(session_id='cs_test_1'), current_user=client, db=db, gateway=gateway, notifier=notifier)

    assert (pending.success, pending.status) == (True, 'still_pending')
    assert completed.status == 'completed_now'
    assert repeated.status == 'already_completed'


def test_verify_payment_for_unknown_session_is_not_found(db, client, gateway, notifier) -> None:
    with pytest.raises(HTTPException) as exception_info:
        verify_payment(VerifySessionRequest(session_id='cs_missing'), current_user=client, db=db, gateway=gateway, notifier=notifier)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail['code'] == 'UnknownPaymentReference'


def test_webhook_completes_booking(db, client, gateway, notifier, accepted, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', '')
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    create_checkout_session(
        CheckoutSessionRequest(appointment_id=accepted.appointment.id),
        current_user=client,
        db=db,
        gateway=gateway,
    )
    payload = json.dumps(
        {
            'id': 'evt_1',
            'type': 'checkout.session.completed',
            'data': {
                'object': {
                    'id': 'cs_test_1',
                    'status': 'complete',
                    'payment_status': 'paid',
                    'payment_intent': 'pi_1',
                    'metadata': gateway.created[0]['metadata'],
                }
            },
        }
    ).encode()

    response = asyncio.run(
        stripe_webhook(_FakeRequest(payload), db=db, gateway=StripeGateway(api_key=''), notifier=notifier)
    )

    assert response.received is True
    assert response.handled is True
    assert response.result == 'completed_now'
    db.expire_all()
    assert db.get(Appointment, accepted.appointment.id).status == AppointmentStatus.SCHEDULED.value
    assert len(notifier.for_kind(NotificationKind.PAYMENT_COMPLETED)) == 2


def test_webhook_with_bad_signature_is_bad_request(db, notifier, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', 'whsec_test')

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(stripe_webhook(_FakeRequest(b'{}'), db=db, gateway=StripeGateway(api_key=''), notifier=notifier))

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail['message'] == 'No signature'


def test_webhook_for_unknown_session_is_not_found(db, notifier, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', '')
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    payload = json.dumps(
        {'id': 'evt_9', 'type': 'checkout.session.completed', 'data': {'object': {'id': 'cs_unknown', 'payment_status': 'paid'}}}
    ).encode()

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(stripe_webhook(_FakeRequest(payload), db=db, gateway=StripeGateway(api_key=''), notifier=notifier))

    assert exception_info.value.status_code == 404


def test_webhook_acknowledges_unhandled_events(db, notifier, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', '')
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    payload = json.dumps({'id': 'evt_4', 'type': 'charge.refunded', 'data': {'object': {'id': 'ch_1'}}}).encode()

    response = asyncio.run(
        stripe_webhook(_FakeRequest(payload), db=db, gateway=StripeGateway(api_key=''), notifier=notifier)
    )

    assert response.handled is False
    assert response.event_type == 'charge.refunded'


def test_webhook_runs_schema_check_and_signature_check_off_the_event_loop(
    db, notifier, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', '')
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    threads = {}
    gateway = StripeGateway(api_key='')
    parse_webhook = gateway.parse_webhook

    def record_parse(payload, signature):
        threads['parse_webhook'] = threading.get_ident()
        return parse_webhook(payload, signature)

    monkeypatch.setattr(
        payment_routes,
        'ensure_database_ready',
        lambda: threads.__setitem__('ensure_database_ready', threading.get_ident()),
    )
    monkeypatch.setattr(gateway, 'parse_webhook', record_parse)
    payload = json.dumps({'id': 'evt_5', 'type': 'charge.refunded', 'data': {'object': {'id': 'ch_2'}}}).encode()

    asyncio.run(stripe_webhook(_FakeRequest(payload), db=db, gateway=gateway, notifier=notifier))

    loop_thread = threading.get_ident()
    assert set(threads) == {'ensure_database_ready', 'parse_webhook'}
    assert loop_thread not in threads.values()
