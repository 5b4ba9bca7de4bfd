"""
Thin wrapper around the Stripe SDK.

The rest of the package only sees ``ProcessorSnapshot`` and
``CheckoutSessionHandle``; Stripe objects and Stripe exceptions do not leak
past this module. Network and API failures surface as ``ExternalServiceError``
so callers can retry.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

import stripe

from counselbook.core import config
from counselbook.core.errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

METADATA_KEYS = ('appointment_id', 'payment_id', 'client_id', 'case_id', 'lawyer_id')


class ProcessorPaymentStatus(str, Enum):
    PAID = 'paid'
    PENDING = 'pending'
    EXPIRED = 'expired'
    FAILED = 'failed'

    @property
    def is_success(self) -> bool:
        return self is ProcessorPaymentStatus.PAID


@dataclass(frozen=True)
class ProcessorSnapshot:
    """The processor's authoritative view of one checkout session."""

    reference: str
    status: ProcessorPaymentStatus
    payment_intent_id: str | None = None
    payment_method: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSessionHandle:
    reference: str
    url: str | None
    status: ProcessorPaymentStatus
    is_open: bool


def _session_status(session: Mapping[str, Any]) -> ProcessorPaymentStatus:
    payment_status = session.get('payment_status')
    if payment_status in {'paid', 'no_payment_required'}:
        return ProcessorPaymentStatus.PAID
    if session.get('status') == 'expired':
        return ProcessorPaymentStatus.EXPIRED
    return ProcessorPaymentStatus.PENDING


def _clean_metadata(metadata: Mapping[str, Any] | None) -> dict[str, str]:
    if not metadata:
        return {}
    return {key: str(metadata[key]) for key in METADATA_KEYS if metadata.get(key)}


def snapshot_from_session(session: Mapping[str, Any]) -> ProcessorSnapshot:
    payment_method_types = session.get('payment_method_types') or []
    payment_intent = session.get('payment_intent')
    if isinstance(payment_intent, Mapping):
        payment_intent = payment_intent.get('id')

    return ProcessorSnapshot(
        reference=session['id'],
        status=_session_status(session),
        payment_intent_id=payment_intent,
        payment_method=payment_method_types[0] if payment_method_types else 'card',
        metadata=_clean_metadata(session.get('metadata')),
    )


def to_minor_units(amount) -> int:
    return int((amount * 100).to_integral_value())


class StripeGateway:
    def __init__(self, api_key: str | None = None) -> None:
        self.api_key = api_key if api_key is not None else config.STRIPE_SECRET_KEY
        if self.api_key:
            stripe.api_key = self.api_key
            stripe.max_network_retries = config.STRIPE_MAX_NETWORK_RETRIES
            stripe.default_http_client = stripe.RequestsClient(timeout=config.STRIPE_TIMEOUT_SECONDS)
        else:
            logger.warning('STRIPE_SECRET_KEY is not set - checkout calls will fail')

    def create_checkout_session(
        self,
        *,
        amount,
        currency: str,
        product_name: str,
        description: str,
        metadata: Mapping[str, str],
        success_url: str = config.CHECKOUT_SUCCESS_URL,
        cancel_url: str = config.CHECKOUT_CANCEL_URL,
        idempotency_key: str | None = None,
    ) -> CheckoutSessionHandle:
        try:
            session = stripe.checkout.Session.create(
                mode='payment',
                payment_method_types=['card'],
                line_items=[
                    {
                        'price_data': {
                            'currency': currency.lower(),
                            'product_data': {'name': product_name, 'description': description},
                            'unit_amount': to_minor_units(amount),
                        },
                        'quantity': 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=dict(metadata),
                payment_intent_data={'metadata': dict(metadata), 'description': description},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.error('Stripe checkout session creation failed: %s', exc)
            raise ExternalServiceError('Payment processor is unavailable. Please try again.') from exc

        return CheckoutSessionHandle(
            reference=session['id'],
            url=session.get('url'),
            status=_session_status(session),
            is_open=session.get('status') == 'open',
        )

    def retrieve_checkout_session(self, reference: str) -> tuple[ProcessorSnapshot, CheckoutSessionHandle]:
        try:
            session = stripe.checkout.Session.retrieve(reference)
        except stripe.StripeError as exc:
            logger.error('Stripe checkout session lookup failed for %s: %s', reference, exc)
            raise ExternalServiceError('Payment processor is unavailable. Please try again.') from exc

        snapshot = snapshot_from_session(session)
        handle = CheckoutSessionHandle(
            reference=session['id'],
            url=session.get('url'),
            status=snapshot.status,
            is_open=session.get('status') == 'open',
        )
        return snapshot, handle

    def expire_checkout_session(self, reference: str) -> None:
        try:
            stripe.checkout.Session.expire(reference)
        except stripe.StripeError as exc:
            logger.error('Stripe checkout session expiry failed for %s: %s', reference, exc)
            raise ExternalServiceError('Payment processor is unavailable. Please try again.') from exc

    def fetch_snapshot(self, reference: str) -> ProcessorSnapshot:
        snapshot, _ = self.retrieve_checkout_session(reference)
        return snapshot

    def parse_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify a webhook signature and return the event as a plain dict."""
        if config.STRIPE_WEBHOOK_SECRET:
            if not signature:
                raise ValidationError('No signature')
            try:
                stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
            except stripe.SignatureVerificationError as exc:
                logger.warning('Invalid webhook signature: %s', exc)
                raise ValidationError('Invalid signature') from exc
            except ValueError as exc:
                raise ValidationError('Invalid webhook payload') from exc
        elif config.is_production():
            raise ValidationError('Webhook secret not configured')
        else:
            logger.warning('STRIPE_WEBHOOK_SECRET is not set - accepting unsigned webhook in %s', config.APP_ENV)

        try:
            return json.loads(payload)
        except ValueError as exc:
            raise ValidationError('Invalid webhook payload') from exc


def get_gateway() -> StripeGateway:
    return StripeGateway()
