import os
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from counselbook.core.errors import ExternalServiceError  # noqa: E402
from counselbook.database import Base  # noqa: E402
from counselbook.models.appointment import Appointment  # noqa: E402,F401
from counselbook.models.case import Case  # noqa: E402,F401
from counselbook.models.enums import UserRole  # noqa: E402
from counselbook.models.notification import Notification  # noqa: E402,F401
from counselbook.models.payment import Payment  # noqa: E402,F401
from counselbook.models.user import User  # noqa: E402
from counselbook.services.appointment_state import CaseDraft  # noqa: E402
from counselbook.services.payment_gateway import (  # noqa: E402
    CheckoutSessionHandle,
    ProcessorPaymentStatus,
    ProcessorSnapshot,
)

NOW = datetime(2025, 3, 1, 9, 0)
SLOT_START = datetime(2025, 3, 10, 14, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self, deliver: bool = True, fail_for=()):
        self.deliver = deliver
        self.fail_for = set(fail_for)
        self.sent = []

    def notify(self, recipient_id, kind, payload, actor_id=None):
        self.sent.append({'recipient_id': recipient_id, 'kind': kind, 'payload': payload, 'actor_id': actor_id})
        return self.deliver and recipient_id not in self.fail_for

    def kinds(self):
        return [entry['kind'] for entry in self.sent]

    def for_kind(self, kind):
        return [entry for entry in self.sent if entry['kind'] == kind]


class FakeGateway:
    def __init__(self):
        self.sessions = {}
        self.created = []
        self.fetch_calls = 0
        self.expired = []
        self.unavailable = False

    def _check_available(self):
        if self.unavailable:
            raise ExternalServiceError('Payment processor is unavailable. Please try again.')

    def create_checkout_session(self, *, amount, currency, product_name, description, metadata, **kwargs):
        self._check_available()
        reference = f'cs_test_{len(self.created) + 1}'
        self.created.append(
            {
                'reference': reference,
                'amount': amount,
                'currency': currency,
                'product_name': product_name,
                'description': description,
                'metadata': dict(metadata),
            }
        )
        self.sessions[reference] = {
            'status': ProcessorPaymentStatus.PENDING,
            'is_open': True,
            'url': f'https://checkout.stripe.test/{reference}',
            'metadata': dict(metadata),
        }
        return CheckoutSessionHandle(
            reference=reference,
            url=self.sessions[reference]['url'],
            status=ProcessorPaymentStatus.PENDING,
            is_open=True,
        )

    def set_status(self, reference, status, is_open=False):
        self.sessions[reference]['status'] = status
        self.sessions[reference]['is_open'] = is_open

    def retrieve_checkout_session(self, reference):
        self._check_available()
        session = self.sessions[reference]
        snapshot = ProcessorSnapshot(
            reference=reference,
            status=session['status'],
            payment_intent_id=f'pi_for_{reference}',
            payment_method='card',
            metadata=session['metadata'],
        )
        handle = CheckoutSessionHandle(
            reference=reference,
            url=session['url'],
            status=session['status'],
            is_open=session['is_open'],
        )
        return snapshot, handle

    def expire_checkout_session(self, reference):
        self._check_available()
        self.expired.append(reference)
        self.set_status(reference, ProcessorPaymentStatus.EXPIRED)

    def fetch_snapshot(self, reference):
        self.fetch_calls += 1
        snapshot, _ = self.retrieve_checkout_session(reference)
        return snapshot


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


def add_user(db, role: UserRole, email: str, hourly_rate=None) -> User:
    user = User(email=email, full_name=email.split('@')[0].title(), role=role.value, hourly_rate=hourly_rate)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def client(db):
    return add_user(db, UserRole.CLIENT, 'client@example.com')


@pytest.fixture
def lawyer(db):
    return add_user(db, UserRole.LAWYER, 'lawyer@example.com', hourly_rate=Decimal('120.00'))


def case_draft(title: str = 'Lease dispute') -> CaseDraft:
    return CaseDraft(title=title, description='Landlord is withholding the deposit.', case_type='tenancy')
