"""Payment model definitions."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String
from counselbook.core.timeutils import utcnow
from counselbook.database import Base
from counselbook.models.enums import PaymentStatus


class Payment(Base):
    """Local mirror of one hosted-checkout attempt for an appointment.

    Owned by the payment services; a completed payment is never modified again.
    """
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    appointment_id = Column(String(36), ForeignKey("appointments.id"), nullable=False)
    case_id = Column(String(36), ForeignKey("cases.id"))
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    lawyer_id = Column(String(36), ForeignKey("users.id"))
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    external_reference = Column(String, unique=True)  # checkout session id
    payment_intent_id = Column(String)
    payment_method = Column(String)
    description = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime)
    # Per-recipient delivery of the completion notification.
    client_notified_at = Column(DateTime)
    lawyer_notified_at = Column(DateTime)
    # Set when another payment already completed the same appointment; this one is owed a refund.
    duplicate_of = Column(String(36))
