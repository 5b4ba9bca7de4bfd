"""Appointment model definitions."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from counselbook.core.timeutils import utcnow
from counselbook.database import Base
from counselbook.models.enums import AppointmentStatus


class Appointment(Base):
    """Represents a requested or scheduled consultation."""
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_appointments_positive_duration"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    lawyer_id = Column(String(36), ForeignKey("users.id"))
    case_id = Column(String(36), ForeignKey("cases.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=AppointmentStatus.PENDING.value)
    notes = Column(String)
    request_message = Column(String)
    cancelled_by = Column(String(36))
    created_at = Column(DateTime, default=utcnow)
    responded_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
