"""Case model definitions."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text
from counselbook.core.timeutils import utcnow
from counselbook.database import Base
from counselbook.models.enums import CaseStatus


class Case(Base):
    """The legal matter a client opens with a lawyer; outlives its appointments."""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    lawyer_id = Column(String(36), ForeignKey("users.id"), index=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    case_type = Column(String)
    status = Column(String, nullable=False, default=CaseStatus.OPEN.value)
    hourly_rate = Column(Numeric(10, 2))  # snapshot taken when the request was made
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
