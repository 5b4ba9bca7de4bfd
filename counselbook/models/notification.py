"""Notification model definitions."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, String
from counselbook.core.timeutils import utcnow
from counselbook.database import Base


class Notification(Base):
    """A message to one user; the table doubles as the change feed clients subscribe to."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    recipient_id = Column(String(36), nullable=False, index=True)
    created_by = Column(String(36))
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(String)
    data = Column(JSON, default=dict)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
