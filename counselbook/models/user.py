"""User model definitions."""

import uuid

from sqlalchemy import Column, Numeric, String
from counselbook.database import Base


class User(Base):
    """Represents a marketplace account issued by the identity provider."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True)
    full_name = Column(String)
    role = Column(String)  # client/lawyer
    hourly_rate = Column(Numeric(10, 2))  # lawyers only
