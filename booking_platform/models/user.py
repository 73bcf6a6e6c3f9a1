"""User model definitions."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String

from booking_platform.database import Base

CLIENT_ROLE = 'client'
BUILDER_ROLE = 'builder'
ADMIN_ROLE = 'admin'
USER_ROLES = (CLIENT_ROLE, BUILDER_ROLE, ADMIN_ROLE)


class User(Base):
    """Represents a marketplace account; builders offer sessions, clients book them."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    role = Column(String, nullable=False, default=CLIENT_ROLE)  # client/builder/admin
    timezone = Column(String, nullable=False, default='UTC')
    stripe_customer_id = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_builder(self) -> bool:
        return self.role == BUILDER_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE
