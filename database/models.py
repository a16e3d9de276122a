"""
Account models shared across the storefront

Only the slice of the user record that checkout reads or writes lives here;
profile and address management are owned elsewhere.
"""

import uuid

from sqlalchemy import TIMESTAMP, Column, String
from sqlalchemy.sql import func

from database.base import Base


def generate_uuid():
    """Generate a new UUID"""
    return str(uuid.uuid4())


class User(Base):
    """Storefront account holder"""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    phone = Column(String(50))

    # Billing identity at the payment processor, set on first subscription checkout
    stripe_customer_id = Column(String(255), unique=True, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
