"""User model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, String

from devmetrics.config.database import Base


class User(Base):
    """User keyed by the source's user id (stringified)."""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=True)
    email = Column(String(320), unique=True, nullable=True)
    image = Column(String(500), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<User {self.id}>"
