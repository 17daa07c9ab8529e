"""Organization model (GitHub organization)."""

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, String

from devmetrics.config.database import Base, BigIntegerId


class Organization(Base):
    """Organization entity mapped to `organizations` table."""

    __tablename__ = "organizations"

    id = Column(BigIntegerId, primary_key=True, autoincrement=True)
    external_id = Column(BigInteger, unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    avatar_url = Column(String(500), nullable=True)
    # Installation handle, set by the credential collaborator
    installation_id = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Organization {self.name} ({self.external_id})>"
