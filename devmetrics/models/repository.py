"""Repository model."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship

from devmetrics.config.database import Base, BigIntegerId


class Repository(Base):
    """Repository entity mapped to `repositories` table.

    `is_tracked` belongs to the settings collaborator and is never written by sync.
    """

    __tablename__ = "repositories"

    id = Column(BigIntegerId, primary_key=True, autoincrement=True)
    external_id = Column(BigInteger, unique=True, nullable=False, index=True)
    organization_id = Column(
        BigInteger, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )

    name = Column(String(200), nullable=False)
    full_name = Column(String(400), nullable=False)
    description = Column(Text, nullable=True)
    private = Column(Boolean, nullable=False, default=False)
    is_tracked = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", backref="repositories")

    __table_args__ = (
        Index("idx_repositories_org_tracked", "organization_id", "is_tracked"),
    )

    def __repr__(self):
        return f"<Repository {self.full_name}>"
