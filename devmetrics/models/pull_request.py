"""Pull request model."""

import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from devmetrics.config.database import Base, BigIntegerId


class PullRequestState(str, enum.Enum):
    """Lifecycle state; `merged` is terminal."""

    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


# Columns written by other subsystems; sync must leave them untouched
COLLABORATOR_OWNED_FIELDS = (
    "category_id",
    "category_confidence",
    "processing_status",
    "processing_error",
)


class PullRequest(Base):
    """Pull request entity mapped to `pull_requests` table."""

    __tablename__ = "pull_requests"

    id = Column(BigIntegerId, primary_key=True, autoincrement=True)
    external_id = Column(BigInteger, unique=True, nullable=False, index=True)
    repository_id = Column(
        BigInteger, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    number = Column(Integer, nullable=False)

    title = Column(String(1000), nullable=False)
    description = Column(Text, nullable=True)
    author_id = Column(String(64), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    state = Column(String(20), nullable=False, default=PullRequestState.OPEN.value)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    merged_at = Column(DateTime, nullable=True)
    draft = Column(Boolean, nullable=False, default=False)

    additions = Column(Integer, nullable=True)
    deletions = Column(Integer, nullable=True)
    changed_files = Column(Integer, nullable=True)

    category_id = Column(BigInteger, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    category_confidence = Column(Float, nullable=True)
    processing_status = Column(String(20), nullable=True)
    processing_error = Column(Text, nullable=True)

    repository = relationship("Repository", backref="pull_requests")
    author = relationship("User")
    category = relationship("Category")

    __table_args__ = (
        UniqueConstraint("repository_id", "number", name="uq_pull_requests_repository_number"),
        Index("idx_pull_requests_created_at", "created_at"),
        Index("idx_pull_requests_state_merged_at", "state", "merged_at"),
    )

    def __repr__(self):
        return f"<PullRequest {self.repository_id}#{self.number} {self.state}>"
