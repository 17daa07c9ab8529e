"""Pull request review model."""

import enum

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship

from devmetrics.config.database import Base, BigIntegerId


class ReviewState(str, enum.Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"
    DISMISSED = "dismissed"


class Review(Base):
    """Review entity mapped to `pr_reviews` table."""

    __tablename__ = "pr_reviews"

    id = Column(BigIntegerId, primary_key=True, autoincrement=True)
    external_id = Column(BigInteger, nullable=False, index=True)
    pull_request_id = Column(
        BigInteger, ForeignKey("pull_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reviewer_id = Column(String(64), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    state = Column(String(30), nullable=False)
    submitted_at = Column(DateTime, nullable=False)

    pull_request = relationship("PullRequest", backref="reviews")
    reviewer = relationship("User")

    __table_args__ = (
        Index("idx_pr_reviews_pr_submitted", "pull_request_id", "submitted_at"),
    )

    def __repr__(self):
        return f"<Review {self.external_id} {self.state}>"
