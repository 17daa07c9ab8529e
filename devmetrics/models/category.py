"""Pull request category model."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, String, Text, false, func

from devmetrics.config.database import Base, BigIntegerId


class Category(Base):
    """Category entity; `organization_id IS NULL` marks a shared default."""

    __tablename__ = "categories"

    id = Column(BigIntegerId, primary_key=True, autoincrement=True)
    organization_id = Column(
        BigInteger, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True
    )
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String(7), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Category {self.name}>"


Index(
    "uq_categories_org_name_ci",
    Category.organization_id,
    func.lower(Category.name),
    unique=True,
    sqlite_where=Category.is_default == false(),
    postgresql_where=Category.is_default == false(),
)
