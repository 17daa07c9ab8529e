"""Pull request category management"""

import logging
import re
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from devmetrics.errors import CategoryError
from devmetrics.models import Category, PullRequest

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (
    ("Bug Fixes", "Fixes for defects and regressions", "#F87171"),
    ("Technical Debt", "Refactoring, cleanup and maintenance work", "#FBBF24"),
    ("New Features", "New user-facing functionality", "#60A5FA"),
    ("Product Debt", "Follow-ups on shipped product behaviour", "#A78BFA"),
    ("Documentation", "Docs, comments and guides", "#34D399"),
)

MAX_NAME_LENGTH = 100
_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


class CategoryService:
    """Service for default and organization-scoped categories"""

    def __init__(self, db):
        self.db = db

    def seed_defaults(self) -> int:
        """Insert missing default categories; returns how many were created."""
        existing = {
            name.lower()
            for (name,) in self.db.query(Category.name).filter(Category.is_default.is_(True)).all()
        }
        created = 0
        for name, description, color in DEFAULT_CATEGORIES:
            if name.lower() in existing:
                continue
            self.db.add(Category(name=name, description=description, color=color, is_default=True))
            created += 1
        if created:
            self.db.commit()
            logger.info(f"Seeded {created} default categories")
        return created

    def list_for_organization(self, organization_id: int) -> List[Category]:
        """Defaults first, then the organization's custom categories, each by name."""
        return (
            self.db.query(Category)
            .filter(or_(Category.organization_id.is_(None), Category.organization_id == organization_id))
            .order_by(Category.is_default.desc(), Category.name)
            .all()
        )

    def find_by_name(self, organization_id: int, name: str) -> Optional[Category]:
        """Case-insensitive lookup; the organization's own categories win over defaults."""
        normalized = (name or "").strip().lower()
        if not normalized:
            return None

        custom = (
            self.db.query(Category)
            .filter(Category.organization_id == organization_id, func.lower(Category.name) == normalized)
            .first()
        )
        if custom:
            return custom
        return (
            self.db.query(Category)
            .filter(Category.is_default.is_(True), func.lower(Category.name) == normalized)
            .first()
        )

    def create(
        self,
        organization_id: int,
        name: str,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Category:
        name = (name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise CategoryError(f"Category name must be 1-{MAX_NAME_LENGTH} characters", status_code=400)
        if color is not None and not _HEX_COLOR.match(color):
            raise CategoryError("Color must be a hex value like #A1B2C3", status_code=400)

        duplicate = (
            self.db.query(Category)
            .filter(
                Category.organization_id == organization_id,
                Category.is_default.is_(False),
                func.lower(Category.name) == name.lower(),
            )
            .first()
        )
        if duplicate:
            raise CategoryError(f"Category '{name}' already exists", status_code=409)

        category = Category(
            organization_id=organization_id,
            name=name,
            description=description,
            color=color,
            is_default=False,
        )
        self.db.add(category)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise CategoryError(f"Category '{name}' already exists", status_code=409) from exc

        logger.info(f"Created category '{name}' for organization {organization_id}")
        return category

    def delete(self, organization_id: int, category_id: int) -> None:
        category = self.db.get(Category, category_id)
        if category is None or (not category.is_default and category.organization_id != organization_id):
            raise CategoryError(f"Category {category_id} not found", status_code=404)
        if category.is_default:
            raise CategoryError("Default categories cannot be deleted", status_code=400)

        self.db.query(PullRequest).filter(PullRequest.category_id == category.id).update(
            {PullRequest.category_id: None, PullRequest.category_confidence: None},
            synchronize_session=False,
        )
        self.db.delete(category)
        self.db.commit()
        logger.info(f"Deleted category {category_id} of organization {organization_id}")

    def assign_to_pull_request(
        self,
        pull_request_id: int,
        category_id: Optional[int],
        confidence: Optional[float] = None,
    ) -> PullRequest:
        """Set (or clear with `category_id=None`) a pull request's category."""
        pull_request = self.db.get(PullRequest, pull_request_id)
        if pull_request is None:
            raise CategoryError(f"Pull request {pull_request_id} not found", status_code=404)

        if category_id is not None:
            category = self.db.get(Category, category_id)
            organization_id = pull_request.repository.organization_id
            if category is None or (not category.is_default and category.organization_id != organization_id):
                raise CategoryError(f"Category {category_id} not found", status_code=404)
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise CategoryError("Confidence must be between 0 and 1", status_code=400)

        pull_request.category_id = category_id
        pull_request.category_confidence = confidence if category_id is not None else None
        self.db.commit()
        return pull_request
