"""Database models"""

from devmetrics.models.category import Category
from devmetrics.models.organization import Organization
from devmetrics.models.pull_request import COLLABORATOR_OWNED_FIELDS, PullRequest, PullRequestState
from devmetrics.models.repository import Repository
from devmetrics.models.review import Review, ReviewState
from devmetrics.models.user import User

__all__ = [
    "Category",
    "COLLABORATOR_OWNED_FIELDS",
    "Organization",
    "PullRequest",
    "PullRequestState",
    "Repository",
    "Review",
    "ReviewState",
    "User",
]
