"""Repository tracking toggle"""

import logging

from devmetrics.models import Repository

logger = logging.getLogger(__name__)


def set_repository_tracking(db, repository_id: int, tracked: bool) -> Repository:
    """Mark a repository as tracked (pull requests ingested) or untracked."""
    repository = db.get(Repository, repository_id)
    if repository is None:
        raise LookupError(f"Repository {repository_id} not found")

    repository.is_tracked = bool(tracked)
    db.commit()
    logger.info(f"Repository {repository.full_name} tracking set to {repository.is_tracked}")
    return repository
