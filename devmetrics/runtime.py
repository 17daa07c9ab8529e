"""Process-level wiring shared by the API and the event handler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from devmetrics.config.database import Database, create_database
from devmetrics.config.settings import settings
from devmetrics.crawlers.github.client import GitHubClient
from devmetrics.crawlers.github.fixture_client import FixtureGitHubClient
from devmetrics.orchestrator_sync import ClientFactory, SyncOrchestrator
from devmetrics.services.category_service import CategoryService
from devmetrics.services.metrics.engine import MetricsEngine

logger = logging.getLogger(__name__)

SOURCE_MODE_GITHUB = "github"
SOURCE_MODE_FIXTURE = "fixture"


@dataclass
class Runtime:
    database: Database
    orchestrator: SyncOrchestrator
    metrics: MetricsEngine

    def close(self) -> None:
        self.database.dispose()


def build_client_factory(mode: Optional[str] = None, fixture_path: Optional[str] = None) -> ClientFactory:
    """Choose the source client variant once, at start-up."""

    selected = (mode or settings.SOURCE_MODE).strip().lower()
    if selected == SOURCE_MODE_GITHUB:
        return lambda token: GitHubClient(token=token)
    if selected == SOURCE_MODE_FIXTURE:
        path = fixture_path or settings.SOURCE_FIXTURE_PATH
        if not path:
            raise ValueError("SOURCE_FIXTURE_PATH is required when SOURCE_MODE=fixture")
        fixture = FixtureGitHubClient.from_file(path, per_page=settings.GITHUB_PER_PAGE)
        return lambda token: fixture
    raise ValueError(f"Unknown SOURCE_MODE: {mode}")


def build_runtime(
    database_url: Optional[str] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> Runtime:
    """Create the store, ensure the schema and seed defaults, then wire services."""

    database = create_database(database_url)
    database.create_all()

    db = database.session()
    try:
        CategoryService(db).seed_defaults()
    finally:
        db.close()

    factory = client_factory or build_client_factory()
    logger.info("Runtime ready", extra={"source_mode": settings.SOURCE_MODE if client_factory is None else "custom"})
    return Runtime(
        database=database,
        orchestrator=SyncOrchestrator(session_factory=database.session_factory, client_factory=factory),
        metrics=MetricsEngine(session_factory=database.session_factory),
    )
