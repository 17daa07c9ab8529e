"""GitHub ingestion: source clients, retry policy and store reconciliation."""

from devmetrics.crawlers.github.client import GitHubClient
from devmetrics.crawlers.github.contracts import Page
from devmetrics.crawlers.github.fixture_client import FixtureGitHubClient
from devmetrics.crawlers.github.retry import RetryPolicy, call_with_retry

__all__ = ["FixtureGitHubClient", "GitHubClient", "Page", "RetryPolicy", "call_with_retry"]
