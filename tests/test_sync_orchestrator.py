from __future__ import annotations

import pytest

from devmetrics.crawlers.github.fixture_client import FixtureGitHubClient
from devmetrics.crawlers.github.retry import RetryPolicy
from devmetrics.errors import NotFoundError, RateLimitedError, UnauthorizedError
from devmetrics.models import Organization, PullRequest, Repository, Review
from devmetrics.orchestrator_sync import SyncOrchestrator, SyncResult, SyncStatus

from payloads import (
    org_payload,
    pr_payload,
    repo_payload,
    review_payload,
    seed_organization,
    seed_repository,
)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _fixture() -> dict:
    return {
        "organizations": [org_payload(1000, "acme"), org_payload(2000, "globex")],
        "repositories": {
            "acme": [repo_payload(21, "repo1"), repo_payload(22, "repo2"), repo_payload(23, "repo3")],
        },
        "pull_requests": {
            "acme/repo1": [pr_payload(501, 1)],
            "acme/repo2": [pr_payload(502, 1)],
            "acme/repo3": [pr_payload(503, 1)],
        },
        "reviews": {"acme/repo1#1": [review_payload(801)]},
    }


def _orchestrator(database, client, *, token: str | None = "installation-token", sleep=None, **kwargs):
    return SyncOrchestrator(
        session_factory=database.session_factory,
        client_factory=lambda _token: client,
        token_provider=lambda organization: token,
        retry_policy=RetryPolicy(max_attempts=3, timeout_seconds=None),
        fetch_pr_details=kwargs.pop("fetch_pr_details", False),
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


def _seed_tracked_org(session) -> Organization:
    organization = seed_organization(session)
    for external_id, name in ((21, "repo1"), (22, "repo2"), (23, "repo3")):
        seed_repository(session, organization, external_id=external_id, name=name, tracked=True)
    return organization


@pytest.mark.asyncio
async def test_repository_failure_does_not_abort_siblings(database, session) -> None:
    organization = _seed_tracked_org(session)
    client = FixtureGitHubClient(_fixture(), failures={"pulls:acme/repo2": NotFoundError("repository deleted")})

    result = await _orchestrator(database, client).sync_organization(organization.id)

    assert result.status is SyncStatus.COMPLETED_WITH_ERRORS
    assert sorted(result.synced) == ["acme/repo1", "acme/repo3"]
    assert [(error.resource, error.kind) for error in result.errors] == [("acme/repo2", "not_found")]
    assert result.new_count == 3  # two pull requests and one review
    assert session.query(PullRequest).count() == 2
    assert session.query(Review).count() == 1


@pytest.mark.asyncio
async def test_second_run_over_same_snapshot_reports_no_changes(database, session) -> None:
    organization = _seed_tracked_org(session)
    client = FixtureGitHubClient(_fixture())
    orchestrator = _orchestrator(database, client)

    first = await orchestrator.sync_organization(organization.id)
    second = await orchestrator.sync_organization(organization.id)

    assert first.status is SyncStatus.COMPLETED
    assert first.new_count == 4
    assert second.status is SyncStatus.COMPLETED
    assert second.new_count == 0
    assert second.updated_count == 0
    assert session.query(PullRequest).count() == 3


@pytest.mark.asyncio
async def test_missing_installation_fails_run_before_any_remote_call(database, session) -> None:
    organization = seed_organization(session, installation_id=None)
    client = FixtureGitHubClient(_fixture())

    result = await _orchestrator(database, client).sync_organization(organization.id)

    assert result.status is SyncStatus.FAILED
    assert result.errors[0].kind == "missing_authorization"
    assert client.calls == []


@pytest.mark.asyncio
async def test_absent_credential_is_unauthorized_and_fatal(database, session) -> None:
    organization = seed_organization(session)
    client = FixtureGitHubClient(_fixture())

    result = await _orchestrator(database, client, token=None).sync_organization(organization.id)

    assert result.status is SyncStatus.FAILED
    assert result.errors[0].kind == "unauthorized"
    assert client.calls == []


@pytest.mark.asyncio
async def test_revoked_credential_mid_run_fails_the_run(database, session) -> None:
    organization = _seed_tracked_org(session)
    client = FixtureGitHubClient(_fixture(), failures={"pulls:acme/repo1": UnauthorizedError("revoked")})

    result = await _orchestrator(database, client).sync_organization(organization.id)

    assert result.status is SyncStatus.FAILED
    assert any(error.kind == "unauthorized" for error in result.errors)


@pytest.mark.asyncio
async def test_rate_limited_repository_is_retried_then_recorded(database, session) -> None:
    organization = _seed_tracked_org(session)
    sleep = RecordingSleep()
    client = FixtureGitHubClient(
        _fixture(),
        failures={"pulls:acme/repo2": [RateLimitedError("limited", retry_after=5) for _ in range(3)]},
    )

    result = await _orchestrator(database, client, sleep=sleep).sync_organization(organization.id)

    assert result.status is SyncStatus.COMPLETED_WITH_ERRORS
    assert [(error.resource, error.kind) for error in result.errors] == [("acme/repo2", "rate_limited")]
    assert sorted(result.synced) == ["acme/repo1", "acme/repo3"]
    assert sleep.delays == [5.0, 5.0]
    assert client.calls.count("pulls:acme/repo2") == 3


@pytest.mark.asyncio
async def test_rate_limit_within_budget_recovers(database, session) -> None:
    organization = _seed_tracked_org(session)
    client = FixtureGitHubClient(
        _fixture(),
        failures={"pulls:acme/repo2": [RateLimitedError("limited", retry_after=1)]},
    )

    result = await _orchestrator(database, client).sync_organization(organization.id)

    assert result.status is SyncStatus.COMPLETED
    assert sorted(result.synced) == ["acme/repo1", "acme/repo2", "acme/repo3"]


@pytest.mark.asyncio
async def test_new_repositories_are_untracked_and_skip_pull_requests(database, session) -> None:
    organization = seed_organization(session)
    client = FixtureGitHubClient(_fixture())

    result = await _orchestrator(database, client).sync_organization(organization.id)

    assert result.status is SyncStatus.COMPLETED
    assert result.new_count == 3
    assert sorted(result.synced) == ["acme/repo1", "acme/repo2", "acme/repo3"]
    assert session.query(Repository).filter_by(is_tracked=False).count() == 3
    assert not any(call.startswith("pulls:") for call in client.calls)


@pytest.mark.asyncio
async def test_incremental_sync_stops_at_first_unchanged_pull_request(database, session) -> None:
    organization = seed_organization(session)
    repository = seed_repository(session, organization, external_id=30, name="api")
    data = {
        "pull_requests": {
            "acme/api": [
                pr_payload(603, 3, updated_at="2026-10-05T10:00:00Z"),
                pr_payload(602, 2, updated_at="2026-10-04T10:00:00Z"),
                pr_payload(601, 1, updated_at="2026-10-03T10:00:00Z"),
            ]
        },
        "reviews": {"acme/api#3": [review_payload(901)]},
    }
    client = FixtureGitHubClient(data, per_page=1)
    orchestrator = _orchestrator(database, client)

    initial = await orchestrator.sync_repository(repository.id, mode="full")
    assert initial.new_count == 4

    data["pull_requests"]["acme/api"][0] = pr_payload(603, 3, title="Renamed", updated_at="2026-10-06T10:00:00Z")
    client.calls.clear()

    result = await orchestrator.sync_repository(repository.id, mode="incremental")

    assert result.status is SyncStatus.COMPLETED
    assert result.synced == ["acme/api"]
    assert result.updated_count == 1
    assert client.calls == ["pulls:acme/api", "reviews:acme/api/3", "pulls:acme/api"]
    assert session.query(PullRequest).filter_by(number=3).one().title == "Renamed"


@pytest.mark.asyncio
async def test_failed_review_fetch_is_repeated_by_next_incremental_run(database, session) -> None:
    organization = seed_organization(session)
    repository = seed_repository(session, organization, external_id=30, name="api")
    data = {
        "pull_requests": {"acme/api": [pr_payload(603, 3)]},
        "reviews": {"acme/api#3": [review_payload(901)]},
    }
    client = FixtureGitHubClient(data, failures={"reviews:acme/api/3": [NotFoundError("reviews unavailable")]})
    orchestrator = _orchestrator(database, client)

    first = await orchestrator.sync_repository(repository.id, mode="incremental")

    assert first.status is SyncStatus.COMPLETED_WITH_ERRORS
    assert [error.resource for error in first.errors] == ["acme/api#3"]
    assert session.query(Review).count() == 0

    client.calls.clear()
    second = await orchestrator.sync_repository(repository.id, mode="incremental")

    assert second.status is SyncStatus.COMPLETED
    assert client.calls == ["pulls:acme/api", "reviews:acme/api/3"]
    assert session.query(Review).count() == 1
    session.expire_all()
    assert session.query(PullRequest).one().updated_at is not None

    client.calls.clear()
    third = await orchestrator.sync_repository(repository.id, mode="incremental")

    assert third.unchanged_count == 1
    assert client.calls == ["pulls:acme/api"]


@pytest.mark.asyncio
async def test_pull_request_details_fill_diff_counters(database, session) -> None:
    organization = seed_organization(session)
    repository = seed_repository(session, organization, external_id=30, name="api")
    data = {
        "pull_requests": {"acme/api": [pr_payload(601, 1)]},
        "pull_request_details": {"acme/api#1": pr_payload(601, 1, additions=120, deletions=30, changed_files=4)},
    }
    client = FixtureGitHubClient(data)

    result = await _orchestrator(database, client, fetch_pr_details=True).sync_repository(repository.id)

    stored = session.query(PullRequest).one()
    assert result.status is SyncStatus.COMPLETED
    assert (stored.additions, stored.deletions, stored.changed_files) == (120, 30, 4)
    assert "pull:acme/api/1" in client.calls


@pytest.mark.asyncio
async def test_malformed_review_is_recorded_without_stopping_pull_request(database, session) -> None:
    organization = seed_organization(session)
    repository = seed_repository(session, organization, external_id=30, name="api")
    data = {
        "pull_requests": {"acme/api": [pr_payload(601, 1)]},
        "reviews": {"acme/api#1": [review_payload(901, submitted_at=None), review_payload(902)]},
    }

    result = await _orchestrator(database, FixtureGitHubClient(data)).sync_repository(repository.id)

    assert result.status is SyncStatus.COMPLETED_WITH_ERRORS
    assert result.errors[0].resource == "acme/api#1/review:901"
    assert result.errors[0].kind == "validation"
    assert session.query(Review).count() == 1


@pytest.mark.asyncio
async def test_installation_sync_upserts_visible_organizations(database, session) -> None:
    client = FixtureGitHubClient(_fixture())

    result = await _orchestrator(database, client).sync_installation_organizations(
        token="user-token", installation_id=99
    )

    assert result.status is SyncStatus.COMPLETED
    assert result.synced == ["acme", "globex"]
    assert {org.installation_id for org in session.query(Organization).all()} == {99}


@pytest.mark.asyncio
async def test_installation_sync_without_token_fails(database) -> None:
    result = await _orchestrator(database, FixtureGitHubClient(_fixture())).sync_installation_organizations(
        token=None
    )

    assert result.status is SyncStatus.FAILED


@pytest.mark.asyncio
async def test_pull_request_event_is_ingested_for_tracked_repository(database, session) -> None:
    organization = seed_organization(session)
    seed_repository(session, organization, external_id=30, name="api", tracked=True)
    orchestrator = _orchestrator(database, FixtureGitHubClient({}))
    payload = {
        "action": "opened",
        "organization": org_payload(1000, "acme"),
        "repository": repo_payload(30, "api"),
        "installation": {"id": 77},
        "pull_request": pr_payload(701, 9),
    }

    opened = await orchestrator.ingest_event("pull_request", payload)
    reviewed = await orchestrator.ingest_event(
        "pull_request_review", {**payload, "review": review_payload(950)}
    )

    assert opened.status is SyncStatus.COMPLETED
    assert reviewed.status is SyncStatus.COMPLETED
    assert session.query(PullRequest).filter_by(number=9).count() == 1
    assert session.query(Review).filter_by(external_id=950).count() == 1


@pytest.mark.asyncio
async def test_pull_request_event_for_untracked_repository_is_ignored(database, session) -> None:
    orchestrator = _orchestrator(database, FixtureGitHubClient({}))
    payload = {
        "organization": org_payload(1000, "acme"),
        "repository": repo_payload(30, "api"),
        "pull_request": pr_payload(701, 9),
    }

    result = await orchestrator.ingest_event("pull_request", payload)

    assert result.status is SyncStatus.COMPLETED
    assert session.query(Repository).count() == 1
    assert session.query(PullRequest).count() == 0


def test_sync_result_serializes_and_guards_transitions() -> None:
    result = SyncResult(scope="organization:1")

    with pytest.raises(RuntimeError):
        result.transition(SyncStatus.COMPLETED)

    result.transition(SyncStatus.RUNNING)
    result.add_error("acme/api", NotFoundError("gone"))
    payload = result.finish().to_dict()

    assert payload["status"] == "completed_with_errors"
    assert payload["errors"] == [{"resource": "acme/api", "reason": "gone", "kind": "not_found"}]
    assert set(payload) >= {"synced", "newCount", "updatedCount", "errors"}
