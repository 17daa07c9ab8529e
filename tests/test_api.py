from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from devmetrics.crawlers.github.fixture_client import FixtureGitHubClient
from devmetrics.main import create_app
from devmetrics.models import Organization, PullRequest, Repository
from devmetrics.runtime import build_runtime

from payloads import org_payload, pr_payload, repo_payload


@pytest.fixture
def app():
    fixture = FixtureGitHubClient({"organizations": [org_payload()], "repositories": {"acme": []}})
    return create_app(runtime_factory=lambda: build_runtime("sqlite://", client_factory=lambda token: fixture))


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def _lookup(app, model, **filters):
    db = app.state.runtime.database.session()
    try:
        return db.query(model).filter_by(**filters).first()
    finally:
        db.close()


def _deliver(client, event_name: str, payload: dict):
    return client.post("/api/events/github", json=payload, headers={"X-GitHub-Event": event_name})


def test_health_check(client) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_category_crud(client) -> None:
    defaults = client.get("/api/organizations/1/categories").json()["categories"]
    assert len(defaults) == 5
    assert all(category["isDefault"] for category in defaults)

    created = client.post("/api/organizations/1/categories", json={"name": "Infra", "color": "#112233"})
    duplicate = client.post("/api/organizations/1/categories", json={"name": "infra"})
    bad_color = client.post("/api/organizations/1/categories", json={"name": "Ops", "color": "blue"})
    assert created.status_code == 201
    assert duplicate.status_code == 409
    assert bad_color.status_code == 400

    default_id = defaults[0]["id"]
    assert client.delete(f"/api/organizations/1/categories/{default_id}").status_code == 400
    assert client.delete(f"/api/organizations/1/categories/{created.json()['id']}").status_code == 204
    assert client.delete(f"/api/organizations/1/categories/{created.json()['id']}").status_code == 404


def test_events_feed_metrics_once_repository_is_tracked(app, client) -> None:
    base = {"organization": org_payload(), "installation": {"id": 77}, "repository": repo_payload(10, "api")}
    merged = pr_payload(
        5001,
        1,
        state="closed",
        closed_at="2026-10-01T15:00:00Z",
        merged_at="2026-10-01T15:00:00Z",
        updated_at="2026-10-01T15:00:00Z",
    )

    assert _deliver(client, "repository", base).json()["status"] == "completed"
    skipped = _deliver(client, "pull_request", {**base, "pull_request": merged})
    assert skipped.json()["newCount"] == 0
    assert _lookup(app, PullRequest, number=1) is None

    repository = _lookup(app, Repository, full_name="acme/api")
    tracking = client.put(f"/api/repositories/{repository.id}/tracking", json={"tracked": True})
    assert tracking.json()["isTracked"] is True

    ingested = _deliver(client, "pull_request", {**base, "pull_request": merged})
    assert ingested.json()["newCount"] == 1

    organization = _lookup(app, Organization, name="acme")
    assert organization.installation_id == 77
    summary = client.get("/api/metrics/summary", params={"organizationId": organization.id}).json()
    assert summary["totalPRs"] == 1
    assert summary["mergedPRs"] == 1
    assert summary["trackedRepositories"] == 1

    pull_request = _lookup(app, PullRequest, number=1)
    categories = client.get(f"/api/organizations/{organization.id}/categories").json()["categories"]
    assigned = client.put(
        f"/api/pull-requests/{pull_request.id}/category",
        json={"category_id": categories[0]["id"], "confidence": 0.7},
    )
    assert assigned.status_code == 200
    assert assigned.json()["categoryConfidence"] == 0.7


def test_metrics_endpoints_return_defaults_for_empty_organization(client) -> None:
    series = client.get("/api/metrics/time-series", params={"organizationId": 1, "days": 5}).json()
    team = client.get("/api/metrics/team-performance", params={"organizationId": 1}).json()
    distribution = client.get("/api/metrics/category-distribution", params={"organizationId": 1}).json()
    coverage = client.get("/api/metrics/review-coverage", params={"organizationId": 1}).json()

    assert len(series["data"]) == 5
    assert series["categories"][-1]["key"] == "Uncategorized"
    assert team["teamMembers"] == []
    assert team["totalContributors"] == 0
    assert distribution == {"categories": []}
    assert coverage["coveragePercent"] == 0.0


def test_request_validation(client) -> None:
    assert client.get("/api/metrics/summary").status_code == 422
    assert client.get("/api/metrics/time-series", params={"organizationId": 1, "days": 0}).status_code == 422
    assert client.put("/api/repositories/999/tracking", json={"tracked": True}).status_code == 404
    assert client.put("/api/pull-requests/999/category", json={"category_id": None}).status_code == 404


def test_sync_of_unknown_organization_fails(client) -> None:
    response = client.post("/api/sync/organizations/42")

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["scope"] == "organization:42"
