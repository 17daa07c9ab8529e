from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from devmetrics.handler import lambda_handler
from devmetrics.jobs.sync_jobs import normalize_sync_mode, parse_ids, run_organization_sync
from devmetrics.orchestrator_sync import SYNC_MODE_FULL, SYNC_MODE_INCREMENTAL, SyncResult, SyncStatus


def _completed(scope: str, mode: str = SYNC_MODE_FULL) -> SyncResult:
    result = SyncResult(scope=scope, mode=mode)
    result.transition(SyncStatus.RUNNING)
    return result.finish()


@dataclass
class FakeOrchestrator:
    calls: list[tuple[str, Any, Any]] = field(default_factory=list)

    async def sync_organization(self, organization_id: int, *, mode: str, include_pull_requests: bool = True):
        self.calls.append(("organization", organization_id, mode))
        return _completed(f"organization:{organization_id}", mode)

    async def sync_repository(self, repository_id: int, *, mode: str):
        self.calls.append(("repository", repository_id, mode))
        return _completed(f"repository:{repository_id}", mode)

    async def sync_installation_organizations(self, *, token, installation_id=None):
        self.calls.append(("installation", installation_id, token))
        return _completed(f"installation:{installation_id}")


@dataclass
class FakeRuntime:
    orchestrator: FakeOrchestrator = field(default_factory=FakeOrchestrator)
    closed: bool = False

    def close(self) -> None:
        self.closed = True


def test_parse_ids_accepts_strings_lists_and_scalars() -> None:
    assert parse_ids("3, 1,3,,x") == [3, 1]
    assert parse_ids([5, "6", 5]) == [5, 6]
    assert parse_ids(7) == [7]
    assert parse_ids("") is None
    assert parse_ids(None) is None


def test_normalize_sync_mode_falls_back_to_default() -> None:
    assert normalize_sync_mode(" Incremental ") == SYNC_MODE_INCREMENTAL
    assert normalize_sync_mode("bogus", default=SYNC_MODE_INCREMENTAL) == SYNC_MODE_INCREMENTAL
    assert normalize_sync_mode(None) == SYNC_MODE_FULL


@pytest.mark.asyncio
async def test_run_organization_sync_keeps_input_order() -> None:
    orchestrator = FakeOrchestrator()

    results = await run_organization_sync(orchestrator=orchestrator, organization_ids=[2, 1], mode="incremental")

    assert [result["scope"] for result in results] == ["organization:2", "organization:1"]
    assert {call[2] for call in orchestrator.calls} == {SYNC_MODE_INCREMENTAL}


def test_handler_dispatches_organization_sync_and_closes_runtime() -> None:
    runtime = FakeRuntime()

    response = lambda_handler(
        {"action": "sync_organization", "organization_ids": "1,2"}, None, runtime_factory=lambda: runtime
    )

    assert response["statusCode"] == 200
    assert [item["status"] for item in response["result"]] == ["completed", "completed"]
    assert runtime.orchestrator.calls == [("organization", 1, "full"), ("organization", 2, "full")]
    assert runtime.closed is True


def test_handler_dispatches_repository_and_installation_sync() -> None:
    runtime = FakeRuntime()

    repository_response = lambda_handler(
        {"action": "sync_repository", "repository_id": 8}, None, runtime_factory=lambda: runtime
    )
    installation_response = lambda_handler(
        {"action": "sync_installation", "token": "t", "installation_id": 42}, None, runtime_factory=lambda: runtime
    )

    assert repository_response["result"][0]["mode"] == SYNC_MODE_INCREMENTAL
    assert installation_response["result"]["scope"] == "installation:42"
    assert runtime.orchestrator.calls[-1] == ("installation", 42, "t")


def test_handler_rejects_bad_events() -> None:
    runtime = FakeRuntime()

    unknown = lambda_handler({"action": "explode"}, None, runtime_factory=lambda: runtime)
    missing_ids = lambda_handler({"action": "sync_repository"}, None, runtime_factory=lambda: runtime)

    assert unknown["statusCode"] == 400
    assert "Unknown action" in unknown["error"]
    assert missing_ids["statusCode"] == 400
    assert runtime.orchestrator.calls == []


def test_handler_reports_unexpected_failures() -> None:
    def broken_runtime():
        raise RuntimeError("store unavailable")

    response = lambda_handler({"action": "sync_organization", "organization_id": 1}, None, runtime_factory=broken_runtime)

    assert response["statusCode"] == 500
    assert response["error"] == "store unavailable"
