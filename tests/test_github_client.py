from __future__ import annotations

import time
from datetime import datetime

import httpx
import pytest

from devmetrics.crawlers.github.client import GitHubClient, sanitize_log_extra
from devmetrics.errors import (
    NotFoundError,
    RateLimitedError,
    SourceError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)


def _client(handler) -> GitHubClient:
    return GitHubClient(
        token="ghp_testtoken",
        base_url="https://api.test",
        per_page=2,
        rate_limit_buffer_seconds=0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_list_pull_requests_follows_link_header_and_normalizes_timestamps() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {"id": 1, "number": 5, "created_at": "2026-10-01T12:00:00+02:00", "merged_at": None},
                {"id": 2, "number": 4, "created_at": "2026-09-30T08:00:00Z"},
            ],
            headers={"link": '<https://api.test/repos/acme/api/pulls?state=all&page=2>; rel="next"'},
        )

    async with _client(handler) as client:
        page = await client.list_pull_requests("acme", "api")

    assert page.has_more is True
    assert page.next_cursor == 2
    assert page.items[0]["created_at"] == datetime(2026, 10, 1, 10, 0, 0)
    assert page.items[0]["created_at"].tzinfo is None
    assert page.items[0]["merged_at"] is None

    request = seen[0]
    assert request.url.path == "/repos/acme/api/pulls"
    assert request.url.params["state"] == "all"
    assert request.url.params["sort"] == "updated"
    assert request.url.params["direction"] == "desc"
    assert request.headers["Authorization"] == "Bearer ghp_testtoken"


@pytest.mark.asyncio
async def test_last_page_without_next_link_has_no_more() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[{"id": 9, "state": "APPROVED"}, {"id": 10, "state": "COMMENTED"}],
            headers={"link": '<https://api.test/repos/acme/api/pulls/5/reviews?page=1>; rel="prev"'},
        )

    async with _client(handler) as client:
        page = await client.list_reviews("acme", "api", 5, cursor=2)

    assert page.cursor == 2
    assert page.has_more is False


@pytest.mark.asyncio
async def test_short_page_without_link_header_is_last() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": 1, "login": "acme"}])

    async with _client(handler) as client:
        page = await client.list_organizations()

    assert [item["login"] for item in page.items] == ["acme"]
    assert page.has_more is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "headers", "expected"),
    [
        (401, {}, UnauthorizedError),
        (403, {}, UnauthorizedError),
        (404, {}, NotFoundError),
        (410, {}, NotFoundError),
        (502, {}, TransientError),
        (422, {}, SourceError),
    ],
)
async def test_status_codes_map_to_typed_errors(status, headers, expected) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "nope"}, headers=headers)

    async with _client(handler) as client:
        with pytest.raises(expected) as exc_info:
            await client.get_organization("acme")

    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_secondary_rate_limit_uses_retry_after_hint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"message": "slow down"}, headers={"retry-after": "7"})

    async with _client(handler) as client:
        with pytest.raises(RateLimitedError) as exc_info:
            await client.list_organization_repositories("acme")

    assert exc_info.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_exhausted_quota_uses_reset_header() -> None:
    reset_at = int(time.time()) + 30

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403,
            json={"message": "API rate limit exceeded"},
            headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": str(reset_at)},
        )

    async with _client(handler) as client:
        with pytest.raises(RateLimitedError) as exc_info:
            await client.get_pull_request("acme", "api", 5)

    assert 0 < exc_info.value.retry_after <= 30


@pytest.mark.asyncio
async def test_timeouts_and_network_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransientError):
            await client.list_organizations()


@pytest.mark.asyncio
async def test_invalid_json_is_a_validation_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>", headers={"content-type": "text/html"})

    async with _client(handler) as client:
        with pytest.raises(ValidationError):
            await client.get_organization("acme")


def test_sanitize_log_extra_redacts_credentials() -> None:
    extra = sanitize_log_extra(
        token="ghp_abcdefghijklmnopqrstuvwxyz",
        headers={"Authorization": "Bearer secret-value"},
        error="request failed with token=abc123",
    )

    assert extra["token"] == "***REDACTED***"
    assert extra["headers"]["Authorization"] == "***REDACTED***"
    assert "abc123" not in extra["error"]
