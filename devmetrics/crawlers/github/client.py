"""Async GitHub client for organization, repository, pull-request and review ingestion."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from devmetrics.config.settings import settings
from devmetrics.crawlers.github.contracts import Page, normalize_payload_timestamps
from devmetrics.errors import (
    NotFoundError,
    RateLimitedError,
    SourceError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_REDACTED_VALUE = "***REDACTED***"
_SENSITIVE_KEYS = (
    "authorization",
    "token",
    "api_key",
    "apikey",
    "secret",
    "password",
    "cookie",
)
_TOKEN_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)[^\s,;]+"),
    re.compile(r"(?i)(token\s*[=:]\s*)[^\s,;]+"),
    re.compile(r"(?i)(access_token=)[^&\s]+"),
    re.compile(r"(?i)(secret\s*[=:]\s*)[^\s,;]+"),
    re.compile(r"\b(gh[pousr]_)[A-Za-z0-9]{20,}"),
)


def sanitize_for_log(value: Any, *, key: Optional[str] = None) -> Any:
    """Return a recursively sanitized copy of log payloads."""

    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            field = str(raw_key)
            if _contains_keyword(field, _SENSITIVE_KEYS):
                sanitized[field] = _REDACTED_VALUE
                continue
            sanitized[field] = sanitize_for_log(raw_value, key=field)
        return sanitized

    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_log(item, key=key) for item in value]

    if isinstance(value, str):
        return _redact_text(value)

    return value


def sanitize_log_extra(**kwargs: Any) -> dict[str, Any]:
    """Helper for `extra=` payloads in structured logging."""

    return {
        key: _REDACTED_VALUE if _contains_keyword(key, _SENSITIVE_KEYS) else sanitize_for_log(value, key=key)
        for key, value in kwargs.items()
    }


def _contains_keyword(field_name: str, keywords: tuple[str, ...]) -> bool:
    lowered = field_name.lower()
    return any(keyword in lowered for keyword in keywords)


def _redact_text(raw: str) -> str:
    redacted = raw
    for pattern in _TOKEN_PATTERNS:
        redacted = pattern.sub(rf"\1{_REDACTED_VALUE}", redacted)
    return redacted


class GitHubClient:
    """Read-only GitHub REST client returning one page per call.

    Remote failures are raised as typed errors: `UnauthorizedError`,
    `RateLimitedError` (with the hinted wait), `NotFoundError` and `TransientError`.
    Retrying is the caller's concern.
    """

    BASE_URL = "https://api.github.com"
    API_VERSION = "2022-11-28"
    ACCEPT_JSON = "application/vnd.github+json"

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        per_page: Optional[int] = None,
        rate_limit_buffer_seconds: Optional[int] = None,
        base_url: Optional[str] = None,
        transport: Optional[Any] = None,
    ) -> None:
        self._token = token
        self._timeout_seconds = timeout_seconds or settings.GITHUB_TIMEOUT_SECONDS
        self._per_page = per_page or settings.GITHUB_PER_PAGE
        self._rate_limit_buffer_seconds = (
            settings.GITHUB_RATE_LIMIT_BUFFER_SECONDS if rate_limit_buffer_seconds is None else rate_limit_buffer_seconds
        )
        self._base_url = base_url or settings.GITHUB_API_URL or self.BASE_URL
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GitHubClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def list_organizations(self, *, cursor: Optional[int] = None) -> Page[dict[str, Any]]:
        """Organizations visible to the credential."""
        return await self._get_page("/user/orgs", cursor=cursor)

    async def get_organization(self, login: str) -> dict[str, Any]:
        return await self._get_object(f"/orgs/{login}")

    async def list_organization_repositories(self, org: str, *, cursor: Optional[int] = None) -> Page[dict[str, Any]]:
        return await self._get_page(
            f"/orgs/{org}/repos",
            params={"type": "all", "sort": "updated", "direction": "desc"},
            cursor=cursor,
        )

    async def list_pull_requests(self, owner: str, repo: str, *, cursor: Optional[int] = None) -> Page[dict[str, Any]]:
        """Pull requests in every state, most recently updated first."""
        return await self._get_page(
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "all", "sort": "updated", "direction": "desc"},
            cursor=cursor,
        )

    async def get_pull_request(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        return await self._get_object(f"/repos/{owner}/{repo}/pulls/{number}")

    async def list_reviews(
        self,
        owner: str,
        repo: str,
        number: int,
        *,
        cursor: Optional[int] = None,
    ) -> Page[dict[str, Any]]:
        return await self._get_page(f"/repos/{owner}/{repo}/pulls/{number}/reviews", cursor=cursor)

    async def _get_object(self, path: str) -> dict[str, Any]:
        payload = await self._request(path)
        if not isinstance(payload, dict):
            raise ValidationError(f"Expected an object from {path}")
        return normalize_payload_timestamps(payload)

    async def _get_page(
        self,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        cursor: Optional[int] = None,
    ) -> Page[dict[str, Any]]:
        page_number = cursor or 1
        query = {**(params or {}), "page": page_number, "per_page": self._per_page}
        payload, links = await self._request(path, params=query, with_links=True)
        if not isinstance(payload, list):
            raise ValidationError(f"Expected a list from {path}")

        items = [normalize_payload_timestamps(item) for item in payload if isinstance(item, dict)]
        return Page(items=items, cursor=page_number, next_cursor=self._next_cursor(links, page_number, len(payload)))

    async def _request(
        self,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        with_links: bool = False,
    ) -> Any:
        client = await self._ensure_client()

        try:
            response = await client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransientError(f"GitHub request timed out: {path}", resource=path) from exc
        except httpx.TransportError as exc:
            raise TransientError(f"GitHub transport error: {exc}", resource=path) from exc

        self._raise_for_status(response, path)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ValidationError(f"GitHub returned invalid JSON for {path}") from exc

        if with_links:
            return payload, response.links
        return payload

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        status = response.status_code
        if status < 400:
            return

        message = self._error_message(response)
        if status in (403, 429) and self._is_rate_limited(response, message):
            wait_seconds = self._compute_rate_limit_wait(response.headers)
            logger.warning(
                "GitHub API rate limit encountered",
                extra=sanitize_log_extra(path=path, status_code=status, retry_after_seconds=wait_seconds),
            )
            raise RateLimitedError(
                f"GitHub rate limit encountered ({status})",
                retry_after=wait_seconds,
                status_code=status,
                resource=path,
            )
        if status in (401, 403):
            raise UnauthorizedError(f"GitHub rejected credential ({status}): {message}", status_code=status, resource=path)
        if status in (404, 410):
            raise NotFoundError(f"GitHub resource not found: {path}", status_code=status, resource=path)
        if status >= 500:
            raise TransientError(f"GitHub server error ({status}): {message}", status_code=status, resource=path)
        raise SourceError(f"GitHub request failed ({status}): {message}", status_code=status, resource=path)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client:
            return self._client

        headers = {
            "Accept": self.ACCEPT_JSON,
            "User-Agent": settings.USER_AGENT,
            "X-GitHub-Api-Version": self.API_VERSION,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout_seconds,
            transport=self._transport,
        )
        return self._client

    def _next_cursor(self, links: dict[str, dict[str, str]], page_number: int, item_count: int) -> Optional[int]:
        next_link = (links or {}).get("next")
        if next_link and next_link.get("url"):
            values = parse_qs(urlparse(next_link["url"]).query).get("page")
            if values:
                try:
                    return int(values[0])
                except ValueError:
                    pass
            return page_number + 1
        if links:
            # Link header present without rel="next": this is the last page
            return None
        return page_number + 1 if item_count >= self._per_page else None

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(payload, dict) and isinstance(payload.get("message"), str):
            return payload["message"]
        return ""

    @staticmethod
    def _is_rate_limited(response: httpx.Response, message: str) -> bool:
        if response.status_code == 429:
            return True
        if response.headers.get("x-ratelimit-remaining") == "0":
            return True
        if response.headers.get("retry-after") is not None:
            return True
        return "rate limit" in message.lower()

    def _compute_rate_limit_wait(self, headers: httpx.Headers) -> float:
        retry_after = headers.get("retry-after")
        if retry_after is not None:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                pass

        reset_raw = headers.get("x-ratelimit-reset")
        if reset_raw is not None:
            try:
                reset_epoch = int(reset_raw)
                wait_seconds = reset_epoch - int(time.time()) + self._rate_limit_buffer_seconds
                return float(max(wait_seconds, 0))
            except ValueError:
                pass

        return 0.0
