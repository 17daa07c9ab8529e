"""In-memory source client serving canned GitHub payloads.

Selected with `SOURCE_MODE=fixture` for offline runs and used by the test suite.
Fixture layout::

    {
      "organizations": [{...}],
      "repositories": {"acme": [{...}]},
      "pull_requests": {"acme/api": [{...}]},
      "pull_request_details": {"acme/api#7": {...}},
      "reviews": {"acme/api#7": [{...}]}
    }

`failures` maps a resource key (see `resource_key`) to an exception, raised on
every call, or to a list of exceptions raised on successive calls before the
call starts succeeding.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Optional, Union

from devmetrics.crawlers.github.contracts import Page, normalize_payload_timestamps
from devmetrics.errors import NotFoundError

FailureSpec = Union[BaseException, list[BaseException]]


def resource_key(kind: str, *parts: Any) -> str:
    """`resource_key("pulls", "acme/api")` -> "pulls:acme/api"."""

    return f"{kind}:{'/'.join(str(part) for part in parts)}" if parts else kind


class FixtureGitHubClient:
    def __init__(
        self,
        data: Optional[dict[str, Any]] = None,
        *,
        per_page: int = 100,
        failures: Optional[dict[str, FailureSpec]] = None,
    ) -> None:
        self._data = data or {}
        self._per_page = max(1, per_page)
        self._failures: dict[str, FailureSpec] = dict(failures or {})
        self.calls: list[str] = []

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs: Any) -> "FixtureGitHubClient":
        with open(path, "r", encoding="utf-8") as handle:
            return cls(json.load(handle), **kwargs)

    async def __aenter__(self) -> "FixtureGitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def aclose(self) -> None:
        return None

    async def list_organizations(self, *, cursor: Optional[int] = None) -> Page[dict[str, Any]]:
        self._enter(resource_key("orgs"))
        return self._page(self._data.get("organizations") or [], cursor)

    async def get_organization(self, login: str) -> dict[str, Any]:
        self._enter(resource_key("org", login))
        for org in self._data.get("organizations") or []:
            if org.get("login") == login:
                return normalize_payload_timestamps(copy.deepcopy(org))
        raise NotFoundError(f"Organization not found: {login}", status_code=404, resource=login)

    async def list_organization_repositories(self, org: str, *, cursor: Optional[int] = None) -> Page[dict[str, Any]]:
        self._enter(resource_key("repos", org))
        repositories = (self._data.get("repositories") or {}).get(org)
        if repositories is None:
            raise NotFoundError(f"Organization not found: {org}", status_code=404, resource=org)
        return self._page(repositories, cursor)

    async def list_pull_requests(self, owner: str, repo: str, *, cursor: Optional[int] = None) -> Page[dict[str, Any]]:
        full_name = f"{owner}/{repo}"
        self._enter(resource_key("pulls", owner, repo))
        return self._page((self._data.get("pull_requests") or {}).get(full_name) or [], cursor)

    async def get_pull_request(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        full_name = f"{owner}/{repo}"
        self._enter(resource_key("pull", owner, repo, number))
        detail = (self._data.get("pull_request_details") or {}).get(f"{full_name}#{number}")
        if detail is None:
            for item in (self._data.get("pull_requests") or {}).get(full_name) or []:
                if item.get("number") == number:
                    detail = item
                    break
        if detail is None:
            raise NotFoundError(f"Pull request not found: {full_name}#{number}", status_code=404, resource=full_name)
        return normalize_payload_timestamps(copy.deepcopy(detail))

    async def list_reviews(
        self,
        owner: str,
        repo: str,
        number: int,
        *,
        cursor: Optional[int] = None,
    ) -> Page[dict[str, Any]]:
        self._enter(resource_key("reviews", owner, repo, number))
        reviews = (self._data.get("reviews") or {}).get(f"{owner}/{repo}#{number}") or []
        return self._page(reviews, cursor)

    def _enter(self, key: str) -> None:
        self.calls.append(key)
        failure = self._failures.get(key)
        if failure is None:
            return
        if isinstance(failure, list):
            if not failure:
                return
            raise failure.pop(0)
        raise failure

    def _page(self, items: list[dict[str, Any]], cursor: Optional[int]) -> Page[dict[str, Any]]:
        page_number = cursor or 1
        start = (page_number - 1) * self._per_page
        chunk = items[start : start + self._per_page]
        has_more = start + self._per_page < len(items)
        return Page(
            items=[normalize_payload_timestamps(copy.deepcopy(item)) for item in chunk],
            cursor=page_number,
            next_cursor=page_number + 1 if has_more else None,
        )
