"""Sync job entrypoints shared by the HTTP API and the event handler."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Sequence

from devmetrics.orchestrator_sync import SYNC_MODE_FULL, SYNC_MODE_INCREMENTAL, SYNC_MODES, SyncOrchestrator


def normalize_sync_mode(raw: Any, *, default: str = SYNC_MODE_FULL) -> str:
    """Map free-form mode input onto a known sync mode, falling back to `default`."""
    if raw is None:
        return default
    mode = str(raw).strip().lower()
    return mode if mode in SYNC_MODES else default


def parse_ids(raw: Any) -> list[int] | None:
    """Parse optional integer IDs from event payloads/query params."""
    if raw is None:
        return None

    if isinstance(raw, str):
        values: Iterable[Any] = [part.strip() for part in raw.split(",")]
    elif isinstance(raw, (list, tuple, set)):
        values = raw
    else:
        values = [raw]

    parsed: list[int] = []
    seen: set[int] = set()
    for value in values:
        text = str(value).strip()
        if not text:
            continue
        try:
            number = int(text)
        except ValueError:
            continue
        if number in seen:
            continue
        seen.add(number)
        parsed.append(number)
    return parsed or None


async def run_organization_sync(
    *,
    orchestrator: SyncOrchestrator,
    organization_ids: Sequence[int],
    mode: Any = None,
    include_pull_requests: bool = True,
) -> list[dict[str, Any]]:
    """Sync several organizations concurrently; one result per organization, in input order."""
    selected_mode = normalize_sync_mode(mode, default=SYNC_MODE_FULL)
    results = await asyncio.gather(
        *(
            orchestrator.sync_organization(
                organization_id,
                mode=selected_mode,
                include_pull_requests=include_pull_requests,
            )
            for organization_id in organization_ids
        )
    )
    return [result.to_dict() for result in results]


async def run_repository_sync(
    *,
    orchestrator: SyncOrchestrator,
    repository_ids: Sequence[int],
    mode: Any = None,
) -> list[dict[str, Any]]:
    selected_mode = normalize_sync_mode(mode, default=SYNC_MODE_INCREMENTAL)
    results = await asyncio.gather(
        *(orchestrator.sync_repository(repository_id, mode=selected_mode) for repository_id in repository_ids)
    )
    return [result.to_dict() for result in results]


async def run_installation_sync(
    *,
    orchestrator: SyncOrchestrator,
    token: str | None,
    installation_id: int | None = None,
) -> dict[str, Any]:
    result = await orchestrator.sync_installation_organizations(token=token, installation_id=installation_id)
    return result.to_dict()
