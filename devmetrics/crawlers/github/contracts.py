"""Typed contracts shared by the GitHub source client variants."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from dateutil import parser as date_parser

T = TypeVar("T")

TIMESTAMP_FIELDS = ("created_at", "updated_at", "closed_at", "merged_at", "submitted_at")


@dataclass(slots=True)
class Page(Generic[T]):
    """One page of a remote collection plus the cursor for the next one."""

    items: list[T] = field(default_factory=list)
    cursor: int = 1
    next_cursor: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


def normalize_timestamp(raw: Any) -> Optional[datetime]:
    """Return `raw` as a naive UTC datetime, or None when absent/unparseable."""

    if raw is None:
        return None
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            value = date_parser.isoparse(raw.strip())
        except (TypeError, ValueError):
            return None
    else:
        return None

    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def normalize_payload_timestamps(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy of `payload` with known timestamp fields normalized."""

    normalized = dict(payload)
    for key in TIMESTAMP_FIELDS:
        if key in normalized:
            normalized[key] = normalize_timestamp(normalized[key])
    return normalized


def split_full_name(full_name: str) -> tuple[str, str]:
    owner, _, repo = (full_name or "").partition("/")
    if not owner.strip() or not repo.strip():
        raise ValueError(f"Invalid repository full name: {full_name!r}")
    return owner.strip(), repo.strip()
