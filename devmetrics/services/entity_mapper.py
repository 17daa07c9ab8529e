"""Contract-safe mapping helpers from GitHub payloads to store rows."""

from __future__ import annotations

from datetime import datetime
from typing import Any, NamedTuple, Optional

from devmetrics.crawlers.github.contracts import normalize_timestamp
from devmetrics.errors import ValidationError
from devmetrics.models.pull_request import PullRequestState
from devmetrics.models.review import ReviewState

_REVIEW_STATES = {
    "APPROVED": ReviewState.APPROVED,
    "CHANGES_REQUESTED": ReviewState.CHANGES_REQUESTED,
    "COMMENTED": ReviewState.COMMENTED,
    "DISMISSED": ReviewState.DISMISSED,
}

# Reviews still being drafted by the reviewer; not visible to anyone else yet
_SKIPPED_REVIEW_STATES = {"PENDING"}


class UserRef(NamedTuple):
    """Remote account reference embedded in pull requests and reviews."""

    id: str
    login: Optional[str]
    avatar_url: Optional[str]


def utcnow() -> datetime:
    return datetime.utcnow()


def require_external_id(payload: dict[str, Any], kind: str) -> int:
    value = payload.get("id") if isinstance(payload, dict) else None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{kind} payload missing numeric id")
    return value


def map_user_ref(payload: Any) -> Optional[UserRef]:
    if not isinstance(payload, dict):
        return None
    raw_id = payload.get("id")
    if raw_id is None or isinstance(raw_id, bool):
        return None
    return UserRef(
        id=str(raw_id),
        login=_pick_text(payload.get("login"), None),
        avatar_url=_pick_text(payload.get("avatar_url"), None),
    )


def map_organization_row(payload: dict[str, Any], *, installation_id: Optional[int] = None) -> dict[str, Any]:
    """Map an organization payload; `installation_id` is only written when known."""

    row: dict[str, Any] = {
        "external_id": require_external_id(payload, "organization"),
        "name": _pick_text(payload.get("login"), payload.get("name"), required=True),
        "avatar_url": _pick_text(payload.get("avatar_url"), None),
    }
    handle = installation_id if installation_id is not None else payload.get("installation_id")
    if isinstance(handle, int) and not isinstance(handle, bool):
        row["installation_id"] = handle
    return row


def map_repository_row(payload: dict[str, Any], *, organization_id: int) -> dict[str, Any]:
    name = _pick_text(payload.get("name"), None, required=True)
    owner = payload.get("owner") if isinstance(payload.get("owner"), dict) else {}
    fallback_full_name = f"{owner.get('login')}/{name}" if owner.get("login") else None

    return {
        "external_id": require_external_id(payload, "repository"),
        "organization_id": organization_id,
        "name": name,
        "full_name": _pick_text(payload.get("full_name"), fallback_full_name, required=True),
        "description": _pick_text(payload.get("description"), None),
        "private": bool(payload.get("private")),
    }


def derive_pull_request_state(payload: dict[str, Any]) -> PullRequestState:
    if normalize_timestamp(payload.get("merged_at")) is not None or payload.get("merged") is True:
        return PullRequestState.MERGED
    if str(payload.get("state") or "").lower() == "closed":
        return PullRequestState.CLOSED
    return PullRequestState.OPEN


def map_pull_request_row(
    payload: dict[str, Any],
    *,
    repository_id: int,
    author_id: Optional[str] = None,
    existing: Any | None = None,
) -> dict[str, Any]:
    """Map a pull request payload, enforcing the state/timestamp invariants.

    List payloads carry no diff counters, so previously stored counters are kept
    when the payload lacks them.
    """

    number = payload.get("number")
    if isinstance(number, bool) or not isinstance(number, int):
        raise ValidationError("pull request payload missing number")

    state = derive_pull_request_state(payload)
    created_at = normalize_timestamp(payload.get("created_at"))
    updated_at = normalize_timestamp(payload.get("updated_at"))
    closed_at = normalize_timestamp(payload.get("closed_at"))
    merged_at = normalize_timestamp(payload.get("merged_at"))

    if state is PullRequestState.OPEN:
        closed_at = None
        merged_at = None
    elif state is PullRequestState.CLOSED:
        merged_at = None
        closed_at = closed_at or updated_at
    else:
        merged_at = merged_at or closed_at or updated_at
        closed_at = closed_at or merged_at

    return {
        "external_id": require_external_id(payload, "pull request"),
        "repository_id": repository_id,
        "number": number,
        "title": _pick_text(payload.get("title"), getattr(existing, "title", None), fallback=""),
        "description": payload.get("body") if isinstance(payload.get("body"), str) else None,
        "author_id": author_id,
        "state": state.value,
        "created_at": created_at,
        "updated_at": updated_at,
        "closed_at": closed_at,
        "merged_at": merged_at,
        "draft": bool(payload.get("draft")),
        "additions": _pick_count(payload.get("additions"), getattr(existing, "additions", None)),
        "deletions": _pick_count(payload.get("deletions"), getattr(existing, "deletions", None)),
        "changed_files": _pick_count(payload.get("changed_files"), getattr(existing, "changed_files", None)),
    }


def has_diff_counters(payload: dict[str, Any]) -> bool:
    return all(_is_count(payload.get(key)) for key in ("additions", "deletions", "changed_files"))


def map_review_row(
    payload: dict[str, Any],
    *,
    pull_request_id: int,
    reviewer_id: Optional[str] = None,
) -> Optional[dict[str, Any]]:
    """Map a review payload; returns None for reviews that are not yet submitted."""

    raw_state = str(payload.get("state") or "").upper()
    submitted_at = normalize_timestamp(payload.get("submitted_at"))
    if raw_state in _SKIPPED_REVIEW_STATES:
        return None
    if submitted_at is None:
        raise ValidationError("review payload missing submitted_at")

    return {
        "external_id": require_external_id(payload, "review"),
        "pull_request_id": pull_request_id,
        "reviewer_id": reviewer_id,
        "state": _REVIEW_STATES.get(raw_state, ReviewState.COMMENTED).value,
        "submitted_at": submitted_at,
    }


def _pick_text(primary: Any, secondary: Any, *, fallback: str | None = None, required: bool = False) -> str | None:
    if isinstance(primary, str) and primary.strip():
        return primary.strip()
    if isinstance(secondary, str) and secondary.strip():
        return secondary.strip()
    if fallback is not None:
        return fallback
    if required:
        raise ValidationError("Missing required textual field")
    return None


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _pick_count(primary: Any, secondary: Any) -> Optional[int]:
    for value in (primary, secondary):
        if _is_count(value):
            return value
    return None
