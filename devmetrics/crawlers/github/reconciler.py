"""Idempotent upserts of remote entities into the local store.

Every write is committed immediately, so a session never holds pending rows
across an await in the sync orchestrator.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from devmetrics.errors import ConflictError
from devmetrics.models import (
    COLLABORATOR_OWNED_FIELDS,
    Organization,
    PullRequest,
    PullRequestState,
    Repository,
    Review,
    User,
)
from devmetrics.services.entity_mapper import (
    UserRef,
    map_organization_row,
    map_pull_request_row,
    map_repository_row,
    map_review_row,
    map_user_ref,
    require_external_id,
)

logger = logging.getLogger(__name__)


class EntityKind(str, enum.Enum):
    ORGANIZATION = "organization"
    REPOSITORY = "repository"
    PULL_REQUEST = "pull_request"
    REVIEW = "review"


class UpsertOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class UpsertResult:
    record: Any
    outcome: UpsertOutcome

    @property
    def changed(self) -> bool:
        return self.outcome is not UpsertOutcome.UNCHANGED


class Reconciler:
    """Maps remote payloads onto local rows keyed by their external identity.

    Sync-owned fields are overwritten with remote values; collaborator-owned
    fields (repository tracking, pull request categorization) are never written.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def upsert(self, kind: EntityKind | str, payload: dict[str, Any], **scope: Any) -> Optional[UpsertResult]:
        kind = EntityKind(kind)
        if kind is EntityKind.ORGANIZATION:
            return self.upsert_organization(payload, **scope)
        if kind is EntityKind.REPOSITORY:
            return self.upsert_repository(payload, **scope)
        if kind is EntityKind.PULL_REQUEST:
            return self.upsert_pull_request(payload, **scope)
        return self.upsert_review(payload, **scope)

    def upsert_organization(self, payload: dict[str, Any], *, installation_id: Optional[int] = None) -> UpsertResult:
        row = map_organization_row(payload, installation_id=installation_id)

        def lookup() -> Optional[Organization]:
            return self._db.query(Organization).filter_by(external_id=row["external_id"]).first()

        return self._apply(Organization, lookup(), row, lookup)

    def upsert_repository(self, payload: dict[str, Any], *, organization_id: int) -> UpsertResult:
        row = map_repository_row(payload, organization_id=organization_id)

        def lookup() -> Optional[Repository]:
            return self._db.query(Repository).filter_by(external_id=row["external_id"]).first()

        return self._apply(Repository, lookup(), row, lookup)

    def find_pull_request(self, *, repository_id: int, payload: dict[str, Any]) -> Optional[PullRequest]:
        """Match by external id first, then by the (repository, number) pair."""

        external_id = require_external_id(payload, "pull request")
        existing = self._db.query(PullRequest).filter_by(external_id=external_id).first()
        if existing is None and isinstance(payload.get("number"), int):
            existing = (
                self._db.query(PullRequest)
                .filter_by(repository_id=repository_id, number=payload["number"])
                .first()
            )
        return existing

    def upsert_pull_request(self, payload: dict[str, Any], *, repository_id: int) -> UpsertResult:
        author_id = self.ensure_user(map_user_ref(payload.get("user")))
        existing = self.find_pull_request(repository_id=repository_id, payload=payload)
        row = map_pull_request_row(payload, repository_id=repository_id, author_id=author_id, existing=existing)

        if existing is not None:
            if _is_stale(existing.updated_at, row["updated_at"]):
                logger.debug(
                    "Ignoring stale pull request snapshot",
                    extra={"pull_request_id": existing.id, "remote_updated_at": str(row["updated_at"])},
                )
                return UpsertResult(existing, UpsertOutcome.UNCHANGED)

            if existing.state == PullRequestState.MERGED.value and row["state"] != PullRequestState.MERGED.value:
                row["state"] = existing.state
                row["merged_at"] = existing.merged_at
                row["closed_at"] = existing.closed_at

            # Identity never moves once stored
            row.pop("external_id")
            row.pop("repository_id")

        def lookup() -> Optional[PullRequest]:
            return self.find_pull_request(repository_id=repository_id, payload=payload)

        return self._apply(PullRequest, existing, row, lookup)

    def mark_pull_request_stale(self, pull_request_id: int) -> None:
        """Forget the stored `updated_at` so the next snapshot counts as a change.

        Used when a pull request row was written but its reviews were not, so an
        incremental run does not stop at it before the reviews are fetched again.
        """

        self._db.rollback()
        self._db.query(PullRequest).filter(PullRequest.id == pull_request_id).update(
            {PullRequest.updated_at: None}, synchronize_session=False
        )
        self._db.commit()

    def upsert_review(self, payload: dict[str, Any], *, pull_request_id: int) -> Optional[UpsertResult]:
        """Upsert a submitted review; returns None for pending ones."""

        row = map_review_row(payload, pull_request_id=pull_request_id)
        if row is None:
            return None
        row["reviewer_id"] = self.ensure_user(map_user_ref(payload.get("user")))

        def lookup() -> Optional[Review]:
            return self._db.query(Review).filter_by(external_id=row["external_id"]).first()

        return self._apply(Review, lookup(), row, lookup)

    def ensure_user(self, ref: Optional[UserRef]) -> Optional[str]:
        """Make sure a (possibly placeholder) user row exists for `ref`.

        Placeholders are keyed by the remote id and carry whatever profile
        fields the reference had; later references fill in missing fields.
        """

        if ref is None:
            return None

        existing = self._db.get(User, ref.id)
        if existing is None:
            self._db.add(User(id=ref.id, name=ref.login, image=ref.avatar_url))
            try:
                self._db.commit()
            except IntegrityError:
                self._db.rollback()
                if self._db.get(User, ref.id) is None:
                    raise ConflictError(f"Could not create user {ref.id}")
            return ref.id

        changed = False
        if existing.name is None and ref.login:
            existing.name = ref.login
            changed = True
        if existing.image is None and ref.avatar_url:
            existing.image = ref.avatar_url
            changed = True
        if changed:
            self._db.commit()
        return ref.id

    def _apply(
        self,
        model: type,
        existing: Any,
        row: dict[str, Any],
        lookup: Callable[[], Any],
    ) -> UpsertResult:
        for field_name in COLLABORATOR_OWNED_FIELDS + ("is_tracked",):
            row.pop(field_name, None)

        if existing is None:
            record = model(**row)
            self._db.add(record)
            try:
                self._db.commit()
            except IntegrityError as exc:
                self._db.rollback()
                winner = lookup()
                if winner is None:
                    raise ConflictError(f"Unresolvable uniqueness conflict for {model.__name__}") from exc
                logger.info(
                    "Concurrent insert detected; using stored record",
                    extra={"model": model.__name__, "record_id": winner.id},
                )
                return UpsertResult(winner, UpsertOutcome.UNCHANGED)
            return UpsertResult(record, UpsertOutcome.CREATED)

        changes = {field_name: value for field_name, value in row.items() if getattr(existing, field_name) != value}
        if not changes:
            return UpsertResult(existing, UpsertOutcome.UNCHANGED)

        for field_name, value in changes.items():
            setattr(existing, field_name, value)
        try:
            self._db.commit()
        except IntegrityError as exc:
            self._db.rollback()
            raise ConflictError(f"Update of {model.__name__} {existing.id} violates a uniqueness constraint") from exc
        return UpsertResult(existing, UpsertOutcome.UPDATED)


def _is_stale(stored: Any, incoming: Any) -> bool:
    if stored is None or incoming is None:
        return False
    return incoming < stored


