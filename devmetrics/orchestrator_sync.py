"""Sync orchestrator: drives source pagination and reconciliation for one scope."""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from devmetrics.config.settings import settings
from devmetrics.crawlers.github.client import GitHubClient, sanitize_for_log, sanitize_log_extra
from devmetrics.crawlers.github.contracts import split_full_name
from devmetrics.crawlers.github.reconciler import EntityKind, Reconciler, UpsertOutcome, UpsertResult
from devmetrics.crawlers.github.retry import RetryPolicy, call_with_retry
from devmetrics.errors import (
    DevMetricsError,
    MissingAuthorizationError,
    UnauthorizedError,
    ValidationError,
)
from devmetrics.models import Organization, Repository
from devmetrics.services.entity_mapper import has_diff_counters

logger = logging.getLogger(__name__)

SYNC_MODE_FULL = "full"
SYNC_MODE_INCREMENTAL = "incremental"
SYNC_MODES = (SYNC_MODE_FULL, SYNC_MODE_INCREMENTAL)

TokenProvider = Callable[[Organization], Optional[str]]
ClientFactory = Callable[[Optional[str]], Any]


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.RUNNING},
    SyncStatus.RUNNING: {SyncStatus.COMPLETED, SyncStatus.COMPLETED_WITH_ERRORS, SyncStatus.FAILED},
}


@dataclass(slots=True)
class SyncError:
    resource: str
    reason: str
    kind: str

    def to_dict(self) -> dict[str, str]:
        return {"resource": self.resource, "reason": self.reason, "kind": self.kind}


@dataclass
class SyncResult:
    """Outcome of one sync invocation.

    `new_count`/`updated_count` cover repositories, pull requests and reviews
    (and organizations for installation syncs); placeholder users are not counted.
    """

    scope: str
    mode: str = SYNC_MODE_FULL
    status: SyncStatus = SyncStatus.PENDING
    synced: list[str] = field(default_factory=list)
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    errors: list[SyncError] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def transition(self, status: SyncStatus) -> None:
        if status not in _TRANSITIONS.get(self.status, set()):
            raise RuntimeError(f"Invalid sync status transition {self.status.value} -> {status.value}")
        self.status = status
        if status is SyncStatus.RUNNING:
            self.started_at = datetime.utcnow()
        elif status is not SyncStatus.PENDING:
            self.completed_at = datetime.utcnow()

    def record(self, result: Optional[UpsertResult]) -> None:
        if result is None:
            return
        if result.outcome is UpsertOutcome.CREATED:
            self.new_count += 1
        elif result.outcome is UpsertOutcome.UPDATED:
            self.updated_count += 1
        else:
            self.unchanged_count += 1

    def add_error(self, resource: str, error: BaseException) -> None:
        self.errors.append(
            SyncError(
                resource=resource,
                reason=sanitize_for_log(str(error) or type(error).__name__),
                kind=getattr(error, "kind", "error"),
            )
        )

    def fail(self, resource: str, error: BaseException) -> "SyncResult":
        self.add_error(resource, error)
        if self.status is SyncStatus.PENDING:
            self.transition(SyncStatus.RUNNING)
        self.transition(SyncStatus.FAILED)
        return self

    def finish(self) -> "SyncResult":
        if self.status is SyncStatus.RUNNING:
            self.transition(SyncStatus.COMPLETED_WITH_ERRORS if self.errors else SyncStatus.COMPLETED)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "mode": self.mode,
            "status": self.status.value,
            "synced": list(self.synced),
            "newCount": self.new_count,
            "updatedCount": self.updated_count,
            "unchangedCount": self.unchanged_count,
            "errors": [error.to_dict() for error in self.errors],
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


def static_token_provider(token: Optional[str]) -> TokenProvider:
    """Provider handing the same configured credential to every organization."""

    def _provide(organization: Organization) -> Optional[str]:
        del organization
        return token

    return _provide


class SyncOrchestrator:
    """Coordinates organization, repository and installation syncs.

    Repositories of one organization are processed concurrently, bounded by
    `concurrency`; each repository task owns its own session.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any],
        client_factory: ClientFactory | None = None,
        token_provider: TokenProvider | None = None,
        retry_policy: RetryPolicy | None = None,
        concurrency: int | None = None,
        fetch_pr_details: bool | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client_factory = client_factory or (lambda token: GitHubClient(token=token))
        self._token_provider = token_provider or static_token_provider(settings.GITHUB_TOKEN)
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._concurrency = max(1, concurrency or settings.GITHUB_CONCURRENCY)
        self._fetch_pr_details = settings.GITHUB_FETCH_PR_DETAILS if fetch_pr_details is None else fetch_pr_details
        self._sleep = sleep

    async def sync_organization(
        self,
        organization_id: int,
        *,
        mode: str = SYNC_MODE_FULL,
        include_pull_requests: bool = True,
    ) -> SyncResult:
        """Sync every repository of an organization, then PRs of tracked ones."""

        mode = _validate_mode(mode)
        result = SyncResult(scope=f"organization:{organization_id}", mode=mode)
        result.transition(SyncStatus.RUNNING)
        logger.info("Organization sync started", extra=sanitize_log_extra(organization_id=organization_id, mode=mode))

        db = self._session_factory()
        try:
            organization = db.get(Organization, organization_id)
            if organization is None:
                return result.fail(result.scope, LookupError(f"Organization {organization_id} not found"))
            try:
                token = self._resolve_credential(organization)
            except (MissingAuthorizationError, UnauthorizedError) as exc:
                return self._log_finished(result.fail(organization.name, exc))

            try:
                async with self._client_factory(token) as client:
                    repositories = await self._sync_repository_listing(db, client, organization, result)
                    tasks = []
                    for repository_id, full_name, is_tracked in repositories:
                        if include_pull_requests and is_tracked:
                            tasks.append(self._sync_repository_pulls(client, repository_id, full_name, mode, result))
                        else:
                            result.synced.append(full_name)
                    await self._run_bounded(tasks)
            except UnauthorizedError as exc:
                return self._log_finished(result.fail(organization.name, exc))
        finally:
            db.close()

        return self._log_finished(result.finish())

    async def sync_repository(self, repository_id: int, *, mode: str = SYNC_MODE_INCREMENTAL) -> SyncResult:
        """Sync pull requests and reviews of one repository regardless of tracking."""

        mode = _validate_mode(mode)
        result = SyncResult(scope=f"repository:{repository_id}", mode=mode)
        result.transition(SyncStatus.RUNNING)

        db = self._session_factory()
        try:
            repository = db.get(Repository, repository_id)
            if repository is None:
                return result.fail(result.scope, LookupError(f"Repository {repository_id} not found"))
            organization = repository.organization
            full_name = repository.full_name
            try:
                token = self._resolve_credential(organization)
            except (MissingAuthorizationError, UnauthorizedError) as exc:
                return self._log_finished(result.fail(full_name, exc))
        finally:
            db.close()

        try:
            async with self._client_factory(token) as client:
                await self._sync_repository_pulls(client, repository_id, full_name, mode, result)
        except UnauthorizedError as exc:
            return self._log_finished(result.fail(full_name, exc))

        return self._log_finished(result.finish())

    async def sync_installation_organizations(
        self,
        *,
        token: Optional[str],
        installation_id: Optional[int] = None,
    ) -> SyncResult:
        """Upsert every organization visible to `token`, stamping `installation_id`."""

        result = SyncResult(scope=f"installation:{installation_id}" if installation_id else "installation")
        result.transition(SyncStatus.RUNNING)
        if not token:
            return self._log_finished(
                result.fail(result.scope, MissingAuthorizationError("No credential supplied for installation sync"))
            )

        db = self._session_factory()
        try:
            reconciler = Reconciler(db)
            async with self._client_factory(token) as client:
                cursor: Optional[int] = None
                while True:
                    page = await self._fetch(
                        functools.partial(client.list_organizations, cursor=cursor),
                        resource=result.scope,
                    )
                    for payload in page.items:
                        name = str(payload.get("login") or payload.get("id"))
                        try:
                            upserted = reconciler.upsert(
                                EntityKind.ORGANIZATION, payload, installation_id=installation_id
                            )
                        except (DevMetricsError, SQLAlchemyError) as exc:
                            db.rollback()
                            result.add_error(name, exc)
                            continue
                        result.record(upserted)
                        result.synced.append(name)
                    if not page.has_more:
                        break
                    cursor = page.next_cursor
        except UnauthorizedError as exc:
            return self._log_finished(result.fail(result.scope, exc))
        except DevMetricsError as exc:
            result.add_error(result.scope, exc)
        finally:
            db.close()

        return self._log_finished(result.finish())

    async def ingest_event(self, event_name: str, payload: dict[str, Any]) -> SyncResult:
        """Apply a webhook delivery without calling the source.

        Handles `repository`, `pull_request` and `pull_request_review` events;
        pull requests of untracked repositories are ignored.
        """

        result = SyncResult(scope=f"event:{event_name}", mode=SYNC_MODE_INCREMENTAL)
        result.transition(SyncStatus.RUNNING)
        repository_payload = payload.get("repository") if isinstance(payload, dict) else None
        if event_name not in ("repository", "pull_request", "pull_request_review") or not isinstance(
            repository_payload, dict
        ):
            logger.info("Ignoring unsupported event", extra={"event_name": event_name})
            return result.finish()

        db = self._session_factory()
        try:
            reconciler = Reconciler(db)
            owner_payload = payload.get("organization") or repository_payload.get("owner") or {}
            full_name = str(repository_payload.get("full_name") or repository_payload.get("name"))
            try:
                installation = payload.get("installation") or {}
                organization = reconciler.upsert(
                    EntityKind.ORGANIZATION,
                    owner_payload,
                    installation_id=installation.get("id") if isinstance(installation, dict) else None,
                )
                result.record(organization)
                repository = reconciler.upsert(
                    EntityKind.REPOSITORY, repository_payload, organization_id=organization.record.id
                )
                result.record(repository)
            except (DevMetricsError, SQLAlchemyError) as exc:
                db.rollback()
                result.add_error(full_name, exc)
                return self._log_finished(result.finish())

            pull_request_payload = payload.get("pull_request")
            if event_name != "repository" and isinstance(pull_request_payload, dict):
                if not repository.record.is_tracked:
                    logger.info("Ignoring event for untracked repository", extra={"repository": full_name})
                    return result.finish()
                resource = f"{full_name}#{pull_request_payload.get('number')}"
                try:
                    pull_request = reconciler.upsert(
                        EntityKind.PULL_REQUEST, pull_request_payload, repository_id=repository.record.id
                    )
                    result.record(pull_request)
                    review_payload = payload.get("review")
                    if event_name == "pull_request_review" and isinstance(review_payload, dict):
                        result.record(
                            reconciler.upsert(
                                EntityKind.REVIEW, review_payload, pull_request_id=pull_request.record.id
                            )
                        )
                except (DevMetricsError, SQLAlchemyError) as exc:
                    db.rollback()
                    result.add_error(resource, exc)
                    return self._log_finished(result.finish())
            result.synced.append(full_name)
        finally:
            db.close()

        return self._log_finished(result.finish())

    def _resolve_credential(self, organization: Organization) -> str:
        if organization.installation_id is None:
            raise MissingAuthorizationError(f"Organization {organization.name} has no installation")
        token = self._token_provider(organization)
        if not token:
            raise UnauthorizedError(f"No valid credential for organization {organization.name}")
        return token

    async def _sync_repository_listing(
        self,
        db: Any,
        client: Any,
        organization: Organization,
        result: SyncResult,
    ) -> list[tuple[int, str, bool]]:
        reconciler = Reconciler(db)
        repositories: list[tuple[int, str, bool]] = []
        cursor: Optional[int] = None
        while True:
            try:
                page = await self._fetch(
                    functools.partial(client.list_organization_repositories, organization.name, cursor=cursor),
                    resource=organization.name,
                )
            except UnauthorizedError:
                raise
            except DevMetricsError as exc:
                result.add_error(organization.name, exc)
                break

            for payload in page.items:
                full_name = str(payload.get("full_name") or payload.get("name") or payload.get("id"))
                try:
                    upserted = reconciler.upsert(EntityKind.REPOSITORY, payload, organization_id=organization.id)
                except (DevMetricsError, SQLAlchemyError) as exc:
                    db.rollback()
                    result.add_error(full_name, exc)
                    continue
                result.record(upserted)
                record = upserted.record
                repositories.append((record.id, record.full_name, bool(record.is_tracked)))

            if not page.has_more:
                break
            cursor = page.next_cursor
        return repositories

    async def _sync_repository_pulls(
        self,
        client: Any,
        repository_id: int,
        full_name: str,
        mode: str,
        result: SyncResult,
    ) -> None:
        db = self._session_factory()
        try:
            owner, name = split_full_name(full_name)
            reconciler = Reconciler(db)
            cursor: Optional[int] = None
            while True:
                page = await self._fetch(
                    functools.partial(client.list_pull_requests, owner, name, cursor=cursor),
                    resource=full_name,
                )
                reached_known = False
                for payload in page.items:
                    resource = f"{full_name}#{payload.get('number')}"
                    try:
                        outcome = await self._sync_pull_request(
                            client, reconciler, repository_id, owner, name, payload, mode, result
                        )
                    except UnauthorizedError:
                        raise
                    except (DevMetricsError, SQLAlchemyError) as exc:
                        db.rollback()
                        result.add_error(resource, exc)
                        logger.warning(
                            "Pull request sync failed",
                            extra=sanitize_log_extra(resource=resource, error=str(exc)),
                        )
                        continue
                    if mode == SYNC_MODE_INCREMENTAL and outcome is UpsertOutcome.UNCHANGED:
                        reached_known = True
                        break
                if reached_known or not page.has_more:
                    break
                cursor = page.next_cursor
        except UnauthorizedError:
            raise
        except (DevMetricsError, SQLAlchemyError, ValueError) as exc:
            db.rollback()
            result.add_error(full_name, exc)
            logger.warning("Repository sync failed", extra=sanitize_log_extra(repository=full_name, error=str(exc)))
            return
        finally:
            db.close()

        result.synced.append(full_name)

    async def _sync_pull_request(
        self,
        client: Any,
        reconciler: Reconciler,
        repository_id: int,
        owner: str,
        name: str,
        payload: dict[str, Any],
        mode: str,
        result: SyncResult,
    ) -> UpsertOutcome:
        full_name = f"{owner}/{name}"
        number = payload.get("number")
        if not isinstance(number, int) or isinstance(number, bool):
            raise ValidationError("pull request payload missing number")

        existing = reconciler.find_pull_request(repository_id=repository_id, payload=payload)
        is_current = (
            existing is not None
            and existing.updated_at is not None
            and existing.updated_at == payload.get("updated_at")
        )
        needs_detail = existing is None or existing.additions is None or not is_current
        if self._fetch_pr_details and needs_detail and not has_diff_counters(payload):
            detail = await self._fetch(
                functools.partial(client.get_pull_request, owner, name, number),
                resource=f"{full_name}#{number}",
            )
            payload = {**payload, **detail}

        upserted = reconciler.upsert(EntityKind.PULL_REQUEST, payload, repository_id=repository_id)
        result.record(upserted)

        if mode == SYNC_MODE_FULL or upserted.changed:
            try:
                await self._sync_reviews(client, reconciler, upserted.record.id, owner, name, number, result)
            except (DevMetricsError, SQLAlchemyError):
                reconciler.mark_pull_request_stale(upserted.record.id)
                raise
        return upserted.outcome

    async def _sync_reviews(
        self,
        client: Any,
        reconciler: Reconciler,
        pull_request_id: int,
        owner: str,
        name: str,
        number: int,
        result: SyncResult,
    ) -> None:
        resource = f"{owner}/{name}#{number}"
        cursor: Optional[int] = None
        while True:
            page = await self._fetch(
                functools.partial(client.list_reviews, owner, name, number, cursor=cursor),
                resource=resource,
            )
            for payload in page.items:
                try:
                    result.record(reconciler.upsert(EntityKind.REVIEW, payload, pull_request_id=pull_request_id))
                except ValidationError as exc:
                    result.add_error(f"{resource}/review:{payload.get('id')}", exc)
            if not page.has_more:
                break
            cursor = page.next_cursor

    async def _fetch(self, operation: Callable[[], Awaitable[Any]], *, resource: str) -> Any:
        return await call_with_retry(operation, policy=self._retry_policy, resource=resource, sleep=self._sleep)

    async def _run_bounded(self, coroutines: Sequence[Awaitable[None]]) -> None:
        """Run repository tasks with bounded parallelism.

        A credential failure in any task aborts the run once all tasks settle.
        """

        if not coroutines:
            return
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _guarded(coroutine: Awaitable[None]) -> None:
            async with semaphore:
                await coroutine

        outcomes = await asyncio.gather(*(_guarded(coroutine) for coroutine in coroutines), return_exceptions=True)
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        for failure in failures:
            if isinstance(failure, UnauthorizedError):
                raise failure
        if failures:
            raise failures[0]

    @staticmethod
    def _log_finished(result: SyncResult) -> SyncResult:
        logger.info(
            "Sync finished",
            extra=sanitize_log_extra(
                scope=result.scope,
                status=result.status.value,
                new_count=result.new_count,
                updated_count=result.updated_count,
                error_count=len(result.errors),
            ),
        )
        return result


def _validate_mode(mode: str) -> str:
    normalized = (mode or SYNC_MODE_FULL).strip().lower()
    if normalized not in SYNC_MODES:
        raise ValueError(f"Unknown sync mode: {mode}")
    return normalized
