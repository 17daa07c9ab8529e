"""Metrics aggregation over the normalized store.

Every call evaluates all of its windows against one `now` snapshot and returns
zeroed defaults for empty data. Store errors propagate to the caller.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Optional, Sequence

from sqlalchemy import and_, case, func, or_, select

from devmetrics.config.settings import settings
from devmetrics.models import Category, PullRequest, PullRequestState, Repository, Review, User
from devmetrics.services.metrics.contracts import (
    POINT_FIELDS,
    CategoryShare,
    CategorySeries,
    ContributorMetrics,
    MetricsSummary,
    ReviewCoverage,
    TeamPerformance,
    TimeSeries,
    TimeSeriesPoint,
)

logger = logging.getLogger(__name__)

UNCATEGORIZED_KEY = "Uncategorized"
UNKNOWN_CONTRIBUTOR = "Unknown"
_MERGED = PullRequestState.MERGED.value
_OPEN = PullRequestState.OPEN.value


def category_key(name: Optional[str]) -> str:
    """Stable series key for a category display name (whitespace collapsed)."""

    if name is None or not name.strip():
        return UNCATEGORIZED_KEY
    key = re.sub(r"\s+", "_", name.strip())
    return f"category_{key}" if key in POINT_FIELDS else key


def round_one(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def round_int(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage(numerator: int | float, denominator: int | float) -> float:
    if not denominator:
        return 0.0
    return round_one(numerator / denominator * 100)


def hours_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 3600


def mean(values: Iterable[float]) -> float:
    collected = list(values)
    return sum(collected) / len(collected) if collected else 0.0


class MetricsEngine:
    """Derives summary, time-series and team statistics for one organization."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any],
        window_days: int | None = None,
        team_window_days: int | None = None,
        top_n: int | None = None,
        pr_weight: float | None = None,
        review_weight: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._window_days = window_days or settings.METRICS_WINDOW_DAYS
        self._team_window_days = team_window_days or settings.METRICS_TEAM_WINDOW_DAYS
        self._top_n = top_n or settings.METRICS_TEAM_TOP_N
        self._pr_weight = settings.METRICS_CONTRIBUTION_PR_WEIGHT if pr_weight is None else pr_weight
        self._review_weight = settings.METRICS_CONTRIBUTION_REVIEW_WEIGHT if review_weight is None else review_weight
        self._clock = clock or datetime.utcnow

    def get_summary(self, organization_id: int, window_days: int | None = None) -> MetricsSummary:
        window = _positive_days(self._window_days if window_days is None else window_days)
        now = self._clock()
        window_start = now - timedelta(days=window)
        week_start = now - timedelta(days=7)
        last_week_start = now - timedelta(days=14)

        merged = PullRequest.state == _MERGED
        created_recent = PullRequest.created_at >= window_start

        db = self._session_factory()
        try:
            counts = db.execute(
                select(
                    func.count(PullRequest.id),
                    _count_where(created_recent),
                    _count_where(merged),
                    _count_where(and_(merged, PullRequest.merged_at >= window_start)),
                    _count_where(and_(merged, PullRequest.merged_at >= week_start, PullRequest.merged_at < now)),
                    _count_where(
                        and_(merged, PullRequest.merged_at >= last_week_start, PullRequest.merged_at < week_start)
                    ),
                    _count_where(and_(created_recent, PullRequest.category_id.isnot(None))),
                    _count_where(PullRequest.state == _OPEN),
                )
                .select_from(PullRequest)
                .join(Repository, PullRequest.repository_id == Repository.id)
                .where(Repository.organization_id == organization_id)
            ).one()

            first_review = _first_review_subquery()
            merged_rows = db.execute(
                select(
                    PullRequest.created_at,
                    PullRequest.merged_at,
                    PullRequest.additions,
                    PullRequest.deletions,
                    first_review.c.first_review_at,
                )
                .join(Repository, PullRequest.repository_id == Repository.id)
                .outerjoin(first_review, first_review.c.pull_request_id == PullRequest.id)
                .where(
                    Repository.organization_id == organization_id,
                    merged,
                    PullRequest.merged_at >= window_start,
                    PullRequest.created_at.isnot(None),
                )
            ).all()

            tracked_repositories = db.execute(
                select(func.count(Repository.id)).where(
                    Repository.organization_id == organization_id,
                    Repository.is_tracked.is_(True),
                )
            ).scalar_one()
        finally:
            db.close()

        (
            total_prs,
            recent_prs,
            merged_prs,
            recent_merged,
            this_week_merged,
            last_week_merged,
            categorized_recent,
            open_prs,
        ) = (int(value or 0) for value in counts)

        cycle_hours = _cycle_hours(merged_rows)
        review_hours = [
            hours
            for hours in (hours_between(row.created_at, row.first_review_at) for row in merged_rows)
            if hours is not None
        ]
        sizes = [(row.additions or 0) + (row.deletions or 0) for row in merged_rows]

        weekly_change = 0.0
        if last_week_merged > 0:
            weekly_change = round_one((this_week_merged - last_week_merged) / last_week_merged * 100)

        return MetricsSummary(
            total_prs=total_prs,
            recent_prs=recent_prs,
            merged_prs=merged_prs,
            recent_merged=recent_merged,
            this_week_merged=this_week_merged,
            last_week_merged=last_week_merged,
            weekly_pr_volume_change=weekly_change,
            avg_cycle_time_hours=round_one(mean(cycle_hours)),
            avg_review_time_hours=round_one(mean(review_hours)),
            avg_pr_size=round_int(mean(sizes)),
            categorization_rate=percentage(categorized_recent, recent_prs),
            open_pr_count=open_prs,
            tracked_repositories=int(tracked_repositories or 0),
            merge_rate=percentage(recent_merged, recent_prs),
            window_days=window,
        )

    def get_time_series(
        self,
        organization_id: int,
        days: int,
        repository_id: int | None = None,
    ) -> TimeSeries:
        """One point per calendar day for the trailing `days` days, oldest first.

        Pull requests are bucketed by creation day and category; throughput,
        merged count and cycle time describe the pull requests created that day.
        """

        days = _positive_days(days)
        today = self._clock().date()
        dates = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
        range_start = datetime.combine(dates[0], time.min)
        range_end = datetime.combine(today + timedelta(days=1), time.min)

        db = self._session_factory()
        try:
            series_categories = self._category_series(db, organization_id)
            query = (
                select(
                    PullRequest.created_at,
                    PullRequest.merged_at,
                    PullRequest.state,
                    Category.name.label("category_name"),
                )
                .join(Repository, PullRequest.repository_id == Repository.id)
                .outerjoin(Category, PullRequest.category_id == Category.id)
                .where(
                    Repository.organization_id == organization_id,
                    PullRequest.created_at >= range_start,
                    PullRequest.created_at < range_end,
                )
            )
            if repository_id is not None:
                query = query.where(PullRequest.repository_id == repository_id)
            rows = db.execute(query).all()
        finally:
            db.close()

        known_keys = {category.key for category in series_categories}
        for row in rows:
            key = category_key(row.category_name)
            if key not in known_keys:
                series_categories.insert(-1, CategorySeries(key=key, label=row.category_name))
                known_keys.add(key)

        points = {
            day: TimeSeriesPoint(day=day, counts={category.key: 0 for category in series_categories})
            for day in dates
        }
        cycle_hours: dict[date, list[float]] = defaultdict(list)
        for row in rows:
            point = points.get(row.created_at.date())
            if point is None:
                continue
            point.counts[category_key(row.category_name)] += 1
            point.pr_throughput += 1
            if row.state == _MERGED and row.merged_at is not None:
                point.merged_count += 1
                cycle_hours[point.day].append(hours_between(row.created_at, row.merged_at))

        for day, values in cycle_hours.items():
            points[day].avg_cycle_time_hours = round_one(mean(values))

        return TimeSeries(points=[points[day] for day in dates], categories=series_categories)

    def get_team_performance(
        self,
        organization_id: int,
        *,
        days: int | None = None,
        repository_ids: Sequence[int] | None = None,
        top_n: int | None = None,
    ) -> TeamPerformance:
        """Per-author activity for pull requests created in the window, ranked by contribution score.

        Reviews given count reviews the author submitted in the window on other
        people's pull requests. Team aggregates cover every author; the returned
        list is cut to the top N.
        """

        window = _positive_days(self._team_window_days if days is None else days)
        limit = top_n or self._top_n
        now = self._clock()
        window_start = now - timedelta(days=window)

        db = self._session_factory()
        try:
            pr_query = (
                select(
                    PullRequest.id,
                    PullRequest.author_id,
                    PullRequest.state,
                    PullRequest.created_at,
                    PullRequest.merged_at,
                    PullRequest.additions,
                    PullRequest.deletions,
                )
                .join(Repository, PullRequest.repository_id == Repository.id)
                .where(
                    Repository.organization_id == organization_id,
                    PullRequest.author_id.isnot(None),
                    PullRequest.created_at >= window_start,
                )
            )
            review_query = (
                select(Review.reviewer_id, func.count(Review.id).label("review_count"))
                .join(PullRequest, Review.pull_request_id == PullRequest.id)
                .join(Repository, PullRequest.repository_id == Repository.id)
                .where(
                    Repository.organization_id == organization_id,
                    Review.reviewer_id.isnot(None),
                    or_(PullRequest.author_id.is_(None), PullRequest.author_id != Review.reviewer_id),
                    Review.submitted_at >= window_start,
                )
                .group_by(Review.reviewer_id)
            )
            if repository_ids:
                pr_query = pr_query.where(PullRequest.repository_id.in_(list(repository_ids)))
                review_query = review_query.where(PullRequest.repository_id.in_(list(repository_ids)))

            pr_rows = db.execute(pr_query).all()
            reviews_by_user = {row.reviewer_id: int(row.review_count) for row in db.execute(review_query).all()}

            authored: dict[str, list[Any]] = defaultdict(list)
            for row in pr_rows:
                authored[row.author_id].append(row)
            users = (
                {user.id: user for user in db.query(User).filter(User.id.in_(list(authored))).all()}
                if authored
                else {}
            )
        finally:
            db.close()

        contributors: list[ContributorMetrics] = []
        for user_id, rows in authored.items():
            merged_rows = [row for row in rows if row.state == _MERGED]
            reviews_given = reviews_by_user.get(user_id, 0)
            user = users.get(user_id)
            contributors.append(
                ContributorMetrics(
                    user_id=user_id,
                    name=user.name if user and user.name else UNKNOWN_CONTRIBUTOR,
                    image=user.image if user else None,
                    prs_created=len(rows),
                    prs_merged=len(merged_rows),
                    reviews_given=reviews_given,
                    avg_cycle_time_hours=round_one(mean(_cycle_hours(merged_rows))),
                    avg_pr_size=round_int(mean((row.additions or 0) + (row.deletions or 0) for row in rows)),
                    review_thoroughness=percentage(reviews_given, len(rows)),
                    contribution_score=round_one(len(rows) * self._pr_weight + reviews_given * self._review_weight),
                )
            )

        contributors.sort(key=lambda item: (-item.contribution_score, -item.prs_created, item.user_id))
        total_prs = sum(contributor.prs_created for contributor in contributors)
        total_reviews = sum(contributor.reviews_given for contributor in contributors)

        return TeamPerformance(
            contributors=contributors[:limit],
            total_contributors=len(contributors),
            avg_team_cycle_time=round_one(mean(contributor.avg_cycle_time_hours for contributor in contributors)),
            avg_team_pr_size=round_int(mean(contributor.avg_pr_size for contributor in contributors)),
            collaboration_index=round(total_reviews / total_prs, 2) if total_prs else 0.0,
            review_coverage=self.get_review_coverage(organization_id, window).coverage_percent,
        )

    def get_category_distribution(self, organization_id: int, days: int | None = None) -> list[CategoryShare]:
        """Share of pull requests created in the window per category, largest first."""

        window = _positive_days(self._window_days if days is None else days)
        window_start = self._clock() - timedelta(days=window)

        db = self._session_factory()
        try:
            rows = db.execute(
                select(Category.name, Category.color, func.count(PullRequest.id).label("pr_count"))
                .select_from(PullRequest)
                .join(Repository, PullRequest.repository_id == Repository.id)
                .outerjoin(Category, PullRequest.category_id == Category.id)
                .where(Repository.organization_id == organization_id, PullRequest.created_at >= window_start)
                .group_by(Category.name, Category.color)
            ).all()
        finally:
            db.close()

        total = sum(int(row.pr_count) for row in rows)
        shares: dict[str, CategoryShare] = {}
        for row in rows:
            key = category_key(row.name)
            share = shares.setdefault(
                key,
                CategoryShare(key=key, label=row.name or UNCATEGORIZED_KEY, color=row.color),
            )
            share.count += int(row.pr_count)
        for share in shares.values():
            share.percentage = percentage(share.count, total)
        return sorted(shares.values(), key=lambda item: (-item.count, item.key))

    def get_review_coverage(self, organization_id: int, days: int | None = None) -> ReviewCoverage:
        """Share of pull requests created in the window with at least one review."""

        window = _positive_days(self._window_days if days is None else days)
        window_start = self._clock() - timedelta(days=window)

        db = self._session_factory()
        try:
            pr_ids = db.execute(
                select(PullRequest.id)
                .join(Repository, PullRequest.repository_id == Repository.id)
                .where(Repository.organization_id == organization_id, PullRequest.created_at >= window_start)
            ).scalars().all()
            reviewed = self._reviewed_pull_request_ids(db, pr_ids)
        finally:
            db.close()

        return ReviewCoverage(
            total_prs=len(pr_ids),
            reviewed_prs=len(reviewed),
            coverage_percent=percentage(len(reviewed), len(pr_ids)),
        )

    def _category_series(self, db: Any, organization_id: int) -> list[CategorySeries]:
        categories = (
            db.query(Category)
            .filter(or_(Category.organization_id.is_(None), Category.organization_id == organization_id))
            .order_by(Category.is_default.desc(), Category.name)
            .all()
        )
        series: list[CategorySeries] = []
        seen: set[str] = set()
        for category in categories:
            key = category_key(category.name)
            if key in seen:
                continue
            seen.add(key)
            series.append(CategorySeries(key=key, label=category.name, color=category.color))
        series.append(CategorySeries(key=UNCATEGORIZED_KEY, label=UNCATEGORIZED_KEY))
        return series

    @staticmethod
    def _reviewed_pull_request_ids(db: Any, pull_request_ids: Sequence[int]) -> set[int]:
        if not pull_request_ids:
            return set()
        rows = db.execute(
            select(Review.pull_request_id).where(Review.pull_request_id.in_(list(pull_request_ids))).distinct()
        ).scalars()
        return set(rows)


def _count_where(condition: Any) -> Any:
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def _first_review_subquery() -> Any:
    """Earliest review submission per pull request."""

    return (
        select(Review.pull_request_id, func.min(Review.submitted_at).label("first_review_at"))
        .group_by(Review.pull_request_id)
        .subquery()
    )


def _cycle_hours(rows: Iterable[Any]) -> list[float]:
    return [
        hours for hours in (hours_between(row.created_at, row.merged_at) for row in rows) if hours is not None
    ]


def _positive_days(days: int) -> int:
    if days is None or int(days) < 1:
        raise ValueError("days must be a positive integer")
    return int(days)
