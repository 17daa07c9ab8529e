"""Read-model contracts returned by the metrics engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional


@dataclass(slots=True)
class MetricsSummary:
    total_prs: int = 0
    recent_prs: int = 0
    merged_prs: int = 0
    recent_merged: int = 0
    this_week_merged: int = 0
    last_week_merged: int = 0
    weekly_pr_volume_change: float = 0.0
    avg_cycle_time_hours: float = 0.0
    avg_review_time_hours: float = 0.0
    avg_pr_size: int = 0
    categorization_rate: float = 0.0
    open_pr_count: int = 0
    tracked_repositories: int = 0
    merge_rate: float = 0.0
    window_days: int = 30

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalPRs": self.total_prs,
            "recentPRs": self.recent_prs,
            "mergedPRs": self.merged_prs,
            "recentMerged": self.recent_merged,
            "thisWeekMerged": self.this_week_merged,
            "lastWeekMerged": self.last_week_merged,
            "weeklyPRVolumeChange": self.weekly_pr_volume_change,
            "avgCycleTimeHours": self.avg_cycle_time_hours,
            "avgReviewTimeHours": self.avg_review_time_hours,
            "avgPRSize": self.avg_pr_size,
            "categorizationRate": self.categorization_rate,
            "openPRCount": self.open_pr_count,
            "trackedRepositories": self.tracked_repositories,
            "mergeRate": self.merge_rate,
            "windowDays": self.window_days,
        }


@dataclass(slots=True)
class CategorySeries:
    """Legend entry for one category column of the time series."""

    key: str
    label: str
    color: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "label": self.label, "color": self.color}


# Fixed fields of a serialized point; category keys must not shadow them
POINT_FIELDS = frozenset({"date", "prThroughput", "mergedCount", "avgCycleTimeHours"})


@dataclass(slots=True)
class TimeSeriesPoint:
    day: date
    counts: dict[str, int] = field(default_factory=dict)
    pr_throughput: int = 0
    merged_count: int = 0
    avg_cycle_time_hours: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            **self.counts,
            "prThroughput": self.pr_throughput,
            "mergedCount": self.merged_count,
            "avgCycleTimeHours": self.avg_cycle_time_hours,
        }


@dataclass(slots=True)
class TimeSeries:
    points: list[TimeSeriesPoint] = field(default_factory=list)
    categories: list[CategorySeries] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [point.to_dict() for point in self.points],
            "categories": [category.to_dict() for category in self.categories],
        }


@dataclass(slots=True)
class ContributorMetrics:
    user_id: str
    name: str
    image: Optional[str] = None
    prs_created: int = 0
    prs_merged: int = 0
    reviews_given: int = 0
    avg_cycle_time_hours: float = 0.0
    avg_pr_size: int = 0
    review_thoroughness: float = 0.0
    contribution_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "name": self.name,
            "image": self.image,
            "prsCreated": self.prs_created,
            "prsMerged": self.prs_merged,
            "reviewsGiven": self.reviews_given,
            "avgCycleTimeHours": self.avg_cycle_time_hours,
            "avgPRSize": self.avg_pr_size,
            "reviewThoroughness": self.review_thoroughness,
            "contributionScore": self.contribution_score,
        }


@dataclass(slots=True)
class TeamPerformance:
    contributors: list[ContributorMetrics] = field(default_factory=list)
    total_contributors: int = 0
    avg_team_cycle_time: float = 0.0
    avg_team_pr_size: int = 0
    collaboration_index: float = 0.0
    review_coverage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "teamMembers": [contributor.to_dict() for contributor in self.contributors],
            "totalContributors": self.total_contributors,
            "avgTeamCycleTime": self.avg_team_cycle_time,
            "avgTeamPRSize": self.avg_team_pr_size,
            "collaborationIndex": self.collaboration_index,
            "reviewCoverage": self.review_coverage,
        }



@dataclass(slots=True)
class CategoryShare:
    key: str
    label: str
    color: Optional[str] = None
    count: int = 0
    percentage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "color": self.color,
            "count": self.count,
            "percentage": self.percentage,
        }


@dataclass(slots=True)
class ReviewCoverage:
    total_prs: int = 0
    reviewed_prs: int = 0
    coverage_percent: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalPRs": self.total_prs,
            "reviewedPRs": self.reviewed_prs,
            "coveragePercent": self.coverage_percent,
        }
