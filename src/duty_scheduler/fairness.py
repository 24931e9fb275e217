"""
Fairness Scorer for the Duty Scheduler

Accumulates each member's points over the configured memory horizon and
summarizes how evenly work is spread across a roster.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, Iterable
import statistics

from .config import (
    FairnessConfig, RESET_PERIODS, RESET_ROLLING, RESET_MONTHLY, RESET_QUARTERLY,
    RESET_YEARLY, RESET_NEVER, TREND_THRESHOLD_RATIO, DEVIATION_LOW_RATIO,
    DEVIATION_MEDIUM_RATIO, holiday_calendar,
)
from .data_manager import Member, CompletionRecord, ValidationError


def validate_config(config: FairnessConfig):
    """Reject configs that would make the horizon meaningless"""
    if config.reset_period not in RESET_PERIODS:
        raise ValidationError(f"Unknown reset period: {config.reset_period!r}")
    if config.memory_horizon_days <= 0:
        raise ValidationError(f"memory_horizon_days must be positive, got {config.memory_horizon_days}")
    if config.holiday_multiplier < 0:
        raise ValidationError("holiday_multiplier must not be negative")
    if config.holiday_country is not None:
        try:
            holiday_calendar(config.holiday_country)
        except NotImplementedError:
            raise ValidationError(f"No holiday calendar for country {config.holiday_country!r}")


def fairness_index_for(points: Iterable[float]) -> float:
    """max(0, 100 - 100 * stddev / mean); 100 when nothing has been earned yet"""
    values = list(points)
    if not values:
        return 100.0
    mean = statistics.fmean(values)
    if mean == 0:
        return 100.0
    return max(0.0, 100.0 - 100.0 * statistics.pstdev(values) / mean)


def gini_coefficient(values: Iterable[float]) -> float:
    """0 = perfect equality, 1 = complete inequality"""
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        return 0.0
    mean = sum(ordered) / n
    if mean == 0:
        return 0.0
    total_difference = sum(abs(a - b) for a in ordered for b in ordered)
    return total_difference / (2 * n * n * mean)


def member_fairness_score(member_points: float, average_points: float) -> int:
    """0-100 with 50 = average; 0.5x average scores 25, 1.5x scores 75"""
    if average_points == 0:
        return 50
    return min(100, max(0, round(member_points / average_points * 50)))


def calculate_trend(recent_points: float, older_points: float) -> Dict[str, Any]:
    diff = recent_points - older_points
    threshold = max(1.0, older_points * TREND_THRESHOLD_RATIO)
    if abs(diff) < threshold:
        return {"trend": "stable", "trend_value": 0.0}
    return {"trend": "up" if diff > 0 else "down", "trend_value": abs(diff)}


@dataclass
class DeviationFlag:
    """Deviation of a member's points from the roster average"""
    member_name: str
    deviation_type: str  # "over_average", "under_average", "exact"
    deviation_units: float  # Positive for over, negative for under
    severity: str  # "none", "low", "medium", "high"
    description: str


def deviation_flag(member_name: str, member_points: float, average_points: float) -> DeviationFlag:
    """Grade a member's deviation relative to the average"""
    deviation = round(member_points - average_points, 1)
    if deviation == 0:
        return DeviationFlag(member_name, "exact", 0.0, "none", "Exactly at the roster average")

    ratio = abs(deviation) / average_points if average_points else 1.0
    if ratio <= DEVIATION_LOW_RATIO:
        severity, adverb = "low", "Slightly"
    elif ratio <= DEVIATION_MEDIUM_RATIO:
        severity, adverb = "medium", "Moderately"
    else:
        severity, adverb = "high", "Significantly"

    if deviation > 0:
        return DeviationFlag(member_name, "over_average", deviation, severity,
                             f"{adverb} over average by {abs(deviation)} points")
    return DeviationFlag(member_name, "under_average", deviation, severity,
                         f"{adverb} under average by {abs(deviation)} points")


@dataclass
class MemberFairnessData:
    member_id: str
    display_name: str
    total_points: float
    tasks_completed: int
    fairness_score: int
    percentage_of_total: float
    deviation_from_average: float
    trend: str
    trend_value: float
    deviation_flag: Optional[Dict[str, Any]] = None


@dataclass
class FairnessDistribution:
    """Roster-wide fairness snapshot over the memory horizon"""
    period_start: Optional[datetime]
    period_end: datetime
    total_points: float
    total_tasks: int
    average_points_per_member: float
    member_count: int
    fairness_index: float
    gini_coefficient: float
    members: List[MemberFairnessData] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat() if self.period_start else None
        data["period_end"] = self.period_end.isoformat()
        return data


class FairnessScorer:
    """Points-within-horizon and fairness index for a roster"""

    def __init__(self, config: Optional[FairnessConfig] = None,
                 completions: Optional[Iterable[CompletionRecord]] = None):
        self.config = config or FairnessConfig()
        validate_config(self.config)
        # None = no completion log; fall back to the member's historical_points
        self.completions = list(completions) if completions is not None else None

    def horizon_start(self, horizon_days: Optional[int] = None) -> Optional[datetime]:
        """Start of the counted window; None means all history counts"""
        as_of = self.config.reference_time()

        if self.config.reset_date is not None:
            return datetime(self.config.reset_date.year, self.config.reset_date.month, self.config.reset_date.day)

        period = self.config.reset_period
        if period == RESET_ROLLING:
            days = horizon_days if horizon_days is not None else self.config.memory_horizon_days
            if days <= 0:
                raise ValidationError(f"horizon_days must be positive, got {days}")
            return as_of - timedelta(days=days)
        if period == RESET_MONTHLY:
            return datetime(as_of.year, as_of.month, 1)
        if period == RESET_QUARTERLY:
            return datetime(as_of.year, 3 * ((as_of.month - 1) // 3) + 1, 1)
        if period == RESET_YEARLY:
            return datetime(as_of.year, 1, 1)
        if period == RESET_NEVER:
            return None
        raise ValidationError(f"Unknown reset period: {period!r}")

    def _records_in_window(self, horizon_days: Optional[int] = None) -> List[CompletionRecord]:
        start = self.horizon_start(horizon_days)
        end = self.config.reference_time()
        return [
            record for record in self.completions
            if record.completed_at <= end and (start is None or record.completed_at >= start)
        ]

    def points_within_horizon(self, member: Member, horizon_days: Optional[int] = None) -> float:
        if self.completions is None:
            return float(member.historical_points)
        return float(sum(r.points for r in self._records_in_window(horizon_days) if r.member_id == member.id))

    def points_for_roster(self, roster: Iterable[Member], horizon_days: Optional[int] = None) -> Dict[str, float]:
        roster = list(roster)
        if self.completions is None:
            return {member.id: float(member.historical_points) for member in roster}

        points = {member.id: 0.0 for member in roster}
        for record in self._records_in_window(horizon_days):
            if record.member_id in points:
                points[record.member_id] += record.points
        return points

    def has_history(self, member: Member, horizon_days: Optional[int] = None) -> bool:
        """Whether the member has any recorded work inside the horizon"""
        if self.completions is None:
            return member.historical_points > 0
        return any(r.member_id == member.id for r in self._records_in_window(horizon_days))

    def fairness_index(self, roster: Iterable[Member], horizon_days: Optional[int] = None) -> float:
        return fairness_index_for(self.points_for_roster(roster, horizon_days).values())

    def distribution_summary(self, roster: Iterable[Member],
                             horizon_days: Optional[int] = None) -> FairnessDistribution:
        """Full per-member breakdown with trend, share of total and deviation flags"""
        roster = list(roster)
        end = self.config.reference_time()
        start = self.horizon_start(horizon_days)
        points = self.points_for_roster(roster, horizon_days)

        tasks = {member.id: 0 for member in roster}
        recent = {member.id: 0.0 for member in roster}
        older = {member.id: 0.0 for member in roster}
        if self.completions is not None:
            records = self._records_in_window(horizon_days)
            window_start = start or min((r.completed_at for r in records), default=end)
            midpoint = window_start + (end - window_start) / 2
            for record in records:
                if record.member_id not in tasks:
                    continue
                tasks[record.member_id] += 1
                if record.completed_at >= midpoint:
                    recent[record.member_id] += record.points
                else:
                    older[record.member_id] += record.points

        total_points = sum(points.values())
        member_count = len(roster)
        average = total_points / member_count if member_count else 0.0

        members = []
        for member in roster:
            member_points = points[member.id]
            trend = calculate_trend(recent[member.id], older[member.id])
            members.append(MemberFairnessData(
                member_id=member.id,
                display_name=member.display_name,
                total_points=member_points,
                tasks_completed=tasks[member.id],
                fairness_score=member_fairness_score(member_points, average),
                percentage_of_total=round(member_points / total_points * 100, 1) if total_points else 0.0,
                deviation_from_average=round(member_points - average, 1),
                trend=trend["trend"],
                trend_value=trend["trend_value"],
                deviation_flag=asdict(deviation_flag(member.display_name, member_points, average))
            ))
        members.sort(key=lambda m: (-m.total_points, m.display_name.casefold(), m.member_id))

        values = list(points.values())
        return FairnessDistribution(
            period_start=start,
            period_end=end,
            total_points=total_points,
            total_tasks=sum(tasks.values()),
            average_points_per_member=round(average, 1),
            member_count=member_count,
            fairness_index=round(fairness_index_for(values), 1),
            gini_coefficient=round(gini_coefficient(values), 2),
            members=members
        )
