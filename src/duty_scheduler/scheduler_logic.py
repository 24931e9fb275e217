"""
Scheduler Logic for the Duty Scheduler

Greedy fairness-based auto-distribution of work instances: each instance,
in chronological order, goes to the eligible member with the lowest running
score, and the winner's score grows before the next instance is considered.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, Iterable, Set, Tuple
import logging
import time

from .constraints import ConstraintFilter, AssignmentLoad, is_preferred_time, week_key, month_key
from .data_manager import (
    Member, WorkInstance, ValidationError, TERMINAL_INSTANCE_STATUSES, INSTANCE_CANCELLED,
)
from .fairness import FairnessScorer, fairness_index_for

logger = logging.getLogger(__name__)


class EscalationReason:
    """Why an instance is surfaced for manual handling"""
    UNASSIGNABLE = "unassignable"  # No eligible member after distribution
    UNPICKED = "unpicked"  # Left in the pool when a selection occasion ended


@dataclass
class Escalation:
    """Signal for the notification collaborator; the core never notifies itself"""
    instance_id: str
    reason: str
    scheduled_at: Optional[datetime] = None
    occasion_id: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "reason": self.reason,
            "scheduledAt": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "occasionId": self.occasion_id,
            "message": self.message
        }


@dataclass
class DistributionResult:
    """Result of an auto-distribution run"""
    success: bool
    assignments: Dict[str, Optional[str]]
    escalations: List[Escalation]
    running_scores: Dict[str, float]
    initial_scores: Dict[str, float]
    points_awarded: Dict[str, float]
    fairness_index: float
    statistics: Dict[str, Dict[str, Any]]
    message: str
    holiday_instance_ids: List[str] = field(default_factory=list)
    limit_warnings: List[str] = field(default_factory=list)

    @property
    def unassigned_instance_ids(self) -> List[str]:
        return [instance_id for instance_id, member_id in self.assignments.items() if member_id is None]


def _validate_inputs(instances: List[WorkInstance], roster: List[Member]):
    if not roster:
        raise ValidationError("Cannot distribute work to an empty roster")

    member_ids = [member.id for member in roster]
    if len(set(member_ids)) != len(member_ids):
        raise ValidationError("Roster contains duplicate member ids")

    seen: Set[str] = set()
    for instance in instances:
        if instance.id in seen:
            raise ValidationError(f"Duplicate instance id {instance.id}")
        seen.add(instance.id)
        if instance.point_value < 0:
            raise ValidationError(f"Instance {instance.id} has a negative point value ({instance.point_value})")
        if instance.end_at is not None and instance.end_at < instance.scheduled_at:
            raise ValidationError(f"Instance {instance.id} ends before it starts")


class AutoDistributor:
    """Assigns unassigned instances to the least-loaded eligible member"""

    def __init__(self, scorer: FairnessScorer, constraint_filter: Optional[ConstraintFilter] = None):
        self.scorer = scorer
        self.config = scorer.config
        self.constraint_filter = constraint_filter or ConstraintFilter()

    def is_holiday(self, instance: WorkInstance) -> bool:
        return self.config.is_holiday(instance.scheduled_at.date())

    def points_for(self, instance: WorkInstance) -> float:
        """Point value, scaled by the holiday multiplier on holiday dates"""
        if self.is_holiday(instance):
            return instance.point_value * self.config.holiday_multiplier
        return instance.point_value

    def _selection_score(self, member: Member, instance: WorkInstance, running_score: float) -> float:
        # Preferred slots only bias the comparison; the running total is untouched
        if is_preferred_time(member, instance):
            return running_score + self.config.preference_bonus
        return running_score

    def distribute(self, instances: Iterable[WorkInstance], roster: Iterable[Member],
                   load: Optional[AssignmentLoad] = None) -> DistributionResult:
        """
        Distribute instances across the roster.

        Args:
            instances: Work instances for the batch; ones that already carry an
                assignee are kept as-is and count toward load and running score.
                Completed or missed ones count toward load only, their points
                already come from the completion log
            roster: Candidate members
            load: Assignments stored outside the batch in the weeks and months
                it touches; period limits start from these counts

        Returns:
            DistributionResult whose assignments map every input instance id to a
            member id, or None when nobody was eligible
        """
        start_time = time.time()
        instances = list(instances)
        roster = list(roster)
        _validate_inputs(instances, roster)

        ordered = sorted(instances, key=lambda i: i.sort_key)
        members_by_id = {member.id: member for member in roster}
        running = self.scorer.points_for_roster(roster)
        initial = dict(running)
        load = AssignmentLoad() if load is None else load.copy()

        assignments: Dict[str, Optional[str]] = {}
        points_awarded: Dict[str, float] = {}
        escalations: List[Escalation] = []
        holiday_ids: List[str] = []

        # Fixed assignments first so limits see the whole batch
        for instance in ordered:
            if not instance.is_assigned:
                continue
            member_id = instance.assigned_member_id
            assignments[instance.id] = member_id
            if member_id not in running or instance.status == INSTANCE_CANCELLED:
                continue
            load.record(member_id, instance.scheduled_at)
            if instance.status in TERMINAL_INSTANCE_STATUSES:
                continue
            awarded = self.points_for(instance)
            running[member_id] += awarded
            points_awarded[instance.id] = awarded

        for instance in ordered:
            if instance.is_assigned:
                continue
            if instance.status in TERMINAL_INSTANCE_STATUSES:
                logger.info(f"Instance {instance.id} is {instance.status}; left unassigned")
                assignments[instance.id] = None
                continue

            eligible = self.constraint_filter.eligible_members(instance, roster, load)
            if not eligible:
                logger.warning(f"No eligible member for instance {instance.id} on {instance.scheduled_at:%Y-%m-%d %H:%M}")
                assignments[instance.id] = None
                escalations.append(Escalation(
                    instance_id=instance.id,
                    reason=EscalationReason.UNASSIGNABLE,
                    scheduled_at=instance.scheduled_at,
                    message="No eligible member for this instance"
                ))
                continue

            chosen = min(
                eligible,
                key=lambda member_id: (
                    self._selection_score(members_by_id[member_id], instance, running[member_id]),
                    member_id
                )
            )
            awarded = self.points_for(instance)
            running[chosen] += awarded
            load.record(chosen, instance.scheduled_at)
            assignments[instance.id] = chosen
            points_awarded[instance.id] = awarded
            if self.is_holiday(instance):
                holiday_ids.append(instance.id)
            logger.debug(f"Assigned {instance.id} to {chosen} (score now {running[chosen]})")

        limit_warnings = self._minimum_limit_warnings(ordered, roster, load)
        statistics = calculate_assignment_summary(assignments, points_awarded, roster, initial, running)
        assigned_count = sum(1 for member_id in assignments.values() if member_id is not None)

        message = f"Assigned {assigned_count} of {len(assignments)} instances"
        if escalations:
            message += f"; {len(escalations)} need manual assignment"

        duration = time.time() - start_time
        logger.info(f"Distribution completed in {duration:.3f}s. {message}")

        return DistributionResult(
            success=not escalations,
            assignments=assignments,
            escalations=escalations,
            running_scores=running,
            initial_scores=initial,
            points_awarded=points_awarded,
            fairness_index=round(fairness_index_for(running.values()), 1),
            statistics=statistics,
            message=message,
            holiday_instance_ids=holiday_ids,
            limit_warnings=limit_warnings
        )

    def _minimum_limit_warnings(self, ordered: List[WorkInstance], roster: List[Member],
                                load: AssignmentLoad) -> List[str]:
        """Members left below their configured minimum for a period the batch covers"""
        weeks: Dict[Tuple[int, int], datetime] = {}
        months: Dict[Tuple[int, int], datetime] = {}
        for instance in ordered:
            weeks.setdefault(week_key(instance.scheduled_at), instance.scheduled_at)
            months.setdefault(month_key(instance.scheduled_at), instance.scheduled_at)

        warnings = []
        for member in roster:
            if not member.is_active:
                continue
            limits = member.limits
            if limits.min_per_week is not None:
                for (year, week), moment in weeks.items():
                    count = load.weekly_count(member.id, moment)
                    if count < limits.min_per_week:
                        warnings.append(
                            f"{member.display_name} has {count} shifts in week {year}-W{week:02d}, "
                            f"below minimum {limits.min_per_week}"
                        )
            if limits.min_per_month is not None:
                for (year, month), moment in months.items():
                    count = load.monthly_count(member.id, moment)
                    if count < limits.min_per_month:
                        warnings.append(
                            f"{member.display_name} has {count} shifts in {year}-{month:02d}, "
                            f"below minimum {limits.min_per_month}"
                        )
        return warnings


def calculate_assignment_summary(assignments: Dict[str, Optional[str]], points_awarded: Dict[str, float],
                                 roster: Iterable[Member], initial_scores: Dict[str, float],
                                 final_scores: Dict[str, float]) -> Dict[str, Dict[str, Any]]:
    """Per-member shifts and points gained in this batch"""
    stats = {}
    for member in roster:
        stats[member.id] = {
            "name": member.display_name,
            "shifts": 0,
            "points": 0.0,
            "initial_score": initial_scores.get(member.id, 0.0),
            "final_score": final_scores.get(member.id, 0.0)
        }

    for instance_id, member_id in assignments.items():
        if member_id is None or member_id not in stats:
            continue
        stats[member_id]["shifts"] += 1
        stats[member_id]["points"] += points_awarded.get(instance_id, 0.0)

    return stats
