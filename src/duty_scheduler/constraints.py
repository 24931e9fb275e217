"""
Constraint Filter for the Duty Scheduler

Decides which roster members may receive a work instance: active status,
group scoping, skills, weekly blackout rules and per-period limits.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple, Iterable
import logging

from .data_manager import Member, WorkInstance, AvailabilityRule, INSTANCE_CANCELLED

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


class ConstraintViolation:
    """Reasons a member cannot take an instance"""
    INACTIVE = "Member is not active"
    OUT_OF_SCOPE = "Member is not a candidate for this instance"
    MISSING_SKILL = "Member lacks the required skill"
    BLACKOUT = "Member is never available during this time slot"
    WEEKLY_LIMIT = "Member has reached their maximum shifts per week"
    MONTHLY_LIMIT = "Member has reached their maximum shifts per month"


def week_key(moment: datetime) -> Tuple[int, int]:
    """ISO (year, week) containing moment"""
    iso = moment.isocalendar()
    return (iso[0], iso[1])


def month_key(moment: datetime) -> Tuple[int, int]:
    return (moment.year, moment.month)


class AssignmentLoad:
    """Per-member shift counts keyed by ISO week and calendar month"""

    def __init__(self):
        self._weekly: Dict[Tuple[str, Tuple[int, int]], int] = defaultdict(int)
        self._monthly: Dict[Tuple[str, Tuple[int, int]], int] = defaultdict(int)

    @classmethod
    def from_instances(cls, instances: Iterable[WorkInstance]) -> 'AssignmentLoad':
        """Counts for already-assigned instances; cancelled work is not counted"""
        load = cls()
        for instance in instances:
            if instance.assigned_member_id is not None and instance.status != INSTANCE_CANCELLED:
                load.record(instance.assigned_member_id, instance.scheduled_at)
        return load

    def copy(self) -> 'AssignmentLoad':
        clone = AssignmentLoad()
        clone._weekly.update(self._weekly)
        clone._monthly.update(self._monthly)
        return clone

    def record(self, member_id: str, moment: datetime):
        self._weekly[(member_id, week_key(moment))] += 1
        self._monthly[(member_id, month_key(moment))] += 1

    def weekly_count(self, member_id: str, moment: datetime) -> int:
        return self._weekly.get((member_id, week_key(moment)), 0)

    def monthly_count(self, member_id: str, moment: datetime) -> int:
        return self._monthly.get((member_id, month_key(moment)), 0)


def _instance_windows(instance: WorkInstance) -> List[Tuple[int, int, int]]:
    """
    (weekday, start, end) in minutes after midnight for every day the instance
    touches; end == start for point-in-time instances
    """
    scheduled = instance.scheduled_at
    start = scheduled.hour * 60 + scheduled.minute
    if instance.end_at is None or instance.end_at <= scheduled:
        return [(scheduled.weekday(), start, start)]

    windows = []
    day = scheduled.date()
    last_day = instance.end_at.date()
    while day <= last_day:
        day_start = start if day == scheduled.date() else 0
        day_end = instance.end_at.hour * 60 + instance.end_at.minute if day == last_day else MINUTES_PER_DAY
        if day_end > day_start:
            windows.append((day.weekday(), day_start, day_end))
        day += timedelta(days=1)
    return windows


def _rule_covers(rules: List[AvailabilityRule], instance: WorkInstance) -> bool:
    for day, start, end in _instance_windows(instance):
        for rule in rules:
            if rule.day_of_week != day:
                continue
            for slot in rule.time_slots:
                if end > start:
                    if start < slot.end_minutes and slot.start_minutes < end:
                        return True
                elif slot.start_minutes <= start < slot.end_minutes:
                    return True
    return False


def is_blacked_out(member: Member, instance: WorkInstance) -> bool:
    """True when a never-available rule overlaps the instance window"""
    return _rule_covers(member.availability.never_available, instance)


def is_preferred_time(member: Member, instance: WorkInstance) -> bool:
    return _rule_covers(member.availability.preferred_times, instance)


class ConstraintFilter:
    """Hard-constraint filter; deterministic and free of side effects"""

    def explain(self, member: Member, instance: WorkInstance,
                load: Optional[AssignmentLoad] = None) -> List[str]:
        """Every hard constraint the member would violate by taking the instance"""
        violations = []

        if not member.is_active:
            violations.append(ConstraintViolation.INACTIVE)

        if instance.eligible_member_ids is not None and member.id not in instance.eligible_member_ids:
            violations.append(ConstraintViolation.OUT_OF_SCOPE)

        if instance.required_skill and instance.required_skill not in member.skills:
            violations.append(ConstraintViolation.MISSING_SKILL)

        if is_blacked_out(member, instance):
            violations.append(ConstraintViolation.BLACKOUT)

        if load is not None:
            limits = member.limits
            if limits.max_per_week is not None and \
                    load.weekly_count(member.id, instance.scheduled_at) + 1 > limits.max_per_week:
                violations.append(ConstraintViolation.WEEKLY_LIMIT)
            if limits.max_per_month is not None and \
                    load.monthly_count(member.id, instance.scheduled_at) + 1 > limits.max_per_month:
                violations.append(ConstraintViolation.MONTHLY_LIMIT)

        return violations

    def is_eligible(self, member: Member, instance: WorkInstance,
                    load: Optional[AssignmentLoad] = None) -> bool:
        return not self.explain(member, instance, load)

    def eligible_members(self, instance: WorkInstance, roster: Iterable[Member],
                         load: Optional[AssignmentLoad] = None) -> Set[str]:
        """Ids of members that satisfy every hard constraint for the instance"""
        eligible = {member.id for member in roster if self.is_eligible(member, instance, load)}
        if not eligible:
            logger.debug(f"No eligible member for instance {instance.id} at {instance.scheduled_at}")
        return eligible

    def validate_manual_assignment(self, member: Optional[Member], instance: WorkInstance,
                                   load: Optional[AssignmentLoad] = None) -> List[str]:
        """
        Validate a manual assignment against the hard constraints.
        Returns list of constraint violations (empty if valid).
        """
        if member is None:
            return ["Member not found"]
        return [f"{member.display_name}: {violation}" for violation in self.explain(member, instance, load)]
