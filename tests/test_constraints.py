"""
Test Suite for the Constraint Filter

Covers blackout windows, group scoping, skills, member status and the
weekly / monthly limits that decide who may receive an instance.
"""

import pytest
import sys
from pathlib import Path
from datetime import datetime

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from duty_scheduler.constraints import (
    ConstraintFilter, ConstraintViolation, AssignmentLoad, is_blacked_out, is_preferred_time, week_key,
)
from duty_scheduler.data_manager import (
    Member, WorkInstance, MemberAvailability, MemberLimits, AvailabilityRule, TimeSlot,
    ValidationError, MEMBER_INACTIVE,
)

MONDAY = datetime(2025, 3, 3)


def morning_blackout_member(member_id="m1", name="Morning Off"):
    """Never available Monday 08:00-12:00."""
    return Member(
        id=member_id,
        display_name=name,
        availability=MemberAvailability(
            never_available=[AvailabilityRule(0, [TimeSlot("08:00", "12:00")])]
        )
    )


def instance_at(instance_id, start, end=None, **kwargs):
    return WorkInstance(id=instance_id, scheduled_at=start, end_at=end, **kwargs)


@pytest.fixture
def constraint_filter():
    return ConstraintFilter()


@pytest.mark.parametrize(
    "start, end, expect_blackout",
    [
        (MONDAY.replace(hour=9), MONDAY.replace(hour=10), True),
        (MONDAY.replace(hour=7), MONDAY.replace(hour=8, minute=30), True),
        (MONDAY.replace(hour=12), MONDAY.replace(hour=13), False),
        (MONDAY.replace(hour=6), MONDAY.replace(hour=8), False),
        (MONDAY.replace(hour=8), None, True),
        (MONDAY.replace(hour=12), None, False),
        (datetime(2025, 3, 4, 9), datetime(2025, 3, 4, 10), False),
    ],
)
def test_blackout_window_overlap(start, end, expect_blackout):
    """Blackouts exclude on interval overlap; a point-in-time instance must fall inside the slot."""
    member = morning_blackout_member()
    assert is_blacked_out(member, instance_at("i1", start, end)) is expect_blackout


@pytest.mark.parametrize(
    "rule, start, end, expect_blackout",
    [
        (AvailabilityRule(0, [TimeSlot("23:00", "24:00")]), MONDAY.replace(hour=22), datetime(2025, 3, 4, 2), True),
        # Tuesday early-morning blackout reached by a Monday night instance
        (AvailabilityRule(1, [TimeSlot("00:00", "06:00")]), MONDAY.replace(hour=23), datetime(2025, 3, 4, 3), True),
        (AvailabilityRule(1, [TimeSlot("04:00", "06:00")]), MONDAY.replace(hour=23), datetime(2025, 3, 4, 3), False),
        # Ending exactly at midnight does not touch the next day
        (AvailabilityRule(1, [TimeSlot("00:00", "06:00")]), MONDAY.replace(hour=20), datetime(2025, 3, 4, 0), False),
        # Sunday night into Monday wraps the weekday
        (AvailabilityRule(0, [TimeSlot("00:00", "01:00")]), datetime(2025, 3, 9, 23), datetime(2025, 3, 10, 2), True),
    ],
)
def test_overnight_instance_checks_every_day(constraint_filter, rule, start, end, expect_blackout):
    member = Member(id="a", display_name="Anna", availability=MemberAvailability(never_available=[rule]))
    overnight = instance_at("night", start, end)
    assert (ConstraintViolation.BLACKOUT in constraint_filter.explain(member, overnight)) is expect_blackout
    assert constraint_filter.eligible_members(overnight, [member]) == (set() if expect_blackout else {"a"})


def test_blacked_out_member_never_eligible(constraint_filter):
    roster = [morning_blackout_member("a", "Anna"), Member(id="b", display_name="Bengt")]
    instance = instance_at("i1", MONDAY.replace(hour=9), MONDAY.replace(hour=10))
    assert constraint_filter.eligible_members(instance, roster) == {"b"}


def test_inactive_member_excluded(constraint_filter):
    roster = [Member(id="a", display_name="Anna", status=MEMBER_INACTIVE), Member(id="b", display_name="Bengt")]
    instance = instance_at("i1", MONDAY)
    assert constraint_filter.eligible_members(instance, roster) == {"b"}
    assert constraint_filter.explain(roster[0], instance) == [ConstraintViolation.INACTIVE]


def test_scoping_and_skills(constraint_filter):
    roster = [
        Member(id="a", display_name="Anna", skills={"farrier"}),
        Member(id="b", display_name="Bengt", skills={"farrier"}),
        Member(id="c", display_name="Clara"),
    ]
    scoped = instance_at("i1", MONDAY, eligible_member_ids={"b", "c"})
    assert constraint_filter.eligible_members(scoped, roster) == {"b", "c"}

    skilled = instance_at("i2", MONDAY, required_skill="farrier")
    assert constraint_filter.eligible_members(skilled, roster) == {"a", "b"}

    both = instance_at("i3", MONDAY, eligible_member_ids={"b", "c"}, required_skill="farrier")
    assert constraint_filter.eligible_members(both, roster) == {"b"}


def test_weekly_limit_uses_iso_week(constraint_filter):
    member = Member(id="a", display_name="Anna", limits=MemberLimits(max_per_week=1))
    load = AssignmentLoad()
    load.record("a", MONDAY)

    same_week = instance_at("i2", datetime(2025, 3, 9, 10))  # Sunday of the same ISO week
    next_week = instance_at("i3", datetime(2025, 3, 10, 10))
    assert week_key(MONDAY) == week_key(same_week.scheduled_at)

    assert constraint_filter.explain(member, same_week, load) == [ConstraintViolation.WEEKLY_LIMIT]
    assert constraint_filter.is_eligible(member, next_week, load)


def test_monthly_limit(constraint_filter):
    member = Member(id="a", display_name="Anna", limits=MemberLimits(max_per_month=2))
    load = AssignmentLoad.from_instances([
        instance_at("i1", datetime(2025, 3, 3), assigned_member_id="a"),
        instance_at("i2", datetime(2025, 3, 12), assigned_member_id="a"),
    ])
    assert ConstraintViolation.MONTHLY_LIMIT in constraint_filter.explain(member, instance_at("i3", datetime(2025, 3, 28)), load)
    assert constraint_filter.is_eligible(member, instance_at("i4", datetime(2025, 4, 1)), load)


def test_limits_ignored_without_load(constraint_filter):
    member = Member(id="a", display_name="Anna", limits=MemberLimits(max_per_week=0))
    assert constraint_filter.is_eligible(member, instance_at("i1", MONDAY))


def test_filter_does_not_mutate_load(constraint_filter):
    roster = [Member(id="a", display_name="Anna", limits=MemberLimits(max_per_week=1))]
    load = AssignmentLoad()
    instance = instance_at("i1", MONDAY)
    constraint_filter.eligible_members(instance, roster, load)
    constraint_filter.eligible_members(instance, roster, load)
    assert load.weekly_count("a", MONDAY) == 0


def test_preferred_time_is_soft(constraint_filter):
    member = Member(
        id="a",
        display_name="Anna",
        availability=MemberAvailability(preferred_times=[AvailabilityRule(0, [TimeSlot("06:00", "09:00")])])
    )
    early = instance_at("i1", MONDAY.replace(hour=7))
    late = instance_at("i2", MONDAY.replace(hour=18))
    assert is_preferred_time(member, early)
    assert not is_preferred_time(member, late)
    assert constraint_filter.is_eligible(member, late)


def test_validate_manual_assignment(constraint_filter):
    member = morning_blackout_member("a", "Anna")
    instance = instance_at("i1", MONDAY.replace(hour=9), required_skill="driver")
    violations = constraint_filter.validate_manual_assignment(member, instance)
    assert f"Anna: {ConstraintViolation.MISSING_SKILL}" in violations
    assert f"Anna: {ConstraintViolation.BLACKOUT}" in violations
    assert constraint_filter.validate_manual_assignment(None, instance) == ["Member not found"]


@pytest.mark.parametrize("start, end", [("12:00", "08:00"), ("09:00", "09:00"), ("25:00", "26:00"), ("nine", "ten")])
def test_invalid_time_slots_rejected(start, end):
    with pytest.raises(ValidationError):
        TimeSlot(start, end)
