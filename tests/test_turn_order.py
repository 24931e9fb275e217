"""
Test Suite for the Turn Order Computer

Covers the selectable algorithms, newcomer handling, quota computation,
the draft pick rule and recovery from unusable history.
"""

import pytest
import logging
import sys
from pathlib import Path
from datetime import datetime, timedelta

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from duty_scheduler.config import FairnessConfig
from duty_scheduler.data_manager import (
    Member, WorkInstance, SelectionOccasion, TurnOrderHistoryRecord, CompletionRecord, ValidationError,
)
from duty_scheduler.fairness import FairnessScorer
from duty_scheduler.turn_order import (
    TurnOrderComputer, SelectionAlgorithm, nearest_fit_pick, is_quota_met,
)

MONDAY = datetime(2025, 3, 3, 8, 0)


@pytest.fixture
def roster():
    return [
        Member(id="a", display_name="Anna"),
        Member(id="b", display_name="Bengt"),
        Member(id="c", display_name="Clara"),
        Member(id="d", display_name="Dag"),
        Member(id="e", display_name="Erik"),
    ]


@pytest.fixture
def pool():
    return [
        WorkInstance(id="p1", scheduled_at=MONDAY, point_value=3),
        WorkInstance(id="p2", scheduled_at=MONDAY + timedelta(days=1), point_value=2),
        WorkInstance(id="p3", scheduled_at=MONDAY + timedelta(days=2), point_value=2),
        WorkInstance(id="p4", scheduled_at=MONDAY + timedelta(days=3), point_value=1),
    ]


@pytest.fixture
def computer():
    return TurnOrderComputer(FairnessScorer(FairnessConfig(reset_period="never")))


def occasion_for(member_ids, algorithm, pool_ids=("p1", "p2", "p3", "p4"), group_id="g1"):
    return SelectionOccasion(
        id="next",
        group_id=group_id,
        member_ids=list(member_ids),
        algorithm=algorithm,
        instance_pool=list(pool_ids)
    )


def history_doc(final_order, group_id="g1", occasion_id="prev"):
    return {
        "occasionId": occasion_id,
        "groupId": group_id,
        "algorithm": "quota_based",
        "finalOrder": list(final_order),
        "completedAt": "2025-02-01T10:00:00"
    }


def test_quota_based_reverses_history(computer, roster, pool):
    occasion = occasion_for(["a", "b", "c"], "quota_based")
    result = computer.compute_order(occasion, roster, history_doc(["a", "b", "c"]), pool)
    assert result.order == ["c", "b", "a"]
    assert result.metadata["previous_occasion_id"] == "prev"


def test_quota_based_appends_newcomers_alphabetically(computer, roster, pool):
    occasion = occasion_for(["e", "a", "b", "c", "d"], "quota_based")
    result = computer.compute_order(occasion, roster, history_doc(["a", "b", "c"]), pool)
    assert result.order == ["c", "b", "a", "d", "e"]


def test_quota_based_without_history_is_alphabetical(computer, roster, pool):
    occasion = occasion_for(["c", "a", "b"], "quota_based")
    result = computer.compute_order(occasion, roster, None, pool)
    assert result.order == ["a", "b", "c"]


def test_quota_rounded_to_one_decimal(computer, roster, pool):
    occasion = occasion_for(["a", "b", "c"], "quota_based")
    result = computer.compute_order(occasion, roster, None, pool)
    assert result.quota_per_member == 2.7
    assert result.metadata["total_available_points"] == 8
    assert result.quotas == {"a": 2.7, "b": 2.7, "c": 2.7}
    assert [turn.quota for turn in result.to_turn_entries()] == [2.7, 2.7, 2.7]


def test_quota_ignores_instances_outside_the_pool(computer, roster, pool):
    occasion = occasion_for(["a", "b"], "quota_based", pool_ids=("p1", "p4"))
    result = computer.compute_order(occasion, roster, None, pool)
    assert result.quota_per_member == 2.0


def test_fair_rotation_cycles_first_pick(computer, roster, pool):
    members = ["a", "b", "c"]
    history = None
    first_picks = []
    for index in range(len(members) + 1):
        result = computer.compute_order(occasion_for(members, "fair_rotation"), roster, history, pool)
        first_picks.append(result.order[0])
        history = TurnOrderHistoryRecord(
            occasion_id=f"o{index}",
            group_id="g1",
            algorithm="fair_rotation",
            final_order=result.order,
            selections_per_member={},
            points_picked_per_member={},
            completed_at=MONDAY + timedelta(days=index)
        )
    assert len(set(first_picks[:3])) == 3
    assert first_picks[3] == first_picks[0]


def test_fair_rotation_shift_and_newcomers(computer, roster, pool):
    occasion = occasion_for(["a", "b", "c", "d"], "fair_rotation")
    result = computer.compute_order(occasion, roster, history_doc(["b", "a", "c"]), pool)
    assert result.order == ["a", "c", "b", "d"]
    assert result.quotas is None


def test_points_balance_zero_history_first():
    roster = [
        Member(id="m1", display_name="Aaron", historical_points=1),
        Member(id="m2", display_name="Zed", historical_points=0),
    ]
    computer = TurnOrderComputer(FairnessScorer(FairnessConfig(reset_period="never")))
    result = computer.compute_order(occasion_for(["m1", "m2"], "points_balance", pool_ids=()), roster, None, [])
    assert result.order == ["m2", "m1"]


def test_points_balance_uses_completion_log(roster):
    completions = [
        CompletionRecord("a", 4, datetime(2025, 2, 20)),
        CompletionRecord("b", 1, datetime(2025, 2, 21)),
        CompletionRecord("c", 1, datetime(2025, 2, 22)),
    ]
    config = FairnessConfig(as_of=datetime(2025, 3, 1))
    computer = TurnOrderComputer(FairnessScorer(config, completions))
    result = computer.compute_order(occasion_for(["a", "b", "c", "d"], "points_balance", pool_ids=()), roster, None, [])
    # Dag has nothing recorded, then Bengt and Clara tie alphabetically
    assert result.order == ["d", "b", "c", "a"]
    assert result.metadata["member_points"]["a"] == 4


def test_manual_order_kept(computer, roster, pool):
    result = computer.compute_order(occasion_for(["c", "a", "b"], "manual"), roster, history_doc(["a", "b", "c"]), pool)
    assert result.order == ["c", "a", "b"]


@pytest.mark.parametrize(
    "history",
    [
        {"groupId": "g1", "finalOrder": ["a", "b", "c"]},
        history_doc([]),
        history_doc(["a", "gone", "c"]),
        history_doc(["a", "b", "c"], group_id="other"),
        history_doc(["a", "a", "b"]),
        {**history_doc(["a", "b", "c"]), "completedAt": "yesterday"},
        "not a document",
    ],
)
def test_unusable_history_falls_back_to_alphabetical(computer, roster, pool, history, caplog):
    occasion = occasion_for(["c", "b", "a"], "quota_based")
    with caplog.at_level(logging.WARNING):
        result = computer.compute_order(occasion, roster, history, pool)
    assert result.order == ["a", "b", "c"]
    assert "previous_occasion_id" not in result.metadata
    assert "falling back to alphabetical" in caplog.text


def test_unknown_algorithm_rejected(computer, roster, pool):
    with pytest.raises(ValidationError):
        computer.compute_order(occasion_for(["a"], "round_robin"), roster, None, pool)
    with pytest.raises(ValidationError):
        SelectionAlgorithm.parse("lottery")


@pytest.mark.parametrize("member_ids", [[], ["a", "a"], ["a", "nobody"]])
def test_bad_participants_rejected(computer, roster, pool, member_ids):
    with pytest.raises(ValidationError):
        computer.compute_order(occasion_for(member_ids, "fair_rotation"), roster, None, pool)


def test_negative_pool_value_rejected(computer, roster):
    bad_pool = [WorkInstance(id="p1", scheduled_at=MONDAY, point_value=-2)]
    with pytest.raises(ValidationError):
        computer.compute_order(occasion_for(["a"], "quota_based", pool_ids=("p1",)), roster, None, bad_pool)


def test_nearest_fit_pick(pool):
    assert nearest_fit_pick(0, 2.7, pool).id == "p1"
    assert nearest_fit_pick(2, 2.7, pool).id == "p4"
    # p2 and p3 fit equally well; the earlier one wins
    assert nearest_fit_pick(0, 2.0, pool).id == "p2"
    assert nearest_fit_pick(0, 2.0, []) is None


def test_quota_met():
    assert is_quota_met(2.7, 2.7)
    assert is_quota_met(3.0, 2.7)
    assert not is_quota_met(2.0, 2.7)
    assert is_quota_met(0, None)
