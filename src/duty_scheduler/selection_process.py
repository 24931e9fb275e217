"""
Selection Process lifecycle for the Duty Scheduler

Drives a selection occasion through draft -> computed -> active -> completed:
previews, commits, turn-by-turn claiming with compare-and-swap, and the
single history record written on completion.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union
import logging
import uuid

from .config import FairnessConfig
from .data_manager import (
    DataManager, SelectionOccasion, SelectionEntry, TurnEntry, TurnOrderHistoryRecord,
    WorkInstance, ValidationError, OccasionStateError, TERMINAL_INSTANCE_STATUSES,
    OCCASION_DRAFT, OCCASION_COMPUTED, OCCASION_ACTIVE, OCCASION_COMPLETED, OCCASION_CANCELLED,
    TURN_ACTIVE, TURN_COMPLETED,
)
from .fairness import FairnessScorer
from .scheduler_logic import Escalation, EscalationReason
from .turn_order import (
    SelectionAlgorithm, TurnOrderComputer, TurnOrderResult, nearest_fit_pick, is_quota_met,
)

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    instance: WorkInstance
    turn: TurnEntry
    quota_met: bool


@dataclass
class CompleteTurnResult:
    occasion_completed: bool
    next_member_id: Optional[str] = None
    history_written: bool = False
    escalations: List[Escalation] = field(default_factory=list)


@dataclass
class TurnInfo:
    order: int
    status: str
    turns_ahead: int
    is_current_turn: bool


class SelectionProcessService:
    """Occasion operations over the data manager; every mutation is saved"""

    def __init__(self, data_manager: DataManager, config: Optional[FairnessConfig] = None):
        self.data_manager = data_manager
        self.config = config

    # Helpers
    def _scorer(self, group_id: str) -> FairnessScorer:
        config = self.config or self.data_manager.get_fairness_config(group_id)
        # An empty completion log means points come from the roster's own totals
        completions = self.data_manager.get_completions(group_id) or None
        return FairnessScorer(config, completions)

    def _get(self, occasion_id: str) -> SelectionOccasion:
        occasion = self.data_manager.get_occasion(occasion_id)
        if occasion is None:
            raise ValidationError(f"Selection occasion {occasion_id} not found")
        return occasion

    def _save(self, occasion: SelectionOccasion):
        self.data_manager.save_occasion(occasion)
        self.data_manager.save_data()

    @staticmethod
    def _require_state(occasion: SelectionOccasion, *states: str):
        if occasion.state not in states:
            raise OccasionStateError(
                f"Occasion {occasion.id} is {occasion.state}; expected {' or '.join(states)}"
            )

    def _compute(self, occasion: SelectionOccasion) -> TurnOrderResult:
        roster = self.data_manager.get_members(occasion.group_id)
        pool = self.data_manager.get_instances_by_ids(occasion.instance_pool)
        history = self.data_manager.get_last_completed_history(occasion.group_id)
        return TurnOrderComputer(self._scorer(occasion.group_id)).compute_order(occasion, roster, history, pool)

    def available_instances(self, occasion: SelectionOccasion) -> List[WorkInstance]:
        """Pool instances nobody holds yet, re-read from the store"""
        pool = self.data_manager.get_instances_by_ids(occasion.instance_pool)
        available = [
            instance for instance in pool
            if not instance.is_assigned and instance.status not in TERMINAL_INSTANCE_STATUSES
        ]
        return sorted(available, key=lambda i: i.sort_key)

    # Preview / draft
    def preview(self, group_id: str, member_ids: List[str],
                algorithm: Union[str, SelectionAlgorithm], instance_pool: List[str]) -> TurnOrderResult:
        """Non-mutating order proposal for the given inputs"""
        occasion = SelectionOccasion(
            id="preview",
            group_id=group_id,
            member_ids=list(member_ids),
            algorithm=SelectionAlgorithm.parse(algorithm).value,
            instance_pool=list(instance_pool)
        )
        return self._compute(occasion)

    def create_occasion(self, group_id: str, member_ids: List[str],
                        algorithm: Union[str, SelectionAlgorithm], instance_pool: List[str],
                        name: str = "", occasion_id: Optional[str] = None) -> SelectionOccasion:
        """Store a draft occasion after checking its inputs"""
        algorithm = SelectionAlgorithm.parse(algorithm)
        if not member_ids:
            raise ValidationError("A selection occasion needs at least one participant")

        known = {instance.id for instance in self.data_manager.get_instances_by_ids(instance_pool)}
        missing = [instance_id for instance_id in instance_pool if instance_id not in known]
        if missing:
            raise ValidationError(f"Unknown instances in pool: {', '.join(missing)}")

        occasion_id = occasion_id or uuid.uuid4().hex
        if self.data_manager.get_occasion(occasion_id) is not None:
            raise ValidationError(f"Selection occasion {occasion_id} already exists")

        occasion = SelectionOccasion(
            id=occasion_id,
            group_id=group_id,
            name=name,
            member_ids=list(member_ids),
            algorithm=algorithm.value,
            instance_pool=list(instance_pool),
            created_at=datetime.now()
        )
        self._save(occasion)
        logger.info(f"Created draft occasion {occasion_id} for group {group_id} ({algorithm.value})")
        return occasion

    def compute(self, occasion_id: str) -> TurnOrderResult:
        """Preview the order of a stored occasion; repeatable and never writes"""
        occasion = self._get(occasion_id)
        self._require_state(occasion, OCCASION_DRAFT, OCCASION_COMPUTED)
        return self._compute(occasion)

    def commit(self, occasion_id: str, confirm: bool, activate: bool = False) -> SelectionOccasion:
        """Persist the computed order; optionally start the occasion right away"""
        if not confirm:
            raise ValidationError("Committing a turn order requires explicit confirmation")

        occasion = self._get(occasion_id)
        self._require_state(occasion, OCCASION_DRAFT, OCCASION_COMPUTED)

        result = self._compute(occasion)
        occasion.computed_turn_order = result.to_turn_entries()
        occasion.quota_per_member = result.metadata.get("quota_per_member")
        occasion.total_available_points = result.metadata.get("total_available_points")
        occasion.metadata = {
            key: value for key, value in result.metadata.items()
            if key in ("previous_occasion_id", "previous_occasion_name")
        }
        occasion.state = OCCASION_COMPUTED
        self._save(occasion)
        logger.info(f"Committed order for occasion {occasion_id}: {result.order}")

        if activate:
            return self.start(occasion_id)
        return occasion

    # Active occasion
    def start(self, occasion_id: str) -> SelectionOccasion:
        """Freeze the committed order and hand the first turn out"""
        occasion = self._get(occasion_id)
        self._require_state(occasion, OCCASION_COMPUTED)

        other = self.data_manager.get_active_occasion(occasion.group_id)
        if other is not None and other.id != occasion.id:
            raise OccasionStateError(f"Group {occasion.group_id} already has active occasion {other.id}")

        occasion.state = OCCASION_ACTIVE
        occasion.started_at = datetime.now()
        occasion.current_turn_index = 0
        occasion.computed_turn_order[0].status = TURN_ACTIVE
        self._save(occasion)
        logger.info(f"Occasion {occasion_id} started; first turn: {occasion.computed_turn_order[0].member_id}")
        return occasion

    def _require_turn(self, occasion: SelectionOccasion, member_id: str) -> TurnEntry:
        self._require_state(occasion, OCCASION_ACTIVE)
        turn = occasion.current_turn
        if turn is None or turn.member_id != member_id:
            raise OccasionStateError(f"It is not {member_id}'s turn in occasion {occasion.id}")
        return turn

    def claim_instance(self, occasion_id: str, member_id: str, instance_id: str) -> ClaimResult:
        """
        Claim one pool instance for the current turn holder. The underlying
        assignment is a compare-and-swap; ConcurrencyConflict means another
        claim got there first and the pool should be re-read.
        """
        occasion = self._get(occasion_id)
        turn = self._require_turn(occasion, member_id)
        if instance_id not in occasion.instance_pool:
            raise ValidationError(f"Instance {instance_id} is not part of occasion {occasion_id}")

        instance = self.data_manager.claim_instance(instance_id, member_id)

        turn.selections_count += 1
        turn.points_picked += instance.point_value
        occasion.selections.append(SelectionEntry(
            instance_id=instance_id,
            member_id=member_id,
            turn_order=turn.order,
            points_value=instance.point_value,
            selected_at=datetime.now()
        ))
        self._save(occasion)
        logger.info(f"{member_id} picked {instance_id} ({instance.point_value} pts) in occasion {occasion_id}")
        return ClaimResult(instance=instance, turn=turn, quota_met=is_quota_met(turn.points_picked, turn.quota))

    def suggest_pick(self, occasion_id: str, member_id: str) -> Optional[WorkInstance]:
        """Nearest-fit instance toward the member's quota; earliest instance when there is no quota"""
        occasion = self._get(occasion_id)
        turn = self._require_turn(occasion, member_id)
        available = self.available_instances(occasion)
        if turn.quota is None:
            return available[0] if available else None
        return nearest_fit_pick(turn.points_picked, turn.quota, available)

    def complete_turn(self, occasion_id: str, member_id: str) -> CompleteTurnResult:
        """Finish the current turn; the last turn completes the occasion"""
        occasion = self._get(occasion_id)
        turn = self._require_turn(occasion, member_id)

        # Under a quota a member may not pass while work is still on the table
        if not is_quota_met(turn.points_picked, turn.quota) and self.available_instances(occasion):
            raise ValidationError(
                f"{turn.display_name} has {turn.points_picked} of {turn.quota} quota points; keep picking"
            )

        turn.status = TURN_COMPLETED
        turn.completed_at = datetime.now()

        next_index = occasion.current_turn_index + 1
        if next_index >= len(occasion.computed_turn_order):
            return self._complete(occasion)

        occasion.current_turn_index = next_index
        next_turn = occasion.computed_turn_order[next_index]
        next_turn.status = TURN_ACTIVE
        self._save(occasion)
        return CompleteTurnResult(occasion_completed=False, next_member_id=next_turn.member_id)

    def close(self, occasion_id: str) -> CompleteTurnResult:
        """Complete an occasion before every turn has been taken"""
        occasion = self._get(occasion_id)
        if occasion.state != OCCASION_COMPLETED:
            self._require_state(occasion, OCCASION_ACTIVE)
        return self._complete(occasion)

    def complete_occasion(self, occasion_id: str) -> CompleteTurnResult:
        """Idempotent completion; repeating it never writes a second history record"""
        return self.close(occasion_id)

    def _complete(self, occasion: SelectionOccasion) -> CompleteTurnResult:
        if occasion.state != OCCASION_COMPLETED:
            occasion.state = OCCASION_COMPLETED
            occasion.completed_at = datetime.now()
            occasion.current_turn_index = -1
            self.data_manager.save_occasion(occasion)

        history_written = self.data_manager.save_history_record(build_history_record(occasion))

        escalations = [
            Escalation(
                instance_id=instance.id,
                reason=EscalationReason.UNPICKED,
                scheduled_at=instance.scheduled_at,
                occasion_id=occasion.id,
                message="Left unpicked when the selection occasion ended"
            )
            for instance in self.available_instances(occasion)
        ]
        if escalations:
            logger.warning(f"Occasion {occasion.id} ended with {len(escalations)} unpicked instances")

        self.data_manager.save_data()
        logger.info(f"Occasion {occasion.id} completed (history written: {history_written})")
        return CompleteTurnResult(occasion_completed=True, history_written=history_written, escalations=escalations)

    def cancel(self, occasion_id: str) -> SelectionOccasion:
        occasion = self._get(occasion_id)
        self._require_state(occasion, OCCASION_DRAFT, OCCASION_COMPUTED, OCCASION_ACTIVE)
        occasion.state = OCCASION_CANCELLED
        occasion.current_turn_index = -1
        self._save(occasion)
        logger.info(f"Occasion {occasion_id} cancelled")
        return occasion

    # Turn lookups
    @staticmethod
    def get_turn_info(occasion: SelectionOccasion, member_id: str) -> Optional[TurnInfo]:
        for index, turn in enumerate(occasion.computed_turn_order):
            if turn.member_id != member_id:
                continue
            if occasion.state == OCCASION_ACTIVE and occasion.current_turn_index >= 0:
                turns_ahead = max(0, index - occasion.current_turn_index)
            else:
                turns_ahead = index
            return TurnInfo(
                order=turn.order,
                status=turn.status,
                turns_ahead=turns_ahead,
                is_current_turn=occasion.state == OCCASION_ACTIVE and index == occasion.current_turn_index
            )
        return None


def build_history_record(occasion: SelectionOccasion) -> TurnOrderHistoryRecord:
    """Outcome of a completed occasion in the shape the next occasion reads"""
    turns = sorted(occasion.computed_turn_order, key=lambda t: t.order)
    selections: Dict[str, int] = {turn.member_id: 0 for turn in turns}
    points: Dict[str, float] = {turn.member_id: 0.0 for turn in turns}
    for entry in occasion.selections:
        selections[entry.member_id] = selections.get(entry.member_id, 0) + 1
        points[entry.member_id] = points.get(entry.member_id, 0.0) + entry.points_value

    return TurnOrderHistoryRecord(
        occasion_id=occasion.id,
        group_id=occasion.group_id,
        algorithm=occasion.algorithm,
        occasion_name=occasion.name,
        final_order=[turn.member_id for turn in turns],
        selections_per_member=selections,
        points_picked_per_member=points,
        completed_at=occasion.completed_at or datetime.now()
    )
