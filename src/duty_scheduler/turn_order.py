"""
Turn Order Computer for selection occasions

Computes the pick order (and, for draft picks, the per-member quota) for a
selection occasion from the roster, the instance pool and the group's most
recent completed occasion.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable, Union
import logging

from .config import QUOTA_DECIMALS
from .data_manager import (
    Member, WorkInstance, SelectionOccasion, TurnOrderHistoryRecord, TurnEntry,
    ValidationError, HistoryCorruption, TURN_PENDING,
)
from .fairness import FairnessScorer

logger = logging.getLogger(__name__)


class SelectionAlgorithm(Enum):
    QUOTA_BASED = "quota_based"
    POINTS_BALANCE = "points_balance"
    FAIR_ROTATION = "fair_rotation"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: Union[str, 'SelectionAlgorithm']) -> 'SelectionAlgorithm':
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(a.value for a in cls)
            raise ValidationError(f"Unknown selection algorithm {value!r}; expected one of: {valid}")


@dataclass
class TurnOrderResult:
    """Computed order plus optional per-member quota"""
    algorithm: SelectionAlgorithm
    order: List[str]
    quotas: Optional[Dict[str, float]]
    display_names: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def quota_per_member(self) -> Optional[float]:
        return self.metadata.get("quota_per_member")

    def to_turn_entries(self) -> List[TurnEntry]:
        return [
            TurnEntry(
                member_id=member_id,
                display_name=self.display_names.get(member_id, member_id),
                order=index + 1,
                quota=self.quotas.get(member_id) if self.quotas else None,
                status=TURN_PENDING
            )
            for index, member_id in enumerate(self.order)
        ]


@dataclass
class OrderContext:
    """Everything a strategy may look at; strategies never do I/O"""
    participants: List[Member]
    pool: List[WorkInstance]
    history: Optional[TurnOrderHistoryRecord]
    scorer: FairnessScorer


def alphabetical(members: Iterable[Member]) -> List[Member]:
    return sorted(members, key=lambda m: m.name_key)


def order_from_history(history_order: List[str], participants: List[Member]) -> List[Member]:
    """Follow history_order for known participants, then newcomers alphabetically"""
    by_id = {member.id: member for member in participants}
    ordered = []
    for member_id in history_order:
        member = by_id.pop(member_id, None)
        if member is not None:
            ordered.append(member)
    ordered.extend(alphabetical(by_id.values()))
    return ordered


def nearest_fit_pick(accumulated: float, quota: float,
                     available: Iterable[WorkInstance]) -> Optional[WorkInstance]:
    """
    Draft pick rule: the single available instance whose point value brings the
    member closest to quota, i.e. minimizing |accumulated + value - quota|.
    Overshoot is allowed. Ties go to the earliest instance, then the lowest id.
    """
    return min(
        available,
        key=lambda i: (abs(accumulated + i.point_value - quota), i.scheduled_at, i.id),
        default=None
    )


def is_quota_met(accumulated: float, quota: Optional[float]) -> bool:
    return quota is None or accumulated >= quota


class TurnOrderStrategy:
    """One selectable algorithm"""
    algorithm: SelectionAlgorithm
    uses_history = False

    def order(self, context: OrderContext) -> List[Member]:
        raise NotImplementedError

    def quotas(self, context: OrderContext) -> Optional[Dict[str, float]]:
        return None

    def metadata(self, context: OrderContext) -> Dict[str, Any]:
        return {}


class QuotaBasedDraftPick(TurnOrderStrategy):
    """Reverse of last occasion's order; everyone picks up to an equal point quota"""
    algorithm = SelectionAlgorithm.QUOTA_BASED
    uses_history = True

    @staticmethod
    def total_points(context: OrderContext) -> float:
        return sum(instance.point_value for instance in context.pool)

    def quota_per_member(self, context: OrderContext) -> float:
        return round(self.total_points(context) / len(context.participants), QUOTA_DECIMALS)

    def order(self, context: OrderContext) -> List[Member]:
        if context.history is None:
            return alphabetical(context.participants)
        return order_from_history(list(reversed(context.history.final_order)), context.participants)

    def quotas(self, context: OrderContext) -> Optional[Dict[str, float]]:
        quota = self.quota_per_member(context)
        return {member.id: quota for member in context.participants}

    def metadata(self, context: OrderContext) -> Dict[str, Any]:
        return {
            "total_available_points": self.total_points(context),
            "quota_per_member": self.quota_per_member(context)
        }


class PointsBalance(TurnOrderStrategy):
    """Fewest points within the memory horizon picks first; no quota"""
    algorithm = SelectionAlgorithm.POINTS_BALANCE

    def order(self, context: OrderContext) -> List[Member]:
        points = context.scorer.points_for_roster(context.participants)
        return sorted(
            context.participants,
            key=lambda m: (context.scorer.has_history(m), points[m.id], m.name_key)
        )

    def metadata(self, context: OrderContext) -> Dict[str, Any]:
        return {"member_points": context.scorer.points_for_roster(context.participants)}


class FairRotation(TurnOrderStrategy):
    """Last occasion's order shifted left by one: the first picker moves to the end"""
    algorithm = SelectionAlgorithm.FAIR_ROTATION
    uses_history = True

    def order(self, context: OrderContext) -> List[Member]:
        if context.history is None:
            return alphabetical(context.participants)
        previous = context.history.final_order
        return order_from_history(previous[1:] + previous[:1], context.participants)


class ManualOrder(TurnOrderStrategy):
    """Participants in the order the administrator listed them"""
    algorithm = SelectionAlgorithm.MANUAL

    def order(self, context: OrderContext) -> List[Member]:
        return list(context.participants)


STRATEGIES: Dict[SelectionAlgorithm, TurnOrderStrategy] = {
    strategy.algorithm: strategy
    for strategy in (QuotaBasedDraftPick(), PointsBalance(), FairRotation(), ManualOrder())
}


class TurnOrderComputer:
    """Pure turn order computation shared by previews and live occasions"""

    def __init__(self, scorer: FairnessScorer):
        self.scorer = scorer

    def compute_order(self, occasion: SelectionOccasion, roster: Iterable[Member],
                      history: Union[TurnOrderHistoryRecord, Dict[str, Any], None],
                      pool: Iterable[WorkInstance]) -> TurnOrderResult:
        """
        Args:
            occasion: Occasion inputs (participants, algorithm, instance pool ids)
            roster: Every member of the occasion's roster group
            history: Last completed occasion of the group, raw or parsed, or None
            pool: Instances available for picking

        Returns:
            TurnOrderResult; nothing is written back to the occasion
        """
        algorithm = SelectionAlgorithm.parse(occasion.algorithm)
        strategy = STRATEGIES[algorithm]
        roster = list(roster)
        participants = self._resolve_participants(occasion, roster)

        pool_ids = set(occasion.instance_pool)
        pool = [instance for instance in pool if instance.id in pool_ids]
        for instance in pool:
            if instance.point_value < 0:
                raise ValidationError(f"Instance {instance.id} has a negative point value")

        record = self.load_history(history, roster, occasion.group_id) if strategy.uses_history else None
        context = OrderContext(participants=participants, pool=pool, history=record, scorer=self.scorer)

        ordered = strategy.order(context)
        metadata = strategy.metadata(context)
        if record is not None:
            metadata["previous_occasion_id"] = record.occasion_id
            metadata["previous_occasion_name"] = record.occasion_name

        result = TurnOrderResult(
            algorithm=algorithm,
            order=[member.id for member in ordered],
            quotas=strategy.quotas(context),
            display_names={member.id: member.display_name for member in participants},
            metadata=metadata
        )
        logger.info(f"Computed {algorithm.value} order for occasion {occasion.id}: {result.order}")
        return result

    @staticmethod
    def _resolve_participants(occasion: SelectionOccasion, roster: List[Member]) -> List[Member]:
        if not occasion.member_ids:
            raise ValidationError(f"Occasion {occasion.id} has no participants")
        if len(set(occasion.member_ids)) != len(occasion.member_ids):
            raise ValidationError(f"Occasion {occasion.id} lists a participant twice")

        by_id = {member.id: member for member in roster}
        unknown = [member_id for member_id in occasion.member_ids if member_id not in by_id]
        if unknown:
            raise ValidationError(f"Participants not on the roster: {', '.join(unknown)}")
        return [by_id[member_id] for member_id in occasion.member_ids]

    @staticmethod
    def load_history(history: Union[TurnOrderHistoryRecord, Dict[str, Any], None],
                     roster: List[Member], group_id: str) -> Optional[TurnOrderHistoryRecord]:
        """Parsed history, or None when there is none or it cannot be trusted"""
        if history is None:
            return None

        try:
            record = history if isinstance(history, TurnOrderHistoryRecord) else TurnOrderHistoryRecord.from_dict(history)
            if record.group_id != group_id:
                raise HistoryCorruption(f"History {record.occasion_id} belongs to group {record.group_id}, not {group_id}")
            roster_ids = {member.id for member in roster}
            stale = [member_id for member_id in record.final_order if member_id not in roster_ids]
            if stale:
                raise HistoryCorruption(
                    f"History {record.occasion_id} references members no longer on the roster: {', '.join(stale)}"
                )
        except HistoryCorruption as e:
            logger.warning(f"Ignoring turn order history, falling back to alphabetical order: {e}")
            return None

        return record
