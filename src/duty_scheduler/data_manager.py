"""
Data Manager for the Duty Scheduler

Handles JSON persistence and CRUD operations for the roster, work instances,
completion history, selection occasions and turn order history, plus the
domain records and exceptions shared by the fairness engine.
"""

import json
import logging
import threading
from datetime import datetime, date
from typing import Dict, List, Optional, Any, Set, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .config import FairnessConfig


class DutySchedulerError(Exception):
    """Base exception for the fairness engine"""
    pass


class ValidationError(DutySchedulerError):
    """Raised when inputs are malformed; nothing has been computed"""
    pass


class OccasionStateError(ValidationError):
    """Raised when a selection occasion is asked for an illegal transition"""
    pass


class ConcurrencyConflict(DutySchedulerError):
    """Raised when a claim loses the compare-and-swap race"""

    def __init__(self, instance_id: str, message: Optional[str] = None):
        self.instance_id = instance_id
        super().__init__(message or f"Instance {instance_id} is no longer available")


class HistoryCorruption(DutySchedulerError):
    """Raised when a turn order history record cannot be trusted"""
    pass


class DataManagerError(DutySchedulerError):
    """Base exception for DataManager operations"""
    pass


class DataFileCorruptedError(DataManagerError):
    """Raised when the data file is corrupted"""
    pass


class DataFileNotFoundError(DataManagerError):
    """Raised when the data file is not found"""
    pass


class DataSaveError(DataManagerError):
    """Raised when saving data fails"""
    pass


class DataValidationError(DataManagerError):
    """Raised when data validation fails"""
    pass


APP_VERSION = "1.0.0"

MEMBER_ACTIVE = "active"
MEMBER_INACTIVE = "inactive"

INSTANCE_UNASSIGNED = "unassigned"
INSTANCE_ASSIGNED = "assigned"
INSTANCE_COMPLETED = "completed"
INSTANCE_MISSED = "missed"
INSTANCE_CANCELLED = "cancelled"
TERMINAL_INSTANCE_STATUSES = (INSTANCE_COMPLETED, INSTANCE_MISSED, INSTANCE_CANCELLED)

OCCASION_DRAFT = "draft"
OCCASION_COMPUTED = "computed"
OCCASION_ACTIVE = "active"
OCCASION_COMPLETED = "completed"
OCCASION_CANCELLED = "cancelled"

TURN_PENDING = "pending"
TURN_ACTIVE = "active"
TURN_COMPLETED = "completed"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_minutes(value: str) -> int:
    """Convert "HH:MM" to minutes after midnight ("24:00" is allowed as an end)"""
    try:
        hours, minutes = value.split(":")
        total = int(hours) * 60 + int(minutes)
    except (ValueError, AttributeError):
        raise ValidationError(f"Invalid time value: {value!r}")
    if not 0 <= total <= 24 * 60 or not 0 <= int(minutes) < 60:
        raise ValidationError(f"Invalid time value: {value!r}")
    return total


@dataclass(frozen=True)
class TimeSlot:
    """Time range within a day, "HH:MM" to "HH:MM" (end exclusive)"""
    start: str
    end: str

    def __post_init__(self):
        if _parse_minutes(self.end) <= _parse_minutes(self.start):
            raise ValidationError(f"Time slot end {self.end} must be after start {self.start}")

    @property
    def start_minutes(self) -> int:
        return _parse_minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return _parse_minutes(self.end)

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'TimeSlot':
        return cls(start=data["start"], end=data["end"])


@dataclass
class AvailabilityRule:
    """Recurring weekly rule; day_of_week follows date.weekday() (0=Monday)"""
    day_of_week: int
    time_slots: List[TimeSlot] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dayOfWeek": self.day_of_week,
            "timeSlots": [slot.to_dict() for slot in self.time_slots]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AvailabilityRule':
        day_of_week = int(data["dayOfWeek"])
        if not 0 <= day_of_week <= 6:
            raise ValidationError(f"dayOfWeek must be 0-6, got {day_of_week}")
        return cls(
            day_of_week=day_of_week,
            time_slots=[TimeSlot.from_dict(slot) for slot in data.get("timeSlots", [])]
        )


@dataclass
class MemberAvailability:
    """Blackout rules plus soft preferred times"""
    never_available: List[AvailabilityRule] = field(default_factory=list)
    preferred_times: List[AvailabilityRule] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "neverAvailable": [rule.to_dict() for rule in self.never_available],
            "preferredTimes": [rule.to_dict() for rule in self.preferred_times]
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MemberAvailability':
        data = data or {}
        return cls(
            never_available=[AvailabilityRule.from_dict(r) for r in data.get("neverAvailable", [])],
            preferred_times=[AvailabilityRule.from_dict(r) for r in data.get("preferredTimes", [])]
        )


@dataclass
class MemberLimits:
    """Optional per-period shift limits"""
    min_per_week: Optional[int] = None
    max_per_week: Optional[int] = None
    min_per_month: Optional[int] = None
    max_per_month: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minPerWeek": self.min_per_week,
            "maxPerWeek": self.max_per_week,
            "minPerMonth": self.min_per_month,
            "maxPerMonth": self.max_per_month
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MemberLimits':
        data = data or {}
        # Accept the older "maxShiftsPerWeek" style keys as well
        return cls(
            min_per_week=data.get("minPerWeek", data.get("minShiftsPerWeek")),
            max_per_week=data.get("maxPerWeek", data.get("maxShiftsPerWeek")),
            min_per_month=data.get("minPerMonth", data.get("minShiftsPerMonth")),
            max_per_month=data.get("maxPerMonth", data.get("maxShiftsPerMonth"))
        )


@dataclass
class Member:
    """Roster entry eligible for work distribution"""
    id: str
    display_name: str
    status: str = MEMBER_ACTIVE
    email: str = ""
    historical_points: float = 0.0
    availability: MemberAvailability = field(default_factory=MemberAvailability)
    limits: MemberLimits = field(default_factory=MemberLimits)
    skills: Set[str] = field(default_factory=set)
    group_ids: Set[str] = field(default_factory=set)  # Empty = access to every group

    @property
    def is_active(self) -> bool:
        return self.status == MEMBER_ACTIVE

    @property
    def name_key(self):
        """Alphabetical sort key, id as the final tie-break"""
        return (self.display_name.casefold(), self.id)

    def belongs_to(self, group_id: Optional[str]) -> bool:
        return group_id is None or not self.group_ids or group_id in self.group_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "status": self.status,
            "email": self.email,
            "historicalPoints": self.historical_points,
            "availability": self.availability.to_dict(),
            "limits": self.limits.to_dict(),
            "skills": sorted(self.skills),
            "groupIds": sorted(self.group_ids)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Member':
        return cls(
            id=str(data["id"]),
            display_name=data.get("displayName") or data.get("email") or str(data["id"]),
            status=data.get("status", MEMBER_ACTIVE),
            email=data.get("email", ""),
            historical_points=float(data.get("historicalPoints", 0) or 0),
            availability=MemberAvailability.from_dict(data.get("availability")),
            limits=MemberLimits.from_dict(data.get("limits")),
            skills=set(data.get("skills", [])),
            group_ids=set(data.get("groupIds", []))
        )


@dataclass
class WorkInstance:
    """One unit of assignable work (a shift or a routine occurrence)"""
    id: str
    scheduled_at: datetime
    point_value: float = 1.0
    end_at: Optional[datetime] = None
    name: str = ""
    group_id: Optional[str] = None
    eligible_member_ids: Optional[Set[str]] = None
    required_skill: Optional[str] = None
    assigned_member_id: Optional[str] = None
    status: str = INSTANCE_UNASSIGNED
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    points_awarded: Optional[float] = None

    @property
    def is_assigned(self) -> bool:
        return self.assigned_member_id is not None

    @property
    def sort_key(self):
        return (self.scheduled_at, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scheduledAt": _format_datetime(self.scheduled_at),
            "endAt": _format_datetime(self.end_at),
            "pointValue": self.point_value,
            "name": self.name,
            "groupId": self.group_id,
            "eligibleMemberIds": sorted(self.eligible_member_ids) if self.eligible_member_ids is not None else None,
            "requiredSkill": self.required_skill,
            "assignedMemberId": self.assigned_member_id,
            "status": self.status,
            "completedAt": _format_datetime(self.completed_at),
            "completedBy": self.completed_by,
            "pointsAwarded": self.points_awarded
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkInstance':
        eligible = data.get("eligibleMemberIds")
        return cls(
            id=str(data["id"]),
            scheduled_at=_parse_datetime(data["scheduledAt"]),
            end_at=_parse_datetime(data.get("endAt")),
            point_value=float(data.get("pointValue", 1) or 0),
            name=data.get("name", ""),
            group_id=data.get("groupId"),
            eligible_member_ids=set(eligible) if eligible is not None else None,
            required_skill=data.get("requiredSkill"),
            assigned_member_id=data.get("assignedMemberId"),
            status=data.get("status", INSTANCE_UNASSIGNED),
            completed_at=_parse_datetime(data.get("completedAt")),
            completed_by=data.get("completedBy"),
            points_awarded=data.get("pointsAwarded")
        )


@dataclass
class CompletionRecord:
    """Points earned by a member for a completed instance"""
    member_id: str
    points: float
    completed_at: datetime
    instance_id: Optional[str] = None
    group_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memberId": self.member_id,
            "points": self.points,
            "completedAt": _format_datetime(self.completed_at),
            "instanceId": self.instance_id,
            "groupId": self.group_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompletionRecord':
        return cls(
            member_id=str(data["memberId"]),
            points=float(data.get("points", 0)),
            completed_at=_parse_datetime(data["completedAt"]),
            instance_id=data.get("instanceId"),
            group_id=data.get("groupId")
        )


@dataclass
class SelectionEntry:
    """What a member picked during their turn"""
    instance_id: str
    member_id: str
    turn_order: int
    points_value: float
    selected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "memberId": self.member_id,
            "turnOrder": self.turn_order,
            "pointsValue": self.points_value,
            "selectedAt": _format_datetime(self.selected_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SelectionEntry':
        return cls(
            instance_id=data["instanceId"],
            member_id=data["memberId"],
            turn_order=int(data["turnOrder"]),
            points_value=float(data.get("pointsValue", 0)),
            selected_at=_parse_datetime(data["selectedAt"])
        )


@dataclass
class TurnEntry:
    """One slot in an occasion's turn order (order is 1-based)"""
    member_id: str
    display_name: str
    order: int
    quota: Optional[float] = None
    status: str = TURN_PENDING
    selections_count: int = 0
    points_picked: float = 0.0
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memberId": self.member_id,
            "displayName": self.display_name,
            "order": self.order,
            "quota": self.quota,
            "status": self.status,
            "selectionsCount": self.selections_count,
            "pointsPicked": self.points_picked,
            "completedAt": _format_datetime(self.completed_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TurnEntry':
        return cls(
            member_id=data["memberId"],
            display_name=data.get("displayName", data["memberId"]),
            order=int(data["order"]),
            quota=data.get("quota"),
            status=data.get("status", TURN_PENDING),
            selections_count=int(data.get("selectionsCount", 0)),
            points_picked=float(data.get("pointsPicked", 0)),
            completed_at=_parse_datetime(data.get("completedAt"))
        )


@dataclass
class SelectionOccasion:
    """A bounded event where members pick their own instances from a pool"""
    id: str
    group_id: str
    member_ids: List[str]
    algorithm: str
    instance_pool: List[str]
    name: str = ""
    state: str = OCCASION_DRAFT
    computed_turn_order: List[TurnEntry] = field(default_factory=list)
    quota_per_member: Optional[float] = None
    total_available_points: Optional[float] = None
    current_turn_index: int = -1
    selections: List[SelectionEntry] = field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def current_turn(self) -> Optional[TurnEntry]:
        if 0 <= self.current_turn_index < len(self.computed_turn_order):
            return self.computed_turn_order[self.current_turn_index]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "groupId": self.group_id,
            "name": self.name,
            "memberIds": list(self.member_ids),
            "algorithm": self.algorithm,
            "instancePool": list(self.instance_pool),
            "state": self.state,
            "computedTurnOrder": [turn.to_dict() for turn in self.computed_turn_order],
            "quotaPerMember": self.quota_per_member,
            "totalAvailablePoints": self.total_available_points,
            "currentTurnIndex": self.current_turn_index,
            "selections": [entry.to_dict() for entry in self.selections],
            "createdAt": _format_datetime(self.created_at),
            "startedAt": _format_datetime(self.started_at),
            "completedAt": _format_datetime(self.completed_at),
            "metadata": self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SelectionOccasion':
        return cls(
            id=data["id"],
            group_id=data["groupId"],
            name=data.get("name", ""),
            member_ids=list(data.get("memberIds", [])),
            algorithm=data["algorithm"],
            instance_pool=list(data.get("instancePool", [])),
            state=data.get("state", OCCASION_DRAFT),
            computed_turn_order=[TurnEntry.from_dict(t) for t in data.get("computedTurnOrder", [])],
            quota_per_member=data.get("quotaPerMember"),
            total_available_points=data.get("totalAvailablePoints"),
            current_turn_index=int(data.get("currentTurnIndex", -1)),
            selections=[SelectionEntry.from_dict(s) for s in data.get("selections", [])],
            created_at=_parse_datetime(data.get("createdAt")),
            started_at=_parse_datetime(data.get("startedAt")),
            completed_at=_parse_datetime(data.get("completedAt")),
            metadata=data.get("metadata", {})
        )


@dataclass(frozen=True)
class TurnOrderHistoryRecord:
    """Immutable outcome of one completed selection occasion"""
    occasion_id: str
    group_id: str
    algorithm: str
    final_order: List[str]
    selections_per_member: Dict[str, int]
    points_picked_per_member: Dict[str, float]
    completed_at: datetime
    occasion_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "occasionId": self.occasion_id,
            "groupId": self.group_id,
            "algorithm": self.algorithm,
            "occasionName": self.occasion_name,
            "finalOrder": list(self.final_order),
            "selectionsPerMember": dict(self.selections_per_member),
            "pointsPickedPerMember": dict(self.points_picked_per_member),
            "completedAt": _format_datetime(self.completed_at)
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TurnOrderHistoryRecord':
        """Parse a stored record, raising HistoryCorruption when it cannot be trusted"""
        if not isinstance(data, dict):
            raise HistoryCorruption("History record is not a document")

        missing = [key for key in ("occasionId", "groupId", "finalOrder", "completedAt") if key not in data]
        if missing:
            raise HistoryCorruption(f"History record missing required fields: {', '.join(missing)}")

        final_order = data["finalOrder"]
        if not isinstance(final_order, list) or not final_order:
            raise HistoryCorruption(f"History record {data['occasionId']} has an empty final order")
        if len(set(final_order)) != len(final_order):
            raise HistoryCorruption(f"History record {data['occasionId']} repeats members in its final order")

        try:
            completed_at = _parse_datetime(data["completedAt"])
        except (TypeError, ValueError) as e:
            raise HistoryCorruption(f"History record {data['occasionId']} has a bad completion time: {e}")

        return cls(
            occasion_id=data["occasionId"],
            group_id=data["groupId"],
            algorithm=data.get("algorithm", "manual"),
            occasion_name=data.get("occasionName", ""),
            final_order=[str(member_id) for member_id in final_order],
            selections_per_member=dict(data.get("selectionsPerMember", {})),
            points_picked_per_member=dict(data.get("pointsPickedPerMember", {})),
            completed_at=completed_at
        )


class DataManager:
    """Manages all data persistence and the single roster source"""

    def __init__(self, data_file: str = "data/duty_data.json"):
        if data_file == "data/duty_data.json":
            # Use path relative to the package directory
            data_file = Path(__file__).parent.parent / "data" / "duty_data.json"
        self.data_file = Path(data_file)
        self._lock = threading.RLock()
        self.data = self._load_or_create_data()

    def _read_file(self, path: Path) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _recover_from_backup(self) -> Optional[Dict[str, Any]]:
        """Restore the .bak file over the main file; None when there is nothing usable"""
        backup_file = self.data_file.with_suffix('.bak')
        if not backup_file.exists():
            return None
        try:
            logging.info(f"Attempting recovery from backup file {backup_file}")
            data = self._read_file(backup_file)
        except (json.JSONDecodeError, IOError) as backup_e:
            logging.error(f"Backup file corrupted: {backup_e}")
            logging.info("Creating default data due to corrupted backup")
            return self._create_default_data()
        backup_file.replace(self.data_file)
        logging.info("Successfully recovered data from backup")
        return self._validate_and_migrate_data(data)

    def _load_or_create_data(self) -> Dict[str, Any]:
        """Load existing data or create default structure with recovery from backup"""
        if not self.data_file.exists():
            recovered = self._recover_from_backup()
            if recovered is not None:
                return recovered
            logging.info("No data file found, creating default data")
            return self._create_default_data()

        try:
            return self._validate_and_migrate_data(self._read_file(self.data_file))
        except (json.JSONDecodeError, IOError) as e:
            logging.error(f"Error loading main data file {self.data_file}: {e}")
            recovered = self._recover_from_backup()
            if recovered is None:
                raise DataFileCorruptedError(f"Main data file corrupted and no backup available: {e}")
            return recovered

    def _validate_and_migrate_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and migrate data structure to current version"""
        default_data = self._create_default_data()

        for key in default_data:
            if key not in data:
                data[key] = default_data[key]
        data["settings"].setdefault("pointsSystem", {})
        data["settings"].setdefault("groups", {})

        # Older files kept a second "stableMembers" roster; fold it into the
        # single members list once, first entry per id wins.
        legacy_members = data.pop("stableMembers", None)
        if legacy_members:
            known_ids = {str(m["id"]) for m in data["members"]}
            for legacy in legacy_members:
                legacy_id = str(legacy.get("id", legacy.get("userId", "")))
                if legacy_id and legacy_id not in known_ids:
                    legacy.setdefault("id", legacy_id)
                    data["members"].append(legacy)
                    known_ids.add(legacy_id)
            logging.info(f"Migrated {len(legacy_members)} legacy roster entries into members")

        return data

    def _create_default_data(self) -> Dict[str, Any]:
        """Create default, empty data structure"""
        return {
            "settings": {
                "appVersion": APP_VERSION,
                "dataFile": str(self.data_file),
                "pointsSystem": {},  # Organization-wide FairnessConfig settings
                "groups": {}  # {group_id: {"pointsSystem": {...}}}
            },
            "members": [],
            "instances": [],
            "completions": [],
            "occasions": [],
            "turnOrderHistory": [],
            "manualAdjustments": {}
        }

    def _validate_saved_data(self) -> bool:
        """Validate that the saved data file matches current data"""
        try:
            if not self.data_file.exists():
                raise DataFileNotFoundError(f"Saved data file {self.data_file} does not exist")

            saved_data = self._read_file(self.data_file)

            required_keys = ["settings", "members", "instances", "occasions", "turnOrderHistory"]
            for key in required_keys:
                if key not in saved_data:
                    raise DataValidationError(f"Required section '{key}' missing from saved data")

            if saved_data.get("settings", {}).get("appVersion") != self.data.get("settings", {}).get("appVersion"):
                raise DataValidationError("App version mismatch in saved data")

            return True

        except (json.JSONDecodeError, IOError) as e:
            raise DataValidationError(f"Failed to validate saved data: {e}")

    def save_data(self) -> bool:
        """Save current data to file atomically with validation"""
        temp_file = None
        backup_file = self.data_file.with_suffix('.bak')

        with self._lock:
            try:
                self.data_file.parent.mkdir(parents=True, exist_ok=True)
                if self.data_file.exists():
                    self.data_file.replace(backup_file)

                # Write to temporary file first, then rename over the target
                temp_file = self.data_file.with_suffix('.tmp')
                with open(temp_file, 'w', encoding='utf-8') as f:
                    json.dump(self.data, f, indent=2, ensure_ascii=False)
                temp_file.replace(self.data_file)

                self._validate_saved_data()
                return True

            except DataValidationError as e:
                logging.error(f"Data validation failed after save: {e}", exc_info=True)
                if backup_file.exists():
                    try:
                        backup_file.replace(self.data_file)
                    except OSError as restore_e:
                        logging.error(f"Failed to restore from backup: {restore_e}", exc_info=True)
                raise DataSaveError(f"Save operation failed validation: {e}")

            except (IOError, OSError) as e:
                logging.error(f"I/O error during save operation: {e}", exc_info=True)
                raise DataSaveError(f"Failed to save data due to I/O error: {e}")

            except (TypeError, ValueError) as e:
                logging.error(f"Unserializable data during save operation: {e}", exc_info=True)
                raise DataSaveError(f"Unexpected error during save: {e}")

            finally:
                if temp_file and temp_file.exists():
                    try:
                        temp_file.unlink()
                    except OSError as cleanup_e:
                        logging.error(f"Failed to clean up temporary file {temp_file}: {cleanup_e}", exc_info=True)

    # Roster
    def get_members(self, group_id: Optional[str] = None, active_only: bool = False) -> List[Member]:
        """Single roster source: every member with access to the group"""
        members = []
        for member_data in self.data.get("members", []):
            member = Member.from_dict(member_data)
            if not member.belongs_to(group_id):
                continue
            if active_only and not member.is_active:
                continue
            members.append(member)
        return members

    def get_member(self, member_id: str) -> Optional[Member]:
        data = self._find_member_data(member_id)
        return Member.from_dict(data) if data else None

    def _find_member_data(self, member_id: str) -> Optional[Dict[str, Any]]:
        for member_data in self.data.get("members", []):
            if str(member_data["id"]) == member_id:
                return member_data
        return None

    def add_member(self, member: Member) -> Member:
        """Add a member; ids are owned by the directory service and must be unique"""
        if self._find_member_data(member.id) is not None:
            raise ValidationError(f"Member {member.id} already exists")
        self.data.setdefault("members", []).append(member.to_dict())
        return member

    def update_member(self, member: Member) -> bool:
        members = self.data.get("members", [])
        for index, member_data in enumerate(members):
            if str(member_data["id"]) == member.id:
                members[index] = member.to_dict()
                return True
        return False

    def remove_member(self, member_id: str) -> bool:
        """Remove from the roster; history records keep the id and are handled as stale"""
        members = self.data.get("members", [])
        remaining = [m for m in members if str(m["id"]) != member_id]
        if len(remaining) == len(members):
            return False
        self.data["members"] = remaining
        return True

    # Work instances
    def get_instances(self, group_id: Optional[str] = None, unassigned_only: bool = False,
                      start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[WorkInstance]:
        """Instances scoped to a group and an inclusive date range, chronological"""
        if start is not None and end is not None and end <= start:
            raise ValidationError(f"Date range {start} to {end} is empty")
        instances = []
        for instance_data in self.data.get("instances", []):
            instance = WorkInstance.from_dict(instance_data)
            if group_id is not None and instance.group_id != group_id:
                continue
            if unassigned_only and (instance.is_assigned or instance.status in TERMINAL_INSTANCE_STATUSES):
                continue
            if start is not None and instance.scheduled_at < start:
                continue
            if end is not None and instance.scheduled_at > end:
                continue
            instances.append(instance)
        return sorted(instances, key=lambda i: i.sort_key)

    def get_instance(self, instance_id: str) -> Optional[WorkInstance]:
        data = self._find_instance_data(instance_id)
        return WorkInstance.from_dict(data) if data else None

    def get_instances_by_ids(self, instance_ids: Iterable[str]) -> List[WorkInstance]:
        wanted = set(instance_ids)
        return [WorkInstance.from_dict(d) for d in self.data.get("instances", []) if d["id"] in wanted]

    def _find_instance_data(self, instance_id: str) -> Optional[Dict[str, Any]]:
        for instance_data in self.data.get("instances", []):
            if instance_data["id"] == instance_id:
                return instance_data
        return None

    def add_instance(self, instance: WorkInstance) -> WorkInstance:
        if instance.point_value < 0:
            raise ValidationError(f"Instance {instance.id} has a negative point value")
        if self._find_instance_data(instance.id) is not None:
            raise ValidationError(f"Instance {instance.id} already exists")
        self.data.setdefault("instances", []).append(instance.to_dict())
        return instance

    def claim_instance(self, instance_id: str, member_id: str,
                       expected_member_id: Optional[str] = None) -> WorkInstance:
        """
        Compare-and-swap claim: succeeds only while the instance is still
        held by expected_member_id (None = unassigned). Losers get
        ConcurrencyConflict and must re-read the pool.

        The check runs against this manager's in-memory data under its lock,
        so it is atomic across threads sharing one DataManager. Two managers
        (or processes) on the same file do not see each other's claims; run
        a single manager per data file.
        """
        with self._lock:
            instance_data = self._find_instance_data(instance_id)
            if instance_data is None:
                raise ValidationError(f"Unknown instance {instance_id}")

            current = instance_data.get("assignedMemberId")
            status = instance_data.get("status", INSTANCE_UNASSIGNED)
            if current != expected_member_id or status in TERMINAL_INSTANCE_STATUSES:
                logging.info(f"Claim on {instance_id} by {member_id} lost (held by {current}, status {status})")
                raise ConcurrencyConflict(instance_id)

            instance_data["assignedMemberId"] = member_id
            instance_data["status"] = INSTANCE_ASSIGNED if member_id is not None else INSTANCE_UNASSIGNED
            return WorkInstance.from_dict(instance_data)

    def release_instance(self, instance_id: str, member_id: str) -> WorkInstance:
        """Return an assigned instance to the pool (assignment cancelled)"""
        return self.claim_instance(instance_id, None, expected_member_id=member_id)

    def apply_assignments(self, assignments: Dict[str, Optional[str]], is_manual: bool = False) -> int:
        """Persist a distribution map; None entries are left unassigned"""
        applied = 0
        with self._lock:
            for instance_id, member_id in assignments.items():
                instance_data = self._find_instance_data(instance_id)
                if instance_data is None or member_id is None:
                    continue
                if instance_data.get("assignedMemberId") == member_id:
                    continue
                instance_data["assignedMemberId"] = member_id
                instance_data["status"] = INSTANCE_ASSIGNED
                applied += 1
                if is_manual:
                    self._track_manual_adjustment(instance_id, member_id)
        return applied

    def apply_distribution(self, result) -> int:
        """Persist an AutoDistributor result and save to disk"""
        applied = self.apply_assignments(result.assignments)
        self.save_data()
        logging.info(f"Applied {applied} assignments from distribution ({len(result.escalations)} escalations)")
        return applied

    def _track_manual_adjustment(self, instance_id: str, member_id: Optional[str]):
        """Track manual adjustments for reporting"""
        self.data.setdefault("manualAdjustments", {})[instance_id] = {
            "instanceId": instance_id,
            "memberId": member_id,
            "timestamp": datetime.now().isoformat()
        }

    def is_manual_assignment(self, instance_id: str) -> bool:
        return instance_id in self.data.get("manualAdjustments", {})

    def complete_instance(self, instance_id: str, completed_at: Optional[datetime] = None,
                          points_awarded: Optional[float] = None) -> CompletionRecord:
        """Mark the assignee's instance completed and log the points it earned"""
        with self._lock:
            instance_data = self._find_instance_data(instance_id)
            if instance_data is None:
                raise ValidationError(f"Unknown instance {instance_id}")
            member_id = instance_data.get("assignedMemberId")
            if member_id is None:
                raise ValidationError(f"Instance {instance_id} has no assignee to credit")

            completed_at = completed_at or datetime.now()
            points = points_awarded if points_awarded is not None else float(instance_data.get("pointValue", 0))
            instance_data.update({
                "status": INSTANCE_COMPLETED,
                "completedAt": completed_at.isoformat(),
                "completedBy": member_id,
                "pointsAwarded": points
            })
            record = CompletionRecord(
                member_id=member_id,
                points=points,
                completed_at=completed_at,
                instance_id=instance_id,
                group_id=instance_data.get("groupId")
            )
            self.add_completion(record)
            return record

    # Completion history
    def get_completions(self, group_id: Optional[str] = None) -> List[CompletionRecord]:
        records = [CompletionRecord.from_dict(d) for d in self.data.get("completions", [])]
        if group_id is not None:
            records = [r for r in records if r.group_id == group_id]
        return records

    def add_completion(self, record: CompletionRecord):
        self.data.setdefault("completions", []).append(record.to_dict())

    # Selection occasions
    def get_occasion(self, occasion_id: str) -> Optional[SelectionOccasion]:
        for occasion_data in self.data.get("occasions", []):
            if occasion_data["id"] == occasion_id:
                return SelectionOccasion.from_dict(occasion_data)
        return None

    def list_occasions(self, group_id: Optional[str] = None, state: Optional[str] = None) -> List[SelectionOccasion]:
        occasions = [SelectionOccasion.from_dict(d) for d in self.data.get("occasions", [])]
        return [
            o for o in occasions
            if (group_id is None or o.group_id == group_id) and (state is None or o.state == state)
        ]

    def get_active_occasion(self, group_id: str) -> Optional[SelectionOccasion]:
        """A group has at most one active occasion"""
        active = self.list_occasions(group_id, OCCASION_ACTIVE)
        return active[0] if active else None

    def save_occasion(self, occasion: SelectionOccasion):
        with self._lock:
            occasions = self.data.setdefault("occasions", [])
            for index, occasion_data in enumerate(occasions):
                if occasion_data["id"] == occasion.id:
                    occasions[index] = occasion.to_dict()
                    return
            occasions.append(occasion.to_dict())

    def delete_occasion(self, occasion_id: str) -> bool:
        occasions = self.data.get("occasions", [])
        remaining = [o for o in occasions if o["id"] != occasion_id]
        self.data["occasions"] = remaining
        return len(remaining) != len(occasions)

    # Turn order history
    def get_history_documents(self, group_id: str) -> List[Dict[str, Any]]:
        """Raw history documents for a group, most recently completed first"""
        documents = [
            d for d in self.data.get("turnOrderHistory", [])
            if isinstance(d, dict) and d.get("groupId") == group_id
        ]
        return sorted(documents, key=lambda d: str(d.get("completedAt", "")), reverse=True)

    def get_last_completed_history(self, group_id: str) -> Optional[Dict[str, Any]]:
        """Most recent raw history document; parsing is left to the caller"""
        documents = self.get_history_documents(group_id)
        return documents[0] if documents else None

    def has_history_for(self, occasion_id: str) -> bool:
        return any(
            isinstance(d, dict) and d.get("occasionId") == occasion_id
            for d in self.data.get("turnOrderHistory", [])
        )

    def save_history_record(self, record: TurnOrderHistoryRecord) -> bool:
        """Write once per occasion id; returns False when the record already exists"""
        with self._lock:
            if self.has_history_for(record.occasion_id):
                logging.info(f"History for occasion {record.occasion_id} already recorded, skipping")
                return False
            self.data.setdefault("turnOrderHistory", []).append(record.to_dict())
            return True

    def set_points_system(self, settings: Dict[str, Any], group_id: Optional[str] = None):
        """Store points-system settings organization-wide or for one group"""
        if group_id is None:
            self.data["settings"]["pointsSystem"] = dict(settings)
        else:
            groups = self.data["settings"].setdefault("groups", {})
            groups.setdefault(group_id, {})["pointsSystem"] = dict(settings)

    def get_fairness_config(self, group_id: Optional[str] = None) -> FairnessConfig:
        """Fresh config per call: group settings layered over the organization's"""
        merged = dict(self.data["settings"].get("pointsSystem", {}))
        if group_id is not None:
            group_settings = self.data["settings"].get("groups", {}).get(group_id, {})
            merged.update(group_settings.get("pointsSystem", {}))
        return FairnessConfig.from_settings(merged)
