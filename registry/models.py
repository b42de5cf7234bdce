"""
Data model definitions

Status constants, collection names and the record dataclasses persisted in the
document store. Task items themselves stay plain dicts because their columns
come straight from the imported spreadsheet.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

RawTask = Dict[str, Any]


class TaskCategory:
    """Triage bucket assigned when a request group enters the pool"""
    URGENT = "urgent"
    NORMAL = "normal"
    POCAT = "pocat"
    MANUAL = "manual"
    OTHER = "other"

    ALL = (URGENT, NORMAL, POCAT, MANUAL, OTHER)


class ExecutionStatus:
    """Per-item status inside an execution assignment"""
    PENDING = "Pending"
    DONE = "Done"
    NOT_OK = "Not OK"

    ALL = (PENDING, DONE, NOT_OK)


class PreparationStatus:
    """Per-item preparation status"""
    AWAITING = "Awaiting Preparation"
    READY = "Ready for Testing"
    PREPARED = "Prepared"


class Shift:
    DAY = "day"
    NIGHT = "night"

    ALL = (DAY, NIGHT)

    @staticmethod
    def opposite(shift: str) -> str:
        return Shift.NIGHT if shift == Shift.DAY else Shift.DAY


class Team:
    TESTERS = "testers"
    ASSISTANTS = "assistants"

    ALL = (TESTERS, ASSISTANTS)

    # team ids written by earlier roster versions
    LEGACY = {"testers_3_3": TESTERS, "assistants_4_2": ASSISTANTS}

    @staticmethod
    def normalize(team: Optional[str]) -> Optional[str]:
        if team is None:
            return None
        return Team.LEGACY.get(team, team)


class Collections:
    """Document store collection names"""
    TESTERS = "testers"
    TEST_MAPPINGS = "testMappings"
    CATEGORIZED_TASKS = "categorizedTasks"
    DAILY_SCHEDULES = "dailySchedules"
    ASSIGNED_TASKS = "assignedTasks"
    ASSIGNED_PREPARE_TASKS = "assignedPrepareTasks"
    SHIFT_REPORTS = "shiftReports"

    TASK_DATA = (CATEGORIZED_TASKS, ASSIGNED_TASKS, ASSIGNED_PREPARE_TASKS)


class ItemField:
    """Lifecycle fields layered onto an imported task item"""
    LOCAL_ID = "localId"
    EXECUTION_STATUS = "executionStatus"
    NOT_OK_REASON = "notOkFailureReason"
    PREPARATION_STATUS = "preparationStatus"
    IS_RETURNED = "isReturned"
    RETURN_REASON = "returnReason"
    RETURNED_BY = "returnedBy"
    IS_MANUAL_ENTRY = "isManualEntry"
    PLANNER_NOTE = "plannerNote"

    # cleared when a planner pulls an item back as if it was never assigned
    STATUS_FIELDS = (
        EXECUTION_STATUS,
        NOT_OK_REASON,
        RETURN_REASON,
        RETURNED_BY,
        IS_RETURNED,
        PREPARATION_STATUS,
    )


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class Tester:
    id: str
    name: str
    team: Optional[str] = None

    @property
    def role_label(self) -> str:
        return "ASST" if self.team == Team.ASSISTANTS else "ANLST"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "team": self.team}

    @classmethod
    def from_dict(cls, doc_id: str, data: Dict[str, Any]) -> "Tester":
        return cls(id=doc_id, name=data.get("name", ""), team=Team.normalize(data.get("team")))


@dataclass
class TestMapping:
    """(description, variant) -> headerGroup|headerSub rule"""
    __test__ = False

    id: Optional[str]
    description: str
    variant: str
    header_group: str
    header_sub: str
    order: Optional[float] = None

    @property
    def column_key(self) -> str:
        return f"{self.header_group}|{self.header_sub}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "variant": self.variant,
            "headerGroup": self.header_group,
            "headerSub": self.header_sub,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, doc_id: Optional[str], data: Dict[str, Any]) -> "TestMapping":
        return cls(
            id=doc_id,
            description=str(data.get("description") or ""),
            variant=str(data.get("variant") or ""),
            header_group=str(data.get("headerGroup") or ""),
            header_sub=str(data.get("headerSub") or ""),
            order=data.get("order"),
        )


@dataclass
class CategorizedTask:
    """
    Pool group: items sharing one request id, tagged with a category.

    Returned work carries the pool metadata (is_returned_pool, return_reason,
    returned_by, created_at, shift).
    """
    request_id: str
    tasks: List[RawTask]
    category: str
    doc_id: Optional[str] = None
    order: Optional[float] = None
    is_returned_pool: bool = False
    return_reason: Optional[str] = None
    returned_by: Optional[str] = None
    created_at: Optional[str] = None
    shift: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "requestId": self.request_id,
            "tasks": self.tasks,
            "category": self.category,
            "isReturnedPool": self.is_returned_pool,
        }
        data.update(_drop_none({
            "order": self.order,
            "returnReason": self.return_reason,
            "returnedBy": self.returned_by,
            "createdAt": self.created_at,
            "shift": self.shift,
        }))
        return data

    @classmethod
    def from_dict(cls, doc_id: Optional[str], data: Dict[str, Any]) -> "CategorizedTask":
        return cls(
            request_id=str(data.get("requestId", "")),
            tasks=list(data.get("tasks") or []),
            category=data.get("category", TaskCategory.OTHER),
            doc_id=doc_id,
            order=data.get("order"),
            is_returned_pool=bool(data.get("isReturnedPool", False)),
            return_reason=data.get("returnReason"),
            returned_by=data.get("returnedBy"),
            created_at=data.get("createdAt"),
            shift=data.get("shift"),
        )


@dataclass
class AssignedTask:
    """Execution assignment bound to one tester, date and shift"""
    request_id: str
    tasks: List[RawTask]
    category: str
    tester_id: str
    tester_name: str
    assigned_date: str
    shift: str
    status: str = ExecutionStatus.PENDING
    doc_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "tasks": self.tasks,
            "category": self.category,
            "testerId": self.tester_id,
            "testerName": self.tester_name,
            "assignedDate": self.assigned_date,
            "shift": self.shift,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, doc_id: Optional[str], data: Dict[str, Any]) -> "AssignedTask":
        return cls(
            request_id=str(data.get("requestId", "")),
            tasks=list(data.get("tasks") or []),
            category=data.get("category", TaskCategory.OTHER),
            # older records used analystId / analystName
            tester_id=data.get("testerId") or data.get("analystId") or "",
            tester_name=data.get("testerName") or data.get("analystName") or "",
            assigned_date=data.get("assignedDate", ""),
            shift=data.get("shift", Shift.DAY),
            status=data.get("status", ExecutionStatus.PENDING),
            doc_id=doc_id,
        )


@dataclass
class AssignedPrepareTask:
    """Preparation assignment, linked back to its origin pool group"""
    request_id: str
    tasks: List[RawTask]
    category: str
    assistant_id: str
    assistant_name: str
    assigned_date: str
    shift: str
    original_doc_id: str
    original_indices: List[int] = field(default_factory=list)
    doc_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "tasks": self.tasks,
            "category": self.category,
            "assistantId": self.assistant_id,
            "assistantName": self.assistant_name,
            "assignedDate": self.assigned_date,
            "shift": self.shift,
            "originalDocId": self.original_doc_id,
            "originalIndices": self.original_indices,
        }

    @classmethod
    def from_dict(cls, doc_id: Optional[str], data: Dict[str, Any]) -> "AssignedPrepareTask":
        return cls(
            request_id=str(data.get("requestId", "")),
            tasks=list(data.get("tasks") or []),
            category=data.get("category", TaskCategory.OTHER),
            assistant_id=data.get("assistantId", ""),
            assistant_name=data.get("assistantName", ""),
            assigned_date=data.get("assignedDate", ""),
            shift=data.get("shift", Shift.DAY),
            original_doc_id=data.get("originalDocId", ""),
            original_indices=list(data.get("originalIndices") or []),
            doc_id=doc_id,
        )


@dataclass
class DailySchedule:
    """
    Four disjoint id lists for one date.

    A person id appears in at most one of the two shift lists of its team.
    """
    date: str
    day_testers: List[str] = field(default_factory=list)
    night_testers: List[str] = field(default_factory=list)
    day_assistants: List[str] = field(default_factory=list)
    night_assistants: List[str] = field(default_factory=list)

    def shift_list(self, team: str, shift: str) -> List[str]:
        if team == Team.ASSISTANTS:
            return self.day_assistants if shift == Shift.DAY else self.night_assistants
        return self.day_testers if shift == Shift.DAY else self.night_testers

    def members(self, shift: str) -> List[str]:
        """Testers first, then assistants on the given shift"""
        return list(self.shift_list(Team.TESTERS, shift)) + list(self.shift_list(Team.ASSISTANTS, shift))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dayShiftTesters": list(self.day_testers),
            "nightShiftTesters": list(self.night_testers),
            "dayShiftAssistants": list(self.day_assistants),
            "nightShiftAssistants": list(self.night_assistants),
        }

    @classmethod
    def from_dict(cls, date: str, data: Optional[Dict[str, Any]]) -> "DailySchedule":
        data = data or {}
        return cls(
            date=date,
            day_testers=list(data.get("dayShiftTesters") or []),
            night_testers=list(data.get("nightShiftTesters") or []),
            day_assistants=list(data.get("dayShiftAssistants") or []),
            night_assistants=list(data.get("nightShiftAssistants") or []),
        )


@dataclass
class ShiftReport:
    date: str
    shift: str
    instruments: List[Dict[str, str]] = field(default_factory=list)
    infrastructure_note: str = ""
    waste_level: str = "low"
    cleanliness: str = "good"
    cleanliness_note: str = ""
    cleanliness_image: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.date}_{self.shift}"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "date": self.date,
            "shift": self.shift,
            "instruments": self.instruments,
            "infrastructureNote": self.infrastructure_note,
            "wasteLevel": self.waste_level,
            "cleanliness": self.cleanliness,
            "cleanlinessNote": self.cleanliness_note,
        }
        if self.cleanliness_image:
            data["cleanlinessImage"] = self.cleanliness_image
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShiftReport":
        return cls(
            date=data.get("date", ""),
            shift=data.get("shift", Shift.DAY),
            instruments=list(data.get("instruments") or []),
            infrastructure_note=data.get("infrastructureNote") or "",
            waste_level=data.get("wasteLevel", "low"),
            cleanliness=data.get("cleanliness", "good"),
            cleanliness_note=data.get("cleanlinessNote") or "",
            cleanliness_image=data.get("cleanlinessImage"),
        )
