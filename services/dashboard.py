"""
Shift dashboard aggregation

Per-person counts of done / failed / returned / pending items for one date
and shift, broken out by task description. The summary is computed from the
item status fields only, never from grid column resolution.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from registry.models import (
    AssignedPrepareTask,
    AssignedTask,
    CategorizedTask,
    Collections,
    DailySchedule,
    ExecutionStatus,
    ItemField,
    PreparationStatus,
    RawTask,
    Tester,
)
from registry.store import DocumentStore
from registry.util import task_text
from services.classifier import TaskBadges, classify_task

DEFAULT_DESCRIPTION = "General Task"

STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_RETURNED = "returned"
STATUS_PENDING = "pending"


@dataclass
class SampleDetail:
    name: str
    qty: str
    detail: str
    status: str
    reason: Optional[str] = None
    is_manual: bool = False


@dataclass
class DescriptionSummary:
    description: str
    total: int = 0
    done: int = 0
    failed: int = 0
    returned: int = 0
    badges: TaskBadges = field(default_factory=TaskBadges)
    samples: List[SampleDetail] = field(default_factory=list)


@dataclass
class PersonStats:
    id: str
    name: str
    role: str
    pending_tasks: int = 0
    summary: Dict[str, DescriptionSummary] = field(default_factory=dict)


def execution_item_status(task: RawTask) -> str:
    status = task.get(ItemField.EXECUTION_STATUS)
    if status == ExecutionStatus.DONE:
        return STATUS_DONE
    if status == ExecutionStatus.NOT_OK:
        return STATUS_FAILED
    if task.get(ItemField.IS_RETURNED):
        return STATUS_RETURNED
    return STATUS_PENDING


def preparation_item_status(task: RawTask) -> str:
    if task.get(ItemField.PREPARATION_STATUS) in (PreparationStatus.PREPARED, PreparationStatus.READY):
        return STATUS_DONE
    return execution_item_status(task)


def _add_activity(person: PersonStats, task: RawTask, category: str, status: str) -> None:
    badges = classify_task(task, category)
    description = task_text(task, "Description") or DEFAULT_DESCRIPTION

    if status != STATUS_DONE:
        person.pending_tasks += 1

    entry = person.summary.get(description)
    if entry is None:
        entry = DescriptionSummary(description=description, badges=badges)
        person.summary[description] = entry
    entry.total += 1
    if status == STATUS_DONE:
        entry.done += 1
    elif status == STATUS_FAILED:
        entry.failed += 1
    elif status == STATUS_RETURNED:
        entry.returned += 1

    entry.samples.append(SampleDetail(
        name=task_text(task, "Sample Name") or "N/A",
        qty=task_text(task, "Quantity") or "1",
        detail=task_text(task, "Variant") or "-",
        status=status,
        reason=task.get(ItemField.NOT_OK_REASON) or task.get(ItemField.RETURN_REASON) or None,
        is_manual=badges.is_manual,
    ))


def build_shift_summary(
    testers: Iterable[Tester],
    schedule: Optional[DailySchedule],
    date: str,
    shift: str,
    assigned: Iterable[AssignedTask],
    prepared: Iterable[AssignedPrepareTask],
    pool: Iterable[CategorizedTask],
) -> List[PersonStats]:
    """
    Aggregate one shift per person

    Only people scheduled on the shift are reported. Execution and
    preparation assignments count for their assignee, returned-pool groups
    for the person who returned them.

    Args:
        testers: roster
        schedule: schedule of the date, None when nothing is scheduled
        date: YYYY-MM-DD
        shift: day / night
        assigned: execution assignments (any date, filtered here)
        prepared: preparation assignments (any date, filtered here)
        pool: pool groups, only returned-pool groups are counted

    Returns:
        people sorted by pending item count, highest first
    """
    if schedule is None:
        return []

    roster = {t.id: t for t in testers}
    by_id: Dict[str, PersonStats] = {}
    by_name: Dict[str, PersonStats] = {}
    for person_id in schedule.members(shift):
        tester = roster.get(person_id)
        if tester is None or person_id in by_id:
            continue
        stats = PersonStats(id=tester.id, name=tester.name, role=tester.role_label)
        by_id[tester.id] = stats
        by_name.setdefault(tester.name, stats)

    def person_for(person_id: str, name: str) -> Optional[PersonStats]:
        return by_id.get(person_id) or by_name.get(name)

    for record in assigned:
        if record.assigned_date != date or record.shift != shift:
            continue
        person = person_for(record.tester_id, record.tester_name)
        if person is None:
            continue
        for task in record.tasks:
            _add_activity(person, task, record.category, execution_item_status(task))

    for record in prepared:
        if record.assigned_date != date or record.shift != shift:
            continue
        person = person_for(record.assistant_id, record.assistant_name)
        if person is None:
            continue
        for task in record.tasks:
            _add_activity(person, task, record.category, preparation_item_status(task))

    for group in pool:
        if not group.is_returned_pool or not group.returned_by:
            continue
        person = by_name.get(group.returned_by)
        if person is None:
            continue
        for task in group.tasks:
            _add_activity(person, task, group.category, STATUS_RETURNED)

    return sorted(by_id.values(), key=lambda p: -p.pending_tasks)


async def load_shift_summary(store: DocumentStore, date: str, shift: str) -> List[PersonStats]:
    """Read everything the dashboard needs from the store and aggregate it"""
    testers = await store.get_all(Collections.TESTERS)
    schedule = await store.get(Collections.DAILY_SCHEDULES, date)
    assigned = await store.get_all(Collections.ASSIGNED_TASKS)
    prepared = await store.get_all(Collections.ASSIGNED_PREPARE_TASKS)
    pool = await store.get_all(Collections.CATEGORIZED_TASKS)

    return build_shift_summary(
        testers=[Tester.from_dict(k, v) for k, v in testers.items()],
        schedule=DailySchedule.from_dict(date, schedule) if schedule is not None else None,
        date=date,
        shift=shift,
        assigned=[AssignedTask.from_dict(k, v) for k, v in assigned.items()],
        prepared=[AssignedPrepareTask.from_dict(k, v) for k, v in prepared.items()],
        pool=[CategorizedTask.from_dict(k, v) for k, v in pool.items()],
    )
