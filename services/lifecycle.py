"""
Task lifecycle engine

State transitions of a task item between the pool (categorizedTasks), an
execution assignment (assignedTasks) and a preparation assignment
(assignedPrepareTasks).

Moves between containers write the new record first and only then shrink or
delete the old one. A failure half way leaves a duplicate that run_cleanup /
a re-run can resolve, never a lost item.
"""
from __future__ import annotations

import copy
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from registry.errors import ItemNotFoundError, StoreError, ValidationError
from registry.models import (
    AssignedPrepareTask,
    AssignedTask,
    CategorizedTask,
    Collections,
    ExecutionStatus,
    ItemField,
    PreparationStatus,
    RawTask,
    Shift,
    TaskCategory,
    Tester,
)
from registry.store import DEFAULT_BATCH_SIZE, DocumentStore, delete_in_batches
from registry.util import make_local_id, make_manual_request_id, utc_now_iso

logger = logging.getLogger(__name__)


def _require_text(value: Optional[str], what: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{what} is required")
    return text


def _require_shift(shift: str) -> None:
    if shift not in Shift.ALL:
        raise ValidationError(f"unknown shift: {shift}")


def _unique_indices(indices: Sequence[int], size: int, where: str) -> List[int]:
    result = []
    for index in indices:
        if not isinstance(index, int) or index < 0 or index >= size:
            raise ItemNotFoundError(f"{where} has no item {index}")
        if index not in result:
            result.append(index)
    if not result:
        raise ValidationError("no items selected")
    return result


def _sort_order(order: Any) -> float:
    if order is None or isinstance(order, bool):
        return math.inf
    try:
        value = float(order)
    except (TypeError, ValueError):
        return math.inf
    return math.inf if math.isnan(value) else value


def _clone_as_instance(task: RawTask) -> RawTask:
    """Copy of a manual template item under a fresh local id"""
    item = copy.deepcopy(task)
    item[ItemField.LOCAL_ID] = make_local_id()
    return item


def strip_status_fields(task: RawTask) -> RawTask:
    """Item as it was before any assignment"""
    return {k: copy.deepcopy(v) for k, v in task.items() if k not in ItemField.STATUS_FIELDS}


class LifecycleEngine:
    """
    Applies lifecycle transitions against a document store

    Args:
        store: document store
        batch_size: chunk size for bulk deletions
    """

    def __init__(self, store: DocumentStore, batch_size: int = DEFAULT_BATCH_SIZE):
        self.store = store
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------

    async def load_pool(self) -> List[CategorizedTask]:
        """Pool groups by explicit order, unordered groups last in insertion order"""
        docs = await self.store.get_all(Collections.CATEGORIZED_TASKS)
        groups = [CategorizedTask.from_dict(doc_id, data) for doc_id, data in docs.items()]
        return sorted(groups, key=lambda g: _sort_order(g.order))

    async def load_assigned(self, date: Optional[str] = None,
                            shift: Optional[str] = None) -> List[AssignedTask]:
        docs = await self.store.get_all(Collections.ASSIGNED_TASKS)
        records = [AssignedTask.from_dict(doc_id, data) for doc_id, data in docs.items()]
        return [r for r in records
                if (date is None or r.assigned_date == date) and (shift is None or r.shift == shift)]

    async def load_prepare(self, date: Optional[str] = None,
                           shift: Optional[str] = None) -> List[AssignedPrepareTask]:
        docs = await self.store.get_all(Collections.ASSIGNED_PREPARE_TASKS)
        records = [AssignedPrepareTask.from_dict(doc_id, data) for doc_id, data in docs.items()]
        return [r for r in records
                if (date is None or r.assigned_date == date) and (shift is None or r.shift == shift)]

    async def _get_pool_group(self, doc_id: str) -> CategorizedTask:
        data = await self.store.get(Collections.CATEGORIZED_TASKS, doc_id)
        if data is None:
            raise ItemNotFoundError(f"pool group {doc_id} does not exist")
        return CategorizedTask.from_dict(doc_id, data)

    async def _get_assigned(self, doc_id: str) -> AssignedTask:
        data = await self.store.get(Collections.ASSIGNED_TASKS, doc_id)
        if data is None:
            raise ItemNotFoundError(f"assigned task {doc_id} does not exist")
        return AssignedTask.from_dict(doc_id, data)

    async def _get_prepare(self, doc_id: str) -> AssignedPrepareTask:
        data = await self.store.get(Collections.ASSIGNED_PREPARE_TASKS, doc_id)
        if data is None:
            raise ItemNotFoundError(f"prepare task {doc_id} does not exist")
        return AssignedPrepareTask.from_dict(doc_id, data)

    @staticmethod
    def _assigned_item(record: AssignedTask, index: int) -> RawTask:
        if not isinstance(index, int) or index < 0 or index >= len(record.tasks):
            raise ItemNotFoundError(f"assigned task {record.doc_id} has no item {index}")
        return record.tasks[index]

    async def _shrink_assigned(self, record: AssignedTask, index: int) -> None:
        """Remove one item, deleting the assignment when it becomes empty"""
        remaining = [t for i, t in enumerate(record.tasks) if i != index]
        if remaining:
            await self.store.update(Collections.ASSIGNED_TASKS, record.doc_id, {"tasks": remaining})
        else:
            await self.store.delete(Collections.ASSIGNED_TASKS, record.doc_id)

    # ------------------------------------------------------------------
    # pool entries
    # ------------------------------------------------------------------

    async def add_manual_task(self, description: str, quantity: str = "1", variant: str = "") -> str:
        """
        Create an ad-hoc pool group

        Manual groups act as templates: assigning from them clones items
        and leaves the group in place.

        Returns:
            document id of the new group
        """
        description = _require_text(description, "description")
        item = {
            "Description": description,
            "Quantity": (str(quantity).strip() or "1") if quantity is not None else "1",
            "Variant": (variant or "").strip(),
            ItemField.IS_MANUAL_ENTRY: True,
            ItemField.LOCAL_ID: make_local_id(),
        }
        group = CategorizedTask(
            request_id=make_manual_request_id(),
            tasks=[item],
            category=TaskCategory.MANUAL,
            created_at=utc_now_iso(),
        )
        doc_id = await self.store.add(Collections.CATEGORIZED_TASKS, group.to_dict())
        logger.info("manual task %s added: %s", group.request_id, description)
        return doc_id

    async def delete_group(self, doc_id: str) -> None:
        await self.store.delete(Collections.CATEGORIZED_TASKS, doc_id)

    async def set_group_order(self, doc_ids: Sequence[str]) -> None:
        """Explicit pool order: group at position i gets order i"""
        for position, doc_id in enumerate(doc_ids):
            await self.store.update(Collections.CATEGORIZED_TASKS, doc_id, {"order": position})

    # ------------------------------------------------------------------
    # assignment
    # ------------------------------------------------------------------

    @staticmethod
    def _check_not_preparing(group: CategorizedTask, indices: Sequence[int]) -> None:
        for index in indices:
            if group.tasks[index].get(ItemField.PREPARATION_STATUS) == PreparationStatus.AWAITING:
                raise ValidationError(
                    f"item {index} of {group.request_id} is waiting for preparation"
                )

    async def assign_for_execution(self, pool_doc_id: str, indices: Sequence[int],
                                   tester: Tester, date: str, shift: str) -> str:
        """
        Move pool items into an execution assignment

        Items of manual groups are cloned and the group is kept; otherwise the
        items leave the group, which is deleted once empty.

        Args:
            pool_doc_id: source pool group
            indices: item indices within the group
            tester: assignee
            date: YYYY-MM-DD
            shift: day / night

        Returns:
            document id of the assignment
        """
        _require_shift(shift)
        group = await self._get_pool_group(pool_doc_id)
        indices = _unique_indices(indices, len(group.tasks), f"pool group {pool_doc_id}")
        self._check_not_preparing(group, indices)

        is_manual = group.category == TaskCategory.MANUAL
        items = []
        for index in indices:
            item = _clone_as_instance(group.tasks[index]) if is_manual else copy.deepcopy(group.tasks[index])
            item[ItemField.EXECUTION_STATUS] = ExecutionStatus.PENDING
            items.append(item)

        record = AssignedTask(
            request_id=group.request_id,
            tasks=items,
            category=group.category,
            tester_id=tester.id,
            tester_name=tester.name,
            assigned_date=date,
            shift=shift,
        )
        assigned_id = await self.store.add(Collections.ASSIGNED_TASKS, record.to_dict())

        if not is_manual:
            remaining = [t for i, t in enumerate(group.tasks) if i not in indices]
            if remaining:
                await self.store.update(Collections.CATEGORIZED_TASKS, pool_doc_id, {"tasks": remaining})
            else:
                await self.store.delete(Collections.CATEGORIZED_TASKS, pool_doc_id)

        logger.info("%d item(s) of %s assigned to %s (%s %s)",
                    len(items), group.request_id, tester.name, date, shift)
        return assigned_id

    async def assign_for_preparation(self, pool_doc_id: str, indices: Sequence[int],
                                     assistant: Tester, date: str, shift: str) -> str:
        """
        Send pool items to an assistant for preparation

        The preparation record is a view: the pool items stay where they are
        and are flagged "Awaiting Preparation" (manual templates are cloned
        instead and left untouched).

        Returns:
            document id of the preparation assignment
        """
        _require_shift(shift)
        group = await self._get_pool_group(pool_doc_id)
        indices = _unique_indices(indices, len(group.tasks), f"pool group {pool_doc_id}")

        is_manual = group.category == TaskCategory.MANUAL
        items = []
        for index in indices:
            item = _clone_as_instance(group.tasks[index]) if is_manual else copy.deepcopy(group.tasks[index])
            item[ItemField.PREPARATION_STATUS] = PreparationStatus.AWAITING
            items.append(item)

        record = AssignedPrepareTask(
            request_id=group.request_id,
            tasks=items,
            category=group.category,
            assistant_id=assistant.id,
            assistant_name=assistant.name,
            assigned_date=date,
            shift=shift,
            original_doc_id=pool_doc_id,
            original_indices=list(indices),
        )
        prep_id = await self.store.add(Collections.ASSIGNED_PREPARE_TASKS, record.to_dict())

        if not is_manual:
            tasks = copy.deepcopy(group.tasks)
            for index in indices:
                tasks[index][ItemField.PREPARATION_STATUS] = PreparationStatus.AWAITING
            await self.store.update(Collections.CATEGORIZED_TASKS, pool_doc_id, {"tasks": tasks})

        logger.info("%d item(s) of %s sent to %s for preparation",
                    len(items), group.request_id, assistant.name)
        return prep_id

    async def assign_selection(self, selection: Dict[str, Sequence[int]], person: Tester,
                               date: str, shift: str, prepare: bool = False) -> List[str]:
        """
        Apply a grid selection {pool_doc_id: [index, ...]} to one person

        For execution, every selected item is checked for a pending
        preparation before anything is written.

        Returns:
            ids of the created assignments
        """
        _require_shift(shift)
        pending: List[Tuple[str, List[int]]] = []
        for doc_id, indices in selection.items():
            if not indices:
                continue
            group = await self._get_pool_group(doc_id)
            checked = _unique_indices(indices, len(group.tasks), f"pool group {doc_id}")
            if not prepare:
                self._check_not_preparing(group, checked)
            pending.append((doc_id, checked))

        if not pending:
            raise ValidationError("no items selected")

        created = []
        for doc_id, indices in pending:
            if prepare:
                created.append(await self.assign_for_preparation(doc_id, indices, person, date, shift))
            else:
                created.append(await self.assign_for_execution(doc_id, indices, person, date, shift))
        return created

    # ------------------------------------------------------------------
    # preparation
    # ------------------------------------------------------------------

    async def mark_item_prepared(self, prep_doc_id: str, item_index: int) -> bool:
        """
        Mark a preparation item "Prepared" and sync its origin

        The matching pool item (by local id, else by stored original index)
        becomes "Ready for Testing". Manual items have no origin to sync.
        A missing origin is logged and skipped.

        Returns:
            True when the origin item was updated
        """
        record = await self._get_prepare(prep_doc_id)
        if not isinstance(item_index, int) or item_index < 0 or item_index >= len(record.tasks):
            raise ItemNotFoundError(f"prepare task {prep_doc_id} has no item {item_index}")

        tasks = copy.deepcopy(record.tasks)
        target = tasks[item_index]
        target[ItemField.PREPARATION_STATUS] = PreparationStatus.PREPARED
        await self.store.update(Collections.ASSIGNED_PREPARE_TASKS, prep_doc_id, {"tasks": tasks})

        if record.category == TaskCategory.MANUAL:
            return False
        return await self._sync_origin_ready(record, item_index, target.get(ItemField.LOCAL_ID))

    async def _sync_origin_ready(self, record: AssignedPrepareTask, item_index: int,
                                 local_id: Optional[str]) -> bool:
        try:
            data = await self.store.get(Collections.CATEGORIZED_TASKS, record.original_doc_id)
            if data is None:
                logger.warning("prepared item %s: origin group %s no longer exists",
                               local_id, record.original_doc_id)
                return False

            origin = list(data.get("tasks") or [])
            found = -1
            if local_id:
                found = next((i for i, t in enumerate(origin) if t.get(ItemField.LOCAL_ID) == local_id), -1)
            if found == -1 and item_index < len(record.original_indices):
                candidate = record.original_indices[item_index]
                # a stored index is only trusted for items without a local id
                if 0 <= candidate < len(origin) and not (local_id or origin[candidate].get(ItemField.LOCAL_ID)):
                    found = candidate
            if found == -1:
                logger.warning("prepared item %s not found in origin group %s",
                               local_id, record.original_doc_id)
                return False

            origin[found] = dict(origin[found])
            origin[found][ItemField.PREPARATION_STATUS] = PreparationStatus.READY
            await self.store.update(Collections.CATEGORIZED_TASKS, record.original_doc_id, {"tasks": origin})
            return True
        except StoreError as e:
            logger.warning("preparation back-sync to %s failed: %s", record.original_doc_id, e)
            return False

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    async def set_execution_status(self, assigned_doc_id: str, index: int, status: str) -> None:
        """
        Mark an execution item Done, or reset it to Pending

        Not OK needs a reason and goes through mark_not_ok.
        """
        if status == ExecutionStatus.NOT_OK:
            raise ValidationError("use mark_not_ok with a reason for failed items")
        if status not in ExecutionStatus.ALL:
            raise ValidationError(f"unknown status: {status}")

        record = await self._get_assigned(assigned_doc_id)
        self._assigned_item(record, index)
        tasks = copy.deepcopy(record.tasks)
        tasks[index][ItemField.EXECUTION_STATUS] = status
        tasks[index].pop(ItemField.NOT_OK_REASON, None)
        await self.store.update(Collections.ASSIGNED_TASKS, assigned_doc_id, {"tasks": tasks})

    async def mark_not_ok(self, assigned_doc_id: str, index: int, reason: str) -> None:
        """Flag an execution item as failed; it stays in its assignment"""
        reason = _require_text(reason, "failure reason")
        record = await self._get_assigned(assigned_doc_id)
        self._assigned_item(record, index)
        tasks = copy.deepcopy(record.tasks)
        tasks[index][ItemField.EXECUTION_STATUS] = ExecutionStatus.NOT_OK
        tasks[index][ItemField.NOT_OK_REASON] = reason
        await self.store.update(Collections.ASSIGNED_TASKS, assigned_doc_id, {"tasks": tasks})

    async def set_planner_note(self, assigned_doc_id: str, index: int, note: str) -> None:
        record = await self._get_assigned(assigned_doc_id)
        self._assigned_item(record, index)
        tasks = copy.deepcopy(record.tasks)
        tasks[index][ItemField.PLANNER_NOTE] = note or ""
        await self.store.update(Collections.ASSIGNED_TASKS, assigned_doc_id, {"tasks": tasks})

    async def return_to_pool(self, assigned_doc_id: str, index: int, reason: str,
                             returned_by: Optional[str] = None) -> str:
        """
        Tester-reported return of an unworkable item

        A new returned-pool group with the flagged item is created first, then
        the item leaves its assignment.

        Args:
            assigned_doc_id: execution assignment
            index: item index
            reason: mandatory free text
            returned_by: reporter, defaults to the assignee's name

        Returns:
            document id of the new pool group
        """
        reason = _require_text(reason, "return reason")
        record = await self._get_assigned(assigned_doc_id)
        item = copy.deepcopy(self._assigned_item(record, index))
        reporter = returned_by or record.tester_name

        item[ItemField.IS_RETURNED] = True
        item[ItemField.RETURN_REASON] = reason
        item[ItemField.RETURNED_BY] = reporter

        group = CategorizedTask(
            request_id=record.request_id,
            tasks=[item],
            category=record.category,
            is_returned_pool=True,
            return_reason=reason,
            returned_by=reporter,
            created_at=utc_now_iso(),
            shift=record.shift,
        )
        pool_id = await self.store.add(Collections.CATEGORIZED_TASKS, group.to_dict())
        await self._shrink_assigned(record, index)

        logger.info("item %d of %s returned by %s: %s", index, record.request_id, reporter, reason)
        return pool_id

    async def unassign_to_pool(self, assigned_doc_id: str, index: int) -> str:
        """
        Planner correction: put an execution item back as fresh pool work

        All status fields are stripped and the new group carries no return
        metadata.

        Returns:
            document id of the new pool group
        """
        record = await self._get_assigned(assigned_doc_id)
        item = strip_status_fields(self._assigned_item(record, index))

        group = CategorizedTask(
            request_id=record.request_id,
            tasks=[item],
            category=record.category,
        )
        pool_id = await self.store.add(Collections.CATEGORIZED_TASKS, group.to_dict())
        await self._shrink_assigned(record, index)

        logger.info("item %d of %s unassigned from %s", index, record.request_id, record.tester_name)
        return pool_id

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------

    async def run_cleanup(self) -> int:
        """
        Delete pool groups without items

        Returns:
            number of deleted groups
        """
        docs = await self.store.get_all(Collections.CATEGORIZED_TASKS)
        refs = []
        for doc_id, data in docs.items():
            tasks: Any = data.get("tasks")
            if not isinstance(tasks, list) or not tasks:
                refs.append((Collections.CATEGORIZED_TASKS, doc_id))
        deleted = await delete_in_batches(self.store, refs, self.batch_size)
        logger.info("cleanup: %d empty pool group(s) deleted", deleted)
        return deleted

    async def clear_all_task_data(self) -> int:
        """
        Wipe pool, execution and preparation collections

        Returns:
            number of deleted documents
        """
        refs = []
        for collection in Collections.TASK_DATA:
            docs = await self.store.get_all(collection)
            refs.extend((collection, doc_id) for doc_id in docs)
        deleted = await delete_in_batches(self.store, refs, self.batch_size)
        logger.warning("all task data cleared (%d documents)", deleted)
        return deleted
