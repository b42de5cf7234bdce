#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Lifecycle engine tests: assignment, preparation, returns and maintenance
"""

import asyncio
from collections import Counter

import pytest

from conftest import add_group
from registry.errors import ItemNotFoundError, StoreError, ValidationError
from registry.models import Collections, ExecutionStatus, PreparationStatus, Shift, TaskCategory
from registry.store import MemoryDocumentStore
from services.grid import build_grid
from services.lifecycle import LifecycleEngine, strip_status_fields

DATE = "2024-05-01"


def _items(*names):
    return [{"Description": "Tensile", "Sample Name": n, "localId": f"id-{n}"} for n in names]


def _docs(store, collection):
    return asyncio.run(store.get_all(collection))


def _container_counts(store):
    """localId -> number of pool / execution containers holding it"""
    counts = Counter()
    for collection in (Collections.CATEGORIZED_TASKS, Collections.ASSIGNED_TASKS):
        for data in _docs(store, collection).values():
            for task in data.get("tasks", []):
                counts[task["localId"]] += 1
    return counts


@pytest.fixture
def engine(store):
    return LifecycleEngine(store, batch_size=400)


class TestAssignForExecution:

    def test_items_move_out_of_pool(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1", "S2", "S3"))
        assigned_id = asyncio.run(engine.assign_for_execution(pool_id, [0, 2], personnel["t1"], DATE, Shift.DAY))

        assigned = _docs(store, Collections.ASSIGNED_TASKS)[assigned_id]
        assert [t["Sample Name"] for t in assigned["tasks"]] == ["S1", "S3"]
        assert all(t["executionStatus"] == ExecutionStatus.PENDING for t in assigned["tasks"])
        assert assigned["testerId"] == "t1" and assigned["testerName"] == "Alice"
        assert assigned["status"] == ExecutionStatus.PENDING
        assert (assigned["assignedDate"], assigned["shift"]) == (DATE, Shift.DAY)

        pool = _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]
        assert [t["Sample Name"] for t in pool["tasks"]] == ["S2"]
        assert set(_container_counts(store).values()) == {1}

    def test_group_deleted_when_emptied(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1"))
        asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, Shift.NIGHT))
        assert pool_id not in _docs(store, Collections.CATEGORIZED_TASKS)
        assert set(_container_counts(store).values()) == {1}

    def test_manual_template_is_cloned(self, store, engine, personnel):
        pool_id = add_group(store, "MAN-1", _items("M"), TaskCategory.MANUAL)
        assigned_id = asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, Shift.DAY))

        template = _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]["tasks"][0]
        clone = _docs(store, Collections.ASSIGNED_TASKS)[assigned_id]["tasks"][0]
        assert template["localId"] == "id-M"
        assert clone["localId"] != "id-M"
        assert "executionStatus" not in template

    def test_awaiting_preparation_is_rejected(self, store, engine, personnel):
        tasks = _items("S1", "S2")
        tasks[1]["preparationStatus"] = PreparationStatus.AWAITING
        pool_id = add_group(store, "REQ-1", tasks)

        with pytest.raises(ValidationError):
            asyncio.run(engine.assign_for_execution(pool_id, [1], personnel["t1"], DATE, Shift.DAY))
        assert _docs(store, Collections.ASSIGNED_TASKS) == {}

    def test_bad_input(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1"))
        with pytest.raises(ItemNotFoundError):
            asyncio.run(engine.assign_for_execution(pool_id, [5], personnel["t1"], DATE, Shift.DAY))
        with pytest.raises(ItemNotFoundError):
            asyncio.run(engine.assign_for_execution("ghost", [0], personnel["t1"], DATE, Shift.DAY))
        with pytest.raises(ValidationError):
            asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, "evening"))
        with pytest.raises(ValidationError):
            asyncio.run(engine.assign_for_execution(pool_id, [], personnel["t1"], DATE, Shift.DAY))


class TestAssignSelection:

    def test_bulk_selection(self, store, engine, personnel):
        g1 = add_group(store, "REQ-1", _items("A1", "A2"))
        g2 = add_group(store, "REQ-2", _items("B1", "B2"))

        created = asyncio.run(engine.assign_selection({g1: [1], g2: [0, 1]}, personnel["t2"], DATE, Shift.DAY))

        assert len(created) == 2
        assert g2 not in _docs(store, Collections.CATEGORIZED_TASKS)
        assert set(_container_counts(store).values()) == {1}

    def test_precondition_checked_before_any_write(self, store, engine, personnel):
        waiting = _items("B1")
        waiting[0]["preparationStatus"] = PreparationStatus.AWAITING
        g1 = add_group(store, "REQ-1", _items("A1"))
        g2 = add_group(store, "REQ-2", waiting)

        with pytest.raises(ValidationError):
            asyncio.run(engine.assign_selection({g1: [0], g2: [0]}, personnel["t2"], DATE, Shift.DAY))
        assert _docs(store, Collections.ASSIGNED_TASKS) == {}
        assert g1 in _docs(store, Collections.CATEGORIZED_TASKS)

    def test_selection_for_preparation(self, store, engine, personnel):
        g1 = add_group(store, "REQ-1", _items("A1", "A2"))
        created = asyncio.run(engine.assign_selection({g1: [0]}, personnel["a1"], DATE, Shift.DAY, prepare=True))
        assert list(_docs(store, Collections.ASSIGNED_PREPARE_TASKS)) == created

    def test_empty_selection(self, engine, personnel):
        with pytest.raises(ValidationError):
            asyncio.run(engine.assign_selection({"g": []}, personnel["t1"], DATE, Shift.DAY))


class TestPreparation:

    def test_assign_flags_origin(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1", "S2"))
        prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [1], personnel["a1"], DATE, Shift.DAY))

        prep = _docs(store, Collections.ASSIGNED_PREPARE_TASKS)[prep_id]
        assert prep["originalDocId"] == pool_id
        assert prep["originalIndices"] == [1]
        assert prep["assistantName"] == "Carol"
        assert prep["tasks"][0]["preparationStatus"] == PreparationStatus.AWAITING

        pool = _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]["tasks"]
        assert "preparationStatus" not in pool[0]
        assert pool[1]["preparationStatus"] == PreparationStatus.AWAITING

    def test_prepared_syncs_origin_by_local_id(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1", "S2", "S3"))
        prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [2], personnel["a1"], DATE, Shift.DAY))
        # an earlier item leaves the pool, shifting indices
        asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, Shift.DAY))

        synced = asyncio.run(engine.mark_item_prepared(prep_id, 0))

        assert synced is True
        prep = _docs(store, Collections.ASSIGNED_PREPARE_TASKS)[prep_id]
        assert prep["tasks"][0]["preparationStatus"] == PreparationStatus.PREPARED
        pool = {t["localId"]: t for t in _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]["tasks"]}
        assert pool["id-S3"]["preparationStatus"] == PreparationStatus.READY
        assert "preparationStatus" not in pool["id-S2"]

    def test_prepared_falls_back_to_original_index(self, store, engine, personnel):
        tasks = [{"Description": "Tensile", "Sample Name": "S1"}, {"Description": "Tensile", "Sample Name": "S2"}]
        pool_id = add_group(store, "REQ-1", tasks)
        prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [1], personnel["a1"], DATE, Shift.DAY))

        assert asyncio.run(engine.mark_item_prepared(prep_id, 0)) is True
        pool = _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]["tasks"]
        assert pool[1]["preparationStatus"] == PreparationStatus.READY

    def test_missing_origin_is_skipped(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1"))
        prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [0], personnel["a1"], DATE, Shift.DAY))
        asyncio.run(engine.delete_group(pool_id))

        assert asyncio.run(engine.mark_item_prepared(prep_id, 0)) is False
        prep = _docs(store, Collections.ASSIGNED_PREPARE_TASKS)[prep_id]
        assert prep["tasks"][0]["preparationStatus"] == PreparationStatus.PREPARED

    def test_manual_preparation_is_cloned_and_not_synced(self, store, engine, personnel):
        pool_id = add_group(store, "MAN-1", _items("M"), TaskCategory.MANUAL)
        prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [0], personnel["a1"], DATE, Shift.DAY))

        template = _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]["tasks"][0]
        prep_item = _docs(store, Collections.ASSIGNED_PREPARE_TASKS)[prep_id]["tasks"][0]
        assert "preparationStatus" not in template
        assert prep_item["localId"] != template["localId"]

        assert asyncio.run(engine.mark_item_prepared(prep_id, 0)) is False
        assert "preparationStatus" not in _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]["tasks"][0]

    def test_unknown_prep_item(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1"))
        prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [0], personnel["a1"], DATE, Shift.DAY))
        with pytest.raises(ItemNotFoundError):
            asyncio.run(engine.mark_item_prepared(prep_id, 3))


class _FailingPoolStore(MemoryDocumentStore):
    """Store whose pool updates fail once fail_pool is set"""

    fail_pool = False

    async def update(self, collection, doc_id, fields):
        if self.fail_pool and collection == Collections.CATEGORIZED_TASKS:
            raise StoreError("permission denied")
        await super().update(collection, doc_id, fields)


def test_back_sync_store_failure_is_not_fatal(personnel):
    store = _FailingPoolStore()
    engine = LifecycleEngine(store)
    pool_id = add_group(store, "REQ-1", _items("S1"))
    prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [0], personnel["a1"], DATE, Shift.DAY))
    store.fail_pool = True

    assert asyncio.run(engine.mark_item_prepared(prep_id, 0)) is False
    prep = asyncio.run(store.get(Collections.ASSIGNED_PREPARE_TASKS, prep_id))
    assert prep["tasks"][0]["preparationStatus"] == PreparationStatus.PREPARED


def test_stale_index_does_not_mark_another_item(store, engine, personnel):
    pool_id = add_group(store, "REQ-1", _items("S1", "S2", "S3"))
    prep_id = asyncio.run(engine.assign_for_preparation(pool_id, [1], personnel["a1"], DATE, Shift.DAY))
    assert asyncio.run(engine.mark_item_prepared(prep_id, 0)) is True
    # S2 leaves the pool, its stored index 1 now points at S3
    asyncio.run(engine.assign_for_execution(pool_id, [1], personnel["t1"], DATE, Shift.DAY))

    assert asyncio.run(engine.mark_item_prepared(prep_id, 0)) is False
    pool = _docs(store, Collections.CATEGORIZED_TASKS)[pool_id]["tasks"]
    assert [(t["localId"], t.get("preparationStatus")) for t in pool] == [("id-S1", None), ("id-S3", None)]


class TestExecutionStatus:

    @pytest.fixture
    def assigned_id(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1", "S2"))
        return asyncio.run(engine.assign_for_execution(pool_id, [0, 1], personnel["t1"], DATE, Shift.DAY))

    def _tasks(self, store, assigned_id):
        return _docs(store, Collections.ASSIGNED_TASKS)[assigned_id]["tasks"]

    def test_done_and_reset(self, store, engine, assigned_id):
        asyncio.run(engine.set_execution_status(assigned_id, 0, ExecutionStatus.DONE))
        assert self._tasks(store, assigned_id)[0]["executionStatus"] == ExecutionStatus.DONE
        asyncio.run(engine.set_execution_status(assigned_id, 0, ExecutionStatus.PENDING))
        assert self._tasks(store, assigned_id)[0]["executionStatus"] == ExecutionStatus.PENDING

    def test_not_ok_stays_in_assignment(self, store, engine, assigned_id):
        asyncio.run(engine.mark_not_ok(assigned_id, 1, "sample cracked"))
        tasks = self._tasks(store, assigned_id)
        assert len(tasks) == 2
        assert tasks[1]["executionStatus"] == ExecutionStatus.NOT_OK
        assert tasks[1]["notOkFailureReason"] == "sample cracked"

        asyncio.run(engine.set_execution_status(assigned_id, 1, ExecutionStatus.PENDING))
        assert "notOkFailureReason" not in self._tasks(store, assigned_id)[1]

    def test_not_ok_requires_reason(self, store, engine, assigned_id):
        with pytest.raises(ValidationError):
            asyncio.run(engine.mark_not_ok(assigned_id, 0, "   "))
        with pytest.raises(ValidationError):
            asyncio.run(engine.set_execution_status(assigned_id, 0, ExecutionStatus.NOT_OK))

    def test_planner_note(self, store, engine, assigned_id):
        asyncio.run(engine.set_planner_note(assigned_id, 0, "use rig 2"))
        assert self._tasks(store, assigned_id)[0]["plannerNote"] == "use rig 2"

    def test_unknown_index(self, engine, assigned_id):
        with pytest.raises(ItemNotFoundError):
            asyncio.run(engine.set_execution_status(assigned_id, 9, ExecutionStatus.DONE))


class TestReturnToPool:

    def test_return_moves_item_to_new_pool_group(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1", "S2"))
        assigned_id = asyncio.run(engine.assign_for_execution(pool_id, [0, 1], personnel["t1"], DATE, Shift.NIGHT))

        new_id = asyncio.run(engine.return_to_pool(assigned_id, 0, "broken sample"))

        group = _docs(store, Collections.CATEGORIZED_TASKS)[new_id]
        assert group["requestId"] == "REQ-1"
        assert group["isReturnedPool"] is True
        assert group["returnReason"] == "broken sample"
        assert group["returnedBy"] == "Alice"
        assert group["shift"] == Shift.NIGHT
        assert group["createdAt"]
        assert len(group["tasks"]) == 1
        item = group["tasks"][0]
        assert item["isReturned"] is True and item["returnReason"] == "broken sample"
        assert item["Sample Name"] == "S1"

        remaining = _docs(store, Collections.ASSIGNED_TASKS)[assigned_id]["tasks"]
        assert [t["Sample Name"] for t in remaining] == ["S2"]
        assert set(_container_counts(store).values()) == {1}

    def test_returning_last_item_deletes_assignment(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1"))
        assigned_id = asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, Shift.DAY))
        asyncio.run(engine.return_to_pool(assigned_id, 0, "no fixture", returned_by="Bob"))

        assert _docs(store, Collections.ASSIGNED_TASKS) == {}
        group = next(iter(_docs(store, Collections.CATEGORIZED_TASKS).values()))
        assert group["returnedBy"] == "Bob"

    def test_reason_is_mandatory(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1"))
        assigned_id = asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, Shift.DAY))
        with pytest.raises(ValidationError):
            asyncio.run(engine.return_to_pool(assigned_id, 0, ""))
        assert len(_docs(store, Collections.ASSIGNED_TASKS)[assigned_id]["tasks"]) == 1
        assert _docs(store, Collections.CATEGORIZED_TASKS) == {}


class TestUnassign:

    def test_unassign_strips_status(self, store, engine, personnel):
        pool_id = add_group(store, "REQ-1", _items("S1", "S2"), TaskCategory.URGENT)
        assigned_id = asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, Shift.DAY))
        asyncio.run(engine.mark_not_ok(assigned_id, 0, "bad"))

        new_id = asyncio.run(engine.unassign_to_pool(assigned_id, 0))

        group = _docs(store, Collections.CATEGORIZED_TASKS)[new_id]
        assert group["isReturnedPool"] is False
        assert group["category"] == TaskCategory.URGENT
        assert "returnReason" not in group and "returnedBy" not in group
        assert group["tasks"] == [{"Description": "Tensile", "Sample Name": "S1", "localId": "id-S1"}]
        assert assigned_id not in _docs(store, Collections.ASSIGNED_TASKS)
        assert set(_container_counts(store).values()) == {1}

    def test_strip_status_fields(self):
        item = {"Description": "x", "executionStatus": "Done", "isReturned": True, "returnedBy": "A",
                "returnReason": "r", "notOkFailureReason": "f", "preparationStatus": "Prepared", "plannerNote": "n"}
        assert strip_status_fields(item) == {"Description": "x", "plannerNote": "n"}


class TestPoolMaintenance:

    def test_manual_task(self, store, engine):
        doc_id = asyncio.run(engine.add_manual_task("Calibration", quantity="", variant=" V1 "))
        group = _docs(store, Collections.CATEGORIZED_TASKS)[doc_id]

        assert group["category"] == TaskCategory.MANUAL
        assert group["requestId"].startswith("MAN-") and len(group["requestId"]) == 10
        assert group["createdAt"]
        item = group["tasks"][0]
        assert item["Description"] == "Calibration"
        assert item["Quantity"] == "1"
        assert item["Variant"] == "V1"
        assert item["isManualEntry"] is True and item["localId"]
        assert "ManualEntry" not in item

    def test_manual_task_requires_description(self, engine):
        with pytest.raises(ValidationError):
            asyncio.run(engine.add_manual_task("  "))

    def test_group_order(self, store, engine):
        a = add_group(store, "A", _items("1"))
        b = add_group(store, "B", _items("2"))
        asyncio.run(engine.set_group_order([b, a]))
        pool = asyncio.run(engine.load_pool())
        assert [g.doc_id for g in pool] == [b, a]
        assert [g.order for g in pool] == [0, 1]

    def test_group_order_breaks_due_date_ties(self, store, engine):
        a = add_group(store, "A", _items("1"))
        b = add_group(store, "B", _items("2"))
        c = add_group(store, "C", _items("3"))
        asyncio.run(engine.set_group_order([c, a]))

        rows = build_grid(asyncio.run(engine.load_pool()), [])
        assert [r.request_id for r in rows] == ["C", "A", "B"]
        assert b in rows[2].source_doc_ids

    def test_run_cleanup(self, store, engine):
        keep = add_group(store, "A", _items("1"))
        asyncio.run(store.add(Collections.CATEGORIZED_TASKS, {"requestId": "B", "tasks": []}))
        asyncio.run(store.add(Collections.CATEGORIZED_TASKS, {"requestId": "C"}))

        assert asyncio.run(engine.run_cleanup()) == 2
        assert list(_docs(store, Collections.CATEGORIZED_TASKS)) == [keep]

    def test_clear_all_task_data(self, store, personnel):
        engine = LifecycleEngine(store, batch_size=3)
        for i in range(5):
            add_group(store, f"R{i}", _items(f"S{i}", f"T{i}"))
        pool = asyncio.run(engine.load_pool())
        asyncio.run(engine.assign_for_execution(pool[0].doc_id, [0], personnel["t1"], DATE, Shift.DAY))
        asyncio.run(engine.assign_for_preparation(pool[1].doc_id, [0], personnel["a1"], DATE, Shift.DAY))

        assert asyncio.run(engine.clear_all_task_data()) == 7
        for collection in Collections.TASK_DATA:
            assert _docs(store, collection) == {}
        assert store.batch_sizes == [3, 3, 1]
        # roster is untouched
        assert len(_docs(store, Collections.TESTERS)) == 3

    def test_load_assigned_filters(self, store, engine, personnel):
        pool_id = add_group(store, "R", _items("1", "2"))
        asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], DATE, Shift.DAY))
        asyncio.run(engine.assign_for_execution(pool_id, [0], personnel["t1"], "2024-05-02", Shift.DAY))
        assert len(asyncio.run(engine.load_assigned())) == 2
        assert len(asyncio.run(engine.load_assigned(date=DATE, shift=Shift.DAY))) == 1
        assert asyncio.run(engine.load_assigned(date=DATE, shift=Shift.NIGHT)) == []
