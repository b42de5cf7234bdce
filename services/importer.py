"""
Import normalizer

Turns raw spreadsheet rows into validated task items grouped by request id,
ready to be categorized into the pool.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from registry.config import DEFAULT_VISIBLE_COLUMNS
from registry.errors import ValidationError
from registry.models import CategorizedTask, Collections, ItemField, RawTask, TaskCategory
from registry.store import DocumentStore
from registry.util import (
    find_task_key,
    get_task_value,
    make_local_id,
    make_placeholder_request_id,
    task_text,
)

logger = logging.getLogger(__name__)

# placeholder values meaning "nothing entered"
GARBAGE_VALUES = frozenset({"0", "-", "n/a", "nil", "none", "nan", "null"})


@dataclass(frozen=True)
class SplitRule:
    """One imported line that stands for several physical sub-tests"""
    description: str
    variants: tuple


SPLIT_RULES = (
    SplitRule(description="การสกัด EbP,hPP ใน ICP", variants=("ICP-PER", "ICP-HppEbp")),
)


@dataclass
class GroupedTask:
    request_id: str
    tasks: List[RawTask] = field(default_factory=list)


@dataclass
class ImportResult:
    groups: List[GroupedTask]
    total_rows: int
    dropped_rows: int

    @property
    def item_count(self) -> int:
        return sum(len(g.tasks) for g in self.groups)


def _is_garbage(value: str) -> bool:
    return not value or value.lower() in GARBAGE_VALUES


def is_valid_task(task: RawTask) -> bool:
    """
    Validity filter for imported rows

    A row is dropped when Description and Variant are both empty or
    placeholder values, or when a non-empty Sample Name repeats the
    Request ID. Manual entries are always valid.
    """
    if task.get(ItemField.IS_MANUAL_ENTRY):
        return True

    if _is_garbage(task_text(task, "Description")) and _is_garbage(task_text(task, "Variant")):
        return False

    sample_name = task_text(task, "Sample Name")
    if sample_name and sample_name == task_text(task, "Request ID"):
        return False
    return True


def expand_task(task: RawTask, rules: Sequence[SplitRule] = SPLIT_RULES) -> List[RawTask]:
    """
    Apply split rules and stamp fresh local ids

    Returns:
        one item, or one item per split variant when a rule matches
    """
    description = task_text(task, "Description")
    for rule in rules:
        if description == rule.description:
            variant_key = find_task_key(task, "Variant") or "Variant"
            items = []
            for variant in rule.variants:
                item = dict(task)
                item[variant_key] = variant
                item[ItemField.LOCAL_ID] = make_local_id()
                items.append(item)
            return items

    item = dict(task)
    item[ItemField.LOCAL_ID] = make_local_id()
    return [item]


def default_excluded_columns(headers: Iterable[str],
                             visible_columns: Sequence[str] = DEFAULT_VISIBLE_COLUMNS) -> set:
    """Headers outside the visible whitelist (compared trimmed, case-insensitive)"""
    visible = {str(c).strip().lower() for c in visible_columns}
    return {h for h in headers if str(h).strip().lower() not in visible}


def collect_headers(rows: Iterable[RawTask]) -> List[str]:
    """Column names in first-seen order"""
    headers: Dict[str, None] = {}
    for row in rows:
        for key in row.keys():
            headers.setdefault(key, None)
    return list(headers)


def normalize_rows(rows: Sequence[RawTask], excluded_columns: Iterable[str] = (),
                   rules: Sequence[SplitRule] = SPLIT_RULES) -> ImportResult:
    """
    Normalize raw rows into grouped task items

    Args:
        rows: raw rows (column name -> cell value)
        excluded_columns: column names dropped from every item
        rules: split-row expansion rules

    Returns:
        ImportResult, groups in first-seen order; invalid rows are counted
        in dropped_rows rather than raised
    """
    excluded = set(excluded_columns)
    groups: Dict[str, GroupedTask] = {}
    dropped = 0

    for row in rows:
        base = {k: v for k, v in row.items() if k not in excluded}
        if not is_valid_task(base):
            dropped += 1
            continue

        # split items of one row stay in one group
        request_id = task_text(base, "Request ID") or make_placeholder_request_id()
        for item in expand_task(base, rules):
            groups.setdefault(request_id, GroupedTask(request_id=request_id)).tasks.append(item)

    result = ImportResult(groups=list(groups.values()), total_rows=len(rows), dropped_rows=dropped)
    logger.info(
        "import: %d rows -> %d groups / %d items, %d dropped",
        result.total_rows, len(result.groups), result.item_count, result.dropped_rows,
    )
    return result


def _cell_value(value: Any) -> Any:
    # pd.Timestamp is a datetime subclass
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalar
        value = value.item()
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def read_task_rows(file_path: str, sheet_name: Any = 0) -> List[RawTask]:
    """
    Read a request workbook into row dicts

    Empty cells are left out of the row, date cells become YYYY-MM-DD strings
    and whole numbers lose their trailing ".0".

    Args:
        file_path: .xlsx path
        sheet_name: sheet index or name, first sheet by default

    Returns:
        list of rows in sheet order
    """
    df = pd.read_excel(file_path, sheet_name=sheet_name, engine="openpyxl", dtype=object)
    df.columns = [str(c).strip() for c in df.columns]

    rows = []
    for record in df.to_dict(orient="records"):
        row = {}
        for key, value in record.items():
            if value is None or (not isinstance(value, str) and pd.isna(value)):
                continue
            row[key] = _cell_value(value)
        if row:
            rows.append(row)
    return rows


async def categorize_group(store: DocumentStore, group: GroupedTask, category: str) -> str:
    """
    Move an imported group into the pool under a category

    Returns:
        document id of the new pool group
    """
    if category not in TaskCategory.ALL:
        raise ValidationError(f"unknown category: {category}")
    if not group.tasks:
        raise ValidationError(f"group {group.request_id} has no tasks")

    record = CategorizedTask(request_id=group.request_id, tasks=group.tasks, category=category)
    doc_id = await store.add(Collections.CATEGORIZED_TASKS, record.to_dict())
    logger.info("categorized %s as %s (%d items)", group.request_id, category, len(group.tasks))
    return doc_id


def due_value(task: RawTask) -> Optional[Any]:
    """Raw due-date cell of a task (Due Date / Due finish / ...)"""
    value = get_task_value(task, "Due Date", None)
    return None if value == "" else value
