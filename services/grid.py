"""
Grid aggregator

Re-groups task items by request id and resolved column key. Every item in a
cell keeps its source group id and its index in that group, the handle used
to apply a bulk action to exactly the selected items.
"""
from __future__ import annotations

import logging
import math
import os
from datetime import date
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font

from date_utils import due_date_sort_key, format_due_date
from registry.errors import ItemNotFoundError
from registry.models import CategorizedTask, RawTask, TaskCategory
from services.classifier import TaskBadges, classify_task
from services.importer import due_value, is_valid_task
from services.mapping import HeaderGroup, build_mapping_lookup, lookup_column_key

logger = logging.getLogger(__name__)

# category tab that shows every non-manual group
ALL_TAB = "all"

Selection = Dict[str, List[int]]


@dataclass
class GridItem:
    task: RawTask
    original_index: int
    source_doc_id: Optional[str]


@dataclass
class GridRow:
    request_id: str
    min_due: float = math.inf
    badges: TaskBadges = field(default_factory=TaskBadges)
    cells: Dict[str, List[GridItem]] = field(default_factory=dict)
    unmapped: List[GridItem] = field(default_factory=list)
    source_doc_ids: List[str] = field(default_factory=list)

    @property
    def due_display(self) -> str:
        if math.isinf(self.min_due):
            return ""
        return format_due_date(date.fromordinal(int(self.min_due)))

    @property
    def item_count(self) -> int:
        return sum(len(items) for items in self.cells.values()) + len(self.unmapped)

    def cell(self, column_key: str) -> List[GridItem]:
        return self.cells.get(column_key, [])


def build_grid(groups: Iterable[CategorizedTask], mappings) -> List[GridRow]:
    """
    Build grid rows from task groups

    Groups sharing a request id merge into one row. Invalid items are left
    out of the cells. Rows sort by their earliest due date, undated rows last
    (stable otherwise).

    Args:
        groups: pool groups (or any record with request_id, tasks, category, doc_id)
        mappings: mapping table

    Returns:
        list of GridRow
    """
    lookup = build_mapping_lookup(mappings)
    rows: Dict[str, GridRow] = {}

    for group in groups:
        row = rows.setdefault(group.request_id, GridRow(request_id=group.request_id))
        if group.doc_id and group.doc_id not in row.source_doc_ids:
            row.source_doc_ids.append(group.doc_id)

        for index, task in enumerate(group.tasks):
            if not is_valid_task(task):
                continue
            item = GridItem(task=task, original_index=index, source_doc_id=group.doc_id)
            row.badges = row.badges.merge(classify_task(task, group.category))
            row.min_due = min(row.min_due, due_date_sort_key(due_value(task)))

            column_key = lookup_column_key(task, lookup)
            if column_key is None:
                row.unmapped.append(item)
            else:
                row.cells.setdefault(column_key, []).append(item)

    return sorted(rows.values(), key=lambda r: r.min_due)


def filter_groups(groups: Iterable[CategorizedTask], tab: str = ALL_TAB,
                  search: str = "") -> List[CategorizedTask]:
    """
    Pool groups visible under a category tab

    The manual tab shows only manual groups, every other tab (including
    "all") hides them. ``search`` is a case-insensitive request id substring.
    """
    needle = search.strip().lower()
    visible = []
    for group in groups:
        if tab == TaskCategory.MANUAL:
            if group.category != TaskCategory.MANUAL:
                continue
        elif group.category == TaskCategory.MANUAL:
            continue
        elif tab != ALL_TAB and group.category != tab:
            continue
        if needle and needle not in str(group.request_id).lower():
            continue
        visible.append(group)
    return visible


def category_counts(groups: Iterable[CategorizedTask]) -> Dict[str, int]:
    """Group count per category tab, "all" counting non-manual groups"""
    counts = {category: 0 for category in TaskCategory.ALL}
    counts[ALL_TAB] = 0
    for group in groups:
        counts[group.category] = counts.get(group.category, 0) + 1
        if group.category != TaskCategory.MANUAL:
            counts[ALL_TAB] += 1
    return counts


def active_column_keys(rows: Sequence[GridRow], keys: Sequence[str]) -> List[str]:
    """Keys (in the given order) with at least one item in any row"""
    return [key for key in keys if any(row.cells.get(key) for row in rows)]


def select_cell_items(row: GridRow, column_key: Optional[str],
                      positions: Optional[Iterable[int]] = None) -> Selection:
    """
    Selection handle for the items of one cell

    Args:
        row: grid row
        column_key: column key, None selects from the unmapped bucket
        positions: positions inside the cell, all items when None

    Returns:
        {source_doc_id: [original_index, ...]}
    """
    items = row.unmapped if column_key is None else row.cell(column_key)
    if positions is None:
        chosen = items
    else:
        chosen = []
        for pos in positions:
            if pos < 0 or pos >= len(items):
                raise ItemNotFoundError(f"cell {column_key} of {row.request_id} has no item {pos}")
            chosen.append(items[pos])

    selection: Selection = {}
    for item in chosen:
        indices = selection.setdefault(item.source_doc_id, [])
        if item.original_index not in indices:
            indices.append(item.original_index)
    return selection


def merge_selections(*selections: Selection) -> Selection:
    merged: Selection = {}
    for selection in selections:
        for doc_id, indices in selection.items():
            target = merged.setdefault(doc_id, [])
            target.extend(i for i in indices if i not in target)
    return merged


def export_grid_summary(rows: Sequence[GridRow], headers: Sequence[HeaderGroup],
                        output_path: str, hide_empty: bool = True) -> str:
    """
    Write per-column item counts to an .xlsx file

    Columns: Request ID, one "{group} - {sub}" column per key, Unmapped.

    Returns:
        the output path
    """
    keys = []
    labels = {}
    for header in headers:
        for sub, key in zip(header.subs, header.keys):
            keys.append(key)
            labels[key] = f"{header.name} - {sub}"
    if hide_empty:
        keys = active_column_keys(rows, keys)

    wb = Workbook()
    ws = wb.active
    ws.title = "Tasks Summary"

    titles = ["Request ID"] + [labels[k] for k in keys] + ["Unmapped"]
    for col_idx, title in enumerate(titles, start=1):
        cell = ws.cell(row=1, column=col_idx, value=title)
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal="center")

    for row_idx, row in enumerate(rows, start=2):
        ws.cell(row=row_idx, column=1, value=row.request_id)
        for col_idx, key in enumerate(keys, start=2):
            count = len(row.cell(key))
            ws.cell(row=row_idx, column=col_idx, value=count or None)
        ws.cell(row=row_idx, column=len(keys) + 2, value=len(row.unmapped) or None)

    # width from the header text, clamped to 8..60
    for col_idx, title in enumerate(titles, start=1):
        col_letter = ws.cell(row=1, column=col_idx).column_letter
        ws.column_dimensions[col_letter].width = min(max(len(str(title)) * 1.2, 8), 60)

    out_dir = os.path.dirname(output_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    wb.save(output_path)
    wb.close()
    logger.info("grid summary exported: %s (%d rows)", output_path, len(rows))
    return output_path
