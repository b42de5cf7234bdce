"""
Column mapping

Resolves a task's (description, variant) pair to a grid column key
"{headerGroup}|{headerSub}", derives the display order of the columns and
manages the testMappings collection (CRUD, ordering, spreadsheet import).
"""
from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from registry.errors import ItemNotFoundError, ValidationError
from registry.models import Collections, RawTask, TestMapping
from registry.store import DocumentStore
from registry.util import task_text

logger = logging.getLogger(__name__)

MappingLookup = Dict[Tuple[str, str], str]

# header-row detection for mapping sheets
HEADER_SCAN_ROWS = 20
HEADER_KEYWORDS = ("description", "variant", "group", "header", "category", "test name")
HEADER_ALIASES = {
    "desc": ("description", "desc", "testname"),
    "variant": ("variant", "var", "method", "condition"),
    "group": ("headergroup", "group", "testgroup", "category"),
    "sub": ("headersub", "sub", "subheader", "column"),
    "order": ("order", "sort", "sequence"),
}
DEFAULT_GROUP = "Other"
DEFAULT_SUB = "Misc"

# spacing between groups when a group order is saved
GROUP_ORDER_STEP = 10000


def normalize_key(value: Any) -> str:
    """Lower-case, NFC-normalize and strip every whitespace character"""
    if value is None:
        return ""
    text = unicodedata.normalize("NFC", str(value)).lower()
    return re.sub(r"\s+", "", text)


def _order_value(order: Any) -> float:
    if order is None or isinstance(order, bool):
        return math.inf
    try:
        value = float(order)
    except (TypeError, ValueError):
        return math.inf
    return math.inf if math.isnan(value) else value


def build_mapping_lookup(mappings: Iterable[TestMapping]) -> MappingLookup:
    """
    Index mappings by normalized (description, variant)

    The first mapping for a pair wins; mappings without a group or
    sub-header produce no column and are left out.
    """
    lookup: MappingLookup = {}
    for mapping in mappings:
        if not mapping.header_group or not mapping.header_sub:
            continue
        pair = (normalize_key(mapping.description), normalize_key(mapping.variant))
        lookup.setdefault(pair, mapping.column_key)
    return lookup


def lookup_column_key(item: RawTask, lookup: MappingLookup) -> Optional[str]:
    pair = (normalize_key(task_text(item, "Description")), normalize_key(task_text(item, "Variant")))
    return lookup.get(pair)


def resolve_column_key(item: RawTask, mappings: Iterable[TestMapping]) -> Optional[str]:
    """
    Resolve the grid column of a task item

    Args:
        item: task item
        mappings: mapping table

    Returns:
        "{headerGroup}|{headerSub}" of the exact match, None when unmapped
    """
    return lookup_column_key(item, build_mapping_lookup(mappings))


@dataclass
class HeaderGroup:
    name: str
    subs: List[str] = field(default_factory=list)

    @property
    def keys(self) -> List[str]:
        return [f"{self.name}|{sub}" for sub in self.subs]


def build_column_headers(mappings: Iterable[TestMapping]) -> List[HeaderGroup]:
    """
    Two-level column headers in display order

    Groups sort by the minimum order of their mappings (missing order last,
    ties by group name); sub-headers sort by their own minimum order
    (missing last, ties by first encounter).
    """
    group_order: Dict[str, float] = {}
    sub_order: Dict[str, Dict[str, float]] = {}

    for mapping in mappings:
        if not mapping.header_group or not mapping.header_sub:
            continue
        order = _order_value(mapping.order)
        group = mapping.header_group
        group_order[group] = min(group_order.get(group, math.inf), order)
        subs = sub_order.setdefault(group, {})
        subs[mapping.header_sub] = min(subs.get(mapping.header_sub, math.inf), order)

    groups = sorted(group_order, key=lambda g: (group_order[g], g))
    headers = []
    for group in groups:
        subs = sub_order[group]
        # dicts keep encounter order and sorted() is stable
        headers.append(HeaderGroup(name=group, subs=sorted(subs, key=lambda s: subs[s])))
    return headers


def column_keys(headers: Sequence[HeaderGroup]) -> List[str]:
    keys: List[str] = []
    for header in headers:
        keys.extend(header.keys)
    return keys


def sort_mappings(mappings: Iterable[TestMapping]) -> List[TestMapping]:
    """Listing order: order (missing last), then group, then sub-header"""
    return sorted(mappings, key=lambda m: (_order_value(m.order), m.header_group, m.header_sub))


def _clean_header(cell: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(cell).lower())


def _cell_text(row: Sequence[Any], index: Optional[int]) -> str:
    if index is None or index >= len(row):
        return ""
    value = row[index]
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            value = int(value)
    return str(value).strip()


def detect_header_row(rows: Sequence[Sequence[Any]]) -> int:
    """Index of the row with most header keywords among the first rows (0 when none)"""
    best_index, best_hits = 0, 0
    for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        hits = 0
        for cell in row:
            if isinstance(cell, str) and any(kw in cell.lower() for kw in HEADER_KEYWORDS):
                hits += 1
        if hits > best_hits:
            best_index, best_hits = index, hits
    return best_index


def parse_mapping_sheet(rows: Sequence[Sequence[Any]]) -> List[Dict[str, Any]]:
    """
    Turn raw sheet rows into mapping records

    Args:
        rows: sheet content as a list of rows (list of cell values)

    Returns:
        list of {"description", "variant", "headerGroup", "headerSub", "order"}
    """
    if not rows:
        raise ValidationError("mapping sheet is empty")

    header_index = detect_header_row(rows)
    columns: Dict[str, int] = {}
    for index, cell in enumerate(rows[header_index]):
        if not isinstance(cell, str):
            continue
        cleaned = _clean_header(cell)
        for name, aliases in HEADER_ALIASES.items():
            if cleaned in aliases:
                columns[name] = index

    records = []
    for row in rows[header_index + 1:]:
        description = _cell_text(row, columns.get("desc"))
        variant = _cell_text(row, columns.get("variant"))
        if not description and not variant:
            continue
        try:
            order = float(_cell_text(row, columns.get("order")) or 0)
        except ValueError:
            order = 0.0
        if not math.isfinite(order):
            order = 0.0
        records.append({
            "description": description,
            "variant": variant,
            "headerGroup": _cell_text(row, columns.get("group")) or DEFAULT_GROUP,
            "headerSub": _cell_text(row, columns.get("sub")) or DEFAULT_SUB,
            "order": int(order) if order.is_integer() else order,
        })
    return records


def read_mapping_workbook(file_path: str) -> List[List[Any]]:
    """First sheet of a mapping workbook as raw rows (no header inference)"""
    df = pd.read_excel(file_path, sheet_name=0, header=None, engine="openpyxl")
    rows = []
    for values in df.itertuples(index=False, name=None):
        rows.append([None if pd.isna(v) else v for v in values])
    return rows


@dataclass
class MappingImportResult:
    added: int = 0
    updated: int = 0


class MappingService:
    """testMappings collection management"""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def list_mappings(self) -> List[TestMapping]:
        docs = await self.store.get_all(Collections.TEST_MAPPINGS)
        return sort_mappings(TestMapping.from_dict(doc_id, data) for doc_id, data in docs.items())

    async def save_mapping(self, mapping: TestMapping) -> str:
        """
        Add or update a mapping

        Group and sub-header are required. New mappings are appended
        (order = current table length) unless an order is given.

        Returns:
            document id of the mapping
        """
        if not mapping.header_group.strip() or not mapping.header_sub.strip():
            raise ValidationError("group and sub-header are required")

        if mapping.id:
            await self.store.update(Collections.TEST_MAPPINGS, mapping.id, mapping.to_dict())
            return mapping.id

        if mapping.order is None:
            mapping.order = len(await self.store.get_all(Collections.TEST_MAPPINGS))
        mapping.id = await self.store.add(Collections.TEST_MAPPINGS, mapping.to_dict())
        return mapping.id

    async def delete_mapping(self, mapping_id: str) -> None:
        await self.store.delete(Collections.TEST_MAPPINGS, mapping_id)

    async def import_records(self, records: Iterable[Dict[str, Any]]) -> MappingImportResult:
        """
        Upsert parsed mapping records

        An existing mapping with the same trimmed (description, variant) is
        updated in place, anything else is added.
        """
        docs = await self.store.get_all(Collections.TEST_MAPPINGS)
        existing = {}
        for doc_id, data in docs.items():
            pair = (str(data.get("description") or "").strip(), str(data.get("variant") or "").strip())
            existing.setdefault(pair, doc_id)

        result = MappingImportResult()
        for record in records:
            pair = (record["description"], record["variant"])
            fields = {
                "headerGroup": record["headerGroup"],
                "headerSub": record["headerSub"],
                "order": record["order"],
            }
            if pair in existing:
                await self.store.update(Collections.TEST_MAPPINGS, existing[pair], fields)
                result.updated += 1
            else:
                doc_id = await self.store.add(Collections.TEST_MAPPINGS, dict(record))
                existing[pair] = doc_id
                result.added += 1

        logger.info("mapping import: added %d, updated %d", result.added, result.updated)
        return result

    async def import_workbook(self, file_path: str) -> MappingImportResult:
        return await self.import_records(parse_mapping_sheet(read_mapping_workbook(file_path)))

    async def save_group_order(self, groups: Sequence[str]) -> None:
        """Group at position i: every mapping in it gets order i * GROUP_ORDER_STEP"""
        docs = await self.store.get_all(Collections.TEST_MAPPINGS)
        positions = {name: idx for idx, name in enumerate(groups)}
        for doc_id, data in docs.items():
            group = data.get("headerGroup")
            if group in positions:
                await self.store.update(
                    Collections.TEST_MAPPINGS, doc_id, {"order": positions[group] * GROUP_ORDER_STEP}
                )

    async def reorder(self, mapping_ids: Sequence[str]) -> None:
        """Mapping at position i gets order i"""
        docs = await self.store.get_all(Collections.TEST_MAPPINGS)
        for mapping_id in mapping_ids:
            if mapping_id not in docs:
                raise ItemNotFoundError(f"mapping {mapping_id} does not exist")
        for idx, mapping_id in enumerate(mapping_ids):
            await self.store.update(Collections.TEST_MAPPINGS, mapping_id, {"order": idx})
