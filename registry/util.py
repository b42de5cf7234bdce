"""
Utility functions

Semantic field lookup over free-form spreadsheet rows and id generation.
Every component resolves "Description" / "Variant" / ... through
get_task_value so header spelling differences are handled in one place.
"""
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# header aliases seen in exported request sheets
FIELD_ALIASES = {
    "description": ("desc", "test name", "testname", "item"),
    "variant": ("var", "method", "condition"),
    "sample name": ("sample", "samplename", "sample_name"),
    "request id": ("requestid", "request_id", "request no"),
    "due date": ("due finish", "due", "duedate", "due_date"),
    "quantity": ("qty",),
}


def _norm_header(header: Any) -> str:
    return str(header).lower().strip()


def find_task_key(task: Dict[str, Any], header: str) -> Optional[str]:
    """
    Find the actual key of a task dict for a semantic header

    Matching is case-insensitive and whitespace-trimmed; when no key matches
    directly, the known aliases for the header are tried in order.

    Args:
        task: task item (column name -> value)
        header: semantic header such as "Description"

    Returns:
        the key present in ``task`` or None
    """
    target = _norm_header(header)
    normalized = {}
    for key in task.keys():
        normalized.setdefault(_norm_header(key), key)

    if target in normalized:
        return normalized[target]

    for alias in FIELD_ALIASES.get(target, ()):
        if alias in normalized:
            return normalized[alias]
    return None


def get_task_value(task: Dict[str, Any], header: str, default: Any = "") -> Any:
    key = find_task_key(task, header)
    if key is None:
        return default
    value = task[key]
    return default if value is None else value


def task_text(task: Dict[str, Any], header: str) -> str:
    """String value of a semantic field, stripped"""
    return str(get_task_value(task, header, "")).strip()


def make_local_id() -> str:
    """Fresh item identifier, unique across imports"""
    return uuid.uuid4().hex


def make_manual_request_id() -> str:
    """Request id for an ad-hoc pool entry, e.g. MAN-482913"""
    return f"MAN-{str(int(time.time() * 1000))[-6:]}"


def make_placeholder_request_id() -> str:
    """Request id for an imported row that carries none"""
    return f"no-id-{random.random()}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")
