#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Date utilities - due-date parsing shared by import, grid and export
"""

import math
import re
from datetime import date, datetime, timedelta
from typing import Any, Optional

# spreadsheet day-serial epoch (1900 date system, leap-year bug included)
EXCEL_EPOCH = date(1899, 12, 30)

_DMY_PATTERN = re.compile(r"^(\d{1,2})[/.](\d{1,2})[/.](\d{4})$")
_ISO_PATTERN = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_SERIAL_PATTERN = re.compile(r"^\d+(?:\.\d+)?$")


def excel_serial_to_date(serial: float) -> Optional[date]:
    """
    Convert a spreadsheet day serial to a date

    Args:
        serial: day offset from 1899-12-30, fractional part (time of day) ignored

    Returns:
        date, or None for non-finite / non-positive values

    Examples:
        >>> excel_serial_to_date(45413)
        datetime.date(2024, 5, 1)
    """
    try:
        serial = float(serial)
    except (TypeError, ValueError):
        return None
    if math.isnan(serial) or math.isinf(serial) or serial <= 0:
        return None
    try:
        return EXCEL_EPOCH + timedelta(days=int(serial))
    except OverflowError:
        return None


def parse_due_date(value: Any) -> Optional[date]:
    """
    Parse a due-date cell

    Args:
        value: cell value, supported forms:
               - date / datetime objects
               - numbers (day serials)
               - D/M/YYYY or D.M.YYYY strings (e.g. 05/01/2024)
               - YYYY-MM-DD strings, optionally followed by a time
               - numeric strings (day serials)

    Returns:
        date, or None when the value is empty or cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return excel_serial_to_date(value)

    text = str(value).strip()
    if not text:
        return None

    try:
        match = _DMY_PATTERN.match(text)
        if match:
            day, month, year = (int(p) for p in match.groups())
            return date(year, month, day)

        match = _ISO_PATTERN.match(text)
        if match:
            year, month, day = (int(p) for p in match.groups())
            return date(year, month, day)
    except ValueError:
        # 31/02/2024 and friends
        return None

    if _SERIAL_PATTERN.match(text):
        return excel_serial_to_date(float(text))
    return None


def format_due_date(value: Any) -> str:
    """
    Display form of a due date: DD/MM/YYYY

    Unparseable text is returned unchanged, empty values become "".
    """
    parsed = parse_due_date(value)
    if parsed is not None:
        return parsed.strftime("%d/%m/%Y")
    if value is None:
        return ""
    return str(value).strip()


def due_date_sort_key(value: Any) -> float:
    """Ordinal of the due date; undated values sort last (infinity)"""
    parsed = parse_due_date(value)
    return float(parsed.toordinal()) if parsed is not None else math.inf


def is_date_overdue(value: Any, reference_date: Optional[date] = None) -> bool:
    """
    Check whether a due date lies before the reference date

    Args:
        value: due-date cell value
        reference_date: defaults to today

    Returns:
        True when overdue, False when not overdue or not parseable
    """
    parsed = parse_due_date(value)
    if parsed is None:
        return False
    if reference_date is None:
        reference_date = date.today()
    return parsed < reference_date
