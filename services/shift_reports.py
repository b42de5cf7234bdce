"""
Shift reports

Instrument health, waste level and cleanliness per (date, shift), stored
verbatim under "{date}_{shift}".
"""
from registry.errors import ValidationError
from registry.models import Collections, Shift, ShiftReport
from registry.store import DocumentStore


def default_report(date: str, shift: str) -> ShiftReport:
    return ShiftReport(
        date=date,
        shift=shift,
        instruments=[{"name": "Lab Systems", "status": "normal"}],
    )


async def get_report(store: DocumentStore, date: str, shift: str) -> ShiftReport:
    """Stored report, or the default one when none was saved"""
    data = await store.get(Collections.SHIFT_REPORTS, f"{date}_{shift}")
    if data is None:
        return default_report(date, shift)
    return ShiftReport.from_dict(data)


async def save_report(store: DocumentStore, report: ShiftReport) -> None:
    if not report.date:
        raise ValidationError("report date is required")
    if report.shift not in Shift.ALL:
        raise ValidationError(f"unknown shift: {report.shift}")
    await store.set(Collections.SHIFT_REPORTS, report.key, report.to_dict())
