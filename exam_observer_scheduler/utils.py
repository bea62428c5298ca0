"""
Utility functions for reading and writing observer assignment workbooks.
"""

import math
from collections import Counter
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .constraints import format_minutes, parse_time_to_minutes
from .models import Availability, BusyInterval, Exam, Observer, Snapshot, TimeWindow

REQUIRED_COLUMNS = {
    'Exams': ['Exam Id', 'Date', 'Start', 'End', 'Schedule Id', 'Exam Name'],
    'Observers': ['Observer Id', 'Name', 'Title', 'Scientific Rank', 'Availability', 'Max Assignments'],
    'TimeSlots': ['Observer Id', 'Day', 'Start', 'End'],
    'Busy': ['Observer Id', 'Date', 'Start', 'End', 'Exam Id'],
}


def validate_excel_file(filename: str) -> Tuple[bool, List[str]]:
    """
    Validate that the Excel file has all required sheets and columns.

    Args:
        filename: Path to the Excel file

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []

    try:
        excel_file = pd.ExcelFile(filename)

        missing_sheets = [sheet for sheet in REQUIRED_COLUMNS if sheet not in excel_file.sheet_names]
        if missing_sheets:
            errors.append(f"Missing required sheets: {', '.join(missing_sheets)}")

        for sheet, required in REQUIRED_COLUMNS.items():
            if sheet not in excel_file.sheet_names:
                continue
            df = pd.read_excel(excel_file, sheet_name=sheet)
            missing_cols = [col for col in required if col not in df.columns]
            if missing_cols:
                errors.append(f"{sheet} sheet missing columns: {', '.join(missing_cols)}")

    except FileNotFoundError:
        errors.append(f"File not found: {filename}")
    except Exception as e:
        errors.append(f"Error reading file: {str(e)}")

    return len(errors) == 0, errors


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def cell_id(value: Any) -> Any:
    """Normalise an id cell: whole floats and numpy integers become int, text is stripped."""
    if _is_blank(value):
        return None
    if isinstance(value, str):
        text = value.strip()
        return int(text) if text.isdigit() else text
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if hasattr(value, 'item'):
        return cell_id(value.item())
    return value


def _text(value: Any) -> str:
    return '' if _is_blank(value) else str(value).strip()


def _date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.to_datetime(value).date()


def read_snapshot_excel(filename: str, exam_ids: Optional[Iterable[Any]] = None) -> Snapshot:
    """
    Build a Snapshot from a workbook.

    Args:
        filename: Path to the workbook
        exam_ids: Restrict to these exams (all when omitted). Busy rows that
            belong to one of these exams are dropped, since those exams are
            being reassigned.

    Returns:
        Snapshot
    """
    sheets = pd.read_excel(filename, sheet_name=None)
    wanted = {cell_id(exam_id) for exam_id in exam_ids} if exam_ids is not None else None

    exams = []
    for _, row in sheets['Exams'].iterrows():
        exam_id = cell_id(row['Exam Id'])
        if exam_id is None or (wanted is not None and exam_id not in wanted):
            continue
        exams.append(Exam(
            exam_id=exam_id,
            date=_date(row['Date']),
            start=parse_time_to_minutes(row['Start']),
            end=parse_time_to_minutes(row['End']),
            schedule_id=cell_id(row.get('Schedule Id')),
            name=_text(row.get('Exam Name')),
        ))

    windows: Dict[Any, List[TimeWindow]] = {}
    slots = sheets.get('TimeSlots')
    if slots is not None:
        for _, row in slots.iterrows():
            observer_id = cell_id(row['Observer Id'])
            if observer_id is None:
                continue
            windows.setdefault(observer_id, []).append(TimeWindow(
                _text(row['Day']), parse_time_to_minutes(row['Start']), parse_time_to_minutes(row['End'])))

    observers = []
    for _, row in sheets['Observers'].iterrows():
        observer_id = cell_id(row['Observer Id'])
        if observer_id is None:
            continue
        cap = row.get('Max Assignments')
        observers.append(Observer(
            observer_id=observer_id,
            name=_text(row.get('Name')),
            title=_text(row.get('Title')),
            scientific_rank=_text(row.get('Scientific Rank')),
            availability=Availability.parse(row.get('Availability')),
            time_windows=tuple(windows.get(observer_id, ())),
            max_assignments=10 if _is_blank(cap) else int(cap),
        ))

    busy = []
    busy_df = sheets.get('Busy')
    if busy_df is not None:
        for _, row in busy_df.iterrows():
            observer_id = cell_id(row['Observer Id'])
            exam_id = cell_id(row.get('Exam Id'))
            if observer_id is None or (wanted is not None and exam_id is not None and exam_id in wanted):
                continue
            busy.append(BusyInterval(observer_id, _date(row['Date']), parse_time_to_minutes(row['Start']),
                                     parse_time_to_minutes(row['End']), exam_id))

    return Snapshot(exams, observers, busy)


def write_snapshot_excel(snapshot: Snapshot, filename: str) -> None:
    """Write a snapshot in the layout read_snapshot_excel expects."""
    exams = [{
        'Exam Id': e.exam_id, 'Date': e.date, 'Start': format_minutes(e.start), 'End': format_minutes(e.end),
        'Schedule Id': e.schedule_id, 'Exam Name': e.name,
    } for e in snapshot.exams]
    observers = [{
        'Observer Id': o.observer_id, 'Name': o.name, 'Title': o.title, 'Scientific Rank': o.scientific_rank,
        'Availability': o.availability.value, 'Max Assignments': o.max_assignments,
    } for o in snapshot.observers]
    slots = [{
        'Observer Id': o.observer_id, 'Day': w.day, 'Start': format_minutes(w.start), 'End': format_minutes(w.end),
    } for o in snapshot.observers for w in o.time_windows]
    busy = [{
        'Observer Id': b.observer_id, 'Date': b.date, 'Start': format_minutes(b.start),
        'End': format_minutes(b.end), 'Exam Id': b.exam_id,
    } for b in snapshot.busy]

    with pd.ExcelWriter(filename, engine='openpyxl') as writer:
        for sheet, rows in (('Exams', exams), ('Observers', observers), ('TimeSlots', slots), ('Busy', busy)):
            pd.DataFrame(rows, columns=REQUIRED_COLUMNS[sheet]).to_excel(writer, sheet_name=sheet, index=False)


def schedule_rows(snapshot: Snapshot, result) -> List[Dict[str, Any]]:
    """One row per exam: assigned observers, or the failure reason."""
    assigned = {a.exam_id: a for a in result.assignments}
    failed = {f.exam_id: f.reason for f in result.failed}
    rows = []
    for exam in snapshot.exams:
        assignment = assigned.get(exam.exam_id)
        head = snapshot.observer(assignment.head_id) if assignment else None
        secretary = snapshot.observer(assignment.secretary_id) if assignment else None
        rows.append({
            'Exam Id': exam.exam_id,
            'Exam Name': exam.name,
            'Schedule Id': exam.schedule_id,
            'Date': exam.date,
            'Start': format_minutes(exam.start),
            'End': format_minutes(exam.end),
            'Head Id': assignment.head_id if assignment else None,
            'Head': head.name if head else '',
            'Secretary Id': assignment.secretary_id if assignment else None,
            'Secretary': secretary.name if secretary else '',
            'Status': 'assigned' if assignment else 'failed',
            'Reason': failed.get(exam.exam_id, ''),
        })
    return rows


def write_assignments_excel(snapshot: Snapshot, result, filename: str) -> None:
    """Write the schedule sheet plus a per-observer workload sheet."""
    schedule_df = pd.DataFrame(schedule_rows(snapshot, result))
    workload = []
    existing = Counter(interval.observer_id for interval in snapshot.busy)
    for observer in snapshot.observers:
        heads = sum(1 for a in result.assignments if a.head_id == observer.observer_id)
        secretaries = sum(1 for a in result.assignments if a.secretary_id == observer.observer_id)
        workload.append({
            'Observer Id': observer.observer_id,
            'Name': observer.name,
            'Head': heads,
            'Secretary': secretaries,
            'Total': heads + secretaries,
            'Existing': existing[observer.observer_id],
        })
    with pd.ExcelWriter(filename, engine='openpyxl') as writer:
        schedule_df.to_excel(writer, sheet_name='Schedule', index=False)
        pd.DataFrame(workload).to_excel(writer, sheet_name='Workload', index=False)
