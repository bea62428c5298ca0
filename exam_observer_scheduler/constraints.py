"""
Constraint oracle shared by every assignment algorithm.

All rule checks (head qualification, part-time windows, time overlap) go
through this module so that results of different algorithms stay comparable.
"""

import re
from collections import defaultdict
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import BusyInterval, Exam, Gene, Observer, Role, Snapshot

DOCTOR_PATTERN = re.compile(r'^\s*(dr\.?|doctor)(\s|$)', re.IGNORECASE)

DAY_ALIASES = {
    'mon': 'monday', 'tue': 'tuesday', 'tues': 'tuesday', 'wed': 'wednesday',
    'thu': 'thursday', 'thur': 'thursday', 'thurs': 'thursday', 'fri': 'friday',
    'sat': 'saturday', 'sun': 'sunday',
}


def is_qualified_for_head(observer: Optional[Observer]) -> bool:
    """True if the observer's title or scientific rank reads as a doctorate."""
    if observer is None:
        return False
    return bool(DOCTOR_PATTERN.match(observer.title or '')
                or DOCTOR_PATTERN.match(observer.scientific_rank or ''))


def can_serve(observer: Observer, exam: Exam) -> bool:
    """
    Check the availability window rule.

    Full-time observers can take any exam. Part-time observers need a weekly
    window on the exam's weekday that fully contains the exam.
    """
    if observer.is_full_time:
        return True
    day = exam.day_name
    return any(
        normalize_day(window.day) == day and window.start <= exam.start and window.end >= exam.end
        for window in observer.time_windows
    )


def can_take_role(observer: Observer, exam: Exam, role: Role) -> bool:
    if role == Role.HEAD and not is_qualified_for_head(observer):
        return False
    return can_serve(observer, exam)


def intervals_overlap(start1: int, end1: int, start2: int, end2: int) -> bool:
    return start1 < end2 and start2 < end1


def overlaps(exam_a: Exam, exam_b: Exam) -> bool:
    """True iff both exams are on the same date and their time windows intersect."""
    return exam_a.date == exam_b.date and intervals_overlap(exam_a.start, exam_a.end, exam_b.start, exam_b.end)


def overlap_minutes(exam_a: Exam, exam_b: Exam) -> int:
    if exam_a.date != exam_b.date:
        return 0
    return max(0, min(exam_a.end, exam_b.end) - max(exam_a.start, exam_b.start))


def normalize_day(day_name: str) -> str:
    day = str(day_name or '').strip().lower().rstrip('.')
    return DAY_ALIASES.get(day, day)


def parse_time_to_minutes(value: Any) -> int:
    """
    Convert a time value to minutes of day.

    Accepts "HH:MM", "HH:MM:SS", datetime.time/datetime objects and plain
    minute counts.
    """
    if value is None:
        raise ValueError("Time value is missing")
    if isinstance(value, datetime):
        return value.hour * 60 + value.minute
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    if isinstance(value, (int, float)):
        return int(value)
    parts = str(value).strip().split(':')
    if len(parts) < 2:
        raise ValueError(f"Unable to parse time: {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours <= 24 and 0 <= minutes < 60):
        raise ValueError(f"Time out of range: {value!r}")
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


class BusySchedule:
    """
    Per-observer, per-date list of occupied intervals.

    Used as the in-memory busy map of every constructive algorithm.
    """

    def __init__(self):
        self._intervals: Dict[Any, Dict[date, List[Tuple[int, int, Any]]]] = defaultdict(lambda: defaultdict(list))

    @classmethod
    def from_intervals(cls, intervals: Iterable[BusyInterval]) -> 'BusySchedule':
        schedule = cls()
        for interval in intervals:
            schedule.add(interval.observer_id, interval.date, interval.start, interval.end, interval.exam_id)
        return schedule

    @classmethod
    def from_genes(cls, snapshot: Snapshot, genes: Iterable[Gene], skip_index: Optional[int] = None) -> 'BusySchedule':
        """Busy map of the snapshot's existing commitments plus every role in ``genes``."""
        schedule = cls.from_intervals(snapshot.busy)
        for idx, gene in enumerate(genes):
            if idx == skip_index:
                continue
            exam = snapshot.exam(gene.exam_id)
            for observer_id, _ in gene.observers():
                schedule.book(observer_id, exam)
        return schedule

    def add(self, observer_id: Any, day: date, start: int, end: int, tag: Any = None) -> None:
        self._intervals[observer_id][day].append((start, end, tag))

    def book(self, observer_id: Any, exam: Exam) -> None:
        self.add(observer_id, exam.date, exam.start, exam.end, exam.exam_id)

    def release(self, observer_id: Any, exam: Exam) -> None:
        """Remove one booking of ``exam`` for the observer, if present."""
        entries = self._intervals.get(observer_id, {}).get(exam.date)
        if not entries:
            return
        for idx, (start, end, tag) in enumerate(entries):
            if tag == exam.exam_id and start == exam.start and end == exam.end:
                del entries[idx]
                return

    def is_free(self, observer_id: Any, exam: Exam) -> bool:
        entries = self._intervals.get(observer_id, {}).get(exam.date, ())
        return not any(intervals_overlap(start, end, exam.start, exam.end) for start, end, _ in entries)

    def conflicts(self, observer_id: Any, exam: Exam) -> List[Any]:
        entries = self._intervals.get(observer_id, {}).get(exam.date, ())
        return [tag for start, end, tag in entries if intervals_overlap(start, end, exam.start, exam.end)]

    def copy(self) -> 'BusySchedule':
        clone = BusySchedule()
        for observer_id, days in self._intervals.items():
            for day, entries in days.items():
                clone._intervals[observer_id][day] = list(entries)
        return clone

    def booking_count(self, observer_id: Any) -> int:
        return sum(len(entries) for entries in self._intervals.get(observer_id, {}).values())


def eligible_observers(snapshot: Snapshot, exam: Exam, role: Role,
                       busy: Optional[BusySchedule] = None,
                       exclude: Iterable[Any] = ()) -> List[Observer]:
    """Observers allowed to take ``role`` on ``exam`` given the busy map."""
    excluded = set(exclude)
    result = []
    for observer in snapshot.observers:
        if observer.observer_id in excluded:
            continue
        if not can_take_role(observer, exam, role):
            continue
        if busy is not None and not busy.is_free(observer.observer_id, exam):
            continue
        result.append(observer)
    return result


def explain_failure(snapshot: Snapshot, exam: Exam, busy: BusySchedule) -> str:
    """Human readable reason why ``exam`` could not be staffed."""
    heads = [o for o in snapshot.observers if can_take_role(o, exam, Role.HEAD)]
    if not heads:
        return "No qualified head can serve this exam (insufficient availability)"
    free_heads = [o for o in heads if busy.is_free(o.observer_id, exam)]
    if not free_heads:
        return "All qualified heads are busy during this exam (insufficient availability)"
    secretaries = [o for o in snapshot.observers if can_serve(o, exam)]
    if len(secretaries) < 2:
        return "No secretary can serve this exam (insufficient availability)"
    free_secretaries = [o for o in secretaries if busy.is_free(o.observer_id, exam)]
    if len(free_secretaries) < 2:
        return "No free secretary besides the head (insufficient availability)"
    return "No valid assignment found"
