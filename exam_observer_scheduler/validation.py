"""
Validation engine for candidate assignment sets.

Overlaps are found with a sweep over each observer's per-date interval list
(sorted by start time), so the whole pass is O(n log n). A time budget bounds
the pass; a report that ran out of time is marked incomplete and must not be
treated as safe.
"""

import math
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from .config import AssignmentOptions
from .constraints import can_serve, format_minutes, is_qualified_for_head
from .models import Gene, Role, Snapshot

EXISTING = 'existing'


@dataclass(frozen=True)
class OverlapViolation:
    observer_id: Any
    date: date
    first_exam_id: Any
    first_role: str
    first_time: str
    second_exam_id: Any
    second_role: str
    second_time: str

    @property
    def exam_ids(self):
        return (self.first_exam_id, self.second_exam_id)


@dataclass(frozen=True)
class RoleViolation:
    exam_id: Any
    observer_id: Any
    role: str
    issue: str


@dataclass(frozen=True)
class TimeslotViolation:
    exam_id: Any
    observer_id: Any
    role: str
    issue: str


@dataclass
class ValidationReport:
    overlaps: List[OverlapViolation] = field(default_factory=list)
    role_violations: List[RoleViolation] = field(default_factory=list)
    timeslot_violations: List[TimeslotViolation] = field(default_factory=list)
    duplicate_exams: List[Any] = field(default_factory=list)
    complete: bool = True
    elapsed_ms: float = 0.0

    @property
    def total_violations(self) -> int:
        return (len(self.overlaps) + len(self.role_violations)
                + len(self.timeslot_violations) + len(self.duplicate_exams))

    def overlap_threshold(self, total_exams: int, tolerance: float) -> int:
        return math.ceil(total_exams * tolerance)

    def critical_violations(self, total_exams: int, tolerance: float = 0.05) -> int:
        """Role violations and duplicates always count; overlaps only beyond the tolerance."""
        excessive = len(self.overlaps) if len(self.overlaps) > total_exams * tolerance else 0
        return len(self.role_violations) + len(self.duplicate_exams) + excessive

    def is_valid(self, total_exams: int, tolerance: float = 0.05) -> bool:
        return self.complete and self.critical_violations(total_exams, tolerance) == 0

    def offending_exam_ids(self) -> set:
        """Exams that must be unassigned to leave a violation-free set."""
        offending = set(self.duplicate_exams)
        offending.update(v.exam_id for v in self.role_violations)
        offending.update(v.exam_id for v in self.timeslot_violations)
        for overlap in self.overlaps:
            if overlap.second_role != EXISTING:
                offending.add(overlap.second_exam_id)
            elif overlap.first_role != EXISTING:
                offending.add(overlap.first_exam_id)
        return offending

    def summary(self, total_exams: int, tolerance: float = 0.05) -> Dict[str, Any]:
        return {
            'total_violations': self.total_violations,
            'critical_violations': self.critical_violations(total_exams, tolerance),
            'breakdown': {
                'overlaps': len(self.overlaps),
                'role_violations': len(self.role_violations),
                'timeslot_violations': len(self.timeslot_violations),
                'duplicate_exams': len(self.duplicate_exams),
            },
            'overlap_threshold': self.overlap_threshold(total_exams, tolerance),
            'complete': self.complete,
            'is_valid': self.is_valid(total_exams, tolerance),
        }


class ValidationEngine:
    """Checks overlap, role and timeslot rules on a set of genes."""

    def __init__(self, snapshot: Snapshot,
                 timeout_ms: Optional[float] = None,
                 batch_size: Optional[int] = None,
                 tolerance: Optional[float] = None,
                 check_existing: bool = True,
                 options: Optional[AssignmentOptions] = None):
        options = options or AssignmentOptions()
        self.snapshot = snapshot
        self.timeout_ms = options.validation_timeout_ms if timeout_ms is None else timeout_ms
        self.batch_size = max(1, options.validation_batch_size if batch_size is None else batch_size)
        self.tolerance = options.overlap_tolerance if tolerance is None else tolerance
        self.check_existing = check_existing
        self.verbose = options.verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[VALIDATION] {message}")

    def validate(self, genes: Iterable[Gene]) -> ValidationReport:
        started = time.perf_counter()
        report = ValidationReport()

        def timed_out() -> bool:
            return (time.perf_counter() - started) * 1000.0 >= self.timeout_ms

        schedules: Dict[Any, Dict[date, list]] = defaultdict(lambda: defaultdict(list))
        seen = set()

        for i, gene in enumerate(genes):
            if i % self.batch_size == 0 and timed_out():
                self._log(f"Timeout after {self.timeout_ms}ms while checking genes")
                report.complete = False
                break
            if not self.snapshot.has_exam(gene.exam_id):
                self._log(f"Warning: exam {gene.exam_id} not found")
                continue
            if gene.exam_id in seen:
                report.duplicate_exams.append(gene.exam_id)
                continue
            seen.add(gene.exam_id)
            exam = self.snapshot.exam(gene.exam_id)

            if gene.is_complete and gene.head_id == gene.secretary_id:
                report.role_violations.append(
                    RoleViolation(gene.exam_id, gene.head_id, Role.HEAD.value, 'Same observer holds both roles'))

            for observer_id, role in gene.observers():
                observer = self.snapshot.observer(observer_id)
                if observer is None:
                    report.role_violations.append(
                        RoleViolation(gene.exam_id, observer_id, role.value, 'Unknown observer'))
                    continue
                if role == Role.HEAD and not is_qualified_for_head(observer):
                    report.role_violations.append(
                        RoleViolation(gene.exam_id, observer_id, role.value, 'Non-doctor assigned as head'))
                if not can_serve(observer, exam):
                    report.timeslot_violations.append(
                        TimeslotViolation(gene.exam_id, observer_id, role.value,
                                          'Observer not available for exam timeslot'))
                schedules[observer_id][exam.date].append((exam.start, exam.end, role.value, gene.exam_id))

        if self.check_existing:
            for interval in self.snapshot.busy:
                if interval.observer_id in schedules:
                    schedules[interval.observer_id][interval.date].append(
                        (interval.start, interval.end, EXISTING, interval.exam_id))

        if report.complete:
            report.complete = self._find_overlaps(schedules, report, timed_out)

        report.elapsed_ms = (time.perf_counter() - started) * 1000.0
        if report.total_violations:
            self._log(f"Found {report.total_violations} violations: {len(report.overlaps)} overlaps, "
                      f"{len(report.role_violations)} role, {len(report.timeslot_violations)} timeslot")
        else:
            self._log("Validation passed: no violations found")
        return report

    def _find_overlaps(self, schedules, report: ValidationReport, timed_out) -> bool:
        for observer_id, days in schedules.items():
            if timed_out():
                self._log("Timeout during overlap detection")
                return False
            for day, entries in days.items():
                if len(entries) < 2:
                    continue
                entries.sort(key=lambda entry: (entry[0], entry[1]))
                # compare each interval with the latest-ending one seen so far
                latest = entries[0]
                for current in entries[1:]:
                    if current[0] < latest[1] and not (current[2] == EXISTING and latest[2] == EXISTING):
                        report.overlaps.append(OverlapViolation(
                            observer_id=observer_id,
                            date=day,
                            first_exam_id=latest[3],
                            first_role=latest[2],
                            first_time=f"{format_minutes(latest[0])}-{format_minutes(latest[1])}",
                            second_exam_id=current[3],
                            second_role=current[2],
                            second_time=f"{format_minutes(current[0])}-{format_minutes(current[1])}",
                        ))
                    if current[1] > latest[1]:
                        latest = current
        return True

    def summarize(self, report: ValidationReport) -> Dict[str, Any]:
        return report.summary(self.snapshot.exam_count, self.tolerance)
