"""
Interfaces to the data source, the assignment store and the metrics sink,
with in-memory, Excel and JSON-file implementations.
"""

import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .models import Assignment, BusyInterval, Exam, Observer, Snapshot
from .utils import cell_id, read_snapshot_excel


class DataLoader(ABC):
    @abstractmethod
    def load(self, exam_ids: Iterable[Any]) -> Snapshot:
        """Exams, observers and existing busy intervals for ``exam_ids``."""


class AssignmentStore(ABC):
    @abstractmethod
    def replace_assignments(self, exam_ids: Iterable[Any], assignments: List[Assignment]) -> None:
        """Atomically replace every stored assignment of ``exam_ids``."""


class MetricsSink(ABC):
    @abstractmethod
    def record(self, report: Dict[str, Any]) -> None:
        """Store one structured run report."""


class InMemoryDataLoader(DataLoader):
    """
    Serves a fixed data set.

    Busy intervals tied to one of the requested exams are left out, because
    those exams are about to be reassigned.
    """

    def __init__(self, exams: Iterable[Exam], observers: Iterable[Observer],
                 busy: Iterable[BusyInterval] = ()):
        self.exams = list(exams)
        self.observers = list(observers)
        self.busy = list(busy)

    def load(self, exam_ids: Iterable[Any]) -> Snapshot:
        wanted = set(exam_ids)
        return Snapshot(
            [exam for exam in self.exams if exam.exam_id in wanted],
            self.observers,
            [interval for interval in self.busy if interval.exam_id is None or interval.exam_id not in wanted],
        )


class InMemoryAssignmentStore(AssignmentStore):
    def __init__(self):
        self.assignments: Dict[Any, Assignment] = {}
        self.writes = 0

    def replace_assignments(self, exam_ids: Iterable[Any], assignments: List[Assignment]) -> None:
        wanted = set(exam_ids)
        updated = {exam_id: a for exam_id, a in self.assignments.items() if exam_id not in wanted}
        for assignment in assignments:
            updated[assignment.exam_id] = assignment
        self.assignments = updated
        self.writes += 1


class ExcelDataLoader(DataLoader):
    def __init__(self, filename: str):
        self.filename = filename

    def load(self, exam_ids: Iterable[Any]) -> Snapshot:
        return read_snapshot_excel(self.filename, exam_ids)


class ExcelAssignmentStore(AssignmentStore):
    """
    Keeps assignments in a single-sheet workbook.

    Rows of other exams are preserved; the new workbook is written next to
    the old one and moved into place, so readers never see a partial file.
    """

    COLUMNS = ['Exam Id', 'Head Id', 'Secretary Id', 'Schedule Id']

    def __init__(self, filename: str):
        self.filename = Path(filename)

    def read(self) -> pd.DataFrame:
        if not self.filename.exists():
            return pd.DataFrame(columns=self.COLUMNS)
        return pd.read_excel(self.filename)

    def replace_assignments(self, exam_ids: Iterable[Any], assignments: List[Assignment]) -> None:
        wanted = {cell_id(exam_id) for exam_id in exam_ids}
        current = self.read()
        keep = [row for row in current.to_dict('records') if cell_id(row['Exam Id']) not in wanted]
        rows = keep + [{
            'Exam Id': a.exam_id, 'Head Id': a.head_id, 'Secretary Id': a.secretary_id, 'Schedule Id': a.schedule_id,
        } for a in assignments]

        tmp = self.filename.with_name(f"{self.filename.stem}.tmp{self.filename.suffix}")
        try:
            pd.DataFrame(rows, columns=self.COLUMNS).to_excel(tmp, index=False)
            os.replace(tmp, self.filename)
        finally:
            if tmp.exists():
                tmp.unlink()


class JsonReportMetricsSink(MetricsSink):
    """One JSON report per run plus an appended line in performance-summary.jsonl."""

    SUMMARY_FILE = 'performance-summary.jsonl'

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.last_report: Optional[Path] = None

    def record(self, report: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        stats = report.get('stats', {})
        algorithm = stats.get('algorithm', 'unknown')
        stamp = datetime.now().strftime('%Y%m%d-%H%M%S-%f')
        path = self.directory / f"performance-report-{stamp}-{algorithm}.json"
        path.write_text(json.dumps(report, indent=2, default=str), encoding='utf-8')
        self.last_report = path

        quality = report.get('quality') or {}
        summary = {
            'timestamp': report.get('timestamp'),
            'algorithm': algorithm,
            'time_taken_ms': stats.get('time_taken_ms'),
            'exams_covered': stats.get('exams_covered'),
            'total_exams': stats.get('total_exams'),
            'coverage': report.get('coverage'),
            'overall_score': quality.get('overall_score'),
            'grade': quality.get('grade'),
            'fallbacks': len(stats.get('fallbacks', [])),
        }
        with open(self.directory / self.SUMMARY_FILE, 'a', encoding='utf-8') as fh:
            fh.write(json.dumps(summary, default=str) + '\n')
