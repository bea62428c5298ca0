"""
Data model for observer assignment runs.

Inputs (exams, observers, busy intervals) are immutable for the duration of
one run. Genes and chromosomes are the in-progress working shapes; an
``Assignment`` is only created from a gene after validation.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple


class Role(str, Enum):
    HEAD = 'head'
    SECRETARY = 'secretary'


class Availability(str, Enum):
    FULL_TIME = 'full-time'
    PART_TIME = 'part-time'

    @classmethod
    def parse(cls, value: Any) -> 'Availability':
        """Map free-form text onto an availability mode (anything unknown is full-time)."""
        text = str(value or '').strip().lower().replace('_', '-').replace(' ', '-')
        if text in ('part-time', 'parttime', 'part'):
            return cls.PART_TIME
        return cls.FULL_TIME


class _Unassigned:
    """Sentinel for an empty role slot in a gene."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return 'UNASSIGNED'

    def __reduce__(self):
        return (_Unassigned, ())


UNASSIGNED = _Unassigned()

ObserverId = Hashable
ExamId = Hashable


@dataclass(frozen=True)
class Exam:
    exam_id: ExamId
    date: date
    start: int  # minutes of day
    end: int
    schedule_id: Optional[Hashable] = None
    name: str = ''

    @property
    def day_name(self) -> str:
        return self.date.strftime('%A').lower()

    @property
    def duration(self) -> int:
        return self.end - self.start

    def sort_key(self) -> Tuple[date, int, int]:
        return (self.date, self.start, self.end)


@dataclass(frozen=True)
class TimeWindow:
    """A weekly availability window of a part-time observer."""
    day: str
    start: int
    end: int


@dataclass(frozen=True)
class Observer:
    observer_id: ObserverId
    name: str = ''
    title: str = ''
    scientific_rank: str = ''
    availability: Availability = Availability.FULL_TIME
    time_windows: Tuple[TimeWindow, ...] = ()
    max_assignments: int = 10

    @property
    def is_full_time(self) -> bool:
        return self.availability == Availability.FULL_TIME


@dataclass(frozen=True)
class BusyInterval:
    """A pre-existing commitment of an observer."""
    observer_id: ObserverId
    date: date
    start: int
    end: int
    exam_id: Optional[ExamId] = None


@dataclass(frozen=True)
class Gene:
    """One exam's slot inside a chromosome."""
    exam_id: ExamId
    head_id: Any = UNASSIGNED
    secretary_id: Any = UNASSIGNED

    @property
    def has_head(self) -> bool:
        return self.head_id is not UNASSIGNED

    @property
    def has_secretary(self) -> bool:
        return self.secretary_id is not UNASSIGNED

    @property
    def is_complete(self) -> bool:
        return self.has_head and self.has_secretary

    @property
    def is_empty(self) -> bool:
        return not self.has_head and not self.has_secretary

    def observers(self) -> List[Tuple[ObserverId, Role]]:
        roles = []
        if self.has_head:
            roles.append((self.head_id, Role.HEAD))
        if self.has_secretary:
            roles.append((self.secretary_id, Role.SECRETARY))
        return roles

    def with_head(self, observer_id: Any) -> 'Gene':
        return replace(self, head_id=observer_id)

    def with_secretary(self, observer_id: Any) -> 'Gene':
        return replace(self, secretary_id=observer_id)

    def cleared(self) -> 'Gene':
        return Gene(self.exam_id)


@dataclass
class Chromosome:
    """A candidate full assignment, index-aligned with the snapshot's exam list."""
    genes: List[Gene]
    fitness: float = 0.0
    strategy: Optional[str] = None

    def copy(self) -> 'Chromosome':
        return Chromosome(list(self.genes), self.fitness, self.strategy)

    @property
    def assigned_count(self) -> int:
        return sum(1 for gene in self.genes if gene.is_complete)

    def __len__(self) -> int:
        return len(self.genes)


@dataclass(frozen=True)
class Assignment:
    """A validated exam assignment with both roles filled."""
    exam_id: ExamId
    head_id: ObserverId
    secretary_id: ObserverId
    schedule_id: Optional[Hashable] = None

    @classmethod
    def from_gene(cls, gene: Gene, exam: Exam) -> 'Assignment':
        if not gene.is_complete:
            raise ValueError(f"Gene for exam {gene.exam_id} is not fully assigned")
        if gene.head_id == gene.secretary_id:
            raise ValueError(f"Exam {gene.exam_id} has the same observer in both roles")
        return cls(gene.exam_id, gene.head_id, gene.secretary_id, exam.schedule_id)


@dataclass(frozen=True)
class FailedExam:
    exam_id: ExamId
    reason: str


class Snapshot:
    """
    Read-only view of one run's input data.

    Exams are kept in chronological order; every index-aligned structure
    (chromosomes, greedy runs) uses that order.
    """

    def __init__(self,
                 exams: Iterable[Exam],
                 observers: Iterable[Observer],
                 busy: Iterable[BusyInterval] = ()):
        self.exams: Tuple[Exam, ...] = tuple(sorted(exams, key=lambda e: (e.sort_key(), str(e.exam_id))))
        self.observers: Tuple[Observer, ...] = tuple(observers)
        self.busy: Tuple[BusyInterval, ...] = tuple(busy)

        self._exam_index = {exam.exam_id: idx for idx, exam in enumerate(self.exams)}
        self._observers = {observer.observer_id: observer for observer in self.observers}
        if len(self._exam_index) != len(self.exams):
            raise ValueError("Duplicate exam ids in snapshot")
        if len(self._observers) != len(self.observers):
            raise ValueError("Duplicate observer ids in snapshot")

    def exam(self, exam_id: ExamId) -> Exam:
        return self.exams[self._exam_index[exam_id]]

    def exam_index(self, exam_id: ExamId) -> int:
        return self._exam_index[exam_id]

    def has_exam(self, exam_id: ExamId) -> bool:
        return exam_id in self._exam_index

    def observer(self, observer_id: ObserverId) -> Optional[Observer]:
        return self._observers.get(observer_id)

    def subset(self, exam_ids: Iterable[ExamId]) -> 'Snapshot':
        """Snapshot restricted to the given exams (observers and busy intervals are kept)."""
        wanted = set(exam_ids)
        return Snapshot([e for e in self.exams if e.exam_id in wanted], self.observers, self.busy)

    def with_observers(self, observers: Iterable[Observer]) -> 'Snapshot':
        return Snapshot(self.exams, observers, self.busy)

    def empty_genes(self) -> List[Gene]:
        return [Gene(exam.exam_id) for exam in self.exams]

    @property
    def exam_count(self) -> int:
        return len(self.exams)

    @property
    def observer_count(self) -> int:
        return len(self.observers)

    def __repr__(self) -> str:
        return f"Snapshot({self.exam_count} exams, {self.observer_count} observers, {len(self.busy)} busy)"


@dataclass
class AssignmentResult:
    """Outcome of one run: accepted assignments, failed exams and run statistics."""
    assignments: List[Assignment] = field(default_factory=list)
    failed: List[FailedExam] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    quality: Optional[Any] = None

    @property
    def successful(self) -> List[Assignment]:
        return self.assignments

    @property
    def coverage(self) -> float:
        total = len(self.assignments) + len(self.failed)
        return len(self.assignments) / total if total else 0.0
