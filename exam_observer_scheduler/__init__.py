"""
Exam Observer Scheduler Package

Assigns a qualified head and a secretary to every exam, choosing between
linear programming, LP + greedy decomposition, chunked solving, greedy
heuristics and a genetic optimizer, with validation and quality scoring.
"""

from .collaborators import (
    AssignmentStore,
    DataLoader,
    ExcelAssignmentStore,
    ExcelDataLoader,
    InMemoryAssignmentStore,
    InMemoryDataLoader,
    JsonReportMetricsSink,
    MetricsSink,
)
from .config import AssignmentOptions, load_options
from .exceptions import AssignmentError, FallbackReason, InsufficientObserversError
from .models import (
    Assignment,
    AssignmentResult,
    Availability,
    BusyInterval,
    Exam,
    FailedExam,
    Observer,
    Role,
    Snapshot,
    TimeWindow,
)
from .quality import QualityScorer, compare_results
from .router import Algorithm, AlgorithmRouter, assign, compare_algorithms
from .scheduler import SupervisionScheduler
from .utils import validate_excel_file

__version__ = '1.0.0'
__author__ = 'Exam Observer Scheduling Team'

__all__ = [
    'Algorithm',
    'AlgorithmRouter',
    'Assignment',
    'AssignmentError',
    'AssignmentOptions',
    'AssignmentResult',
    'AssignmentStore',
    'Availability',
    'BusyInterval',
    'DataLoader',
    'Exam',
    'ExcelAssignmentStore',
    'ExcelDataLoader',
    'FailedExam',
    'FallbackReason',
    'InMemoryAssignmentStore',
    'InMemoryDataLoader',
    'InsufficientObserversError',
    'JsonReportMetricsSink',
    'MetricsSink',
    'Observer',
    'QualityScorer',
    'Role',
    'Snapshot',
    'SupervisionScheduler',
    'TimeWindow',
    'assign',
    'compare_algorithms',
    'compare_results',
    'load_options',
    'validate_excel_file',
]
