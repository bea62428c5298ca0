"""
Algorithm routing and the fallback chain.

The router turns problem dimensions into an ordered plan of strategies and
tries them in turn. Each strategy has the same ``attempt(snapshot)``
signature; failures come back as an ``Attempt`` carrying a FallbackReason
instead of an exception, so the fallback policy is just the plan list.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .config import AssignmentOptions
from .constraints import BusySchedule, explain_failure
from .exceptions import AssignmentError, FallbackReason, InsufficientObserversError, NoSolution
from .genetic import GeneticOptimizer
from .greedy import GreedyAssigner, GreedyRun, initial_workload
from .hybrid import ChunkingController, HybridDecomposer
from .lp import LPAssignmentAdapter, Solver
from .models import Assignment, AssignmentResult, FailedExam, Gene, Snapshot
from .quality import QualityScorer
from .timeouts import Deadline
from .validation import ValidationEngine, ValidationReport

MAX_SANITIZE_ROUNDS = 5


class Algorithm(str, Enum):
    PURE_LP = 'pure-linear-programming'
    HYBRID = 'hybrid-lp-greedy'
    CHUNKED = 'chunked-hybrid'
    MAX_COVERAGE = 'maximum-coverage'
    GREEDY = 'greedy-optimized'
    GENETIC = 'genetic'


ALIASES = {
    'lp': Algorithm.PURE_LP,
    'pure-lp': Algorithm.PURE_LP,
    'hybrid': Algorithm.HYBRID,
    'chunked': Algorithm.CHUNKED,
    'max-coverage': Algorithm.MAX_COVERAGE,
    'greedy': Algorithm.GREEDY,
    'ga': Algorithm.GENETIC,
}


def resolve_algorithm(name: Optional[str]) -> Optional[Algorithm]:
    """Map an option value onto an Algorithm; "auto" (or empty) means let the router decide."""
    text = str(name or 'auto').strip().lower().replace('_', '-')
    if text == 'auto':
        return None
    if text in ALIASES:
        return ALIASES[text]
    try:
        return Algorithm(text)
    except ValueError:
        raise ValueError(f"Unknown algorithm: {name!r}")


@dataclass
class Attempt:
    algorithm: Algorithm
    genes: Optional[List[Gene]] = None
    reason: Optional[FallbackReason] = None
    detail: str = ''
    stats: Dict[str, Any] = field(default_factory=dict)
    failures: Dict[Any, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.genes is not None and self.reason is None


class Strategy(ABC):
    """One algorithm behind the uniform attempt() signature."""

    algorithm: Algorithm

    def __init__(self, options: AssignmentOptions, solver: Optional[Solver] = None):
        self.options = options
        self.solver = solver

    def attempt(self, snapshot: Snapshot) -> Attempt:
        started = time.perf_counter()
        try:
            genes, stats, failures = self.run(snapshot)
            if snapshot.exams and not any(gene.is_complete for gene in genes):
                raise NoSolution(f"{self.algorithm.value} staffed none of {snapshot.exam_count} exams",
                                 {'failures': failures})
        except AssignmentError as e:
            return Attempt(self.algorithm, reason=e.reason or FallbackReason.SOLVER_ERROR, detail=e.message,
                           stats={'attempt_ms': (time.perf_counter() - started) * 1000.0},
                           failures=e.details.get('failures', {}))
        stats['attempt_ms'] = (time.perf_counter() - started) * 1000.0
        return Attempt(self.algorithm, genes, stats=stats, failures=failures)

    @abstractmethod
    def run(self, snapshot: Snapshot) -> Tuple[List[Gene], Dict[str, Any], Dict[Any, str]]:
        """Return (genes, algorithm specific stats, failure reasons) or raise AssignmentError."""


class PureLPStrategy(Strategy):
    algorithm = Algorithm.PURE_LP

    def run(self, snapshot):
        solution = LPAssignmentAdapter(snapshot, self.options, self.solver).solve(
            timeout_ms=self.options.pure_lp_timeout_ms)
        stats = {
            'lp_time_ms': round(solution.time_ms, 2),
            'solver_status': solution.status.value,
            'lp_variables': len(solution.model.variables),
            'lp_constraints': len(solution.model.constraints),
        }
        return solution.genes, stats, dict(solution.infeasible_exams)


class HybridStrategy(Strategy):
    algorithm = Algorithm.HYBRID

    def run(self, snapshot):
        result = HybridDecomposer(snapshot, self.options, self.solver).solve()
        stats = {'lp_time_ms': round(result.lp_time_ms, 2), 'greedy_time_ms': round(result.greedy_time_ms, 2)}
        return result.genes, stats, result.failures


class ChunkedStrategy(Strategy):
    algorithm = Algorithm.CHUNKED

    def run(self, snapshot):
        result = ChunkingController(snapshot, self.options, self.solver).run()
        stats = {
            'batches': result.batches,
            'batch_fallbacks': result.batch_fallbacks,
            'lp_time_ms': round(result.lp_time_ms, 2),
            'greedy_time_ms': round(result.greedy_time_ms, 2),
        }
        return result.genes, stats, result.failures


class MaximumCoverageStrategy(Strategy):
    algorithm = Algorithm.MAX_COVERAGE

    def run(self, snapshot):
        options = self.options.replace(greedy_passes=max(self.options.greedy_passes, 6))
        run = GreedyAssigner(snapshot, options).maximum_coverage()
        return run.genes, {'order': run.order}, run.failures


class GreedyStrategy(Strategy):
    algorithm = Algorithm.GREEDY

    def run(self, snapshot):
        run = GreedyAssigner(snapshot, self.options).maximum_coverage()
        return run.genes, {'order': run.order}, run.failures


class GeneticStrategy(Strategy):
    algorithm = Algorithm.GENETIC

    def run(self, snapshot):
        result = GeneticOptimizer(snapshot, self.options).run(Deadline(self.options.ga_timeout_ms))
        return result.genes, result.stats(), {}


STRATEGIES = {
    Algorithm.PURE_LP: PureLPStrategy,
    Algorithm.HYBRID: HybridStrategy,
    Algorithm.CHUNKED: ChunkedStrategy,
    Algorithm.MAX_COVERAGE: MaximumCoverageStrategy,
    Algorithm.GREEDY: GreedyStrategy,
    Algorithm.GENETIC: GeneticStrategy,
}


class AlgorithmRouter:
    """
    Chooses a plan from problem size and runs it with fallbacks.

    The last strategy of a plan is terminal: its result is accepted even when
    validation is incomplete or finds violations. Accepted results are
    sanitised so that no violation survives into the assignments.
    """

    def __init__(self, options: Optional[AssignmentOptions] = None, solver: Optional[Solver] = None):
        self.options = options or AssignmentOptions()
        self.solver = solver
        self.verbose = self.options.verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[ROUTER] {message}")

    def plan(self, snapshot: Snapshot) -> List[Algorithm]:
        forced = resolve_algorithm(self.options.algorithm)
        if forced in (Algorithm.GREEDY, Algorithm.MAX_COVERAGE):
            return [forced]
        if forced is not None:
            return [forced, Algorithm.GREEDY]

        exams = snapshot.exam_count
        observers = snapshot.observer_count
        variables = exams * observers * 2
        if exams * observers > self.options.large_problem_threshold:
            return [Algorithm.MAX_COVERAGE]
        if exams <= self.options.hybrid_threshold_exams and variables <= self.options.hybrid_threshold_variables:
            return [Algorithm.PURE_LP, Algorithm.GREEDY]
        if exams > self.options.chunked_threshold_exams:
            return [Algorithm.CHUNKED, Algorithm.GREEDY]
        return [Algorithm.HYBRID, Algorithm.GREEDY]

    def run(self, snapshot: Snapshot) -> AssignmentResult:
        started = time.perf_counter()
        plan = self.plan(snapshot)
        self._log(f"{snapshot.exam_count} exams, {snapshot.observer_count} observers -> "
                  f"{' -> '.join(a.value for a in plan)}")
        fallbacks = []
        engine = ValidationEngine(snapshot, options=self.options)

        for position, algorithm in enumerate(plan):
            terminal = position == len(plan) - 1
            attempt = STRATEGIES[algorithm](self.options, self.solver).attempt(snapshot)
            if attempt.ok:
                report = engine.validate([gene for gene in attempt.genes if not gene.is_empty])
                reason = self._rejection(snapshot, report)
                if reason is None or terminal:
                    if reason is not None:
                        self._log(f"Accepting terminal {algorithm.value} result despite {reason.value}")
                    return self._finish(snapshot, attempt, report, fallbacks, started)
                attempt.reason = reason
                attempt.detail = f"{report.total_violations} violations, complete={report.complete}"
            fallbacks.append({'algorithm': algorithm.value, 'reason': attempt.reason.value,
                              'detail': attempt.detail})
            self._log(f"{algorithm.value} failed ({attempt.reason.value}: {attempt.detail})")
            if terminal:
                if attempt.reason != FallbackReason.NO_SOLUTION:
                    # a terminal strategy that raised; fall back to plain greedy once more
                    attempt = GreedyStrategy(self.options, self.solver).attempt(snapshot)
                if attempt.genes is None:
                    attempt.genes = snapshot.empty_genes()
                report = engine.validate([gene for gene in attempt.genes if not gene.is_empty])
                return self._finish(snapshot, attempt, report, fallbacks, started)

    def _rejection(self, snapshot: Snapshot, report: ValidationReport) -> Optional[FallbackReason]:
        if not report.complete:
            return FallbackReason.VALIDATION_INCOMPLETE
        if report.critical_violations(snapshot.exam_count, self.options.overlap_tolerance):
            return FallbackReason.CRITICAL_VIOLATION
        return None

    def sanitize(self, snapshot: Snapshot, genes: List[Gene], report: ValidationReport) -> Tuple[List[Gene], int]:
        """Unassign every gene named by a violation, then gap-fill with greedy."""
        genes = list(genes)
        removed = 0
        engine = ValidationEngine(snapshot, options=self.options)
        for _ in range(MAX_SANITIZE_ROUNDS):
            offending = report.offending_exam_ids()
            if not offending:
                break
            genes = [gene.cleared() if gene.exam_id in offending and not gene.is_empty else gene
                     for gene in genes]
            removed += len(offending)
            report = engine.validate([gene for gene in genes if not gene.is_empty])
        if removed:
            self._log(f"Unassigned {removed} exams with violations, gap filling")
        # partial genes are never emitted
        genes = [gene if gene.is_complete else gene.cleared() for gene in genes]

        assigner = GreedyAssigner(snapshot, self.options)
        workload = initial_workload(snapshot)
        for gene in genes:
            for observer_id, _ in gene.observers():
                workload[observer_id] += 1
        run = GreedyRun(genes, BusySchedule.from_genes(snapshot, genes), workload)
        assigner.fill_gaps(run)
        return run.genes, removed

    def _finish(self, snapshot: Snapshot, attempt: Attempt, report: ValidationReport,
                fallbacks: List[Dict[str, Any]], started: float) -> AssignmentResult:
        genes, removed = self.sanitize(snapshot, attempt.genes, report)
        engine = ValidationEngine(snapshot, options=self.options)
        final = engine.validate([g for g in genes if g.is_complete])
        while final.complete and final.offending_exam_ids():
            leftover = final.offending_exam_ids()
            self._log(f"Dropping {len(leftover)} exams still in violation after sanitising")
            genes = [gene.cleared() if gene.exam_id in leftover else gene for gene in genes]
            removed += len(leftover)
            final = engine.validate([g for g in genes if g.is_complete])
        busy = BusySchedule.from_genes(snapshot, genes)

        assignments = []
        failed = []
        for idx, gene in enumerate(genes):
            exam = snapshot.exams[idx]
            if gene.is_complete:
                assignments.append(Assignment.from_gene(gene, exam))
            else:
                reason = attempt.failures.get(exam.exam_id) or explain_failure(snapshot, exam, busy)
                failed.append(FailedExam(exam.exam_id, reason))

        stats = {
            'algorithm': attempt.algorithm.value,
            'time_taken_ms': round((time.perf_counter() - started) * 1000.0, 2),
            'exams_covered': len(assignments),
            'total_exams': snapshot.exam_count,
            # unknown when the final validation ran out of time
            'constraints_violated': final.total_violations if final.complete else None,
            'violations_removed': removed,
            'validation_complete': final.complete,
            'fallbacks': fallbacks,
        }
        stats.update(attempt.stats)
        quality = QualityScorer(snapshot).score(genes)
        self._log(f"{attempt.algorithm.value}: {len(assignments)}/{snapshot.exam_count} exams covered, "
                  f"quality {quality.overall_score:.3f} ({quality.grade})")
        return AssignmentResult(assignments, failed, stats, quality)


def build_report(result: AssignmentResult, exam_ids: Iterable[Any] = ()) -> Dict[str, Any]:
    """Structured per-run report handed to a metrics sink."""
    return {
        'timestamp': datetime.now().isoformat(),
        'exam_ids': [str(exam_id) for exam_id in exam_ids],
        'stats': dict(result.stats),
        'coverage': result.coverage,
        'failed': [{'exam_id': str(item.exam_id), 'reason': item.reason} for item in result.failed],
        'quality': result.quality.to_dict() if result.quality is not None else None,
    }


def assign(exam_ids: Iterable[Any], options: Optional[AssignmentOptions] = None, loader=None,
           store=None, metrics_sink=None, solver: Optional[Solver] = None) -> AssignmentResult:
    """
    Assign observers to the given exams.

    Args:
        exam_ids: Exams to staff
        options: Run options (defaults when omitted)
        loader: DataLoader returning the snapshot for ``exam_ids``
        store: Optional AssignmentStore; receives the accepted assignments
        metrics_sink: Optional MetricsSink; failures to record are logged only
        solver: Optional Solver backend for the LP strategies

    Returns:
        AssignmentResult

    Raises:
        InsufficientObserversError: Exams were requested but fewer than two observers exist
    """
    if loader is None:
        raise ValueError("A data loader is required")
    options = options or AssignmentOptions()
    options.validate()
    exam_ids = list(exam_ids)
    snapshot = loader.load(exam_ids)
    if snapshot.exam_count and snapshot.observer_count < 2:
        raise InsufficientObserversError(
            "At least two observers are needed to staff an exam",
            {'observers': snapshot.observer_count, 'exams': snapshot.exam_count})

    result = AlgorithmRouter(options, solver).run(snapshot)

    if store is not None:
        store.replace_assignments(exam_ids, result.assignments)
    if metrics_sink is not None:
        try:
            metrics_sink.record(build_report(result, exam_ids))
        except Exception as e:
            print(f"[ROUTER] Failed to record metrics: {e}")
    return result


def compare_algorithms(snapshot: Snapshot, algorithms: Optional[Iterable[Any]] = None,
                       options: Optional[AssignmentOptions] = None,
                       solver: Optional[Solver] = None) -> pd.DataFrame:
    """Run several forced algorithms on one snapshot and tabulate their results."""
    options = options or AssignmentOptions()
    algorithms = [resolve_algorithm(a) if not isinstance(a, Algorithm) else a
                  for a in (algorithms or [Algorithm.GREEDY, Algorithm.MAX_COVERAGE,
                                           Algorithm.HYBRID, Algorithm.PURE_LP])]
    rows = []
    for algorithm in algorithms:
        result = AlgorithmRouter(options.replace(algorithm=algorithm.value), solver).run(snapshot)
        quality = result.quality
        rows.append({
            'requested': algorithm.value,
            'algorithm': result.stats['algorithm'],
            'assigned': len(result.assignments),
            'failed': len(result.failed),
            'coverage': round(result.coverage, 4),
            'time_ms': result.stats['time_taken_ms'],
            'overall_score': round(quality.overall_score, 4),
            'grade': quality.grade,
            'workload_balance': round(quality.workload_balance, 4),
            'fairness': round(quality.fairness, 4),
            'efficiency': round(quality.efficiency, 4),
            'fallbacks': len(result.stats['fallbacks']),
        })
    df = pd.DataFrame(rows)
    if not df.empty:
        df = df.sort_values(['overall_score', 'coverage'], ascending=False).reset_index(drop=True)
    return df
