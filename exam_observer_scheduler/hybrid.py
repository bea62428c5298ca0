"""
LP + greedy decomposition and its chunked variant for large inputs.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .config import AssignmentOptions
from .constraints import BusySchedule, can_serve, explain_failure
from .exceptions import AssignmentError, CriticalViolation, ValidationIncomplete
from .greedy import GreedyAssigner, GreedyRun, initial_workload
from .lp import LPAssignmentAdapter, Solver
from .models import Gene, Role, Snapshot
from .timeouts import Deadline, run_with_timeout
from .validation import ValidationEngine, ValidationReport


@dataclass
class HybridResult:
    genes: List[Gene]
    lp_time_ms: float = 0.0
    greedy_time_ms: float = 0.0
    report: Optional[ValidationReport] = None
    failures: Dict[Any, str] = field(default_factory=dict)

    @property
    def covered(self) -> int:
        return sum(1 for gene in self.genes if gene.is_complete)


class HybridDecomposer:
    """
    Heads from a short head-only LP solve, secretaries from greedy.

    Phase 1 solves the head-only model, phase 2 books each head and picks the
    least loaded free secretary, phase 3 validates the combined result and
    discards it on critical violations.
    """

    def __init__(self, snapshot: Snapshot, options: Optional[AssignmentOptions] = None,
                 solver: Optional[Solver] = None):
        self.snapshot = snapshot
        self.options = options or AssignmentOptions()
        self.solver = solver
        self.verbose = self.options.verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[HYBRID] {message}")

    def solve(self, indices: Optional[Sequence[int]] = None,
              busy: Optional[BusySchedule] = None,
              workload: Optional[Counter] = None,
              validate: bool = True) -> HybridResult:
        """
        Run the three phases on the given exams.

        ``busy`` and ``workload`` are copied, the caller's state is untouched.

        Raises:
            AssignmentError: Any LP failure, or ValidationIncomplete /
                CriticalViolation from phase 3
        """
        indices = sorted(indices) if indices is not None else list(range(self.snapshot.exam_count))
        busy = busy.copy() if busy is not None else BusySchedule.from_intervals(self.snapshot.busy)
        workload = Counter(workload) if workload is not None else initial_workload(self.snapshot)

        # Phase 1
        adapter = LPAssignmentAdapter(self.snapshot, self.options, self.solver)
        solution = adapter.solve(head_only=True, indices=indices, busy=busy, workload=workload,
                                 timeout_ms=self.options.head_lp_timeout_ms)
        self._log(f"Head LP placed {sum(1 for g in solution.genes if g.has_head)} heads "
                  f"in {solution.time_ms:.0f}ms")

        # Phase 2
        started = time.perf_counter()
        assigner = GreedyAssigner(self.snapshot, self.options)
        run = GreedyRun(self.snapshot.empty_genes(), busy, workload)
        for idx in indices:
            exam = self.snapshot.exams[idx]
            head_id = solution.genes[idx].head_id
            if not solution.genes[idx].has_head:
                continue
            if not run.busy.is_free(head_id, exam):
                # soft conflict accepted by the LP; re-pick a free head
                replacement = assigner.pick(exam, Role.HEAD, run)
                if replacement is None:
                    continue
                head_id = replacement.observer_id
            secretary = assigner.pick(exam, Role.SECRETARY, run, exclude=(head_id,))
            if secretary is None:
                continue
            for observer_id in (head_id, secretary.observer_id):
                run.busy.book(observer_id, exam)
                run.workload[observer_id] += 1
            run.genes[idx] = Gene(exam.exam_id, head_id, secretary.observer_id)

        gaps = [idx for idx in indices if not run.genes[idx].is_complete]
        if gaps:
            assigner.fill_gaps(run, gaps)
        for idx in indices:
            if not run.genes[idx].is_complete:
                exam = self.snapshot.exams[idx]
                run.failures[exam.exam_id] = solution.infeasible_exams.get(
                    exam.exam_id, explain_failure(self.snapshot, exam, run.busy))
        greedy_ms = (time.perf_counter() - started) * 1000.0
        self._log(f"Greedy secretaries covered {run.covered}/{len(indices)} exams in {greedy_ms:.0f}ms")

        result = HybridResult(run.genes, solution.time_ms, greedy_ms, failures=run.failures)
        if not validate:
            return result

        # Phase 3
        engine = ValidationEngine(self.snapshot, options=self.options)
        report = engine.validate([run.genes[idx] for idx in indices if not run.genes[idx].is_empty])
        result.report = report
        if not report.complete:
            raise ValidationIncomplete("Hybrid validation did not finish", engine.summarize(report))
        if report.critical_violations(len(indices), self.options.overlap_tolerance):
            raise CriticalViolation("Hybrid result has critical violations", engine.summarize(report))
        return result


@dataclass
class ChunkedResult:
    genes: List[Gene]
    batches: int = 0
    batch_fallbacks: int = 0
    lp_time_ms: float = 0.0
    greedy_time_ms: float = 0.0
    report: Optional[ValidationReport] = None
    failures: Dict[Any, str] = field(default_factory=dict)

    @property
    def covered(self) -> int:
        return sum(1 for gene in self.genes if gene.is_complete)


class ChunkingController:
    """
    Solves a large snapshot in chronological batches.

    Each batch sees the busy schedule accumulated by every earlier batch, so
    no cross-batch overlap can be introduced.
    """

    def __init__(self, snapshot: Snapshot, options: Optional[AssignmentOptions] = None,
                 solver: Optional[Solver] = None):
        self.snapshot = snapshot
        self.options = options or AssignmentOptions()
        self.solver = solver
        self.verbose = self.options.verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[CHUNKED] {message}")

    def batches(self) -> List[List[int]]:
        size = max(1, self.options.chunk_size)
        indices = list(range(self.snapshot.exam_count))
        return [indices[i:i + size] for i in range(0, len(indices), size)]

    def free_observers(self, batch: Sequence[int], busy: BusySchedule):
        """Observers who can still take at least one exam of the batch."""
        exams = [self.snapshot.exams[idx] for idx in batch]
        return [o for o in self.snapshot.observers
                if any(can_serve(o, exam) and busy.is_free(o.observer_id, exam) for exam in exams)]

    def run(self, deadline: Optional[Deadline] = None) -> ChunkedResult:
        genes = self.snapshot.empty_genes()
        busy = BusySchedule.from_intervals(self.snapshot.busy)
        workload = initial_workload(self.snapshot)
        result = ChunkedResult(genes)
        batches = self.batches()
        self._log(f"Processing {self.snapshot.exam_count} exams in {len(batches)} batches "
                  f"of up to {self.options.chunk_size}")

        for number, batch in enumerate(batches, 1):
            result.batches += 1
            batch_genes, failures = None, {}
            if deadline is not None and deadline.expired():
                self._log(f"Deadline reached, batch {number} goes straight to greedy")
            else:
                try:
                    hybrid = self._solve_batch(batch, busy, workload)
                    batch_genes, failures = hybrid.genes, hybrid.failures
                    result.lp_time_ms += hybrid.lp_time_ms
                    result.greedy_time_ms += hybrid.greedy_time_ms
                except AssignmentError as e:
                    self._log(f"Batch {number} hybrid failed ({e.message}), using greedy")

            if batch_genes is None:
                result.batch_fallbacks += 1
                started = time.perf_counter()
                run = GreedyAssigner(self.snapshot, self.options).maximum_coverage(batch, busy, workload)
                batch_genes, failures = run.genes, run.failures
                result.greedy_time_ms += (time.perf_counter() - started) * 1000.0

            for idx in batch:
                gene = batch_genes[idx]
                if not gene.is_complete:
                    continue
                exam = self.snapshot.exams[idx]
                genes[idx] = gene
                for observer_id, _ in gene.observers():
                    busy.book(observer_id, exam)
                    workload[observer_id] += 1
            for idx in batch:
                exam_id = self.snapshot.exams[idx].exam_id
                if not genes[idx].is_complete:
                    result.failures[exam_id] = failures.get(
                        exam_id, explain_failure(self.snapshot, self.snapshot.exams[idx], busy))
            self._log(f"Batch {number}/{len(batches)}: "
                      f"{sum(1 for idx in batch if genes[idx].is_complete)}/{len(batch)} covered")

        engine = ValidationEngine(self.snapshot, options=self.options)
        result.report = engine.validate([gene for gene in genes if not gene.is_empty])
        self._log(f"Final coverage {result.covered}/{self.snapshot.exam_count}, "
                  f"{result.report.total_violations} violations")
        return result

    def _solve_batch(self, batch: Sequence[int], busy: BusySchedule, workload: Counter) -> HybridResult:
        observers = self.free_observers(batch, busy)
        if len(observers) < 2:
            raise AssignmentError("Fewer than two observers free for this batch")
        sub = self.snapshot.with_observers(observers)
        decomposer = HybridDecomposer(sub, self.options, self.solver)
        return run_with_timeout(decomposer.solve, self.options.chunk_timeout_ms, batch, busy, workload,
                                label='chunk solve')
