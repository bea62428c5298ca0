"""
Greedy assignment heuristics.

The greedy assigner is the baseline of every strategy and the terminal
fallback of the router: it always terminates and never breaks a hard rule,
because every pick is checked against the constraint oracle and the
in-memory busy map before it is booked.
"""

import random
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import AssignmentOptions
from .constraints import (BusySchedule, can_serve, can_take_role, eligible_observers,
                          explain_failure, is_qualified_for_head)
from .models import Exam, Gene, Observer, Role, Snapshot


class ExamOrder(str, Enum):
    CHRONOLOGICAL = 'chronological'
    REVERSE_CHRONOLOGICAL = 'reverse-chronological'
    HARDEST_FIRST = 'hardest-first'
    RANDOM = 'random'


@dataclass
class GreedyRun:
    """Working state of a greedy pass, index-aligned with the snapshot's exams."""
    genes: List[Gene]
    busy: BusySchedule
    workload: Counter
    order: str = ExamOrder.CHRONOLOGICAL.value
    failures: Dict[Any, str] = field(default_factory=dict)

    @property
    def covered(self) -> int:
        return sum(1 for gene in self.genes if gene.is_complete)

    def unassigned_indices(self) -> List[int]:
        return [idx for idx, gene in enumerate(self.genes) if not gene.is_complete]


def initial_workload(snapshot: Snapshot) -> Counter:
    """Existing commitments count towards an observer's starting workload."""
    return Counter(interval.observer_id for interval in snapshot.busy)


class GreedyAssigner:
    """
    Single and multi-pass greedy assignment of heads and secretaries.

    Each exam, in the chosen order, gets the least-loaded eligible head and
    the least-loaded eligible secretary. Ties prefer full-time heads and
    non-qualified secretaries, so qualified observers stay available for
    head duty.
    """

    def __init__(self, snapshot: Snapshot, options: Optional[AssignmentOptions] = None, seed: Optional[int] = None):
        self.snapshot = snapshot
        self.options = options or AssignmentOptions()
        self.verbose = self.options.verbose
        self.rng = random.Random(self.options.seed if seed is None else seed)
        self._head_qualified = {o.observer_id: is_qualified_for_head(o) for o in snapshot.observers}

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[GREEDY] {message}")

    # Run construction
    def new_run(self, busy: Optional[BusySchedule] = None, workload: Optional[Counter] = None) -> GreedyRun:
        return GreedyRun(
            genes=self.snapshot.empty_genes(),
            busy=busy.copy() if busy is not None else BusySchedule.from_intervals(self.snapshot.busy),
            workload=Counter(workload) if workload is not None else initial_workload(self.snapshot),
        )

    def order_exams(self, order: ExamOrder, indices: Optional[Sequence[int]] = None) -> List[int]:
        """Return exam indices in the requested processing order."""
        indices = list(range(len(self.snapshot.exams))) if indices is None else list(indices)
        order = ExamOrder(order)
        if order == ExamOrder.CHRONOLOGICAL:
            return sorted(indices)
        if order == ExamOrder.REVERSE_CHRONOLOGICAL:
            return sorted(indices, reverse=True)
        if order == ExamOrder.RANDOM:
            shuffled = sorted(indices)
            self.rng.shuffle(shuffled)
            return shuffled
        return sorted(indices, key=lambda idx: (self._difficulty(self.snapshot.exams[idx]), idx))

    def _difficulty(self, exam: Exam) -> Tuple[int, int]:
        heads = sum(1 for o in self.snapshot.observers if can_take_role(o, exam, Role.HEAD))
        secretaries = sum(1 for o in self.snapshot.observers if can_serve(o, exam))
        return (min(heads, max(secretaries - 1, 0)), heads + secretaries)

    # Picking
    def _cap(self, observer: Observer) -> int:
        return observer.max_assignments or self.options.default_max_assignments

    def _rank(self, observer: Observer, role: Role, run: GreedyRun) -> Tuple:
        load = run.workload[observer.observer_id]
        over_cap = load >= self._cap(observer)
        if role == Role.HEAD:
            bonus = 0 if observer.is_full_time else 1
        else:
            bonus = 1 if self._head_qualified[observer.observer_id] else 0
        return (over_cap, load, bonus, str(observer.observer_id))

    def candidates(self, exam: Exam, role: Role, run: GreedyRun, exclude: Iterable[Any] = ()) -> List[Observer]:
        """Eligible observers for ``role``, best first."""
        pool = eligible_observers(self.snapshot, exam, role, run.busy, exclude)
        return sorted(pool, key=lambda o: self._rank(o, role, run))

    def pick(self, exam: Exam, role: Role, run: GreedyRun, exclude: Iterable[Any] = ()) -> Optional[Observer]:
        ranked = self.candidates(exam, role, run, exclude)
        return ranked[0] if ranked else None

    def staff(self, exam: Exam, run: GreedyRun) -> Optional[Tuple[Observer, Observer]]:
        """Find a (head, secretary) pair for ``exam`` without booking it."""
        secretaries = self.candidates(exam, Role.SECRETARY, run)
        if not secretaries:
            return None
        for head in self.candidates(exam, Role.HEAD, run):
            for secretary in secretaries:
                if secretary.observer_id != head.observer_id:
                    return head, secretary
        return None

    def _book(self, run: GreedyRun, idx: int, head: Observer, secretary: Observer) -> None:
        exam = self.snapshot.exams[idx]
        run.genes[idx] = Gene(exam.exam_id, head.observer_id, secretary.observer_id)
        for observer in (head, secretary):
            run.busy.book(observer.observer_id, exam)
            run.workload[observer.observer_id] += 1
        run.failures.pop(exam.exam_id, None)

    # Passes
    def assign(self, order: ExamOrder = ExamOrder.CHRONOLOGICAL,
               indices: Optional[Sequence[int]] = None,
               run: Optional[GreedyRun] = None) -> GreedyRun:
        """
        Run one greedy pass.

        Args:
            order: Exam processing order
            indices: Restrict the pass to these exam indices
            run: Continue an existing run (its busy map and workload are reused)

        Returns:
            The (possibly partial) run
        """
        run = run if run is not None else self.new_run()
        run.order = ExamOrder(order).value
        for idx in self.order_exams(order, indices):
            if run.genes[idx].is_complete:
                continue
            exam = self.snapshot.exams[idx]
            pair = self.staff(exam, run)
            if pair is None:
                run.failures[exam.exam_id] = explain_failure(self.snapshot, exam, run.busy)
                continue
            self._book(run, idx, *pair)
        self._log(f"{run.order} pass covered {run.covered}/{len(run.genes)} exams")
        return run

    def multi_pass(self, orders: Optional[Sequence[ExamOrder]] = None,
                   indices: Optional[Sequence[int]] = None,
                   busy: Optional[BusySchedule] = None,
                   workload: Optional[Counter] = None) -> GreedyRun:
        """Run several orderings and keep the run with the highest coverage."""
        if orders is None:
            base = [ExamOrder.HARDEST_FIRST, ExamOrder.CHRONOLOGICAL, ExamOrder.REVERSE_CHRONOLOGICAL]
            extra = max(self.options.greedy_passes - len(base), 1)
            orders = base + [ExamOrder.RANDOM] * extra
        best = None
        for order in orders:
            run = self.assign(order, indices, self.new_run(busy, workload))
            if best is None or run.covered > best.covered:
                best = run
            if best.covered == len(indices if indices is not None else best.genes):
                break
        return best

    def fill_gaps(self, run: GreedyRun, indices: Optional[Sequence[int]] = None) -> GreedyRun:
        """Re-attempt still-unassigned exams against the partial result."""
        allowed = set(indices) if indices is not None else None
        gaps = [idx for idx in run.unassigned_indices() if allowed is None or idx in allowed]
        if not gaps:
            return run
        before = run.covered
        self.assign(ExamOrder.HARDEST_FIRST, gaps, run)
        self._log(f"Gap filling added {run.covered - before} exams")
        return run

    # Local optimisation
    def _holder_index(self, run: GreedyRun, exam_id: Any, observer_id: Any) -> Optional[int]:
        if not self.snapshot.has_exam(exam_id):
            return None
        idx = self.snapshot.exam_index(exam_id)
        gene = run.genes[idx]
        if gene.is_complete and observer_id in (gene.head_id, gene.secretary_id):
            return idx
        return None

    def _replace(self, run: GreedyRun, idx: int, old_id: Any, new_id: Any) -> None:
        exam = self.snapshot.exams[idx]
        gene = run.genes[idx]
        run.busy.release(old_id, exam)
        run.busy.book(new_id, exam)
        run.workload[old_id] -= 1
        run.workload[new_id] += 1
        if gene.head_id == old_id:
            run.genes[idx] = gene.with_head(new_id)
        else:
            run.genes[idx] = gene.with_secretary(new_id)

    def augment(self, run: GreedyRun, idx: int) -> bool:
        """
        Try to staff an unassigned exam by moving one blocking observer.

        A qualified or eligible observer that is busy with exactly one other
        exam of this run is replaced there by a free alternative, which frees
        them for this exam. Changes are reverted if the exam still cannot be
        staffed.
        """
        exam = self.snapshot.exams[idx]
        for role in (Role.HEAD, Role.SECRETARY):
            blockers = [o for o in self.snapshot.observers
                        if can_take_role(o, exam, role) and not run.busy.is_free(o.observer_id, exam)]
            for blocker in blockers:
                tags = run.busy.conflicts(blocker.observer_id, exam)
                if len(tags) != 1:
                    continue
                other_idx = self._holder_index(run, tags[0], blocker.observer_id)
                if other_idx is None:
                    continue
                other_exam = self.snapshot.exams[other_idx]
                other_gene = run.genes[other_idx]
                held = Role.HEAD if other_gene.head_id == blocker.observer_id else Role.SECRETARY
                partner = other_gene.secretary_id if held == Role.HEAD else other_gene.head_id
                substitute = self.pick(other_exam, held, run, exclude=(blocker.observer_id, partner))
                if substitute is None:
                    continue
                self._replace(run, other_idx, blocker.observer_id, substitute.observer_id)
                pair = self.staff(exam, run)
                if pair is not None:
                    self._book(run, idx, *pair)
                    return True
                self._replace(run, other_idx, substitute.observer_id, blocker.observer_id)
        return False

    def rebalance(self, run: GreedyRun) -> int:
        """Move roles from overloaded observers to clearly less loaded ones."""
        moved = 0
        active = [load for load in run.workload.values() if load > 0]
        if not active:
            return 0
        mean = sum(active) / len(active)
        for idx, gene in enumerate(run.genes):
            if not gene.is_complete:
                continue
            exam = self.snapshot.exams[idx]
            for observer_id, role in gene.observers():
                if run.workload[observer_id] <= mean + 1:
                    continue
                partner = run.genes[idx].secretary_id if role == Role.HEAD else run.genes[idx].head_id
                run.busy.release(observer_id, exam)
                substitute = self.pick(exam, role, run, exclude=(observer_id, partner))
                run.busy.book(observer_id, exam)
                if substitute is None or run.workload[substitute.observer_id] >= run.workload[observer_id] - 1:
                    continue
                self._replace(run, idx, observer_id, substitute.observer_id)
                moved += 1
        return moved

    def optimize(self, run: GreedyRun, indices: Optional[Sequence[int]] = None) -> GreedyRun:
        allowed = set(indices) if indices is not None else None
        augmented = sum(1 for idx in run.unassigned_indices()
                        if (allowed is None or idx in allowed) and self.augment(run, idx))
        moved = self.rebalance(run)
        self._log(f"Local optimisation: {augmented} exams recovered, {moved} roles rebalanced")
        return run

    def maximum_coverage(self, indices: Optional[Sequence[int]] = None,
                         busy: Optional[BusySchedule] = None,
                         workload: Optional[Counter] = None) -> GreedyRun:
        """Multi-pass greedy, then local optimisation and gap filling."""
        run = self.multi_pass(indices=indices, busy=busy, workload=workload)
        self.optimize(run, indices)
        self.fill_gaps(run, indices)
        allowed = set(indices) if indices is not None else None
        for idx in run.unassigned_indices():
            if allowed is not None and idx not in allowed:
                continue
            exam = self.snapshot.exams[idx]
            run.failures[exam.exam_id] = explain_failure(self.snapshot, exam, run.busy)
        return run
