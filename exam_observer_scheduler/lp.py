"""
Binary integer programming adapter.

The model is built in a solver-neutral form (``LPModel``) and handed to a
``Solver`` implementation. ``CpSatSolver`` uses OR-Tools CP-SAT; any other
backend only has to implement build / solve / extract.
"""

import time
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ortools.sat.python import cp_model

from .config import AssignmentOptions
from .constraints import BusySchedule, eligible_observers, is_qualified_for_head
from .exceptions import ModelTooLarge, NoFeasibleModel, SolverError, SolveTimeout
from .greedy import initial_workload
from .models import Gene, Role, Snapshot
from .timeouts import run_with_timeout

EQ, LE, GE = '==', '<=', '>='


@dataclass
class LPVariable:
    name: str
    kind: str = 'binary'
    lower: int = 0
    upper: int = 1
    exam_index: Optional[int] = None
    observer_id: Any = None
    role: Optional[Role] = None


@dataclass
class LPConstraint:
    name: str
    terms: Dict[str, int]
    sense: str
    rhs: int


@dataclass
class LPModel:
    variables: Dict[str, LPVariable] = field(default_factory=dict)
    constraints: List[LPConstraint] = field(default_factory=list)
    objective: Dict[str, int] = field(default_factory=dict)
    head_only: bool = False
    exam_indices: List[int] = field(default_factory=list)
    infeasible_exams: Dict[Any, str] = field(default_factory=dict)

    def add_variable(self, variable: LPVariable, coefficient: int = 0) -> LPVariable:
        self.variables[variable.name] = variable
        if coefficient:
            self.objective[variable.name] = coefficient
        return variable

    def add_constraint(self, name: str, terms: Dict[str, int], sense: str, rhs: int) -> None:
        self.constraints.append(LPConstraint(name, terms, sense, rhs))

    def assignment_variables(self) -> List[LPVariable]:
        return [v for v in self.variables.values() if v.role is not None]

    def constraint(self, name: str) -> Optional[LPConstraint]:
        for item in self.constraints:
            if item.name == name:
                return item
        return None


class SolverStatus(str, Enum):
    OPTIMAL = 'optimal'
    FEASIBLE = 'feasible'
    INFEASIBLE = 'infeasible'
    UNKNOWN = 'unknown'
    ERROR = 'error'


class Solver(ABC):
    """Narrow interface to an external MILP/CP solver."""

    name = 'abstract'

    @abstractmethod
    def build(self, model: LPModel) -> Any:
        """Translate the model into the solver's native representation."""

    @abstractmethod
    def solve(self, handle: Any, time_limit_ms: float) -> SolverStatus:
        """Solve within the time limit."""

    @abstractmethod
    def extract(self, handle: Any) -> Dict[str, int]:
        """Variable values of the last solution."""


class CpSatSolver(Solver):
    """OR-Tools CP-SAT backend."""

    name = 'cp-sat'

    _STATUS = {
        cp_model.OPTIMAL: SolverStatus.OPTIMAL,
        cp_model.FEASIBLE: SolverStatus.FEASIBLE,
        cp_model.INFEASIBLE: SolverStatus.INFEASIBLE,
        cp_model.MODEL_INVALID: SolverStatus.ERROR,
        cp_model.UNKNOWN: SolverStatus.UNKNOWN,
    }

    def __init__(self, num_workers: int = 1, seed: int = 0):
        self.num_workers = num_workers
        self.seed = seed

    def build(self, model: LPModel) -> Dict[str, Any]:
        cp = cp_model.CpModel()
        variables = {}
        for var in model.variables.values():
            if var.kind == 'binary':
                variables[var.name] = cp.NewBoolVar(var.name)
            else:
                variables[var.name] = cp.NewIntVar(var.lower, var.upper, var.name)

        for item in model.constraints:
            if not item.terms:
                if not _holds(0, item.sense, item.rhs):
                    raise NoFeasibleModel(f"Constraint {item.name} cannot hold")
                continue
            expr = sum(coef * variables[name] for name, coef in item.terms.items())
            if item.sense == EQ:
                cp.Add(expr == item.rhs)
            elif item.sense == LE:
                cp.Add(expr <= item.rhs)
            else:
                cp.Add(expr >= item.rhs)

        if model.objective:
            cp.Maximize(sum(coef * variables[name] for name, coef in model.objective.items()))
        return {'model': cp, 'variables': variables, 'solver': None}

    def solve(self, handle: Dict[str, Any], time_limit_ms: float) -> SolverStatus:
        solver = cp_model.CpSolver()
        solver.parameters.max_time_in_seconds = max(time_limit_ms, 1) / 1000.0
        solver.parameters.num_workers = self.num_workers
        solver.parameters.random_seed = self.seed
        status = solver.Solve(handle['model'])
        handle['solver'] = solver
        return self._STATUS.get(status, SolverStatus.ERROR)

    def extract(self, handle: Dict[str, Any]) -> Dict[str, int]:
        solver = handle['solver']
        if solver is None:
            raise SolverError("Model has not been solved")
        return {name: int(solver.Value(var)) for name, var in handle['variables'].items()}


def _holds(value: int, sense: str, rhs: int) -> bool:
    if sense == EQ:
        return value == rhs
    if sense == LE:
        return value <= rhs
    return value >= rhs


class LPModelBuilder:
    """
    Builds the binary assignment program for a set of exams.

    Only (observer, exam) pairs approved by the constraint oracle and free in
    the busy map get variables. Each exam takes at most one head and, in the
    full model, exactly as many secretaries as heads; a coverage bonus on the
    head variables makes staffing an exam worth more than any cap overflow
    and less than a time conflict. Workload-cap overflow and time conflicts
    are soft: penalty variables are subtracted from the objective instead of
    making the model infeasible.
    """

    tag = 'PURE-LP'

    def __init__(self, snapshot: Snapshot, options: Optional[AssignmentOptions] = None,
                 indices: Optional[Sequence[int]] = None,
                 busy: Optional[BusySchedule] = None,
                 workload: Optional[Counter] = None):
        self.snapshot = snapshot
        self.options = options or AssignmentOptions()
        self.indices = sorted(indices) if indices is not None else list(range(snapshot.exam_count))
        self.busy = busy if busy is not None else BusySchedule.from_intervals(snapshot.busy)
        self.workload = workload if workload is not None else initial_workload(snapshot)
        self.verbose = self.options.verbose
        self._observer_index = {o.observer_id: i for i, o in enumerate(snapshot.observers)}

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[{self.tag}] {message}")

    def estimate_size(self, head_only: bool = False) -> Tuple[int, int]:
        """Variable and constraint counts the model would have."""
        candidates, _ = self._candidates(head_only)
        pairs = self._conflicting_pairs(candidates)
        return self._count(candidates, pairs, head_only)

    def build(self, head_only: bool = False) -> Optional[LPModel]:
        """
        Build the model, or return None when it exceeds the size ceilings.

        Args:
            head_only: Omit secretary variables (hybrid phase 1)

        Returns:
            LPModel or None if the model is too large
        """
        self.tag = 'HYBRID' if head_only else 'PURE-LP'
        candidates, infeasible = self._candidates(head_only)
        pairs = self._conflicting_pairs(candidates)
        n_vars, n_constraints = self._count(candidates, pairs, head_only)
        self._log(f"Model size estimate: {n_vars} variables, {n_constraints} constraints, "
                  f"{len(pairs)} conflicting exam pairs")
        if n_vars > self.options.max_lp_variables or n_constraints > self.options.max_lp_constraints:
            self._log("Model too large, refusing to build")
            return None

        model = LPModel(head_only=head_only, exam_indices=list(self.indices))
        weight = self.options.lp_assignment_weight
        head_weight = weight + self.options.lp_coverage_weight
        per_observer = defaultdict(list)

        for idx in self.indices:
            exam = self.snapshot.exams[idx]
            if exam.exam_id in infeasible:
                model.infeasible_exams[exam.exam_id] = infeasible[exam.exam_id]
                model.add_constraint(f"head_{idx}", {}, EQ, 0)
                if not head_only:
                    model.add_constraint(f"secretary_{idx}", {}, EQ, 0)
                continue

            heads, secretaries = candidates[idx]
            head_terms = {}
            for observer in heads:
                name = self._var_name('h', idx, observer.observer_id)
                model.add_variable(LPVariable(name, exam_index=idx, observer_id=observer.observer_id,
                                              role=Role.HEAD), head_weight)
                head_terms[name] = 1
                per_observer[observer.observer_id].append(name)
            model.add_constraint(f"head_{idx}", head_terms, LE, 1)

            if head_only:
                continue
            secretary_terms = {}
            for observer in secretaries:
                name = self._var_name('s', idx, observer.observer_id)
                coefficient = (self.options.lp_qualified_secretary_weight
                               if is_qualified_for_head(observer) else weight)
                model.add_variable(LPVariable(name, exam_index=idx, observer_id=observer.observer_id,
                                              role=Role.SECRETARY), coefficient)
                secretary_terms[name] = 1
                per_observer[observer.observer_id].append(name)
                head_name = self._var_name('h', idx, observer.observer_id)
                if head_name in model.variables:
                    model.add_constraint(f"distinct_{idx}_{self._observer_index[observer.observer_id]}",
                                         {head_name: 1, name: 1}, LE, 1)
            model.add_constraint(f"secretary_{idx}", secretary_terms, LE, 1)
            pair_terms = dict(head_terms)
            pair_terms.update({name: -1 for name in secretary_terms})
            model.add_constraint(f"pair_{idx}", pair_terms, EQ, 0)

        self._add_conflict_penalties(model, pairs)
        self._add_workload_penalties(model, per_observer)
        self._log(f"Built model with {len(model.variables)} variables and {len(model.constraints)} constraints")
        return model

    def _var_name(self, prefix: str, idx: int, observer_id: Any) -> str:
        return f"{prefix}_{idx}_{self._observer_index[observer_id]}"

    def _candidates(self, head_only: bool):
        candidates = {}
        infeasible = {}
        for idx in self.indices:
            exam = self.snapshot.exams[idx]
            heads = eligible_observers(self.snapshot, exam, Role.HEAD, self.busy)
            secretaries = [] if head_only else eligible_observers(self.snapshot, exam, Role.SECRETARY, self.busy)
            if not heads:
                infeasible[exam.exam_id] = "No qualified head available (insufficient availability)"
                continue
            if not head_only and not any(s.observer_id != h.observer_id for h in heads for s in secretaries):
                infeasible[exam.exam_id] = "No secretary distinct from the head (insufficient availability)"
                continue
            candidates[idx] = (heads, secretaries)
        return candidates, infeasible

    def _conflicting_pairs(self, candidates) -> List[Tuple[int, int]]:
        by_date = defaultdict(list)
        for idx in candidates:
            exam = self.snapshot.exams[idx]
            by_date[exam.date].append((exam.start, exam.end, idx))
        pairs = []
        for entries in by_date.values():
            entries.sort()
            for i, (start, end, idx) in enumerate(entries):
                for other_start, _, other_idx in entries[i + 1:]:
                    if other_start >= end:
                        break
                    pairs.append((idx, other_idx))
        return pairs

    @staticmethod
    def _shared(candidates, a: int, b: int) -> set:
        ids_a = {o.observer_id for group in candidates[a] for o in group}
        ids_b = {o.observer_id for group in candidates[b] for o in group}
        return ids_a & ids_b

    def _count(self, candidates, pairs, head_only: bool) -> Tuple[int, int]:
        n_vars = 0
        n_constraints = 2 * len(self.indices) if not head_only else len(self.indices)
        if not head_only:
            n_constraints += len(candidates)
        load = Counter()
        for heads, secretaries in candidates.values():
            n_vars += len(heads) + len(secretaries)
            head_ids = {o.observer_id for o in heads}
            n_constraints += sum(1 for o in secretaries if o.observer_id in head_ids)
            for o in list(heads) + list(secretaries):
                load[o.observer_id] += 1
        shared = sum(len(self._shared(candidates, a, b)) for a, b in pairs)
        overflow = sum(1 for observer_id, count in load.items() if count > self._remaining_cap(observer_id))
        return n_vars + shared + overflow, n_constraints + shared + overflow

    def _remaining_cap(self, observer_id: Any) -> int:
        observer = self.snapshot.observer(observer_id)
        cap = (observer.max_assignments if observer else 0) or self.options.default_max_assignments
        return max(cap - self.workload[observer_id], 0)

    def _add_conflict_penalties(self, model: LPModel, pairs: List[Tuple[int, int]]) -> None:
        for a, b in pairs:
            for observer_id in sorted(self._observers_in(model, a) & self._observers_in(model, b), key=str):
                terms = {}
                for idx in (a, b):
                    for prefix in ('h', 's'):
                        name = self._var_name(prefix, idx, observer_id)
                        if name in model.variables:
                            terms[name] = 1
                slack = f"conflict_{a}_{b}_{self._observer_index[observer_id]}"
                model.add_variable(LPVariable(slack), -self.options.lp_conflict_penalty)
                terms[slack] = -1
                model.add_constraint(f"no_overlap_{a}_{b}_{self._observer_index[observer_id]}", terms, LE, 1)

    @staticmethod
    def _observers_in(model: LPModel, idx: int) -> set:
        return {v.observer_id for v in model.variables.values() if v.exam_index == idx and v.role is not None}

    def _add_workload_penalties(self, model: LPModel, per_observer: Dict[Any, List[str]]) -> None:
        for observer_id, names in per_observer.items():
            cap = self._remaining_cap(observer_id)
            if len(names) <= cap:
                continue
            overflow = f"overflow_{self._observer_index[observer_id]}"
            model.add_variable(LPVariable(overflow, kind='integer', upper=len(names)),
                               -self.options.lp_workload_penalty)
            terms = {name: 1 for name in names}
            terms[overflow] = -1
            model.add_constraint(f"workload_{self._observer_index[observer_id]}", terms, LE, cap)


@dataclass
class LPSolution:
    genes: List[Gene]
    model: LPModel
    status: SolverStatus
    time_ms: float
    infeasible_exams: Dict[Any, str] = field(default_factory=dict)

    @property
    def covered(self) -> int:
        return sum(1 for gene in self.genes if gene.is_complete)


class LPAssignmentAdapter:
    """Builds, solves and decodes the assignment program."""

    tag = 'PURE-LP'

    def __init__(self, snapshot: Snapshot, options: Optional[AssignmentOptions] = None,
                 solver: Optional[Solver] = None):
        self.snapshot = snapshot
        self.options = options or AssignmentOptions()
        self.solver = solver or CpSatSolver(seed=self.options.seed or 0)
        self.verbose = self.options.verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[{self.tag}] {message}")

    def solve(self, head_only: bool = False,
              indices: Optional[Sequence[int]] = None,
              busy: Optional[BusySchedule] = None,
              workload: Optional[Counter] = None,
              timeout_ms: Optional[float] = None) -> LPSolution:
        """
        Solve the (full or head-only) program.

        Returns:
            LPSolution with genes index-aligned to the snapshot's exams

        Raises:
            ModelTooLarge: The builder refused the model
            NoFeasibleModel: No exam could be modelled, or the solver proved infeasibility
            SolveTimeout: The solver found no solution within the budget
            SolverError: Any other solver failure
        """
        self.tag = 'HYBRID' if head_only else 'PURE-LP'
        started = time.perf_counter()
        if timeout_ms is None:
            timeout_ms = self.options.head_lp_timeout_ms if head_only else self.options.pure_lp_timeout_ms

        builder = LPModelBuilder(self.snapshot, self.options, indices, busy, workload)
        model = builder.build(head_only=head_only)
        if model is None:
            raise ModelTooLarge("LP model exceeds size ceilings",
                                {'max_variables': self.options.max_lp_variables,
                                 'max_constraints': self.options.max_lp_constraints})
        if not model.assignment_variables():
            raise NoFeasibleModel("No exam has eligible observers", {'infeasible': len(model.infeasible_exams)})

        handle = self.solver.build(model)
        # the solver honours its own limit; the race is a safety net
        status = run_with_timeout(self.solver.solve, timeout_ms + 2000, handle, timeout_ms,
                                  label=f"{self.solver.name} solve")
        self._log(f"Solver status: {status.value}")
        if status == SolverStatus.UNKNOWN:
            raise SolveTimeout(f"No solution within {timeout_ms}ms")
        if status == SolverStatus.INFEASIBLE:
            raise NoFeasibleModel("Solver proved the model infeasible")
        if status == SolverStatus.ERROR:
            raise SolverError("Solver reported an invalid model")

        values = self.solver.extract(handle)
        genes = self.snapshot.empty_genes()
        for var in model.assignment_variables():
            if values.get(var.name, 0) != 1:
                continue
            gene = genes[var.exam_index]
            genes[var.exam_index] = (gene.with_head(var.observer_id) if var.role == Role.HEAD
                                     else gene.with_secretary(var.observer_id))

        elapsed = (time.perf_counter() - started) * 1000.0
        self._log(f"Solved in {elapsed:.0f}ms")
        return LPSolution(genes, model, status, elapsed, dict(model.infeasible_exams))
