import time

import pytest

from exam_observer_scheduler import router as router_module
from exam_observer_scheduler.collaborators import InMemoryAssignmentStore, InMemoryDataLoader, MetricsSink
from exam_observer_scheduler.config import AssignmentOptions
from exam_observer_scheduler.exceptions import FallbackReason, InsufficientObserversError
from exam_observer_scheduler.lp import Solver, SolverStatus
from exam_observer_scheduler.models import Gene, Snapshot
from exam_observer_scheduler.router import (Algorithm, AlgorithmRouter, Attempt, GreedyStrategy, assign, build_report,
                                            compare_algorithms, resolve_algorithm)
from exam_observer_scheduler.validation import ValidationEngine

from factories import make_exam, make_head, make_secretary, random_snapshot, rule_violations


class ListSink(MetricsSink):
    def __init__(self):
        self.reports = []

    def record(self, report):
        self.reports.append(report)


class BrokenSink(MetricsSink):
    def record(self, report):
        raise RuntimeError("disk full")


class DoubleBookingSolver(Solver):
    """Puts H1 at the head of both overlapping exams."""

    name = 'double-booking'

    def build(self, model):
        return model

    def solve(self, handle, time_limit_ms):
        return SolverStatus.FEASIBLE

    def extract(self, handle):
        return {'h_0_0': 1, 's_0_1': 1, 'h_1_0': 1, 's_1_2': 1}


def loader_for(snapshot):
    return InMemoryDataLoader(snapshot.exams, snapshot.observers, snapshot.busy)


def exam_ids(snapshot):
    return [exam.exam_id for exam in snapshot.exams]


@pytest.mark.parametrize('name,expected', [
    ('auto', None),
    (None, None),
    ('lp', Algorithm.PURE_LP),
    ('GA', Algorithm.GENETIC),
    ('max_coverage', Algorithm.MAX_COVERAGE),
    ('hybrid-lp-greedy', Algorithm.HYBRID),
])
def test_resolve_algorithm(name, expected):
    assert resolve_algorithm(name) == expected


def test_unknown_algorithm_is_rejected():
    with pytest.raises(ValueError):
        resolve_algorithm('simulated-annealing')


def test_plan_by_problem_size(sequential_snapshot):
    def plan(**changes):
        return AlgorithmRouter(AssignmentOptions(**changes)).plan(sequential_snapshot)

    assert plan() == [Algorithm.PURE_LP, Algorithm.GREEDY]
    assert plan(hybrid_threshold_exams=1) == [Algorithm.HYBRID, Algorithm.GREEDY]
    assert plan(hybrid_threshold_exams=1, chunked_threshold_exams=2) == [Algorithm.CHUNKED, Algorithm.GREEDY]
    assert plan(large_problem_threshold=5) == [Algorithm.MAX_COVERAGE]


def test_forced_plans(sequential_snapshot):
    def plan(algorithm):
        return AlgorithmRouter(AssignmentOptions(algorithm=algorithm)).plan(sequential_snapshot)

    assert plan('greedy') == [Algorithm.GREEDY]
    assert plan('max-coverage') == [Algorithm.MAX_COVERAGE]
    assert plan('ga') == [Algorithm.GENETIC, Algorithm.GREEDY]
    assert plan('hybrid') == [Algorithm.HYBRID, Algorithm.GREEDY]


def test_assign_sequential_exams(sequential_snapshot):
    store = InMemoryAssignmentStore()
    sink = ListSink()
    result = assign(exam_ids(sequential_snapshot), AssignmentOptions(), loader_for(sequential_snapshot),
                    store, sink)

    assert len(result.assignments) == 3
    assert result.failed == []
    assert result.stats['algorithm'] == Algorithm.PURE_LP.value
    assert result.stats['fallbacks'] == []
    assert result.stats['constraints_violated'] == 0
    assert result.quality.coverage == 1.0
    assert set(store.assignments) == {'E1', 'E2', 'E3'}
    assert len(sink.reports) == 1
    assert sink.reports[0]['stats']['exams_covered'] == 3


def test_overlapping_exams_leave_one_failed(overlapping_snapshot):
    result = assign(['A', 'B'], AssignmentOptions(), loader_for(overlapping_snapshot))

    assert result.stats['algorithm'] == Algorithm.PURE_LP.value
    assert result.stats['fallbacks'] == []
    assert result.stats['constraints_violated'] == 0
    assert len(result.assignments) == 1
    assert result.assignments[0].head_id == 'H1'
    assert len(result.failed) == 1
    assert 'insufficient availability' in result.failed[0].reason


def test_double_booked_lp_result_falls_back_to_greedy(overlapping_snapshot):
    result = assign(['A', 'B'], AssignmentOptions(), loader_for(overlapping_snapshot),
                    solver=DoubleBookingSolver())

    assert result.stats['algorithm'] == Algorithm.GREEDY.value
    fallbacks = result.stats['fallbacks']
    assert len(fallbacks) == 1
    assert fallbacks[0]['algorithm'] == Algorithm.PURE_LP.value
    assert fallbacks[0]['reason'] == FallbackReason.CRITICAL_VIOLATION.value

    assert [a.exam_id for a in result.assignments] == ['A']
    assert result.assignments[0].head_id == 'H1'
    assert [f.exam_id for f in result.failed] == ['B']
    assert 'insufficient availability' in result.failed[0].reason


def test_oversized_lp_falls_back(sequential_snapshot):
    result = AlgorithmRouter(AssignmentOptions(max_lp_variables=1)).run(sequential_snapshot)

    assert result.stats['algorithm'] == Algorithm.GREEDY.value
    assert result.stats['fallbacks'][0]['reason'] == FallbackReason.MODEL_TOO_LARGE.value
    assert len(result.assignments) == 3


def test_forced_lp_falls_back_to_greedy(sequential_snapshot):
    options = AssignmentOptions(algorithm='lp', max_lp_variables=1)
    result = AlgorithmRouter(options).run(sequential_snapshot)
    assert result.stats['algorithm'] == Algorithm.GREEDY.value
    assert len(result.assignments) == 3


def test_genetic_strategy_through_router(sequential_snapshot):
    options = AssignmentOptions(algorithm='ga', population_size=50, generations=20, seed=1)
    result = AlgorithmRouter(options).run(sequential_snapshot)

    assert result.stats['algorithm'] == Algorithm.GENETIC.value
    assert 'final_fitness' in result.stats
    assert len(result.assignments) == 3


def test_too_few_observers():
    exams = [make_exam('E1', '09:00', '10:00')]
    loader = InMemoryDataLoader(exams, [make_head('H1')])
    with pytest.raises(InsufficientObserversError):
        assign(['E1'], AssignmentOptions(), loader)


def test_no_exams_is_not_an_error():
    loader = InMemoryDataLoader([], [make_head('H1')])
    result = assign([], AssignmentOptions(), loader)
    assert result.assignments == [] and result.failed == []


def test_loader_is_required():
    with pytest.raises(ValueError):
        assign(['E1'], AssignmentOptions())


def test_broken_metrics_sink_is_not_fatal(sequential_snapshot, capsys):
    result = assign(exam_ids(sequential_snapshot), AssignmentOptions(algorithm='greedy'),
                    loader_for(sequential_snapshot), metrics_sink=BrokenSink())
    assert len(result.assignments) == 3
    assert 'disk full' in capsys.readouterr().out


def test_sanitize_clears_and_refills_overlaps(overlapping_snapshot):
    snapshot = overlapping_snapshot.with_observers(list(overlapping_snapshot.observers) + [make_head('H2')])
    router = AlgorithmRouter()
    genes = [Gene('A', 'H1', 'S1'), Gene('B', 'H1', 'S2')]
    report = ValidationEngine(snapshot).validate(genes)
    assert len(report.overlaps) == 1

    cleaned, removed = router.sanitize(snapshot, genes, report)
    assert removed == 1
    assert cleaned[0] == Gene('A', 'H1', 'S1')
    assert cleaned[1].is_complete and cleaned[1].head_id == 'H2'
    assert rule_violations(snapshot, cleaned) == []


def test_sanitize_drops_partial_genes(sequential_snapshot):
    router = AlgorithmRouter()
    genes = [Gene('E1', 'H1'), Gene('E2'), Gene('E3')]
    report = ValidationEngine(sequential_snapshot).validate(genes)
    cleaned, _ = router.sanitize(sequential_snapshot, genes, report)
    assert all(gene.is_complete for gene in cleaned)


@pytest.mark.parametrize('algorithm', ['auto', 'greedy', 'max-coverage', 'hybrid', 'chunked'])
@pytest.mark.parametrize('seed', [0, 1])
def test_router_results_never_break_rules(algorithm, seed):
    snapshot = random_snapshot(seed, exams=14, heads=3, secretaries=4, days=2)
    result = AlgorithmRouter(AssignmentOptions(algorithm=algorithm, seed=seed, chunk_size=5)).run(snapshot)

    genes = [Gene(a.exam_id, a.head_id, a.secretary_id) for a in result.assignments]
    assert rule_violations(snapshot, genes) == []
    assert result.stats['constraints_violated'] == 0
    assert len(result.assignments) + len(result.failed) == snapshot.exam_count
    assert {a.exam_id for a in result.assignments}.isdisjoint({f.exam_id for f in result.failed})
    assert all(f.reason for f in result.failed)


def test_build_report(sequential_snapshot):
    result = AlgorithmRouter(AssignmentOptions(algorithm='greedy')).run(sequential_snapshot)
    report = build_report(result, exam_ids(sequential_snapshot))
    assert report['exam_ids'] == ['E1', 'E2', 'E3']
    assert report['coverage'] == 1.0
    assert report['quality']['grade'] in 'ABCDF'


def test_compare_algorithms(sequential_snapshot):
    table = compare_algorithms(sequential_snapshot, ['greedy', 'max-coverage', 'lp'])

    assert len(table) == 3
    assert set(table['requested']) == {'greedy-optimized', 'maximum-coverage', 'pure-linear-programming'}
    assert (table['coverage'] == 1.0).all()
    assert list(table['overall_score']) == sorted(table['overall_score'], reverse=True)


def test_secretaries_only_input_fails_every_exam():
    exams = [make_exam('E1', '09:00', '10:00'), make_exam('E2', '11:00', '12:00')]
    loader = InMemoryDataLoader(exams, [make_secretary('S1'), make_secretary('S2')])
    result = assign(['E1', 'E2'], AssignmentOptions(), loader)

    assert result.assignments == []
    assert len(result.failed) == 2
    assert all('insufficient availability' in f.reason for f in result.failed)
    assert result.stats['fallbacks'][0]['reason'] == FallbackReason.NO_FEASIBLE_MODEL.value
    assert result.stats['fallbacks'][1] == {
        'algorithm': Algorithm.GREEDY.value,
        'reason': FallbackReason.NO_SOLUTION.value,
        'detail': 'greedy-optimized staffed none of 2 exams',
    }
    assert result.stats['algorithm'] == Algorithm.GREEDY.value


def test_strategy_that_staffs_nothing_reports_no_solution():
    exams = [make_exam('E1', '09:00', '10:00')]
    snapshot = Snapshot(exams, [make_secretary('S1'), make_secretary('S2')])
    attempt = GreedyStrategy(AssignmentOptions()).attempt(snapshot)

    assert not attempt.ok
    assert attempt.genes is None
    assert attempt.reason == FallbackReason.NO_SOLUTION
    assert 'insufficient availability' in attempt.failures['E1']


def test_violations_left_after_sanitising_are_dropped(overlapping_snapshot, monkeypatch):
    monkeypatch.setattr(router_module, 'MAX_SANITIZE_ROUNDS', 0)
    genes = [Gene('A', 'H1', 'S1'), Gene('B', 'H1', 'S2')]
    report = ValidationEngine(overlapping_snapshot).validate(genes)
    attempt = Attempt(Algorithm.GREEDY, genes)

    result = AlgorithmRouter()._finish(overlapping_snapshot, attempt, report, [], time.perf_counter())

    assert [a.exam_id for a in result.assignments] == ['A']
    assert [f.exam_id for f in result.failed] == ['B']
    assert result.stats['violations_removed'] == 1
    assert result.stats['constraints_violated'] == 0


def test_unfinished_validation_leaves_violation_count_unknown(sequential_snapshot):
    options = AssignmentOptions(algorithm='greedy', validation_timeout_ms=0)
    result = AlgorithmRouter(options).run(sequential_snapshot)

    assert len(result.assignments) == 3
    assert result.stats['validation_complete'] is False
    assert result.stats['constraints_violated'] is None
