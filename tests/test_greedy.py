from collections import Counter

import pytest

from exam_observer_scheduler.config import AssignmentOptions
from exam_observer_scheduler.greedy import ExamOrder, GreedyAssigner
from exam_observer_scheduler.models import Availability, BusyInterval, Observer, Snapshot, TimeWindow
from exam_observer_scheduler.router import GreedyStrategy

from factories import MONDAY, hm, make_exam, make_head, make_secretary, random_snapshot, rule_violations


def loads(genes):
    counts = Counter()
    for gene in genes:
        for observer_id, _ in gene.observers():
            counts[observer_id] += 1
    return counts


def test_sequential_exams_are_all_covered_and_balanced(sequential_snapshot):
    run = GreedyAssigner(sequential_snapshot).assign()

    assert run.covered == 3
    assert not run.failures
    counts = loads(run.genes)
    assert max(counts.values()) <= 2
    assert max(counts.values()) - min(counts.values()) <= 1
    assert counts == Counter({'H1': 2, 'S1': 2, 'H2': 1, 'S2': 1})


def test_heads_are_doctors_and_roles_distinct(sequential_snapshot):
    run = GreedyAssigner(sequential_snapshot).maximum_coverage()
    assert rule_violations(sequential_snapshot, run.genes) == []
    for gene in run.genes:
        assert gene.head_id in ('H1', 'H2')
        assert gene.head_id != gene.secretary_id


def test_overlapping_exams_with_one_head(overlapping_snapshot):
    run = GreedyAssigner(overlapping_snapshot).maximum_coverage()

    assert run.covered == 1
    assert run.genes[0].head_id == 'H1'
    assert list(run.failures) == ['B']
    assert 'insufficient availability' in run.failures['B']


def test_adding_a_head_recovers_the_overlap(overlapping_snapshot):
    snapshot = overlapping_snapshot.with_observers(list(overlapping_snapshot.observers) + [make_head('H2')])
    run = GreedyAssigner(snapshot).maximum_coverage()

    assert run.covered == 2
    assert {gene.head_id for gene in run.genes} == {'H1', 'H2'}
    assert rule_violations(snapshot, run.genes) == []


def test_same_seed_gives_same_result():
    snapshot = random_snapshot(3, exams=15)
    first = GreedyAssigner(snapshot, seed=7).maximum_coverage()
    second = GreedyAssigner(snapshot, seed=7).maximum_coverage()
    assert first.genes == second.genes
    assert first.failures == second.failures


def test_existing_busy_is_respected():
    exams = [make_exam('E1', '09:00', '10:00')]
    observers = [make_head('H1'), make_head('H2'), make_secretary('S1')]
    busy = [BusyInterval('H1', MONDAY, hm('08:30'), hm('09:30'))]
    run = GreedyAssigner(Snapshot(exams, observers, busy)).assign()
    assert run.genes[0].head_id == 'H2'


def test_under_cap_observers_are_preferred():
    exams = [make_exam('E1', '09:00', '10:00'), make_exam('E2', '10:00', '11:00')]
    other_day = MONDAY.replace(day=4)
    observers = [make_head('H1', max_assignments=1), make_head('H2'),
                 make_secretary('S1'), make_secretary('S2')]
    busy = [BusyInterval('H2', other_day, hm('09:00'), hm('10:00'))]
    run = GreedyAssigner(Snapshot(exams, observers, busy)).assign()

    assert run.genes[0].head_id == 'H1'
    assert run.genes[1].head_id == 'H2'


@pytest.mark.parametrize('order', list(ExamOrder))
def test_every_order_produces_valid_genes(order):
    snapshot = random_snapshot(11, exams=20)
    run = GreedyAssigner(snapshot, seed=1).assign(order)
    assert rule_violations(snapshot, run.genes) == []
    for idx in run.unassigned_indices():
        assert snapshot.exams[idx].exam_id in run.failures


def test_multi_pass_keeps_best_coverage():
    snapshot = random_snapshot(5, exams=20, heads=3, secretaries=3)
    assigner = GreedyAssigner(snapshot, seed=2)
    best = assigner.multi_pass()
    single = GreedyAssigner(snapshot, seed=2).assign(ExamOrder.HARDEST_FIRST)
    assert best.covered >= single.covered


def test_restricted_indices_leave_other_exams_alone(sequential_snapshot):
    run = GreedyAssigner(sequential_snapshot).maximum_coverage(indices=[1])
    assert run.genes[1].is_complete
    assert run.genes[0].is_empty and run.genes[2].is_empty


def test_fill_gaps_completes_partial_run(sequential_snapshot):
    assigner = GreedyAssigner(sequential_snapshot)
    run = assigner.assign(indices=[0])
    assert run.covered == 1
    assigner.fill_gaps(run)
    assert run.covered == 3
    assert rule_violations(sequential_snapshot, run.genes) == []


def test_augment_moves_a_blocking_head():
    # H1 is the only head who can take B; greedy puts H1 on A first
    exams = [make_exam('A', '09:00', '11:00'), make_exam('B', '10:00', '12:00')]
    observers = [
        make_head('H1'),
        Observer('H2', title='Dr.', availability=Availability.PART_TIME,
                 time_windows=(TimeWindow('Monday', hm('08:00'), hm('11:00')),)),
        make_secretary('S1'), make_secretary('S2'),
    ]
    snapshot = Snapshot(exams, observers)
    assigner = GreedyAssigner(snapshot)
    run = assigner.assign(ExamOrder.CHRONOLOGICAL)
    assert run.covered == 1
    assert assigner.augment(run, 1)
    assert run.covered == 2
    assert run.genes[1].head_id == 'H1'
    assert rule_violations(snapshot, run.genes) == []


@pytest.mark.parametrize('seed', range(8))
def test_maximum_coverage_never_breaks_rules(seed):
    snapshot = random_snapshot(seed, exams=18, heads=3, secretaries=4, days=2)
    run = GreedyAssigner(snapshot, AssignmentOptions(seed=seed)).maximum_coverage()

    assert len(run.genes) == snapshot.exam_count
    assert rule_violations(snapshot, run.genes) == []
    for gene in run.genes:
        assert gene.is_complete or gene.is_empty
    for idx in run.unassigned_indices():
        assert run.failures[snapshot.exams[idx].exam_id]


def covered_by_multi_pass(snapshot):
    return GreedyAssigner(snapshot).multi_pass().covered


def covered_by_maximum_coverage(snapshot):
    return GreedyAssigner(snapshot).maximum_coverage().covered


def covered_by_router_greedy(snapshot):
    attempt = GreedyStrategy(AssignmentOptions()).attempt(snapshot)
    return sum(1 for gene in attempt.genes or [] if gene.is_complete)


@pytest.mark.parametrize('covered', [covered_by_multi_pass, covered_by_maximum_coverage, covered_by_router_greedy])
@pytest.mark.parametrize('seed', [172] + list(range(0, 400, 8)))
def test_adding_an_observer_never_lowers_coverage(covered, seed):
    snapshot = random_snapshot(seed, exams=24, heads=2, secretaries=2, days=1)
    extended = snapshot.with_observers(list(snapshot.observers) + [make_head('XH', max_assignments=3)])

    assert covered(extended) >= covered(snapshot)
