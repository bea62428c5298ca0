import random

import pytest

from exam_observer_scheduler.chromosome import (CONSTRUCTORS, ConstructionStrategy, GeneFactory,
                                                build_chromosome, crossover, distance, mutate_block,
                                                mutate_catastrophic, mutate_standard, mutate_swap)
from exam_observer_scheduler.config import AssignmentOptions
from exam_observer_scheduler.genetic import FitnessModel, GeneticOptimizer, RestartType, fitness_from_metrics
from exam_observer_scheduler.models import Gene, Snapshot
from exam_observer_scheduler.quality import QualityScorer
from exam_observer_scheduler.timeouts import Deadline

from factories import make_exam, make_head, make_secretary, random_snapshot, rule_violations

SMALL_GA = dict(population_size=50, generations=20, seed=3)


@pytest.fixture()
def busy_snapshot():
    return random_snapshot(21, exams=14, heads=4, secretaries=4, days=2)


def five_sequential():
    times = [('09:00', '10:00'), ('10:00', '11:00'), ('11:00', '12:00'), ('12:00', '13:00'), ('13:00', '14:00')]
    exams = [make_exam(f"E{i}", start, end) for i, (start, end) in enumerate(times)]
    return Snapshot(exams, [make_head('H1'), make_head('H2'), make_secretary('S1'), make_secretary('S2')])


def test_fitness_of_empty_assignment_is_zero(sequential_snapshot):
    metrics = QualityScorer(sequential_snapshot).score(sequential_snapshot.empty_genes())
    assert fitness_from_metrics(metrics) == 0.0


def test_low_coverage_is_penalised():
    snapshot = five_sequential()
    genes = snapshot.empty_genes()
    genes[0] = Gene('E0', 'H1', 'S1')
    fitness = FitnessModel(snapshot).evaluate(genes)
    # coverage 0.2: 0.95 * 0.2, then the < 0.3 penalty
    assert fitness == pytest.approx(0.95 * 0.2 * 0.3)


def test_full_coverage_reaches_top_tier():
    exams = [make_exam('E1', '09:00', '10:00'), make_exam('E2', '10:00', '11:00')]
    snapshot = Snapshot(exams, [make_head('H1'), make_secretary('S1')])
    fitness = FitnessModel(snapshot).evaluate([Gene('E1', 'H1', 'S1'), Gene('E2', 'H1', 'S1')])
    assert fitness == pytest.approx(1.0)


def test_high_coverage_tier_floor():
    snapshot = five_sequential()
    genes = [Gene(f"E{i}", 'H1' if i % 2 else 'H2', 'S1' if i % 2 else 'S2') for i in range(5)]
    genes[4] = Gene('E4')
    fitness = FitnessModel(snapshot).evaluate(genes)
    # coverage 0.8 sits exactly on the lowest tier
    assert fitness >= 0.88


@pytest.mark.parametrize('strategy', list(ConstructionStrategy))
def test_constructors_are_valid_and_reproducible(busy_snapshot, strategy):
    first = build_chromosome(strategy, busy_snapshot, seed=5)
    second = build_chromosome(strategy, busy_snapshot, seed=5)

    assert len(first) == busy_snapshot.exam_count
    assert [g.exam_id for g in first.genes] == [e.exam_id for e in busy_snapshot.exams]
    assert first.genes == second.genes
    assert first.strategy == strategy.value
    assert rule_violations(busy_snapshot, first.genes) == []


def test_every_strategy_has_a_constructor():
    assert set(CONSTRUCTORS) == set(ConstructionStrategy)


def test_variation_operators_keep_chromosomes_valid(busy_snapshot):
    factory = GeneFactory(busy_snapshot, rng=random.Random(9))
    first = build_chromosome(ConstructionStrategy.CONSTRAINT_AWARE, busy_snapshot, seed=1).genes
    second = build_chromosome(ConstructionStrategy.COMPLETELY_RANDOM, busy_snapshot, seed=2).genes

    children = [
        crossover(factory, first, second),
        mutate_standard(factory, first),
        mutate_standard(factory, first, stagnating=True),
        mutate_swap(factory, first),
        mutate_block(factory, second),
        mutate_catastrophic(factory, second),
    ]
    for child in children:
        assert len(child) == busy_snapshot.exam_count
        assert rule_violations(busy_snapshot, child) == []
        for gene in child:
            assert gene.is_complete or gene.is_empty


def test_repair_aligns_duplicates_and_missing_exams(sequential_snapshot):
    factory = GeneFactory(sequential_snapshot, rng=random.Random(0))
    genes = [Gene('E1', 'H1', 'S1'), Gene('E1', 'H2', 'S2'), Gene('E3', 'S1', 'H1')]
    repaired = factory.repair(genes)

    assert [g.exam_id for g in repaired] == ['E1', 'E2', 'E3']
    assert repaired[0] == Gene('E1', 'H1', 'S1')
    assert repaired[2].head_id in ('H1', 'H2')
    assert rule_violations(sequential_snapshot, repaired) == []


def test_distance():
    a = [Gene('E1', 'H1', 'S1'), Gene('E2', 'H2', 'S2')]
    b = [Gene('E1', 'H1', 'S1'), Gene('E2', 'H1', 'S2')]
    assert distance(a, a) == 0.0
    assert distance(a, b) == 0.5
    assert distance([], []) == 0.0


def test_small_population_is_rejected(sequential_snapshot):
    with pytest.raises(ValueError):
        GeneticOptimizer(sequential_snapshot, AssignmentOptions(population_size=10))
    with pytest.raises(ValueError):
        GeneticOptimizer(sequential_snapshot, AssignmentOptions(generations=5))


def test_initial_population_mix(busy_snapshot):
    optimizer = GeneticOptimizer(busy_snapshot, AssignmentOptions(**SMALL_GA))
    population = optimizer.initialize(optimizer.new_state())

    assert len(population) == 50
    strategies = [c.strategy for c in population]
    assert strategies[:3] == ['constraint-aware', 'qualification-optimized', 'time-slot-optimized']
    assert strategies.count('workload-balanced') + strategies.count('improved-random') == 15
    assert strategies.count('completely-random') == 32


def test_run_on_small_snapshot(sequential_snapshot):
    result = GeneticOptimizer(sequential_snapshot, AssignmentOptions(**SMALL_GA)).run()

    assert result.covered == 3
    assert result.stop_reason in ('perfect', 'converged', 'generations')
    assert result.generations <= 20
    assert result.report.total_violations == 0
    assert result.dropped == 0
    assert result.history
    stats = result.stats()
    assert stats['generations'] == result.generations
    assert 0.0 < stats['final_fitness'] <= 1.0


def test_runs_with_same_seed_are_reproducible(busy_snapshot):
    options = AssignmentOptions(**SMALL_GA)
    first = GeneticOptimizer(busy_snapshot, options).run()
    second = GeneticOptimizer(busy_snapshot, options).run()
    assert first.genes == second.genes
    assert first.fitness == second.fitness
    assert rule_violations(busy_snapshot, first.genes) == []


def test_expired_deadline_still_returns_best(busy_snapshot):
    result = GeneticOptimizer(busy_snapshot, AssignmentOptions(**SMALL_GA)).run(Deadline(0))
    assert result.stop_reason in ('timeout', 'perfect')
    assert result.generations == 0
    assert rule_violations(busy_snapshot, result.genes) == []


def test_empty_snapshot():
    snapshot = Snapshot([], [make_head('H1'), make_secretary('S1')])
    result = GeneticOptimizer(snapshot, AssignmentOptions(**SMALL_GA)).run()
    assert result.stop_reason == 'empty'
    assert result.genes == []


def test_adaptive_mutation_rate(sequential_snapshot):
    optimizer = GeneticOptimizer(sequential_snapshot, AssignmentOptions(**SMALL_GA))
    state = optimizer.new_state()

    state.stagnation = 10
    assert optimizer.adapt(state) == pytest.approx(0.2)

    state.stagnation = 0
    state.diversity = 0.1
    assert optimizer.adapt(state) == pytest.approx(0.15)

    state.diversity = 0.9
    assert optimizer.adapt(state) == pytest.approx(0.08)

    state.diversity = 0.3
    state.generation = 18
    assert optimizer.adapt(state) == pytest.approx(0.11)


def test_mutation_rate_is_clamped(sequential_snapshot):
    optimizer = GeneticOptimizer(sequential_snapshot, AssignmentOptions(mutation_rate=0.4, **SMALL_GA))
    state = optimizer.new_state()
    state.stagnation = 10
    assert optimizer.adapt(state) == 0.5


def test_restart_replaces_worst_and_keeps_best(busy_snapshot):
    optimizer = GeneticOptimizer(busy_snapshot, AssignmentOptions(**SMALL_GA))
    state = optimizer.new_state()
    population = optimizer.initialize(state)
    optimizer.evaluate(population)
    optimizer._record(state, population)
    best = state.best_fitness
    state.stagnation = 15

    population = optimizer.restart(state, population)

    assert len(population) == 50
    assert state.restarts == 1
    assert state.stagnation == 0
    assert max(c.fitness for c in population) >= best
    assert list(RestartType)[0] == RestartType.STRATEGY_SHIFT
