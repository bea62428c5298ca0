"""
Genetic optimizer for observer assignment.

Init -> Evaluate -> Adapt -> Evolve -> LocalSearch, looping until perfect
fitness, convergence or the generation/time budget, then Finalize. All
mutable run state lives in ``OptimizerState`` so that two runs with the same
seed are independent and reproducible.
"""

import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from .chromosome import (DETERMINISTIC_STRATEGIES, RANDOMIZED_STRATEGIES, ConstructionStrategy,
                         GeneFactory, build_chromosome, crossover, distance, mutate_block,
                         mutate_catastrophic, mutate_standard, mutate_swap)
from .config import AssignmentOptions
from .constraints import BusySchedule
from .models import Chromosome, Gene, Role, Snapshot
from .quality import QualityMetrics, QualityScorer
from .timeouts import Deadline
from .validation import ValidationEngine, ValidationReport

COVERAGE_WEIGHT = 0.95
BONUS_COVERAGE_THRESHOLD = 0.8
SECONDARY_WEIGHTS = {'workload_balance': 0.03, 'fairness': 0.01, 'efficiency': 0.01}
COVERAGE_TIERS = ((0.99, 0.99), (0.95, 0.97), (0.9, 0.94), (0.8, 0.88))
TIER_SECONDARY_SLICE = 0.01
LOW_COVERAGE_PENALTIES = ((0.1, 0.1), (0.3, 0.3))
PERFECT_FITNESS = 1.0

DIVERSITY_CHROMOSOME_WEIGHT = 0.7
DIVERSITY_FITNESS_WEIGHT = 0.3
DIVERSITY_SAMPLE_PAIRS = 30
MODERATE_DIVERSITY = 0.2
HIGH_DIVERSITY = 0.5
STAGNATION_MULTIPLIER = 2.0
MODERATE_DIVERSITY_MULTIPLIER = 1.5
HIGH_DIVERSITY_MULTIPLIER = 0.8
LATE_GENERATION = 0.7
LATE_GENERATION_MULTIPLIER = 1.1

LOCAL_SEARCH_HEAD_OPTIONS = 3
LOCAL_SEARCH_SECRETARY_OPTIONS = 3
RANDOMIZED_POPULATION_SHARE = 0.3


class RestartType(str, Enum):
    STRATEGY_SHIFT = 'strategy-shift'
    RANDOM_FOCUS = 'random-focus'
    HYBRID = 'hybrid'


RESTART_RATIOS = {
    RestartType.STRATEGY_SHIFT: {
        ConstructionStrategy.FORCE_ASSIGNMENT: 0.2,
        ConstructionStrategy.QUALIFICATION_OPTIMIZED: 0.2,
        ConstructionStrategy.TIME_FOCUS: 0.2,
        ConstructionStrategy.IMPROVED_RANDOM: 0.2,
        ConstructionStrategy.COMPLETELY_RANDOM: 0.2,
    },
    RestartType.RANDOM_FOCUS: {
        ConstructionStrategy.COMPLETELY_RANDOM: 0.5,
        ConstructionStrategy.OBSERVER_ROTATION: 0.3,
        ConstructionStrategy.TIME_FOCUS: 0.2,
    },
    RestartType.HYBRID: {
        ConstructionStrategy.FORCE_ASSIGNMENT: 0.25,
        ConstructionStrategy.IMPROVED_RANDOM: 0.25,
        ConstructionStrategy.QUALIFICATION_OPTIMIZED: 0.25,
        ConstructionStrategy.COMPLETELY_RANDOM: 0.25,
    },
}


def fitness_from_metrics(metrics: QualityMetrics) -> float:
    """
    Coverage-dominated fitness.

    Secondary terms only count once coverage is above 0.8; high coverage tiers
    lift the score to fixed floors, very low coverage is penalised
    multiplicatively.
    """
    coverage = metrics.coverage
    secondary = sum(weight * getattr(metrics, name) for name, weight in SECONDARY_WEIGHTS.items())
    quality = secondary / sum(SECONDARY_WEIGHTS.values())

    score = COVERAGE_WEIGHT * coverage
    if coverage > BONUS_COVERAGE_THRESHOLD:
        score += secondary
    for threshold, floor in COVERAGE_TIERS:
        if coverage >= threshold:
            score = max(score, floor + TIER_SECONDARY_SLICE * quality)
            break
    for threshold, factor in LOW_COVERAGE_PENALTIES:
        if coverage < threshold:
            score *= factor
            break
    return min(score, PERFECT_FITNESS)


class FitnessModel:
    def __init__(self, snapshot: Snapshot):
        self.scorer = QualityScorer(snapshot)

    def evaluate(self, genes: List[Gene]) -> float:
        return fitness_from_metrics(self.scorer.score(genes))


@dataclass
class GenerationRecord:
    generation: int
    best_fitness: float
    average_fitness: float
    diversity: float
    mutation_rate: float
    best_coverage: float


@dataclass
class OptimizerState:
    """Everything a run mutates; one instance per run."""
    rng: random.Random
    mutation_rate: float
    generation: int = 0
    best: Optional[Chromosome] = None
    history: List[GenerationRecord] = field(default_factory=list)
    stagnation: int = 0
    restarts: int = 0
    diversity: float = 1.0
    local_search_improvements: int = 0
    stop_reason: str = ''

    @property
    def best_fitness(self) -> float:
        return self.best.fitness if self.best is not None else 0.0

    def best_movement(self, window: int) -> Optional[float]:
        if len(self.history) < window:
            return None
        recent = [record.best_fitness for record in self.history[-window:]]
        return max(recent) - min(recent)


@dataclass
class GeneticResult:
    genes: List[Gene]
    fitness: float
    generations: int
    restarts: int
    stop_reason: str
    report: Optional[ValidationReport] = None
    history: List[GenerationRecord] = field(default_factory=list)
    dropped: int = 0

    @property
    def covered(self) -> int:
        return sum(1 for gene in self.genes if gene.is_complete)

    def stats(self) -> Dict[str, Any]:
        return {
            'final_fitness': round(self.fitness, 6),
            'generations': self.generations,
            'restarts': self.restarts,
            'stop_reason': self.stop_reason,
            'dropped_genes': self.dropped,
        }


class GeneticOptimizer:
    """Population-based search over rule-valid chromosomes."""

    def __init__(self, snapshot: Snapshot, options: Optional[AssignmentOptions] = None):
        self.snapshot = snapshot
        self.options = options or AssignmentOptions()
        self.options.validate()
        self.fitness = FitnessModel(snapshot)
        self.verbose = self.options.verbose

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[GA] {message}")

    def new_state(self) -> OptimizerState:
        return OptimizerState(rng=random.Random(self.options.seed), mutation_rate=self.options.mutation_rate)

    def _seed(self, state: OptimizerState) -> int:
        return state.rng.randrange(2 ** 31)

    # Init
    def initialize(self, state: OptimizerState) -> List[Chromosome]:
        size = self.options.population_size
        population: List[Chromosome] = []
        if self.options.use_deterministic_init:
            count = min(self.options.max_deterministic_variants,
                        max(len(DETERMINISTIC_STRATEGIES),
                            math.ceil(size * self.options.deterministic_population_ratio)))
            for i in range(min(count, size)):
                strategy = DETERMINISTIC_STRATEGIES[i % len(DETERMINISTIC_STRATEGIES)]
                population.append(build_chromosome(strategy, self.snapshot, self._seed(state), self.options))

        randomized = int(size * RANDOMIZED_POPULATION_SHARE)
        for i in range(randomized):
            if len(population) >= size:
                break
            strategy = RANDOMIZED_STRATEGIES[i % len(RANDOMIZED_STRATEGIES)]
            population.append(build_chromosome(strategy, self.snapshot, self._seed(state), self.options))

        while len(population) < size:
            population.append(build_chromosome(ConstructionStrategy.COMPLETELY_RANDOM, self.snapshot,
                                               self._seed(state), self.options))
        self._log(f"Initial population of {len(population)} chromosomes")
        return population

    # Evaluate
    def evaluate(self, population: List[Chromosome]) -> None:
        for chromosome in population:
            chromosome.fitness = self.fitness.evaluate(chromosome.genes)

    def diversity(self, state: OptimizerState, population: List[Chromosome]) -> float:
        if len(population) < 2:
            return 0.0
        pairs = min(DIVERSITY_SAMPLE_PAIRS, len(population) * (len(population) - 1) // 2)
        distances = []
        for _ in range(pairs):
            a, b = state.rng.sample(range(len(population)), 2)
            distances.append(distance(population[a].genes, population[b].genes))
        fitnesses = np.array([c.fitness for c in population])
        mean = float(fitnesses.mean())
        spread = min(1.0, float(fitnesses.std()) / mean) if mean > 0 else 0.0
        return DIVERSITY_CHROMOSOME_WEIGHT * float(np.mean(distances)) + DIVERSITY_FITNESS_WEIGHT * spread

    def _record(self, state: OptimizerState, population: List[Chromosome]) -> None:
        leader = max(population, key=lambda c: c.fitness)
        previous = state.best_fitness
        if state.best is None or leader.fitness > state.best.fitness:
            state.best = leader.copy()
        if state.best.fitness - previous < self.options.stagnation_threshold:
            state.stagnation += 1
        else:
            state.stagnation = 0
        state.diversity = self.diversity(state, population)
        state.history.append(GenerationRecord(
            generation=state.generation,
            best_fitness=state.best.fitness,
            average_fitness=float(np.mean([c.fitness for c in population])),
            diversity=state.diversity,
            mutation_rate=state.mutation_rate,
            best_coverage=state.best.assigned_count / max(len(state.best), 1),
        ))

    # Adapt
    def is_stagnating(self, state: OptimizerState) -> bool:
        return state.stagnation >= max(3, self.options.convergence_generations // 2)

    def adapt(self, state: OptimizerState) -> float:
        rate = self.options.mutation_rate
        if self.is_stagnating(state):
            rate *= STAGNATION_MULTIPLIER
        elif state.diversity < MODERATE_DIVERSITY:
            rate *= MODERATE_DIVERSITY_MULTIPLIER
        elif state.diversity > HIGH_DIVERSITY:
            rate *= HIGH_DIVERSITY_MULTIPLIER
        if state.generation / max(self.options.generations, 1) > LATE_GENERATION:
            rate *= LATE_GENERATION_MULTIPLIER
        state.mutation_rate = min(self.options.max_mutation_rate, max(self.options.min_mutation_rate, rate))
        return state.mutation_rate

    # Evolve
    def tournament(self, state: OptimizerState, population: List[Chromosome]) -> Chromosome:
        size = min(self.options.tournament_size, len(population))
        return max(state.rng.sample(population, size), key=lambda c: c.fitness)

    def mutate(self, state: OptimizerState, factory: GeneFactory, genes: List[Gene]) -> List[Gene]:
        roll = state.rng.random()
        if self.is_stagnating(state):
            if roll < 0.15:
                return mutate_standard(factory, genes, stagnating=True)
            if roll < 0.25:
                return mutate_swap(factory, genes)
            if roll < 0.6:
                return mutate_block(factory, genes)
            return mutate_catastrophic(factory, genes)
        if roll < 0.6:
            return mutate_standard(factory, genes)
        if roll < 0.9:
            return mutate_swap(factory, genes)
        return mutate_block(factory, genes)

    def evolve(self, state: OptimizerState, population: List[Chromosome]) -> List[Chromosome]:
        factory = GeneFactory(self.snapshot, self.options, state.rng)
        ranked = sorted(population, key=lambda c: c.fitness, reverse=True)
        elite = max(1, int(len(ranked) * self.options.elitism_rate))
        offspring = [c.copy() for c in ranked[:elite]]
        while len(offspring) < len(ranked):
            first = self.tournament(state, ranked)
            second = self.tournament(state, ranked)
            if state.rng.random() < self.options.crossover_rate:
                genes = crossover(factory, first.genes, second.genes)
            else:
                genes = list(first.genes)
            if state.rng.random() < state.mutation_rate:
                genes = self.mutate(state, factory, genes)
            offspring.append(Chromosome(genes, strategy='offspring'))
        return offspring

    # LocalSearch
    def local_search(self, state: OptimizerState, population: List[Chromosome]) -> int:
        """Hill-climb the top slice with single-gene neighbours, keeping strict improvements."""
        factory = GeneFactory(self.snapshot, self.options, state.rng)
        ranked = sorted(population, key=lambda c: c.fitness, reverse=True)
        top = ranked[:max(1, int(len(ranked) * self.options.local_search_rate))]
        improvements = 0
        for chromosome in top:
            if not chromosome.genes:
                continue
            for _ in range(self.options.local_search_iterations):
                idx = self._pick_slot(state, chromosome)
                best_genes, best_fitness = None, chromosome.fitness
                for neighbour in self._neighbours(state, factory, chromosome.genes, idx):
                    genes = list(chromosome.genes)
                    genes[idx] = neighbour
                    fitness = self.fitness.evaluate(genes)
                    if fitness > best_fitness:
                        best_genes, best_fitness = genes, fitness
                if best_genes is not None:
                    chromosome.genes, chromosome.fitness = best_genes, best_fitness
                    improvements += 1
        state.local_search_improvements += improvements
        if improvements:
            self._log(f"Local search improved {improvements} times")
        return improvements

    def _pick_slot(self, state: OptimizerState, chromosome: Chromosome) -> int:
        gaps = [idx for idx, gene in enumerate(chromosome.genes) if not gene.is_complete]
        if gaps and state.rng.random() < 0.5:
            return state.rng.choice(gaps)
        return state.rng.randrange(len(chromosome.genes))

    def _neighbours(self, state: OptimizerState, factory: GeneFactory, genes: List[Gene], idx: int):
        exam = self.snapshot.exams[idx]
        busy = BusySchedule.from_genes(self.snapshot, genes, skip_index=idx)
        workload = factory.workload(genes, skip_index=idx)
        heads = factory.pool(exam, Role.HEAD, busy, workload)
        for head in state.rng.sample(heads, min(LOCAL_SEARCH_HEAD_OPTIONS, len(heads))):
            secretaries = factory.pool(exam, Role.SECRETARY, busy, workload, (head.observer_id,))
            for secretary in state.rng.sample(secretaries, min(LOCAL_SEARCH_SECRETARY_OPTIONS, len(secretaries))):
                candidate = Gene(exam.exam_id, head.observer_id, secretary.observer_id)
                if candidate != genes[idx]:
                    yield candidate

    # Restart
    def restart(self, state: OptimizerState, population: List[Chromosome]) -> List[Chromosome]:
        """Replace the worst share of the population with differently built chromosomes."""
        kind = list(RestartType)[state.restarts % len(RestartType)]
        count = max(1, int(len(population) * self.options.diversity_injection_ratio))
        ranked = sorted(population, key=lambda c: c.fitness, reverse=True)
        keep = ranked[:len(ranked) - count]
        strategies = list(RESTART_RATIOS[kind].items())
        fresh = []
        for strategy, ratio in strategies:
            for _ in range(max(1, round(count * ratio))):
                if len(fresh) >= count:
                    break
                fresh.append(build_chromosome(strategy, self.snapshot, self._seed(state), self.options))
        while len(fresh) < count:
            fresh.append(build_chromosome(ConstructionStrategy.COMPLETELY_RANDOM, self.snapshot,
                                          self._seed(state), self.options))
        self.evaluate(fresh)
        population = keep + fresh
        if state.best is not None and all(c.fitness < state.best.fitness for c in population):
            population[-1] = state.best.copy()
        state.restarts += 1
        state.stagnation = 0
        self._log(f"Restart {state.restarts} ({kind.value}): injected {len(fresh)} chromosomes")
        return population

    # Finalize
    def finalize(self, state: OptimizerState) -> GeneticResult:
        factory = GeneFactory(self.snapshot, self.options, state.rng)
        genes = factory.align(state.best.genes if state.best is not None else self.snapshot.empty_genes())
        engine = ValidationEngine(self.snapshot, options=self.options)
        report = engine.validate([gene for gene in genes if not gene.is_empty])
        offending = report.offending_exam_ids()
        dropped = 0
        if offending:
            genes = [gene.cleared() if gene.exam_id in offending else gene for gene in genes]
            dropped = len(offending)
            self._log(f"Dropped {dropped} invalid genes")
        return GeneticResult(genes, self.fitness.evaluate(genes), state.generation, state.restarts,
                             state.stop_reason, report, list(state.history), dropped)

    def run(self, deadline: Optional[Deadline] = None) -> GeneticResult:
        deadline = deadline or Deadline(self.options.ga_timeout_ms)
        state = self.new_state()
        if not self.snapshot.exams:
            state.stop_reason = 'empty'
            return self.finalize(state)

        population = self.initialize(state)
        self.evaluate(population)
        self._record(state, population)

        while True:
            if state.best_fitness >= PERFECT_FITNESS - 1e-9:
                state.stop_reason = 'perfect'
                break
            movement = state.best_movement(self.options.convergence_generations)
            if (movement is not None and movement < self.options.convergence_threshold
                    and state.best_fitness >= self.options.convergence_min_fitness):
                state.stop_reason = 'converged'
                break
            if state.generation >= self.options.generations:
                state.stop_reason = 'generations'
                break
            if deadline.expired():
                state.stop_reason = 'timeout'
                self._log("Time budget exhausted, finalising best chromosome")
                break

            state.generation += 1
            self.adapt(state)
            population = self.evolve(state, population)
            self.evaluate(population)
            if state.generation % max(1, self.options.local_search_interval) == 0:
                self.local_search(state, population)
            self._record(state, population)
            if state.stagnation >= self.options.restart_generations:
                population = self.restart(state, population)

            if state.generation % 10 == 0:
                record = state.history[-1]
                self._log(f"Generation {state.generation}: best {record.best_fitness:.4f}, "
                          f"avg {record.average_fitness:.4f}, diversity {record.diversity:.3f}, "
                          f"mutation {record.mutation_rate:.3f}")

        result = self.finalize(state)
        self._log(f"Finished after {result.generations} generations ({result.stop_reason}), "
                  f"fitness {result.fitness:.4f}, coverage {result.covered}/{len(result.genes)}")
        return result
