"""
Chromosome construction, repair and variation operators.

A chromosome is index-aligned with the snapshot's (chronological) exam list.
Every operator returns a repaired gene list, so chromosomes handed back to
the optimizer never break a hard rule.
"""

import random
from collections import Counter, defaultdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .config import AssignmentOptions
from .constraints import BusySchedule, can_take_role, eligible_observers, is_qualified_for_head
from .greedy import initial_workload
from .models import UNASSIGNED, Chromosome, Exam, Gene, Observer, Role, Snapshot

QUALIFIED_HEAD_BONUS = 1.2
FULL_TIME_BONUS = 1.1
WORKLOAD_PENALTY_FACTOR = 0.2
CONTINUITY_BONUS = 1.3
QUALIFIED_SECRETARY_PENALTY = 0.9
RANDOM_VARIANCE = 0.3

CROSSOVER_PROBABILITY = 0.5
STANDARD_INTENSITY = 0.2
STAGNATION_INTENSITY = 0.4
STAGNATION_MIN_COUNT = 3
BLOCK_SIZE = (2, 6)
CATASTROPHIC_SEGMENT_RATIO = 0.3
MAX_SWAP_COUNT = 3

BEST, TOP3, LEAST, RANDOM = 'best', 'top3', 'least', 'random'


class ConstructionStrategy(str, Enum):
    CONSTRAINT_AWARE = 'constraint-aware'
    QUALIFICATION_OPTIMIZED = 'qualification-optimized'
    TIME_SLOT_OPTIMIZED = 'time-slot-optimized'
    WORKLOAD_BALANCED = 'workload-balanced'
    IMPROVED_RANDOM = 'improved-random'
    COMPLETELY_RANDOM = 'completely-random'
    FORCE_ASSIGNMENT = 'force-assignment'
    OBSERVER_ROTATION = 'observer-rotation'
    TIME_FOCUS = 'time-focus'


DETERMINISTIC_STRATEGIES = (
    ConstructionStrategy.CONSTRAINT_AWARE,
    ConstructionStrategy.QUALIFICATION_OPTIMIZED,
    ConstructionStrategy.TIME_SLOT_OPTIMIZED,
)

RANDOMIZED_STRATEGIES = (
    ConstructionStrategy.WORKLOAD_BALANCED,
    ConstructionStrategy.IMPROVED_RANDOM,
)


class GeneFactory:
    """Rule-aware picking, rerolling and repair of genes for one snapshot."""

    def __init__(self, snapshot: Snapshot, options: Optional[AssignmentOptions] = None,
                 rng: Optional[random.Random] = None):
        self.snapshot = snapshot
        self.options = options or AssignmentOptions()
        self.rng = rng or random.Random(self.options.seed)
        self._qualified = {o.observer_id: is_qualified_for_head(o) for o in snapshot.observers}
        self._base_workload = initial_workload(snapshot)

        ends = defaultdict(list)
        for idx, exam in enumerate(snapshot.exams):
            ends[(exam.date, exam.end)].append(idx)
        # exams that end exactly when this one starts
        self.predecessors = {idx: ends.get((exam.date, exam.start), [])
                             for idx, exam in enumerate(snapshot.exams)}

    def cap(self, observer: Observer) -> int:
        return observer.max_assignments or self.options.default_max_assignments

    def workload(self, genes: Sequence[Gene], skip_index: Optional[int] = None) -> Counter:
        counts = Counter(self._base_workload)
        for idx, gene in enumerate(genes):
            if idx == skip_index:
                continue
            for observer_id, _ in gene.observers():
                counts[observer_id] += 1
        return counts

    def score(self, observer: Observer, idx: int, role: Role, workload: Counter,
              genes: Sequence[Gene], randomize: bool = False) -> float:
        score = 1.0
        qualified = self._qualified[observer.observer_id]
        if role == Role.HEAD and qualified:
            score *= QUALIFIED_HEAD_BONUS
        if role == Role.SECRETARY and qualified:
            score *= QUALIFIED_SECRETARY_PENALTY
        if observer.is_full_time:
            score *= FULL_TIME_BONUS
        score /= 1.0 + WORKLOAD_PENALTY_FACTOR * workload[observer.observer_id]
        for prev in self.predecessors[idx]:
            if prev < len(genes) and observer.observer_id in (genes[prev].head_id, genes[prev].secretary_id):
                score *= CONTINUITY_BONUS
                break
        if randomize:
            score *= 1.0 + self.rng.uniform(-RANDOM_VARIANCE, RANDOM_VARIANCE)
        return score

    def choose(self, pool: List[Observer], idx: int, role: Role, workload: Counter,
               genes: Sequence[Gene], mode: str = BEST) -> Observer:
        if mode == RANDOM:
            return self.rng.choice(pool)
        if mode == LEAST:
            low = min(workload[o.observer_id] for o in pool)
            return self.rng.choice([o for o in pool if workload[o.observer_id] == low])
        randomize = mode == TOP3
        ranked = sorted(pool, key=lambda o: (-self.score(o, idx, role, workload, genes, randomize),
                                             str(o.observer_id)))
        if mode == TOP3:
            return self.rng.choice(ranked[:3])
        return ranked[0]

    def pool(self, exam: Exam, role: Role, busy: BusySchedule, workload: Counter,
             exclude=(), respect_caps: bool = True) -> List[Observer]:
        candidates = eligible_observers(self.snapshot, exam, role, busy, exclude)
        if respect_caps:
            under = [o for o in candidates if workload[o.observer_id] < self.cap(o)]
            if under:
                return under
        return candidates

    def staff(self, idx: int, busy: BusySchedule, workload: Counter, genes: Sequence[Gene],
              mode: str = BEST, respect_caps: bool = True,
              head_id=UNASSIGNED, secretary_id=UNASSIGNED) -> Optional[Gene]:
        """
        Build a complete gene for exam ``idx``, keeping any role already given.

        Returns None if no compliant pair exists.
        """
        exam = self.snapshot.exams[idx]
        if head_id is not UNASSIGNED and secretary_id is not UNASSIGNED:
            return Gene(exam.exam_id, head_id, secretary_id)
        if head_id is not UNASSIGNED:
            secretaries = self.pool(exam, Role.SECRETARY, busy, workload, (head_id,), respect_caps)
            if not secretaries:
                return None
            secretary = self.choose(secretaries, idx, Role.SECRETARY, workload, genes, mode)
            return Gene(exam.exam_id, head_id, secretary.observer_id)

        heads = self.pool(exam, Role.HEAD, busy, workload,
                          () if secretary_id is UNASSIGNED else (secretary_id,), respect_caps)
        while heads:
            head = self.choose(heads, idx, Role.HEAD, workload, genes, mode)
            if secretary_id is not UNASSIGNED:
                return Gene(exam.exam_id, head.observer_id, secretary_id)
            secretaries = self.pool(exam, Role.SECRETARY, busy, workload, (head.observer_id,), respect_caps)
            if secretaries:
                secretary = self.choose(secretaries, idx, Role.SECRETARY, workload, genes, mode)
                return Gene(exam.exam_id, head.observer_id, secretary.observer_id)
            heads = [o for o in heads if o.observer_id != head.observer_id]
        return None

    def book(self, gene: Gene, idx: int, busy: BusySchedule, workload: Counter) -> None:
        exam = self.snapshot.exams[idx]
        for observer_id, _ in gene.observers():
            busy.book(observer_id, exam)
            workload[observer_id] += 1

    def _valid(self, observer_id, exam: Exam, role: Role, busy: BusySchedule) -> bool:
        observer = self.snapshot.observer(observer_id)
        return (observer is not None and can_take_role(observer, exam, role)
                and busy.is_free(observer_id, exam))

    def align(self, genes: Sequence[Gene]) -> List[Gene]:
        """One gene per exam in snapshot order, keeping the first complete occurrence."""
        chosen: Dict = {}
        for gene in genes:
            if not self.snapshot.has_exam(gene.exam_id):
                continue
            current = chosen.get(gene.exam_id)
            if current is None or (not current.is_complete and gene.is_complete):
                chosen[gene.exam_id] = gene
        return [chosen.get(exam.exam_id, Gene(exam.exam_id)) for exam in self.snapshot.exams]

    def repair(self, genes: Sequence[Gene], mode: str = TOP3) -> List[Gene]:
        """
        Restore rule validity, in chronological order.

        Valid roles are kept; invalid or missing roles are re-derived from the
        observers still free at that point. An exam that cannot be completed
        is left unassigned.
        """
        aligned = self.align(genes)
        busy = BusySchedule.from_intervals(self.snapshot.busy)
        workload = Counter(self._base_workload)
        repaired: List[Gene] = []
        for idx, gene in enumerate(aligned):
            exam = self.snapshot.exams[idx]
            head = gene.head_id if gene.has_head and self._valid(gene.head_id, exam, Role.HEAD, busy) \
                else UNASSIGNED
            secretary = gene.secretary_id if (gene.has_secretary and gene.secretary_id != head
                                              and self._valid(gene.secretary_id, exam, Role.SECRETARY, busy)) \
                else UNASSIGNED
            fixed = self.staff(idx, busy, workload, repaired, mode, head_id=head, secretary_id=secretary)
            if fixed is None and (head is not UNASSIGNED or secretary is not UNASSIGNED):
                fixed = self.staff(idx, busy, workload, repaired, mode)
            if fixed is None:
                repaired.append(Gene(exam.exam_id))
                continue
            self.book(fixed, idx, busy, workload)
            repaired.append(fixed)
        return repaired

    def reroll(self, genes: List[Gene], idx: int, roles: Sequence[Role] = (Role.HEAD, Role.SECRETARY),
               mode: str = RANDOM) -> Gene:
        """Replace the given roles of gene ``idx`` with other free, eligible observers."""
        gene = genes[idx]
        exam = self.snapshot.exams[idx]
        busy = BusySchedule.from_genes(self.snapshot, genes, skip_index=idx)
        workload = self.workload(genes, skip_index=idx)

        head = gene.head_id
        secretary = gene.secretary_id
        if Role.HEAD in roles:
            keep = () if secretary is UNASSIGNED else (secretary,)
            pool = self.pool(exam, Role.HEAD, busy, workload, keep)
            fresh = [o for o in pool if o.observer_id != head] or pool
            if fresh:
                head = self.choose(fresh, idx, Role.HEAD, workload, genes, mode).observer_id
        if Role.SECRETARY in roles:
            keep = () if head is UNASSIGNED else (head,)
            pool = self.pool(exam, Role.SECRETARY, busy, workload, keep)
            fresh = [o for o in pool if o.observer_id != secretary] or pool
            if fresh:
                secretary = self.choose(fresh, idx, Role.SECRETARY, workload, genes, mode).observer_id
        if head is not UNASSIGNED and head == secretary:
            return gene
        return Gene(exam.exam_id, head, secretary)


# Construction strategies: pure functions of (snapshot, seed, options)

def _construct(snapshot: Snapshot, seed: Optional[int], options: Optional[AssignmentOptions],
               order: Callable[[GeneFactory], List[int]], mode: str,
               strategy: ConstructionStrategy, respect_caps: bool = True) -> Chromosome:
    factory = GeneFactory(snapshot, options, random.Random(seed))
    genes = snapshot.empty_genes()
    busy = BusySchedule.from_intervals(snapshot.busy)
    workload = factory.workload(())
    for idx in order(factory):
        gene = factory.staff(idx, busy, workload, genes, mode, respect_caps)
        if gene is not None:
            factory.book(gene, idx, busy, workload)
            genes[idx] = gene
    return Chromosome(genes, strategy=strategy.value)


def _chronological(factory: GeneFactory) -> List[int]:
    return list(range(factory.snapshot.exam_count))


def _hardest_first(factory: GeneFactory) -> List[int]:
    snapshot = factory.snapshot

    def difficulty(idx):
        exam = snapshot.exams[idx]
        heads = sum(1 for o in snapshot.observers if can_take_role(o, exam, Role.HEAD))
        secretaries = sum(1 for o in snapshot.observers if can_take_role(o, exam, Role.SECRETARY))
        return (heads, secretaries, idx)

    return sorted(range(snapshot.exam_count), key=difficulty)


def _shuffled(factory: GeneFactory) -> List[int]:
    order = list(range(factory.snapshot.exam_count))
    factory.rng.shuffle(order)
    return order


def _by_time_slot(factory: GeneFactory) -> List[int]:
    """Group exams sharing a start time, slot groups in random order."""
    groups = defaultdict(list)
    for idx, exam in enumerate(factory.snapshot.exams):
        groups[exam.start].append(idx)
    keys = sorted(groups)
    factory.rng.shuffle(keys)
    return [idx for key in keys for idx in groups[key]]


def constraint_aware(snapshot: Snapshot, seed: Optional[int] = None,
                     options: Optional[AssignmentOptions] = None) -> Chromosome:
    """Most constrained exams first, best-scoring observers."""
    return _construct(snapshot, seed, options, _hardest_first, BEST, ConstructionStrategy.CONSTRAINT_AWARE)


def qualification_optimized(snapshot: Snapshot, seed: Optional[int] = None,
                            options: Optional[AssignmentOptions] = None) -> Chromosome:
    """Chronological; secretaries drawn from non-qualified observers wherever possible."""
    factory = GeneFactory(snapshot, options, random.Random(seed))
    genes = snapshot.empty_genes()
    busy = BusySchedule.from_intervals(snapshot.busy)
    workload = factory.workload(())
    for idx, exam in enumerate(snapshot.exams):
        heads = factory.pool(exam, Role.HEAD, busy, workload)
        for head in sorted(heads, key=lambda o: (-factory.score(o, idx, Role.HEAD, workload, genes),
                                                 str(o.observer_id))):
            secretaries = factory.pool(exam, Role.SECRETARY, busy, workload, (head.observer_id,))
            if not secretaries:
                continue
            plain = [o for o in secretaries if not is_qualified_for_head(o)] or secretaries
            secretary = factory.choose(plain, idx, Role.SECRETARY, workload, genes, BEST)
            gene = Gene(exam.exam_id, head.observer_id, secretary.observer_id)
            factory.book(gene, idx, busy, workload)
            genes[idx] = gene
            break
    return Chromosome(genes, strategy=ConstructionStrategy.QUALIFICATION_OPTIMIZED.value)


def time_slot_optimized(snapshot: Snapshot, seed: Optional[int] = None,
                        options: Optional[AssignmentOptions] = None) -> Chromosome:
    """Chronological, so back-to-back exams can reuse observers (continuity bonus)."""
    return _construct(snapshot, seed, options, _chronological, BEST, ConstructionStrategy.TIME_SLOT_OPTIMIZED)


def workload_balanced(snapshot: Snapshot, seed: Optional[int] = None,
                      options: Optional[AssignmentOptions] = None) -> Chromosome:
    return _construct(snapshot, seed, options, _shuffled, LEAST, ConstructionStrategy.WORKLOAD_BALANCED)


def improved_random(snapshot: Snapshot, seed: Optional[int] = None,
                    options: Optional[AssignmentOptions] = None) -> Chromosome:
    return _construct(snapshot, seed, options, _shuffled, TOP3, ConstructionStrategy.IMPROVED_RANDOM)


def completely_random(snapshot: Snapshot, seed: Optional[int] = None,
                      options: Optional[AssignmentOptions] = None) -> Chromosome:
    return _construct(snapshot, seed, options, _shuffled, RANDOM, ConstructionStrategy.COMPLETELY_RANDOM)


def force_assignment(snapshot: Snapshot, seed: Optional[int] = None,
                     options: Optional[AssignmentOptions] = None) -> Chromosome:
    """Random order and picks, ignoring workload caps."""
    return _construct(snapshot, seed, options, _shuffled, RANDOM, ConstructionStrategy.FORCE_ASSIGNMENT,
                      respect_caps=False)


def observer_rotation(snapshot: Snapshot, seed: Optional[int] = None,
                      options: Optional[AssignmentOptions] = None) -> Chromosome:
    """Walk the observer list round-robin from a random offset."""
    factory = GeneFactory(snapshot, options, random.Random(seed))
    genes = snapshot.empty_genes()
    busy = BusySchedule.from_intervals(snapshot.busy)
    workload = factory.workload(())
    observers = list(snapshot.observers)
    if not observers:
        return Chromosome(genes, strategy=ConstructionStrategy.OBSERVER_ROTATION.value)
    pointer = factory.rng.randrange(len(observers))

    def next_in_rotation(pool_ids):
        nonlocal pointer
        for step in range(len(observers)):
            candidate = observers[(pointer + step) % len(observers)]
            if candidate.observer_id in pool_ids:
                pointer = (pointer + step + 1) % len(observers)
                return candidate
        return None

    for idx, exam in enumerate(snapshot.exams):
        heads = {o.observer_id for o in factory.pool(exam, Role.HEAD, busy, workload)}
        head = next_in_rotation(heads)
        if head is None:
            continue
        secretaries = {o.observer_id for o in factory.pool(exam, Role.SECRETARY, busy, workload,
                                                           (head.observer_id,))}
        secretary = next_in_rotation(secretaries)
        if secretary is None:
            continue
        gene = Gene(exam.exam_id, head.observer_id, secretary.observer_id)
        factory.book(gene, idx, busy, workload)
        genes[idx] = gene
    return Chromosome(genes, strategy=ConstructionStrategy.OBSERVER_ROTATION.value)


def time_focus(snapshot: Snapshot, seed: Optional[int] = None,
               options: Optional[AssignmentOptions] = None) -> Chromosome:
    return _construct(snapshot, seed, options, _by_time_slot, TOP3, ConstructionStrategy.TIME_FOCUS)


CONSTRUCTORS: Dict[ConstructionStrategy, Callable[..., Chromosome]] = {
    ConstructionStrategy.CONSTRAINT_AWARE: constraint_aware,
    ConstructionStrategy.QUALIFICATION_OPTIMIZED: qualification_optimized,
    ConstructionStrategy.TIME_SLOT_OPTIMIZED: time_slot_optimized,
    ConstructionStrategy.WORKLOAD_BALANCED: workload_balanced,
    ConstructionStrategy.IMPROVED_RANDOM: improved_random,
    ConstructionStrategy.COMPLETELY_RANDOM: completely_random,
    ConstructionStrategy.FORCE_ASSIGNMENT: force_assignment,
    ConstructionStrategy.OBSERVER_ROTATION: observer_rotation,
    ConstructionStrategy.TIME_FOCUS: time_focus,
}


def build_chromosome(strategy: ConstructionStrategy, snapshot: Snapshot, seed: Optional[int] = None,
                     options: Optional[AssignmentOptions] = None) -> Chromosome:
    return CONSTRUCTORS[ConstructionStrategy(strategy)](snapshot, seed, options)


# Variation operators

def crossover(factory: GeneFactory, first: Sequence[Gene], second: Sequence[Gene],
              probability: float = CROSSOVER_PROBABILITY) -> List[Gene]:
    """Position-wise crossover followed by repair."""
    child = [a if factory.rng.random() < probability else b for a, b in zip(first, second)]
    return factory.repair(child)


def mutate_standard(factory: GeneFactory, genes: Sequence[Gene], stagnating: bool = False) -> List[Gene]:
    """Re-roll head, secretary or both on a random subset of exams."""
    genes = list(genes)
    if not genes:
        return genes
    intensity = STAGNATION_INTENSITY if stagnating else STANDARD_INTENSITY
    minimum = STAGNATION_MIN_COUNT if stagnating else 1
    count = min(len(genes), max(minimum, int(len(genes) * intensity * factory.rng.random())))
    for idx in factory.rng.sample(range(len(genes)), count):
        roles = factory.rng.choice(((Role.HEAD,), (Role.SECRETARY,), (Role.HEAD, Role.SECRETARY)))
        genes[idx] = factory.reroll(genes, idx, roles)
    return factory.repair(genes)


def mutate_swap(factory: GeneFactory, genes: Sequence[Gene]) -> List[Gene]:
    """Exchange a role between two exams; repair drops swaps that break a rule."""
    genes = list(genes)
    if len(genes) < 2:
        return genes
    for _ in range(factory.rng.randint(1, MAX_SWAP_COUNT)):
        a, b = factory.rng.sample(range(len(genes)), 2)
        if factory.rng.random() < 0.5:
            genes[a], genes[b] = (genes[a].with_head(genes[b].head_id), genes[b].with_head(genes[a].head_id))
        else:
            genes[a], genes[b] = (genes[a].with_secretary(genes[b].secretary_id),
                                  genes[b].with_secretary(genes[a].secretary_id))
    return factory.repair(genes)


def mutate_block(factory: GeneFactory, genes: Sequence[Gene]) -> List[Gene]:
    """Re-roll a contiguous run of exam slots."""
    genes = list(genes)
    if not genes:
        return genes
    size = min(len(genes), factory.rng.randint(*BLOCK_SIZE))
    start = factory.rng.randrange(len(genes) - size + 1)
    for idx in range(start, start + size):
        genes[idx] = factory.reroll(genes, idx)
    return factory.repair(genes)


def mutate_catastrophic(factory: GeneFactory, genes: Sequence[Gene]) -> List[Gene]:
    """Wipe a large contiguous segment and rebuild it with random picks."""
    genes = list(genes)
    if not genes:
        return genes
    size = max(1, int(len(genes) * CATASTROPHIC_SEGMENT_RATIO))
    start = factory.rng.randrange(len(genes) - size + 1)
    for idx in range(start, start + size):
        genes[idx] = genes[idx].cleared()
    return factory.repair(genes, mode=RANDOM)


def distance(first: Sequence[Gene], second: Sequence[Gene]) -> float:
    """Fraction of exam slots whose genes differ."""
    if not first:
        return 0.0
    return sum(1 for a, b in zip(first, second) if a != b) / len(first)
