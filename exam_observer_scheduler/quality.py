"""
Quality scoring of assignment sets.

Coverage, workload balance, Gini fairness and continuity efficiency are
combined into a weighted overall score and a letter grade.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Optional, Sequence

import numpy as np

from .models import Assignment, Gene, Snapshot

WEIGHTS = {
    'coverage': 0.4,
    'workload_balance': 0.3,
    'fairness': 0.2,
    'efficiency': 0.1,
}

GRADE_THRESHOLDS = ((0.9, 'A'), (0.8, 'B'), (0.7, 'C'), (0.6, 'D'))


@dataclass
class QualityMetrics:
    coverage: float
    assigned_exams: int
    total_exams: int
    workload_balance: float
    coefficient_of_variation: float
    average_workload: float
    workload_std: float
    fairness: float
    gini: float
    efficiency: float
    continuity_count: int
    possible_continuities: int
    utilization: float
    active_observers: int
    overall_score: float
    grade: str
    workload: Dict[Any, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['workload'] = {str(key): value for key, value in self.workload.items()}
        return data


def grade_for(score: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return 'F'


def fairness_interpretation(gini: float) -> str:
    if gini < 0.2:
        return 'Very Fair'
    if gini < 0.4:
        return 'Fair'
    if gini < 0.6:
        return 'Moderate'
    return 'Unfair'


def workload_counts(genes: Iterable[Gene], observer_ids: Iterable[Any] = ()) -> Counter:
    """Total role count per observer; observers without roles are included with 0."""
    counts = Counter({observer_id: 0 for observer_id in observer_ids})
    for gene in genes:
        for observer_id, _ in gene.observers():
            counts[observer_id] += 1
    return counts


def workload_balance(loads: Sequence[int]) -> Dict[str, float]:
    """1 / (1 + coefficient of variation) over the active observers' loads."""
    active = np.array([load for load in loads if load > 0], dtype=float)
    if active.size == 0:
        return {'score': 0.0, 'cv': 0.0, 'mean': 0.0, 'std': 0.0}
    mean = float(active.mean())
    std = float(active.std())
    cv = std / mean if mean > 0 else 0.0
    return {'score': 1.0 / (1.0 + cv), 'cv': cv, 'mean': mean, 'std': std}


def gini_coefficient(values: Sequence[float]) -> float:
    data = np.sort(np.asarray(values, dtype=float))
    n = data.size
    total = data.sum()
    if n == 0 or total <= 0:
        return 0.0
    ranks = np.arange(1, n + 1)
    return float(np.sum((2 * ranks - n - 1) * data) / (n * total))


def continuity(snapshot: Snapshot, genes: Iterable[Gene]) -> Dict[str, float]:
    """
    Share of back-to-back same-day exam pairs where an observer carries over.

    Pairs are taken in chronological order; a pair is back-to-back when the
    first exam ends exactly when the second starts.
    """
    by_exam = {gene.exam_id: gene for gene in genes}
    ordered = [(snapshot.exam(exam_id), gene) for exam_id, gene in by_exam.items() if snapshot.has_exam(exam_id)]
    ordered.sort(key=lambda item: item[0].sort_key())
    possible = 0
    carried = 0
    for (prev_exam, prev_gene), (exam, gene) in zip(ordered, ordered[1:]):
        if prev_exam.date != exam.date or prev_exam.end != exam.start:
            continue
        possible += 1
        before = {observer_id for observer_id, _ in prev_gene.observers()}
        after = {observer_id for observer_id, _ in gene.observers()}
        if before & after:
            carried += 1
    return {'count': carried, 'possible': possible, 'score': carried / possible if possible else 1.0}


class QualityScorer:
    """Computes QualityMetrics for a gene or assignment set against a snapshot."""

    def __init__(self, snapshot: Snapshot, weights: Optional[Dict[str, float]] = None):
        self.snapshot = snapshot
        self.weights = dict(weights or WEIGHTS)

    def score(self, genes: Iterable[Any]) -> QualityMetrics:
        genes = [self._as_gene(item) for item in genes]
        total = self.snapshot.exam_count
        assigned = len({gene.exam_id for gene in genes if gene.is_complete})
        coverage = assigned / total if total else 0.0

        counts = workload_counts(genes, (o.observer_id for o in self.snapshot.observers))
        loads = list(counts.values())
        balance = workload_balance(loads)
        active = sum(1 for load in loads if load > 0)

        if active:
            gini = gini_coefficient(loads)
            fairness = 1.0 - abs(gini)
            flow = continuity(self.snapshot, genes)
        else:
            # nothing assigned: there is no distribution to reward
            gini, fairness = 0.0, 0.0
            flow = {'count': 0, 'possible': 0, 'score': 0.0}

        overall = (self.weights['coverage'] * coverage
                   + self.weights['workload_balance'] * balance['score']
                   + self.weights['fairness'] * fairness
                   + self.weights['efficiency'] * flow['score'])
        observers = self.snapshot.observer_count

        return QualityMetrics(
            coverage=coverage,
            assigned_exams=assigned,
            total_exams=total,
            workload_balance=balance['score'],
            coefficient_of_variation=balance['cv'],
            average_workload=balance['mean'],
            workload_std=balance['std'],
            fairness=fairness,
            gini=gini,
            efficiency=flow['score'],
            continuity_count=int(flow['count']),
            possible_continuities=int(flow['possible']),
            utilization=active / observers if observers else 0.0,
            active_observers=active,
            overall_score=overall,
            grade=grade_for(overall),
            workload=dict(counts),
        )

    @staticmethod
    def _as_gene(item: Any) -> Gene:
        if isinstance(item, Gene):
            return item
        if isinstance(item, Assignment):
            return Gene(item.exam_id, item.head_id, item.secretary_id)
        raise TypeError(f"Cannot score {type(item).__name__}")


def compare_results(first: QualityMetrics, second: QualityMetrics,
                    label1: str = 'Result 1', label2: str = 'Result 2') -> Dict[str, Any]:
    """Side-by-side comparison of two metric sets, naming the winner by overall score."""
    def row(metrics: QualityMetrics) -> Dict[str, float]:
        return {
            'overall_score': round(metrics.overall_score, 4),
            'coverage': round(metrics.coverage, 4),
            'workload_balance': round(metrics.workload_balance, 4),
            'fairness': round(metrics.fairness, 4),
            'efficiency': round(metrics.efficiency, 4),
            'grade': metrics.grade,
        }

    return {
        label1: row(first),
        label2: row(second),
        'winner': label1 if first.overall_score >= second.overall_score else label2,
        'improvement': {
            'overall_score': second.overall_score - first.overall_score,
            'coverage': second.coverage - first.coverage,
            'workload_balance': second.workload_balance - first.workload_balance,
            'fairness': second.fairness - first.fairness,
            'efficiency': second.efficiency - first.efficiency,
        },
    }
