"""
Run options for the assignment engine.

Every field has a documented default; ``from_dict`` accepts snake_case names
as well as the camelCase names used by API callers.
"""

import json
import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class AssignmentOptions:
    # Strategy selection ("auto" lets the router decide)
    algorithm: str = 'auto'
    seed: Optional[int] = 42
    verbose: bool = False

    # Genetic optimizer
    population_size: int = 50
    generations: int = 100
    mutation_rate: float = 0.1
    min_mutation_rate: float = 0.05
    max_mutation_rate: float = 0.5
    crossover_rate: float = 0.7
    elitism_rate: float = 0.1
    tournament_size: int = 3
    convergence_generations: int = 10
    convergence_threshold: float = 0.005
    convergence_min_fitness: float = 0.85
    stagnation_threshold: float = 0.001
    restart_generations: int = 15
    diversity_injection_ratio: float = 0.2
    use_deterministic_init: bool = True
    deterministic_population_ratio: float = 0.03
    max_deterministic_variants: int = 5
    local_search_interval: int = 5
    local_search_rate: float = 0.2
    local_search_iterations: int = 15
    ga_timeout_ms: int = 30 * 60 * 1000

    # Per-phase timeouts
    pure_lp_timeout_ms: int = 45000
    head_lp_timeout_ms: int = 3000
    chunk_timeout_ms: int = 8000
    validation_timeout_ms: int = 5000
    validation_batch_size: int = 1000

    # Chunking and router thresholds
    chunk_size: int = 50
    large_problem_threshold: int = 30000
    hybrid_threshold_exams: int = 50
    hybrid_threshold_variables: int = 5000
    chunked_threshold_exams: int = 100
    overlap_tolerance: float = 0.05

    # LP model ceilings and objective weights
    max_lp_variables: int = 6000
    max_lp_constraints: int = 40000
    lp_coverage_weight: int = 100
    lp_assignment_weight: int = 10
    lp_qualified_secretary_weight: int = 9
    lp_workload_penalty: int = 40
    lp_conflict_penalty: int = 1000

    # Greedy
    greedy_passes: int = 4
    default_max_assignments: int = 10

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AssignmentOptions':
        known = {f.name for f in fields(cls)}
        merged = asdict(cls())
        for key, value in (data or {}).items():
            name = _snake_case(key)
            if name in known:
                merged[name] = value
        options = cls(**merged)
        options.validate()
        return options

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> 'AssignmentOptions':
        data = self.to_dict()
        data.update(changes)
        return AssignmentOptions.from_dict(data)

    def validate(self) -> None:
        """Raise ValueError for out-of-range values."""
        if self.population_size < 50:
            raise ValueError("population_size must be at least 50")
        if self.generations < 20:
            raise ValueError("generations must be at least 20")
        for name in ('mutation_rate', 'min_mutation_rate', 'max_mutation_rate', 'crossover_rate',
                     'overlap_tolerance', 'local_search_rate', 'diversity_injection_ratio',
                     'deterministic_population_ratio'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if not 0.0 <= self.elitism_rate <= 0.5:
            raise ValueError("elitism_rate must be between 0 and 0.5")
        if self.min_mutation_rate > self.max_mutation_rate:
            raise ValueError("min_mutation_rate cannot exceed max_mutation_rate")
        if self.tournament_size < 1:
            raise ValueError("tournament_size must be positive")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")


def _snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def load_options(path: str) -> AssignmentOptions:
    """
    Load options from a JSON file. A missing file yields the defaults.

    Args:
        path: Path to the JSON options file

    Returns:
        Validated AssignmentOptions
    """
    options_path = Path(path)
    if not options_path.exists():
        return AssignmentOptions()
    data = json.loads(options_path.read_text(encoding='utf-8'))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return AssignmentOptions.from_dict(data)
