"""
Exception taxonomy of the assignment engine.

Everything except ``InsufficientObserversError`` is recovered by the
router's fallback chain.
"""

from enum import Enum
from typing import Optional


class FallbackReason(str, Enum):
    MODEL_TOO_LARGE = 'model-too-large'
    SOLVE_TIMEOUT = 'solve-timeout'
    NO_FEASIBLE_MODEL = 'no-feasible-model'
    SOLVER_ERROR = 'solver-error'
    VALIDATION_INCOMPLETE = 'validation-incomplete'
    CRITICAL_VIOLATION = 'critical-violation'
    NO_SOLUTION = 'no-solution'


class AssignmentError(Exception):
    """Base class for all assignment engine errors."""

    code = 'ASSIGNMENT_ERROR'
    reason: Optional[FallbackReason] = None

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ModelTooLarge(AssignmentError):
    """The LP adapter refused to build a model above its size ceilings."""
    code = 'MODEL_TOO_LARGE'
    reason = FallbackReason.MODEL_TOO_LARGE


class SolveTimeout(AssignmentError):
    """An operation exceeded its time budget."""
    code = 'TIMEOUT'
    reason = FallbackReason.SOLVE_TIMEOUT


class NoFeasibleModel(AssignmentError):
    """No exam in the model has an eligible head and secretary."""
    code = 'NO_SOLUTION'
    reason = FallbackReason.NO_FEASIBLE_MODEL


class SolverError(AssignmentError):
    """The external solver failed or reported an unusable status."""
    code = 'SOLVER_ERROR'
    reason = FallbackReason.SOLVER_ERROR


class ValidationIncomplete(AssignmentError):
    """Validation ran out of time; the candidate is not proven safe."""
    code = 'VALIDATION_FAILED'
    reason = FallbackReason.VALIDATION_INCOMPLETE


class CriticalViolation(AssignmentError):
    """Role violations or overlaps beyond tolerance were found."""
    code = 'VALIDATION_FAILED'
    reason = FallbackReason.CRITICAL_VIOLATION


class NoSolution(AssignmentError):
    """Two eligible observers could not be placed on an exam."""
    code = 'NO_SOLUTION'
    reason = FallbackReason.NO_SOLUTION


class InsufficientObserversError(AssignmentError):
    """Run-level failure: the input cannot produce any assignment at all."""
    code = 'INSUFFICIENT_OBSERVERS'
