"""
Wall-clock budgets.

``Deadline`` is polled at safe points (generation and batch boundaries);
``run_with_timeout`` races a call against a deadline in a worker thread and
abandons it when the deadline passes. The abandoned call is not killed, its
eventual result is ignored.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from .exceptions import SolveTimeout


class Deadline:
    """A point in time after which cooperative loops should stop."""

    def __init__(self, budget_ms: Optional[float]):
        self.budget_ms = budget_ms
        self.started = time.perf_counter()

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000.0

    def remaining_ms(self) -> float:
        if self.budget_ms is None:
            return float('inf')
        return self.budget_ms - self.elapsed_ms()

    def expired(self) -> bool:
        return self.remaining_ms() <= 0


def run_with_timeout(func: Callable[..., Any], timeout_ms: float, *args, label: str = 'operation', **kwargs) -> Any:
    """
    Run ``func`` in a worker thread and wait at most ``timeout_ms`` for it.

    Args:
        func: Callable to run
        timeout_ms: Time budget in milliseconds
        label: Name used in the timeout message

    Returns:
        Whatever ``func`` returns

    Raises:
        SolveTimeout: If the budget is exceeded
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=max(timeout_ms, 0) / 1000.0)
    except FutureTimeout:
        future.cancel()
        raise SolveTimeout(f"{label} exceeded {timeout_ms:.0f}ms", {'timeout_ms': timeout_ms})
    finally:
        executor.shutdown(wait=False)
