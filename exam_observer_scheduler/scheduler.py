from collections import Counter, defaultdict
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .config import AssignmentOptions
from .constraints import format_minutes, is_qualified_for_head
from .lp import Solver
from .models import AssignmentResult, Snapshot
from .quality import fairness_interpretation
from .router import AlgorithmRouter, compare_algorithms
from .utils import read_snapshot_excel, write_assignments_excel


class SupervisionScheduler:
    """
    A scheduler for assigning a head and a secretary to every exam.

    This class handles reading the exam and observer workbook, running the
    algorithm router, and reporting on the fairness of the resulting schedule.
    """

    def __init__(self, options: Optional[AssignmentOptions] = None, solver: Optional[Solver] = None):
        """
        Initialize the scheduler.

        Args:
            options: Run options; algorithm, timeouts and GA parameters
            solver: Optional LP backend (CP-SAT when omitted)
        """
        self.options = options or AssignmentOptions()
        self.solver = solver

        # Data storage
        self.snapshot: Optional[Snapshot] = None
        self.result: Optional[AssignmentResult] = None

    def read_supervision_file(self, filename: str, exam_ids: Optional[Iterable[Any]] = None) -> None:
        """
        Read exams, observers, time slots and busy intervals from an Excel file.

        Args:
            filename: Path to the Excel file containing supervision data
            exam_ids: Only schedule these exams (all when omitted)
        """
        print(f"Reading supervision data from {filename}...")
        self.snapshot = read_snapshot_excel(filename, exam_ids)
        print(f"[{self.snapshot.observer_count} observers, {self.snapshot.exam_count} exams, "
              f"{len(self.snapshot.busy)} busy intervals]")

    def summarize_supervision_info(self) -> Dict[str, Any]:
        """
        Summarize the supervision information from loaded data.

        Returns:
            Dictionary containing summary statistics
        """
        if self.snapshot is None:
            raise ValueError("No exam data loaded. Please run read_supervision_file first.")

        per_day = Counter(exam.date for exam in self.snapshot.exams)
        return {
            'total_observers': self.snapshot.observer_count,
            'qualified_heads': sum(1 for o in self.snapshot.observers if is_qualified_for_head(o)),
            'part_time': sum(1 for o in self.snapshot.observers if not o.is_full_time),
            'total_exams': self.snapshot.exam_count,
            'total_roles': 2 * self.snapshot.exam_count,
            'busy_intervals': len(self.snapshot.busy),
            'exam_days': [{'date': day, 'total': per_day[day]} for day in sorted(per_day)],
        }

    def print_summary(self) -> None:
        """Print a formatted summary of the supervision data."""
        summary = self.summarize_supervision_info()

        print("\nSUPERVISION DATA SUMMARY")
        print("=" * 50)
        print(f"Total Observers: {summary['total_observers']} ({summary['qualified_heads']} qualified heads, "
              f"{summary['part_time']} part-time)")
        print(f"Total Exams: {summary['total_exams']}")
        print(f"Total Roles Needed: {summary['total_roles']}")
        print(f"Existing Busy Intervals: {summary['busy_intervals']}")

        print("\nEXAM DISTRIBUTION BY DAY")
        print("-" * 50)
        for day in summary['exam_days']:
            print(f"{day['date']:%A %Y-%m-%d}: {day['total']} exam(s)")

    def schedule(self) -> bool:
        """
        Run the algorithm router on the loaded snapshot.

        Returns:
            True if every exam was assigned, False otherwise
        """
        if self.snapshot is None:
            raise ValueError("No data loaded. Please run read_supervision_file first.")

        print(f"\nStarting scheduling process (algorithm: {self.options.algorithm})...")
        self.result = AlgorithmRouter(self.options, self.solver).run(self.snapshot)
        stats = self.result.stats
        print(f"Algorithm used: {stats['algorithm']} in {stats['time_taken_ms']:.0f}ms")
        for fallback in stats['fallbacks']:
            print(f"  fell back from {fallback['algorithm']}: {fallback['reason']}")
        return not self.result.failed

    def compare(self, algorithms: Optional[Iterable[Any]] = None) -> pd.DataFrame:
        """Run several algorithms on the loaded snapshot and tabulate them."""
        if self.snapshot is None:
            raise ValueError("No data loaded. Please run read_supervision_file first.")
        return compare_algorithms(self.snapshot, algorithms, self.options, self.solver)

    def write_solution_to_file(self, filename: str = 'observer_schedule.xlsx') -> None:
        """
        Write the solution to an Excel file.

        Args:
            filename: Output filename for the schedule
        """
        if self.result is None:
            print("No solution to write.")
            return
        write_assignments_excel(self.snapshot, self.result, filename)
        print(f"\nSchedule saved to '{filename}'")

    def print_solution(self) -> None:
        """Print the solution in a readable format."""
        if self.result is None:
            print("No solution available.")
            return

        print("\nFAIRNESS ANALYSIS")
        print("=" * 80)

        total_roles = 2 * len(self.result.assignments)
        observers = self.snapshot.observers
        fair_alloc = total_roles / len(observers) if observers else 0.0
        heads = Counter(a.head_id for a in self.result.assignments)
        secretaries = Counter(a.secretary_id for a in self.result.assignments)
        days: Dict[Any, set] = defaultdict(set)
        for a in self.result.assignments:
            exam_date = self.snapshot.exam(a.exam_id).date
            days[a.head_id].add(exam_date)
            days[a.secretary_id].add(exam_date)

        print(f"\nTotal roles assigned: {total_roles}")
        print("\nObserver             | Dr | Head | Secr. | Total | Fair Alloc | Deviation | Days")
        print("-" * 80)
        absolute_deviation = 0.0
        for observer in observers:
            oid = observer.observer_id
            total = heads[oid] + secretaries[oid]
            deviation = total - fair_alloc
            absolute_deviation += abs(deviation)
            label = observer.name or str(oid)
            qualified = "Y" if is_qualified_for_head(observer) else "N"
            print(f"{label[:20]:20} | {qualified:2} | {heads[oid]:4} | {secretaries[oid]:5} | {total:5} | "
                  f"{fair_alloc:10.1f} | {deviation:+9.1f} | {len(days[oid]):4}")

        quality = self.result.quality
        print(f"\nAbsolute Deviation from Fairness: {absolute_deviation:.1f}")
        print(f"Coverage: {quality.assigned_exams}/{quality.total_exams} ({quality.coverage:.1%})")
        print(f"Workload Balance: {quality.workload_balance:.3f} (CV {quality.coefficient_of_variation:.3f})")
        print(f"Fairness: {quality.fairness:.3f} ({fairness_interpretation(quality.gini)})")
        print(f"Continuity: {quality.continuity_count}/{quality.possible_continuities}")
        print(f"Overall Score: {quality.overall_score:.3f} (grade {quality.grade})")

        if self.result.failed:
            print("\nUNASSIGNED EXAMS")
            print("-" * 80)
            for item in self.failed_rows():
                print(f"{item['exam_id']} {item['date']} {item['time']}: {item['reason']}")

    def failed_rows(self) -> List[Dict[str, Any]]:
        rows = []
        for item in self.result.failed:
            exam = self.snapshot.exam(item.exam_id)
            rows.append({
                'exam_id': item.exam_id,
                'date': exam.date,
                'time': f"{format_minutes(exam.start)}-{format_minutes(exam.end)}",
                'reason': item.reason,
            })
        return rows
