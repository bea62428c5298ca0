# exam_observer_scheduler/__main__.py

"""
Main script for running the exam observer scheduler.

Usage:
    python -m exam_observer_scheduler input.xlsx [options]
"""

import argparse
import sys
import traceback

from .collaborators import JsonReportMetricsSink
from .config import AssignmentOptions, load_options
from .exceptions import AssignmentError
from .router import Algorithm, build_report
from .scheduler import SupervisionScheduler
from .utils import validate_excel_file

ALGORITHM_CHOICES = ['auto', 'lp', 'hybrid', 'chunked', 'max-coverage', 'greedy', 'ga'] + [a.value for a in Algorithm]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Exam Observer Scheduler - Assign a head and a secretary to every exam'
    )

    # Required arguments
    parser.add_argument('input_file',
                        help='Excel file with Exams, Observers, TimeSlots and Busy sheets')

    # Optional arguments
    parser.add_argument('-o', '--output',
                        default='observer_schedule.xlsx',
                        help='Output filename for the schedule (default: observer_schedule.xlsx)')

    parser.add_argument('-a', '--algorithm',
                        choices=ALGORITHM_CHOICES,
                        default=None,
                        help='Algorithm to run (default: auto)')

    parser.add_argument('--options',
                        help='JSON file with run options; command line flags override it')

    parser.add_argument('--seed',
                        type=int,
                        default=None,
                        help='Random seed (default: 42)')

    # Genetic algorithm arguments
    parser.add_argument('--population-size', type=int, default=None,
                        help='GA population size, at least 50 (default: 50)')
    parser.add_argument('--generations', type=int, default=None,
                        help='GA generations, at least 20 (default: 100)')
    parser.add_argument('--mutation-rate', type=float, default=None,
                        help='GA base mutation rate (default: 0.1)')
    parser.add_argument('--crossover-rate', type=float, default=None,
                        help='GA crossover rate (default: 0.7)')

    # Timeouts
    parser.add_argument('--lp-timeout', type=int, default=None,
                        help='Pure LP solve timeout in milliseconds (default: 45000)')
    parser.add_argument('--chunk-size', type=int, default=None,
                        help='Exams per batch for chunked solving (default: 50)')

    # Additional options
    parser.add_argument('--compare',
                        action='store_true',
                        help='Run greedy, maximum coverage, hybrid and LP and print a comparison table')

    parser.add_argument('--metrics-dir',
                        help='Directory for JSON performance reports')

    parser.add_argument('--validate-only',
                        action='store_true',
                        help='Only validate the input file without scheduling')

    parser.add_argument('-q', '--quiet',
                        action='store_true',
                        help='Do not print algorithm progress')
    return parser


def options_from_args(args) -> AssignmentOptions:
    options = load_options(args.options) if args.options else AssignmentOptions()
    overrides = {
        'algorithm': args.algorithm,
        'seed': args.seed,
        'population_size': args.population_size,
        'generations': args.generations,
        'mutation_rate': args.mutation_rate,
        'crossover_rate': args.crossover_rate,
        'pure_lp_timeout_ms': args.lp_timeout,
        'chunk_size': args.chunk_size,
    }
    changes = {key: value for key, value in overrides.items() if value is not None}
    changes['verbose'] = not args.quiet
    return options.replace(**changes)


def main(argv=None):
    """Main function to run the scheduler from command line."""
    args = build_parser().parse_args(argv)

    # Validate input file
    print(f"Validating input file: {args.input_file}")
    is_valid, errors = validate_excel_file(args.input_file)

    if not is_valid:
        print("Input file validation failed:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)

    print("Input file validation successful.")

    if args.validate_only:
        sys.exit(0)

    try:
        options = options_from_args(args)
    except ValueError as e:
        print(f"Invalid options: {e}")
        sys.exit(2)

    try:
        scheduler = SupervisionScheduler(options)
        scheduler.read_supervision_file(args.input_file)
        scheduler.print_summary()

        if args.compare:
            table = scheduler.compare()
            print("\nALGORITHM COMPARISON")
            print("=" * 80)
            print(table.to_string(index=False))
            sys.exit(0)

        complete = scheduler.schedule()
        scheduler.print_solution()
        scheduler.write_solution_to_file(args.output)

        if args.metrics_dir:
            sink = JsonReportMetricsSink(args.metrics_dir)
            sink.record(build_report(scheduler.result, [e.exam_id for e in scheduler.snapshot.exams]))
            print(f"Performance report written to '{sink.last_report}'")

        if not complete:
            print(f"\n{len(scheduler.result.failed)} exam(s) could not be staffed.")
            print("Consider:")
            print("  - Adding qualified (Dr.) observers for peak exam periods")
            print("  - Widening part-time availability windows")
            print("  - Raising observer assignment caps")

    except AssignmentError as e:
        print(f"\nError during scheduling: {e.message}")
        sys.exit(1)
    except Exception as e:
        print(f"\nError during scheduling: {str(e)}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
