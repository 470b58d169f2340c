#!/usr/bin/env python3
"""
Command-line interface for the timetable generator.

Exit codes: 0 ready, 1 infeasible, 2 configuration or model error,
3 cancelled (search deadline reached).
"""
import argparse
import json
import logging
import sys
from pathlib import Path

from .config import EngineConfig
from .engine import EXIT_INVALID_INPUT
from .errors import ConfigError
from .optimizer import TimetableOptimizer


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='School Timetable Generator CLI',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        '--input',
        type=str,
        default='input',
        help='JSON input file or directory containing input CSV files'
    )

    parser.add_argument(
        '--output-dir',
        type=str,
        default='output',
        help='Directory to save output files'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='JSON file with engine configuration'
    )

    parser.add_argument(
        '--env-file',
        type=str,
        default=None,
        help='.env file with TIMETABLER_* settings'
    )

    parser.add_argument(
        '--previous',
        type=str,
        default=None,
        help='Timetable.json of an earlier run whose placements are tried first'
    )

    parser.add_argument(
        '--max-backtracks',
        type=int,
        default=None,
        help='Override the backtrack budget'
    )

    parser.add_argument(
        '--seed',
        type=int,
        default=None,
        help='Override the random seed of the improvement phase'
    )

    parser.add_argument(
        '--multi-start',
        type=int,
        default=None,
        help='Number of parallel search and improvement pipelines'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default='INFO',
        help='Logging level'
    )

    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output results as JSON'
    )

    return parser.parse_args(argv)


def setup_logging(log_level):
    """Configure logging."""
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {log_level}')

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_config(args) -> EngineConfig:
    """Defaults, then the config file, then TIMETABLER_* variables, then flags."""
    config = EngineConfig.from_file(args.config) if args.config else EngineConfig()
    config = EngineConfig.from_env(args.env_file, base=config)
    overrides = {}
    if args.max_backtracks is not None:
        overrides['max_backtracks'] = args.max_backtracks
    if args.seed is not None:
        overrides['random_seed'] = args.seed
    if args.multi_start is not None:
        overrides['multi_start'] = args.multi_start
    if overrides:
        merged = config.to_dict()
        merged.update(overrides)
        config = EngineConfig.from_mapping(merged)
    return config


def print_results(results):
    """Output results in human-readable format."""
    print("\nGeneration Results:")

    if 'error' in results:
        print(f"  Error ({results['error_kind']}): {results['error']}")
        if results['entities']:
            print(f"  Entities: {', '.join(results['entities'])}")
    else:
        summary = results['timetable_summary']
        print(f"  Status: {results['status']}")
        if results['success']:
            print(f"  Lessons placed: {summary['placed']}/{summary['lessons']}")
            print(f"  Soft penalty: {summary['initial_penalty']:.2f} -> {summary['final_penalty']:.2f}")
        else:
            conflict = results['conflict']
            print(f"  Reason: {conflict['reason']}")
            print(f"  Detail: {conflict['detail']}")
            if conflict['lessons']:
                print(f"  Lessons: {', '.join(conflict['lessons'])}")
            if conflict['slots']:
                print(f"  Slots: {', '.join(conflict['slots'])}")

        print("\nOutput files:")
        for name, path in results['output_files'].items():
            print(f"  {name}: {path}")

    print("\nPerformance metrics:")
    for metric, value in results['metrics'].items():
        if isinstance(value, float):
            print(f"  {metric}: {value:.2f} seconds")


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    setup_logging(args.log_level)

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: Input does not exist: {input_path}")
        sys.exit(EXIT_INVALID_INPUT)

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"Error: {str(e)}")
        sys.exit(EXIT_INVALID_INPUT)

    optimizer = TimetableOptimizer(
        input_path=str(input_path),
        output_dir=args.output_dir,
        config=config
    )
    results = optimizer.optimize(previous_path=args.previous)

    if args.json_output:
        print(json.dumps(results, indent=2))
    else:
        print_results(results)

    sys.exit(results['exit_code'])


if __name__ == '__main__':
    main()
