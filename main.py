#!/usr/bin/env python3
"""
Main entry point for the school timetable generator.
Provides options to run the generator in different modes:
- CLI mode: Run the generator from the command line
- API mode: Start a REST API server
"""
import sys
import argparse

from dotenv import load_dotenv

from timetabler.cli import main as cli_main, setup_logging
from timetabler.api import app as api_app


def parse_args():
    """Parse command-line arguments for the main entry point."""
    parser = argparse.ArgumentParser(
        description='School Timetable Generator',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        '--mode',
        type=str,
        choices=['cli', 'api'],
        default='cli',
        help='Mode to run the generator in'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=5000,
        help='Port to run the API server on (only in API mode)'
    )

    parser.add_argument(
        '--host',
        type=str,
        default='0.0.0.0',
        help='Host to bind the API server to (only in API mode)'
    )

    # Parse known args and pass the rest to the appropriate mode
    return parser.parse_known_args()


def main():
    """Main entry point."""
    args, remaining = parse_args()
    load_dotenv()

    if args.mode == 'cli':
        cli_main(remaining)

    elif args.mode == 'api':
        setup_logging('INFO')
        print(f"Starting API server on {args.host}:{args.port}")
        api_app.run(host=args.host, port=args.port)

    else:
        print(f"Invalid mode: {args.mode}")
        sys.exit(2)


if __name__ == '__main__':
    main()
