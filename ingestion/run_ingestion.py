#!/usr/bin/env python3
"""
Export Runner
=============

CLI script to run the export engine.

Usage:
    python -m ingestion.run_ingestion test        # Test connections only
    python -m ingestion.run_ingestion setup       # Create warehouse schema
    python -m ingestion.run_ingestion status      # Show cursors and snapshot window
    python -m ingestion.run_ingestion issues      # Export the next issues
    python -m ingestion.run_ingestion changes     # Export the next journal changes
    python -m ingestion.run_ingestion snapshots   # Materialize daily snapshots
    python -m ingestion.run_ingestion export      # All three, in order

Exit codes: 0 success, 1 export failure, 255 configuration error.
"""

import argparse
import json
import os
import sys
from typing import Dict, List, Optional

from ingestion.engine import ExportEngine
from ingestion.errors import ConfigurationError, ExportError
from ingestion.settings import RunConfig, load_task_settings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 255

COMMANDS = ["test", "setup", "status", "issues", "changes", "snapshots", "export"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Redmine issue history export")
    parser.add_argument(
        "command",
        choices=COMMANDS,
        help="Command to run"
    )
    parser.add_argument("--config", type=str, default=None,
                        help="configs directory or task_settings.json path")
    parser.add_argument("--include-projects", type=str, default=None,
                        help="Comma separated project identifiers to include (with sub-projects)")
    parser.add_argument("--exclude-projects", type=str, default=None,
                        help="Comma separated project identifiers to exclude (with sub-projects)")
    parser.add_argument("--max-issues", type=int, default=None,
                        help="Maximum number of issues per run")
    parser.add_argument("--max-changes", type=int, default=None,
                        help="Maximum number of journals per run")
    parser.add_argument("--max-days", type=int, default=None,
                        help="Maximum number of snapshot days per run")
    parser.add_argument("--change-batch-size", type=int, default=None,
                        help="Journals per change batch")
    parser.add_argument("--run-date", type=str, default=None,
                        help="Run date (YYYY-MM-DD, default: today UTC)")
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict:
    return {
        "include_projects": args.include_projects,
        "exclude_projects": args.exclude_projects,
        "max_issues": args.max_issues,
        "max_changes": args.max_changes,
        "max_days": args.max_days,
        "change_batch_size": args.change_batch_size,
        "run_date": args.run_date,
    }


def print_results(command: str, results: List[Dict]):
    """Print results summary."""
    print("\n" + "=" * 60)
    print(f"RESULTS SUMMARY ({command})")
    print("=" * 60)
    for result in results:
        status_icon = "✓" if result["status"] == "success" else "✗"
        print(f"\n{status_icon} {result['stage']}")
        print(f"    Status: {result['status']}")
        print(f"    Rows extracted: {result.get('rows_extracted', 0):,}")
        print(f"    Rows loaded: {result.get('rows_loaded', 0):,}")
        if "previous_cursor" in result:
            print(f"    Cursor: {result['previous_cursor']} -> {result['new_cursor']}")
            print(f"    Batches: {result['batches']}")
        if result.get("window_start"):
            print(f"    Window: {result['window_start']} .. {result['window_end']} ({result['days']} days)")
        if result.get("cursors"):
            print(f"    Cursors: {result['cursors']}")
            print(f"    Next snapshot window: {result.get('next_window')}")
        if result.get("error"):
            print(f"    Error: {result['error']}")


def save_results(command: str, results: List[Dict]) -> str:
    """Save results to logs/<command>_results.json."""
    results_path = f"logs/{command}_results.json"
    os.makedirs("logs", exist_ok=True)
    with open(results_path, "w") as f:
        json.dump(results, f, indent=2, default=str)
    return results_path


def main(argv: Optional[List[str]] = None, engine_factory=ExportEngine) -> int:
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        # usage errors count as configuration errors, --help is not one
        return EXIT_CONFIG if e.code else EXIT_OK

    try:
        settings = load_task_settings(args.config)
        config = RunConfig.from_settings(settings, overrides_from_args(args))
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG

    print("=" * 60)
    print(f"REDMINE EXPORT: {args.command.upper()}")
    print("=" * 60)

    engine = engine_factory(config)
    try:
        results = engine.run(args.command)
    except ExportError as e:
        print(f"\n✗ {args.command} failed: {e}")
        return EXIT_FAILED

    print_results(args.command, results)
    results_path = save_results(args.command, results)
    print(f"\nResults saved to: {results_path}")

    success = all(r["status"] != "failed" for r in results)
    return EXIT_OK if success else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
