"""
Command-line entry point: run a load profile and gate on its thresholds.

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "script crashed":

- ``0``: all thresholds passed
- ``1``: at least one threshold was breached
- ``2``: the run could not be performed (bad profile, bad YAML, etc.)

Usage examples::

    review-load --base-url http://localhost:8080
    review-load --profile smoke
    review-load --config load_profile.yml --summary-export out/summary.json
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from review_load.config import config, get_config, load_profile
from review_load.runner import LoadTestRunner
from review_load.summary import summary_dict, write_summary_json

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for a load run."""
    parser = argparse.ArgumentParser(
        prog="review-load",
        description="Run a staged load test against the PR reviewer service.",
    )
    parser.add_argument(
        "--profile",
        choices=sorted(config),
        default=None,
        help="Built-in profile (default: $LOAD_PROFILE or 'default')",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML file overriding stages, thresholds, fixtures or scenario settings",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Target service URL (overrides $BASE_URL and the YAML file)",
    )
    parser.add_argument(
        "--empty-metrics",
        choices=("fail", "skip"),
        default=None,
        help="How thresholds over metrics with no samples affect the verdict",
    )
    parser.add_argument(
        "--summary-export",
        type=Path,
        default=None,
        help="Write the end-of-run summary as JSON to this path",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only log warnings and errors",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point: load the profile, run it, print the summary, gate.

    Returns:
        ``EXIT_PASS`` (0) if all thresholds are met,
        ``EXIT_THRESHOLD_BREACH`` (1) if any are breached, or
        ``EXIT_SCRIPT_ERROR`` (2) if the run could not be performed.
    """
    args = parse_args(argv)
    if args.quiet:
        logging.getLogger("review_load").setLevel(logging.WARNING)

    try:
        profile = load_profile(
            get_config(args.profile),
            args.config,
            base_url=args.base_url,
            empty_metric_policy=args.empty_metrics,
        )
        result = LoadTestRunner(profile).run()
    except Exception as exc:
        logger.debug("Load run failed", exc_info=True)
        print(f"Load test failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    print(result.summary)
    if args.summary_export is not None:
        try:
            write_summary_json(
                args.summary_export,
                summary_dict(result.snapshots, result.verdict, result.checks),
            )
        except OSError as exc:
            print(f"Could not write summary: {exc}", file=sys.stderr)
            return EXIT_SCRIPT_ERROR

    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


if __name__ == "__main__":
    raise SystemExit(main())
