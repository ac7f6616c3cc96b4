"""Cron entry point for outbox dead-lettering, pruning and the stale-job sweep."""

from __future__ import annotations

import argparse
import sys

from src.booksphere.config import load_config
from src.booksphere.dependencies import build_services
from src.booksphere.lifecycle import MaintenanceReport, maintenance_once
from src.booksphere.logging import configure_logging


def perform_maintenance(*, dry_run: bool) -> MaintenanceReport:
    """Run one maintenance pass and return its counters."""
    config = load_config()
    configure_logging(config.settings.log_level, json_output=config.settings.log_json)
    services = build_services(config)
    return maintenance_once(services, dry_run=dry_run)


def parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dead-letter exhausted outbox events and prune delivered ones.")
    parser.add_argument("--dry-run", action="store_true", help="Only report counts without moving or deleting rows.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        report = perform_maintenance(dry_run=args.dry_run)
    except Exception as exc:
        print(f"maintenance failed: {exc}", file=sys.stderr)
        return 2

    summary = report.outbox
    if summary.dry_run:
        print(
            f"maintenance dry-run, dead_letter_candidates={summary.dead_lettered}, prunable={summary.pruned}",
            file=sys.stdout,
        )
    else:
        print(
            f"maintenance done, dead_lettered={summary.dead_lettered}, pruned={summary.pruned}, "
            f"stale_jobs_failed={len(report.stale_jobs_failed)}",
            file=sys.stdout,
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
