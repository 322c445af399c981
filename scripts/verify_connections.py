#!/usr/bin/env python3
"""Connectivity check for the visitor list and the notification flow.

Usage:
    uv run python scripts/verify_connections.py
    uv run python scripts/verify_connections.py --stats-days 30 --skip-notification

Builds the same service the API uses from environment variables or the
project .env file, then probes SharePoint, validates the list schema and
optionally posts a test notification.

Exit code 0 if all checks pass, 1 if any fail, 2 on configuration errors.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.visitor_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.visitor_sync.config import Settings  # noqa: E402
from src.visitor_sync.errors import ConfigurationError, StoreReadError  # noqa: E402
from src.visitor_sync.sync.service import VisitorSyncService, build_service  # noqa: E402

ENV_FILE = os.path.join(os.path.dirname(__file__), "..", ".env")


async def run_checks(
    service: VisitorSyncService,
    stats_days: int,
    skip_notification: bool,
) -> list[tuple[str, bool, str]]:
    results: list[tuple[str, bool, str]] = []

    store_probe = await service.store.test_connection()
    results.append(("SharePoint list", store_probe.success, store_probe.detail))

    schema = await service.validate_schema()
    if schema.valid:
        detail = "All required fields present"
    elif schema.missing_fields:
        detail = f"Missing: {', '.join(schema.missing_fields)}"
    else:
        detail = schema.error or "Unknown error"
    results.append(("List schema", schema.valid, detail))

    if stats_days > 0:
        try:
            stats = await service.statistics(stats_days)
        except StoreReadError as exc:
            results.append(("Statistics", False, str(exc)))
        else:
            results.append(
                (
                    "Statistics",
                    True,
                    f"{stats.total} records in {stats.date_range_days}d "
                    f"({stats.scheduled} scheduled, {stats.completed} completed, "
                    f"{stats.cancelled} cancelled)",
                )
            )

    if not skip_notification:
        probe = await service.notifier.test_connection()
        results.append(("Notification flow", probe.success, probe.detail))

    return results


def print_results(results: list) -> None:
    """Print a formatted table of check results."""
    header = f"{'CHECK':<25} {'STATUS':<10} {'DETAIL'}"
    separator = "-" * 70
    print()
    print(separator)
    print(header)
    print(separator)
    for name, passed, detail in results:
        status = "PASS" if passed else "FAIL"
        print(f"{name:<25} {status:<10} {detail}")
    print(separator)
    print()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Verify SharePoint and notification connectivity for visitor sync"
    )
    parser.add_argument(
        "--stats-days",
        type=int,
        default=7,
        help="Report record statistics for this many trailing days (0 to skip)",
    )
    parser.add_argument(
        "--skip-notification",
        action="store_true",
        help="Do not post a test payload to the notification flow",
    )
    args = parser.parse_args()

    settings = Settings(_env_file=ENV_FILE)
    try:
        service = build_service(settings)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        sys.exit(2)

    results = asyncio.run(run_checks(service, args.stats_days, args.skip_notification))
    print_results(results)

    all_passed = all(passed for _, passed, _ in results)
    if all_passed:
        print("All checks passed.")
    else:
        print("Some checks FAILED.")

    sys.exit(0 if all_passed else 1)


if __name__ == "__main__":
    main()
