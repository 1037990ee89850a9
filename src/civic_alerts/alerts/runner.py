#!/usr/bin/env python3
"""
CLI to run one civic alert check end-to-end.

Features:
- Fetches weather alerts, river gauges, air quality and traffic incidents
- Classifies, matches subscribers, dedups against the ledger and delivers push
- Dry-run mode fetches and classifies only and prints the city summary

Usage examples:
  # Full run against the configured sources and database
  civic-alerts-run

  # Classify only, no delivery, no ledger writes
  civic-alerts-run --dry-run

  # Alerts settings from a file, shorter ledger retention
  civic-alerts-run --config configs/alerts.yaml --cleanup-days 3

  # Follow up on Expo tickets from earlier runs
  civic-alerts-run --check-receipts
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional, List

from civic_alerts.config import Settings
from civic_alerts.alerts.orchestration import (
    build_orchestrator,
    load_alerts_config,
)
from civic_alerts.alerts.sources import CivicSources
from civic_alerts.alerts.summary import collect_city_summary

logger = logging.getLogger(__name__)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    values = load_alerts_config(args.config) if args.config else {}
    if args.cleanup_days is not None:
        values["ledger_retention_days"] = args.cleanup_days
    if args.db_path:
        values["db_path"] = args.db_path
    # invoked by an operator, not the scheduler
    values["app_env"] = "development"
    return Settings.from_overrides(**values)


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Run the civic alert check once")
    p.add_argument("--config", help="YAML/JSON file with an 'alerts:' settings block")
    p.add_argument("--dry-run", action="store_true", help="Fetch and classify only, print the city summary")
    p.add_argument("--check-receipts", action="store_true",
                   help="Check pending Expo push receipts instead of running the alert check")
    p.add_argument("--cleanup-days", type=int, help="Ledger retention in days")
    p.add_argument("--db-path", help="SQLite database path")

    args = p.parse_args(argv)
    settings = _settings_from_args(args)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    logger.info("%s", "=" * 60)
    logger.info("Civic Alerts Runner")
    logger.info("Sources: %s | db: %s | dry_run: %s | retention: %sd",
                settings.source_base_url, settings.db_path, args.dry_run, settings.ledger_retention_days)
    logger.info("%s", "=" * 60)

    if args.dry_run:
        summary = asyncio.run(collect_city_summary(CivicSources.from_settings(settings)))
        print(json.dumps(summary, indent=2, default=str))
        logger.info("Overall status: %s", summary["overall_status"])
        return 0

    orch = build_orchestrator(settings)

    if args.check_receipts:
        status, body = asyncio.run(orch.handle_receipts({}))
        print(json.dumps(body, indent=2, default=str))
        logger.info("Receipts checked=%s deactivated=%s cleanedUp=%s",
                    body.get("checked"), body.get("deactivated"), body.get("cleanedUp"))
        return 0 if status == 200 else 1

    status, body = asyncio.run(orch.handle({}))
    print(json.dumps(body, indent=2, default=str))

    logger.info("%s", "=" * 60)
    for alert_type, counts in body.get("results", {}).items():
        logger.info("%-12s checked=%s matched=%s notified=%s",
                    alert_type, counts["checked"], counts["matched"], counts["notified"])
    logger.info("%s", "=" * 60)
    return 0 if status == 200 else 1


if __name__ == "__main__":
    raise SystemExit(main())
