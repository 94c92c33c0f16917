#!/usr/bin/env python3
"""RiskGuard Scoring Pipeline Runner.

CLI entry point that initialises the database, loads a dataset from a JSON
file, scores every invoice as it is ingested, and then runs a company batch
for each tenant found in the dataset.

Usage::

    python scripts/run_pipeline.py [--data-file data/dataset.json] [--tenant tenant-demo]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is on ``sys.path`` so that ``riskguard.*`` imports
# work when this script is invoked directly from a source checkout.
# ---------------------------------------------------------------------------
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from riskguard.config import settings  # noqa: E402
from riskguard.models.database import create_tables  # noqa: E402
from riskguard.pipeline.ingestion import RiskScoringPipeline  # noqa: E402


def _configure_logging() -> None:
    """Set up root logger with a clean console format."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main() -> None:
    """Parse arguments, initialise the database, and run the pipeline."""
    _configure_logging()

    parser = argparse.ArgumentParser(
        description="Run the RiskGuard scoring pipeline",
    )
    parser.add_argument(
        "--data-file",
        default="data/dataset.json",
        help="Path to the dataset JSON file (default: data/dataset.json)",
    )
    parser.add_argument(
        "--tenant",
        default=None,
        help="Only run the company batch for this tenant (default: every tenant in the file)",
    )
    parser.add_argument(
        "--skip-batch",
        action="store_true",
        help="Only ingest and score documents; do not score companies",
    )
    args = parser.parse_args()

    print("=== RiskGuard Scoring Pipeline ===")
    print("Initializing database...")
    await create_tables()

    print(f"Loading dataset from {args.data_file}...")
    pipeline = RiskScoringPipeline.from_settings(settings)
    summary = await pipeline.ingest_from_json(args.data_file)

    documents: int = summary["documents"]
    flagged: int = summary["flagged"]
    elapsed: float = summary["processing_time_seconds"]
    pct = (flagged / documents * 100) if documents > 0 else 0.0

    print("\n=== Ingestion Summary ===")
    print(f"Documents Scored:   {documents}")
    print(f"Transfers Stored:   {summary['transfers']}")
    print(f"Alerts Raised:      {flagged} ({pct:.1f}%)")
    print(f"Processing Time:    {elapsed:.2f}s")

    if not args.skip_batch:
        tenants = [args.tenant] if args.tenant else summary["tenants"]
        for tenant_id in tenants:
            report = await pipeline.run_company_batch(tenant_id)
            print(f"\n=== Company Batch: {tenant_id} ===")
            for result in report.results:
                if result.status == "scored":
                    marker = " [ALERT]" if result.alert_created else ""
                    print(f"  {result.subject_id:<10} {result.score:6.2f} ({result.severity}){marker}")
                else:
                    print(f"  {result.subject_id:<10} {result.status.upper()} {result.error or ''}")
            print(
                f"Scored: {report.scored}  Skipped: {report.skipped}  "
                f"Failed: {report.failed}  Alerts: {report.alerts_created}"
            )

    print(f"\nDatabase: {settings.DATABASE_URL}")
    print("Run 'uvicorn riskguard.api.main:app --reload' to start the API")


if __name__ == "__main__":
    asyncio.run(main())
