#!/usr/bin/env python3
"""Rebuild MaintenanceResourceSummaries from the incident rows and report drift."""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.maintenance_service import recompute_all_summaries  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Recompute per-resource maintenance summaries from MaintenanceIncidents.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LOAN_DESK_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LOAN_DESK_DB_URL env var.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report drifted summaries without writing the rebuilt values.",
    )
    return parser


def sync_summaries(session: Session, dry_run: bool = False) -> list[tuple[str, bool]]:
    results = recompute_all_summaries(session, datetime.now())
    if dry_run:
        session.rollback()
    else:
        session.commit()
    return results


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if not args.db_url:
        print("LOAN_DESK_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    with Session(engine) as session:
        results = sync_summaries(session, dry_run=args.dry_run)

    drifted = [resource_id for resource_id, changed in results if changed]
    for resource_id, changed in results:
        print(f"[{'DRIFT' if changed else 'OK'}] {resource_id}")
    mode = "dry-run" if args.dry_run else "applied"
    print(f"{len(results)} summaries checked, {len(drifted)} drifted ({mode}).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
