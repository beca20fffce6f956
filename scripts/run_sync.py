#!/usr/bin/env python3
"""
Run recruitment list syncs synchronously, without Celery.

Intended for cron deployments: runs the participant sync and then the
research data sync of every list (or of the given lists).

Usage:
    python scripts/run_sync.py

    # Only some lists
    python scripts/run_sync.py --list-id <id> --list-id <id>

    # Only copy new responses
    python scripts/run_sync.py --skip-participants
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from recruitment_api.db import get_session_factory, init_schema
from recruitment_api.services.recruitment_list_db import RecruitmentListDBService
from recruitment_api.tasks.sync_tasks import run_full_sync

logger = logging.getLogger("run_sync")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Synchronize recruitment lists with the study system"
    )
    parser.add_argument(
        "--list-id",
        action="append",
        dest="list_ids",
        default=[],
        help="Sync only this list (repeatable, default: all lists)"
    )
    parser.add_argument(
        "--skip-participants",
        action="store_true",
        help="Do not include new participants"
    )
    parser.add_argument(
        "--skip-data",
        action="store_true",
        help="Do not refresh participant infos and responses"
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the database schema before syncing"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.init_schema:
        init_schema()

    SessionLocal = get_session_factory()
    db = SessionLocal()

    try:
        store = RecruitmentListDBService(db)
        list_ids = args.list_ids
        if not list_ids:
            list_ids = [rl.id for rl in store.get_recruitment_lists_infos()]

        logger.info(f"Syncing {len(list_ids)} recruitment list(s)")
        results = {
            list_id: run_full_sync(
                store,
                list_id,
                participants=not args.skip_participants,
                data=not args.skip_data,
            )
            for list_id in list_ids
        }

    except KeyboardInterrupt:
        logger.info("Sync interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        db.close()

    failed = [list_id for list_id, outcome in results.items() if outcome == "failed"]
    for list_id, outcome in results.items():
        logger.info(f"{list_id}: {outcome}")

    if failed:
        sys.exit(2)


if __name__ == "__main__":
    main()
