#!/usr/bin/env python3
"""
Inventory Sync Runner for DealerSync

Runs one partner feed synchronization without going through HTTP, for
unattended scheduling from cron or a job runner.

Usage:
    # Sync the first enabled dealer configuration
    python scripts/run_inventory_sync.py

    # Sync a specific dealer
    python scripts/run_inventory_sync.py --dealer-id dealer-123

    # Connectivity test only (fetch one record, write nothing)
    python scripts/run_inventory_sync.py --test-only

    # Debug logging
    python scripts/run_inventory_sync.py --verbose

Exit codes:
    0 - run finished (success or partial) or connectivity test passed
    1 - fatal error; the JSON error body is printed to stdout
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

# Add backend to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "backend"))

from app.core.exceptions import DealerSyncException
from app.core.logging import get_logger, setup_logging
from app.db.postgres.session import async_session_maker, dispose_engine
from app.services.inventory_sync_service import InventorySyncService
from app.services.object_storage import close_object_storage
from app.services.trigger_auth import (
    TRIGGER_CRON,
    DealerSelectionStrategy,
    FirstEnabledDealerStrategy,
    FixedDealerStrategy,
    TriggerContext,
)

logger = get_logger("run_inventory_sync")


async def run_sync(
    dealer_id: Optional[str] = None,
    test_only: bool = False,
) -> Tuple[int, Dict[str, Any]]:
    """
    Run one sync and return (exit_code, body).

    Args:
        dealer_id: Dealer to sync; the first enabled configuration when None
        test_only: Probe the feed without writing
    """
    strategy: DealerSelectionStrategy = (
        FixedDealerStrategy(dealer_id) if dealer_id else FirstEnabledDealerStrategy()
    )

    async with async_session_maker() as db:
        try:
            selected = await strategy.select(db)
            trigger = TriggerContext(dealer_id=selected, trigger_source=TRIGGER_CRON)
            body = await InventorySyncService(db).run(trigger, test_only=test_only)
            return 0, body
        except DealerSyncException as e:
            return 1, e.to_dict()


async def main_async(args: argparse.Namespace) -> int:
    try:
        exit_code, body = await run_sync(args.dealer_id, args.test_only)
    finally:
        await close_object_storage()
        await dispose_engine()

    print(json.dumps(body, indent=2, default=str))
    return exit_code


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run a DealerSync partner inventory synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dealer-id",
        help="Dealer to sync (default: first enabled configuration)",
    )
    parser.add_argument(
        "--test-only",
        action="store_true",
        help="Fetch a single record to verify connectivity; write nothing",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    setup_logging()
    # stdout carries the JSON result
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler):
            handler.setStream(sys.stderr)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
