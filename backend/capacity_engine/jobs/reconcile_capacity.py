"""
Capacity reconciliation job.

Runs on a schedule to expire plans and tokens and deactivate consumers
whose binding has lapsed. One invocation performs one sweep.

Usage:
    python -m capacity_engine.jobs.reconcile_capacity
"""

import sys
import logging
from typing import Optional

from sqlalchemy.orm import Session

from capacity_engine.database.session import get_db_session_sync
from capacity_engine.services.maintenance_service import MaintenanceSweeper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def run_reconciliation(session: Optional[Session] = None) -> dict:
    """
    Run one sweep and commit it.

    Args:
        session: Database session (a new one is opened when omitted)

    Returns:
        Sweep statistics
    """
    if session is None:
        db_gen = get_db_session_sync()
        db = next(db_gen)
        try:
            return run_reconciliation(db)
        finally:
            db.close()

    logger.info("Starting capacity reconciliation")
    result = MaintenanceSweeper(session).run_reconciliation()
    session.commit()

    stats = result.to_dict()
    logger.info("Capacity reconciliation committed", extra=stats)
    return stats


def main():
    """Entry point for running reconciliation job from command line."""
    try:
        result = run_reconciliation()
        print(f"Reconciliation completed: {result}")
        sys.exit(0 if not result["errors"] else 2)
    except Exception as e:
        logger.error("Reconciliation failed", extra={"error": str(e)}, exc_info=True)
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
