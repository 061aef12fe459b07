#!/usr/bin/env python3
"""Generate monthly subscription bills and suspend clinics past the grace period.

Meant to run once a day from cron::

    python scripts/billing_cycle.py --grace-days 7
"""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import structlog  # noqa: E402

from prontivus import subscriptions  # noqa: E402
from prontivus.db import session_scope  # noqa: E402
from prontivus.observability import configure_logging  # noqa: E402

logger = structlog.get_logger("billing_cycle")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Prontivus subscription billing cycle.")
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        help="Reference date in ISO format (default: today in the clinic timezone)",
    )
    parser.add_argument(
        "--grace-days",
        type=int,
        help="Days after license expiry before suspension (default: PAYMENT_GRACE_DAYS)",
    )
    parser.add_argument(
        "--skip-suspension",
        action="store_true",
        help="Only generate bills; never suspend clinics.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging()

    with session_scope() as session:
        created = subscriptions.generate_monthly_payments(session, args.today)
        suspended = []
        if not args.skip_suspension:
            suspended = subscriptions.suspend_overdue_clinics(session, args.today, args.grace_days)

    logger.info("billing_cycle_complete", bills_created=len(created), clinics_suspended=len(suspended))
    print(f"Bills created: {len(created)}")
    print(f"Clinics suspended: {len(suspended)}")
    for entry in suspended:
        print(f"  - {entry['name']} ({entry['clinic_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
