"""
Run the broker's periodic sweeps once, e.g. from cron.

Examples:
  python scripts/run_sweeps.py                 # dispatch + expiry
  python scripts/run_sweeps.py --retention     # also purge old terminal unlocks
  python scripts/run_sweeps.py --only expiry
  python scripts/run_sweeps.py --missed-leads  # also re-process leads never offered
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path so we can import from domain, repositories, services
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.main import configure_logging
from services.context import build_context
from services.lead_service import MISSED_LEAD_LOOKBACK_HOURS, dispatch_scheduled, recover_missed_leads
from services.scheduler_service import run_due_dispatches
from services.settings import BrokerSettings
from services.unlock_service import run_expiry_sweep, run_retention_sweep


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Run Lead Unlock Broker sweeps once")
    parser.add_argument(
        "--only",
        choices=["dispatch", "expiry"],
        help="Run just one of the regular sweeps",
    )
    parser.add_argument(
        "--retention",
        action="store_true",
        help="Also delete EXPIRED / REVEALED unlocks older than RETENTION_DAYS",
    )
    parser.add_argument(
        "--missed-leads",
        action="store_true",
        help=f"Also re-process leads from the last {MISSED_LEAD_LOOKBACK_HOURS}h that were never offered",
    )
    args = parser.parse_args()

    settings = BrokerSettings.from_env()
    configure_logging(settings.log_level)
    ctx = build_context(settings)

    print("=" * 60)
    if args.only in (None, "dispatch"):
        dispatched = run_due_dispatches(ctx, dispatch_scheduled)
        print(f"Dispatch:  processed={dispatched.processed} failed={dispatched.failed} skipped={dispatched.skipped}")
    if args.only in (None, "expiry"):
        expired = run_expiry_sweep(ctx)
        print(
            f"Expiry:    unlocks={expired.expired_unlocks} leads_closed={expired.closed_leads} "
            f"skipped={expired.skipped} failures={expired.failures}"
        )
    if args.retention:
        deleted = run_retention_sweep(ctx)
        print(f"Retention: deleted={deleted}")
    if args.missed_leads:
        recovered = recover_missed_leads(ctx)
        print(f"Missed:    found={recovered.found} processed={recovered.processed} failed={recovered.failed}")
    ctx.close()
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
