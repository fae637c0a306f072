"""List Stripe webhook events that were received but never processed.

Exit code 1 when the backlog is non-empty, so cron/alerting can pick it up.

    python scripts/check_webhook_backlog.py --minutes 30
"""

import argparse
import os
import sys
from datetime import timedelta

# Add project root to path
sys.path.append(os.getcwd())

from config.settings import get_settings
from trainkit.billing.ledger import IdempotencyLedger


def check_backlog(minutes: int) -> int:
    stale = IdempotencyLedger().find_stale_events(timedelta(minutes=minutes))
    print(f"📊 Unprocessed webhook events older than {minutes} min: {len(stale)}")
    for row in stale:
        error = (row.last_error or "").splitlines()[0] if row.last_error else "-"
        print(
            f"  ⚠️  {row.stripe_event_id}  {row.event_type}  "
            f"received={row.received_at}  attempts={row.attempts}  last_error={error}"
        )
    return 1 if stale else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--minutes",
        type=int,
        default=get_settings().webhook_stale_after_minutes,
        help="Age threshold in minutes (default: WEBHOOK_STALE_AFTER_MINUTES)",
    )
    args = parser.parse_args()
    sys.exit(check_backlog(args.minutes))
