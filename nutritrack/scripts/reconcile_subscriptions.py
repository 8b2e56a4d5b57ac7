"""
Batch subscription reconciliation.

Compares stored status with Stripe for every user linked to a customer and
prints a report. Dry run unless --fix is given.

    python -m nutritrack.scripts.reconcile_subscriptions [--fix] [--page-size N]
"""
import argparse
import json
import os
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

from nutritrack.core.config import Settings
from nutritrack.core.database import new_session
from nutritrack.core.logging import configure_logging
from nutritrack.features.billing.reconcile_job import run_reconcile_job
from nutritrack.features.billing.stripe_provider import StripeProvider
from nutritrack.features.users.store import UserStore


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def main(argv=None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Reconcile stored subscription status with Stripe.")
    parser.add_argument("--fix", action="store_true", help="Correct mismatched records.")
    parser.add_argument("--page-size", type=int, default=int(os.getenv("NUTRITRACK_RECONCILE_PAGE_SIZE", "100")), help="Users read per page; every linked user is checked.")
    parser.set_defaults(fix=_parse_bool(os.getenv("NUTRITRACK_RECONCILE_FIX"), False))
    args = parser.parse_args(argv)

    cfg = Settings()
    configure_logging(cfg.ENV)
    if not cfg.billing_enabled:
        print("STRIPE_SECRET_KEY not configured; nothing to reconcile")
        return 1

    provider = StripeProvider(
        secret_key=cfg.STRIPE_SECRET_KEY,
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
        price_id=cfg.STRIPE_PRICE_ID,
    )
    report = run_reconcile_job(
        provider,
        UserStore(new_session),
        now=datetime.now(timezone.utc),
        fix=args.fix,
        page_size=args.page_size,
    )
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
