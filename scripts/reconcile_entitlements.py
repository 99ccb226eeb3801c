#!/usr/bin/env python3
"""Replay missing entitlements for paid Stripe checkouts.

Usage examples:
  ./venv/bin/python scripts/reconcile_entitlements.py --since 2026-10-01
  ./venv/bin/python scripts/reconcile_entitlements.py --since 1759276800 --dry-run --limit 200
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone

import stripe
from dotenv import load_dotenv
from firebase_admin import firestore

from purchase_fulfillment.config import load_config
from purchase_fulfillment.extensions import init_firestore
from purchase_fulfillment.logging_config import configure_logging
from purchase_fulfillment.services.payment_provider import StripePaymentProvider
from purchase_fulfillment.services.reconciliation_service import reconcile


def parse_since(value: str) -> int:
    value = str(value or "").strip()
    if value.isdigit():
        return int(value)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"--since must be a unix timestamp or ISO date, got {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def main():
    parser = argparse.ArgumentParser(description="Grant entitlements missing for paid checkout sessions.")
    parser.add_argument("--since", required=True, type=parse_since, help="Unix timestamp or ISO date to scan from.")
    parser.add_argument("--limit", type=int, default=None, help="Stop after scanning this many sessions.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be repaired without writing anything.",
    )
    args = parser.parse_args()

    load_dotenv()
    config = load_config()
    configure_logging(config.log_level)
    if not config.stripe_secret_key:
        print("STRIPE_SECRET_KEY is not set.", file=sys.stderr)
        return 2
    stripe.api_key = config.stripe_secret_key

    db, error = init_firestore()
    if db is None:
        print(f"Firestore unavailable: {error}", file=sys.stderr)
        return 2

    result = reconcile(
        args.since,
        db=db,
        provider=StripePaymentProvider(),
        firestore_module=firestore,
        page_size=config.reconcile_page_size,
        limit=args.limit,
        dry_run=args.dry_run,
    )
    print(json.dumps(result.to_dict(), indent=2))
    if result.interrupted:
        print(f"Listing interrupted; rerun with --since {args.since}", file=sys.stderr)
        return 1
    return 0 if result.failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
