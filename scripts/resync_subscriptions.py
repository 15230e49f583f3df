#!/usr/bin/env python3
"""
Resync subscription snapshots from Stripe.

Runs the same reconciliation the webhook and sync endpoints use, for one user
or for every profile linked to a Stripe customer. Useful after a webhook
outage or a price id remapping.

Usage:
    # Dry run for everyone (shows what each snapshot would become)
    python scripts/resync_subscriptions.py --dry-run

    # One user
    python scripts/resync_subscriptions.py --user-id user_123

    # Everyone
    python scripts/resync_subscriptions.py
"""

import argparse
import os
import sys
import time

# Add functions directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../functions"))

from shared import config  # noqa: E402
from shared.billing_utils import get_profile, iter_linked_profiles, snapshot_from_profile  # noqa: E402
from shared.errors import BillingError  # noqa: E402
from shared.reconciler import reconcile_user  # noqa: E402
from shared.stripe_client import configure_stripe, list_customer_subscriptions  # noqa: E402
from shared.subscriptions import select_canonical  # noqa: E402

# Rate limiting for Stripe API (25 req/sec is safe)
STRIPE_REQUESTS_PER_SECOND = 10
STRIPE_REQUEST_INTERVAL = 1.0 / STRIPE_REQUESTS_PER_SECOND


def collect_targets(user_id=None):
    """Profiles to resync: one user, or every linked profile."""
    if user_id:
        profile = get_profile(user_id)
        if not profile or not profile.get("stripe_customer_id"):
            print(f"User {user_id} has no linked Stripe customer")
            return []
        return [profile]

    print("Scanning for profiles with stripe_customer_id...")
    return list(iter_linked_profiles())


def resync_one(profile, price_tiers, dry_run=False):
    """Reconcile one profile. Returns (old_label, new_label)."""
    user_id = profile["pk"]
    customer_id = profile["stripe_customer_id"]
    old = snapshot_from_profile(get_profile(user_id))

    if dry_run:
        new = select_canonical(list_customer_subscriptions(customer_id), price_tiers)
    else:
        new = reconcile_user(user_id, customer_id=customer_id, price_tiers=price_tiers)

    return f"{old.tier.label}/{old.status}", f"{new.tier.label}/{new.status}"


def main(argv=None):
    parser = argparse.ArgumentParser(description="Resync subscription snapshots from Stripe")
    parser.add_argument("--user-id", help="Resync a single user instead of every linked profile")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    args = parser.parse_args(argv)

    if args.dry_run:
        print("=== DRY RUN MODE - No changes will be made ===\n")

    api_key, _ = config.get_stripe_secrets()
    if not api_key:
        print("Set STRIPE_API_KEY or STRIPE_SECRET_ARN and ensure AWS credentials are configured.")
        return 1
    configure_stripe(api_key)
    print(f"Stripe API initialized (key ending in ...{api_key[-4:]})\n")

    price_tiers = config.load_price_tiers()
    if not price_tiers:
        print("Warning: no STRIPE_PRICE_* configured, every subscription will map to free\n")

    targets = collect_targets(args.user_id)
    print(f"Found {len(targets)} linked profiles\n")

    changed = 0
    unchanged = 0
    error_count = 0
    last_request_time = 0.0

    for i, profile in enumerate(targets):
        elapsed = time.time() - last_request_time
        if elapsed < STRIPE_REQUEST_INTERVAL:
            time.sleep(STRIPE_REQUEST_INTERVAL - elapsed)
        last_request_time = time.time()

        prefix = f"  [{i+1}/{len(targets)}] {profile['pk']}"
        try:
            before, after = resync_one(profile, price_tiers, args.dry_run)
        except BillingError as e:
            print(f"{prefix} - {e.code}: {e.message}")
            error_count += 1
            continue

        if before == after:
            unchanged += 1
            print(f"{prefix} - {after}")
        else:
            changed += 1
            print(f"{prefix} - {before} -> {after}")

    print(f"\n{'=== DRY RUN SUMMARY ===' if args.dry_run else '=== SUMMARY ==='}")
    print(f"  Profiles processed: {len(targets)}")
    print(f"  Snapshots {'that would ' if args.dry_run else ''}change: {changed}")
    print(f"  Unchanged: {unchanged}")
    if error_count:
        print(f"  Errors: {error_count}")
    return 1 if error_count else 0


if __name__ == "__main__":
    sys.exit(main())
