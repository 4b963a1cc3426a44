#!/usr/bin/env python
"""Script to expire online orders whose payment window has lapsed.

This script:
1. Finds orders in PAYMENT_PENDING with payment PENDING past payment_expires_at
2. Moves each to PAYMENT_FAILED and returns its reserved stock
3. Cancels the order's Stripe PaymentIntent so it can no longer be paid

The API process runs the same sweep in the background; use this script from
cron when the in-process sweep is disabled (PAYMENT_EXPIRY_SWEEP_ENABLED=false).

Usage:
    python scripts/expire_pending_payments.py [--max-batches N]

Requirements:
    - SUPABASE_URL and SUPABASE_SECRET_KEY environment variables must be set
    - STRIPE_SECRET_KEY to cancel PaymentIntents (expiry still happens without it)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.stripe import configure_stripe
from src.services.payment_expiry import PaymentExpirySweeper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def expire_all(max_batches: int) -> int:
    """Sweep batches until one comes back empty.

    Returns:
        int: Total number of orders expired.
    """
    sweeper = PaymentExpirySweeper()
    total = 0
    for _ in range(max_batches):
        expired = await sweeper.sweep_once()
        total += expired
        if expired == 0:
            break
    return total


async def main() -> None:
    """Main entry point for the expiry script."""
    parser = argparse.ArgumentParser(description="Expire unpaid online orders")
    parser.add_argument("--max-batches", type=int, default=50, help="Stop after this many batches")
    args = parser.parse_args()

    configure_stripe()
    logger.info("Expiring lapsed payment windows...")

    try:
        total = await expire_all(args.max_batches)
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        sys.exit(1)

    logger.info(f"Expired {total} orders")


if __name__ == "__main__":
    asyncio.run(main())
