"""Create the PayPal catalog product and monthly subscription plan.

Run once per PayPal environment, then copy the printed PAYPAL_PLAN_ID into
the deployment's environment variables.

Usage:
    PAYPAL_CLIENT_ID=... PAYPAL_SECRET=... python scripts/setup_paypal_plan.py [--live]
"""
from __future__ import annotations

import argparse
import logging
import sys

from src.domain.errors import ProviderApiUnavailable
from src.infrastructure.payments.paypal_api import PayPalApi

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--name", default="AeroScout Pro Premium")
    parser.add_argument(
        "--description",
        default="Premium access to AeroScout aviation job board with advanced features",
    )
    parser.add_argument("--plan-name", default="AeroScout Pro Monthly")
    parser.add_argument("--plan-description", default="Monthly premium subscription")
    parser.add_argument("--price", default="9.99", help="Monthly price, e.g. 9.99")
    parser.add_argument("--currency", default="USD")
    parser.add_argument("--live", action="store_true", help="Use the live PayPal API")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, api: PayPalApi | None = None) -> int:
    args = parse_args(argv)
    api = api or PayPalApi(mode="live" if args.live else "sandbox")

    logger.info("=" * 60)
    logger.info("PayPal Subscription Plan Setup")
    logger.info("Environment: %s", "SANDBOX" if api.is_sandbox else "PRODUCTION")
    logger.info("=" * 60)

    if not api.configured:
        logger.error("PAYPAL_CLIENT_ID and PAYPAL_SECRET must be set")
        return 1

    try:
        product_id = api.create_product(args.name, args.description)
        plan_id = api.create_plan(
            product_id,
            args.plan_name,
            args.plan_description,
            price=args.price,
            currency=args.currency,
        )
    except ProviderApiUnavailable as exc:
        logger.error("Error: %s", exc)
        return 1
    finally:
        api.close()

    print(f"PAYPAL_PRODUCT_ID={product_id}")
    print(f"PAYPAL_PLAN_ID={plan_id}")
    print(f"PAYPAL_MODE={'sandbox' if api.is_sandbox else 'live'}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    sys.exit(main())
