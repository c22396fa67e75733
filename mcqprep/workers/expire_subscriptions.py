"""
Flip lapsed active subscriptions to inactive and refresh access flags.

Runs once by default; --loop keeps sweeping every --interval seconds.
"""
import argparse
import logging
import time

from mcqprep.core.config import settings
from mcqprep.core.logging import configure_logging
from mcqprep.features.subscriptions.ledger import expire_lapsed_subscriptions

logger = logging.getLogger("mcqprep")


def run_sweep(limit: int = 1000) -> int:
    expired = expire_lapsed_subscriptions(limit=limit)
    logger.info("[sweep] expired subscriptions", extra={"outcome": f"expired={expired}"})
    return expired


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Expire subscriptions whose end date has passed.")
    parser.add_argument("--once", dest="loop", action="store_false", help="Run a single sweep (default).")
    parser.add_argument("--loop", dest="loop", action="store_true", help="Sweep repeatedly.")
    parser.add_argument("--interval", type=int, default=3600, help="Seconds between sweeps in --loop mode.")
    parser.add_argument("--limit", type=int, default=1000, help="Max rows per sweep.")
    parser.set_defaults(loop=False)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    if not args.loop:
        print({"expired": run_sweep(args.limit)})
        return 0

    while True:
        run_sweep(args.limit)
        time.sleep(args.interval)


if __name__ == "__main__":
    raise SystemExit(main())
