#!/usr/bin/env python3
"""Start the ARQ process that delivers queued CAPI events every minute.

USAGE:
    python -m capi_relay.workers.start_arq_worker [--burst]

    --burst  Drain whatever jobs are queued and exit (useful after a bulk requeue)
"""

import argparse
import logging
import sys

from arq import run_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="capi-relay delivery worker")
    parser.add_argument("--burst", action="store_true", help="exit once the queue is empty")
    args = parser.parse_args(argv)

    from capi_relay.workers.arq_worker import WorkerSettings

    logger.info(f"[ARQ] Starting CAPI delivery worker (queue={WorkerSettings.queue_name}, burst={args.burst})")
    run_worker(WorkerSettings, burst=args.burst)


if __name__ == "__main__":
    main()
