#!/usr/bin/env python
"""
Payments Worker

Standalone background process that, every poll interval:
1. Retries stored Razorpay webhooks (payments and payouts)
2. Delivers queued push and email notifications
3. Sweeps expired slot locks
4. Retries failed payouts

Use it instead of the in-process worker (set WORKER_ENABLED=false on the API).

Run with:
    python worker.py

Or with environment:
    WORKER_POLL_INTERVAL=10 WORKER_BATCH_SIZE=50 python worker.py
"""

import sys
import time
import logging
import signal

from gully.config import settings
from gully.database import SessionLocal
from gully.services.background_jobs import run_worker_cycle, cycle_had_activity
from gully.utils.logging_config import setup_logging

logger = logging.getLogger("gully.worker")

RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current cycle...")
    RUNNING = False


def run_worker():
    """Main worker loop"""
    poll_interval = settings.worker_poll_interval
    batch_size = settings.worker_batch_size

    logger.info("Starting payments worker")
    logger.info(f"Poll interval: {poll_interval}s, batch size: {batch_size}")

    cycle = 0
    while RUNNING:
        cycle += 1
        start_time = time.time()

        db = SessionLocal()
        try:
            results = run_worker_cycle(db, batch_size=batch_size)
            if cycle_had_activity(results):
                duration = time.time() - start_time
                logger.info(f"Cycle {cycle}: {results} ({duration:.2f}s)")
        except Exception as e:
            logger.error(f"Critical error in cycle {cycle}: {e}")
        finally:
            db.close()

        if RUNNING:
            time.sleep(poll_interval)

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    setup_logging(level=settings.log_level, json_format=settings.log_json, include_uvicorn=False)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_worker()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
