from __future__ import annotations

"""
Dedicated background processes for offline transfers.

Roles:
- `jobs`   (default) RQ worker pool consuming the transfers queue
- `sweeps` APScheduler loop running the reconcile and auto-delete sweeps

Env toggles:
  TRANSFER_WORKER_CONCURRENCY=<n>       (default 2; 1 runs a single Worker)
  TRANSFER_SWEEPS_ENABLED=true|false    (default true)

Run:
  python scripts/worker.py jobs
  python scripts/worker.py sweeps
"""

import asyncio
import logging
import sys

from rq import Worker
from rq.worker_pool import WorkerPool

from app.core.config import settings
from app.core.logger import configure_logging
from app.services.transfer_queue import get_redis_connection

log = logging.getLogger("worker")


def run_jobs() -> None:
    connection = get_redis_connection()
    queues = [settings.TRANSFER_QUEUE_NAME]
    concurrency = settings.TRANSFER_WORKER_CONCURRENCY
    log.info("Transfer workers starting | queue=%s concurrency=%s", queues[0], concurrency)

    if concurrency <= 1:
        # Scheduler is required for RQ's interval retries.
        Worker(queues, connection=connection).work(with_scheduler=True)
        return
    WorkerPool(queues, connection=connection, num_workers=concurrency).start()


def run_sweeps() -> None:
    if not settings.TRANSFER_SWEEPS_ENABLED:
        log.info("Transfer sweeps disabled (TRANSFER_SWEEPS_ENABLED=false)")
        return

    from app.utils.transfer_maintenance import start_transfer_maintenance_scheduler

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        start_transfer_maintenance_scheduler()
    except Exception:
        log.exception("Transfer maintenance scheduler failed to start")
        raise

    try:
        loop.run_forever()
    except KeyboardInterrupt:
        pass
    finally:
        loop.stop()
        loop.close()


def main(argv: list[str] | None = None) -> None:
    configure_logging()
    args = sys.argv[1:] if argv is None else argv
    role = (args[0] if args else "jobs").strip().lower()
    if role == "jobs":
        run_jobs()
    elif role == "sweeps":
        run_sweeps()
    else:
        raise SystemExit(f"Unknown role {role!r}; expected 'jobs' or 'sweeps'")


if __name__ == "__main__":
    main()
