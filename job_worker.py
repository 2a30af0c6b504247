"""CLI entry point for the audio job worker pool."""

from __future__ import annotations

import argparse
import os
import signal
import socket
import sys
import uuid
from typing import Iterable, Optional

from audiojobs_modules.config import (
    JOB_LEASE_TIMEOUT_SECONDS,
    JOB_MAINTENANCE_INTERVAL,
    JOB_POLL_INTERVAL,
    JOB_WORKER_CONCURRENCY,
    logger,
)
from audiojobs_modules.db import init_db
from audiojobs_modules.jobs.bootstrap import register_builtin_handlers
from audiojobs_modules.jobs.worker import WorkerConfig, WorkerPool
from audiojobs_modules.status.cache import get_status_cache, warn_if_process_local


def parse_queue_names(raw: Optional[str], from_flags: Optional[Iterable[str]]) -> Optional[list[str]]:
    combined: set[str] = set()
    if raw:
        combined.update(part.strip() for part in raw.split(",") if part.strip())
    if from_flags:
        combined.update(value.strip() for value in from_flags if value and value.strip())
    return sorted(combined) or None


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


def build_config(argv: list[str]) -> WorkerConfig:
    parser = argparse.ArgumentParser(description="Audio processing job worker")
    parser.add_argument(
        "--worker-id",
        default=os.environ.get("JOB_WORKER_ID", _default_worker_id()),
        help="Identifier used to mark leased jobs (suffixed per thread).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=JOB_WORKER_CONCURRENCY,
        help="Number of worker threads.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=JOB_POLL_INTERVAL,
        help="Upper bound in seconds between queue polls while idle.",
    )
    parser.add_argument(
        "--queue",
        action="append",
        dest="queues",
        help="Restrict worker to the given queue (can repeat).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process at most one job per thread then exit.",
    )
    parser.add_argument(
        "--service-overrides",
        default=os.environ.get("AUDIO_SERVICE_OVERRIDES"),
        help="Override pipeline services via module:attr mapping provider.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Acquire jobs but release them without running the pipeline.",
    )
    parser.add_argument(
        "--max-jobs",
        type=int,
        default=os.environ.get("JOB_MAX_JOBS"),
        help="Stop each thread after processing N jobs.",
    )
    parser.add_argument(
        "--backoff-min",
        type=float,
        default=os.environ.get("JOB_IDLE_BACKOFF_MIN"),
        help="Minimum idle backoff in seconds when queue is empty.",
    )
    parser.add_argument(
        "--backoff-max",
        type=float,
        default=os.environ.get("JOB_IDLE_BACKOFF_MAX"),
        help="Maximum idle backoff in seconds when queue is empty.",
    )
    parser.add_argument(
        "--lease-timeout",
        type=float,
        default=JOB_LEASE_TIMEOUT_SECONDS,
        help="Seconds without a heartbeat before a leased job is handed back to the queue.",
    )
    parser.add_argument(
        "--maintenance-interval",
        type=float,
        default=JOB_MAINTENANCE_INTERVAL,
        help="Seconds between lease reaper / retention purge runs.",
    )
    args = parser.parse_args(argv)

    return WorkerConfig(
        worker_id=str(args.worker_id),
        concurrency=max(int(args.concurrency), 1),
        poll_interval=float(args.poll_interval),
        queue_names=parse_queue_names(os.environ.get("JOB_QUEUES"), args.queues),
        run_once=bool(args.once),
        service_overrides=str(args.service_overrides) if args.service_overrides else None,
        dry_run=bool(args.dry_run),
        max_jobs=int(args.max_jobs) if args.max_jobs else None,
        backoff_min=float(args.backoff_min if args.backoff_min is not None else 1),
        backoff_max=float(args.backoff_max if args.backoff_max is not None else 30),
        lease_timeout=float(args.lease_timeout),
        maintenance_interval=float(args.maintenance_interval),
    )


def install_signal_handlers(pool: WorkerPool) -> None:
    def _signal_handler(signum: int, _frame: object) -> None:
        logger.info("Signal received", extra={"signal": signum})
        pool.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _signal_handler)


def main(argv: Optional[list[str]] = None) -> int:
    init_db()
    register_builtin_handlers()
    config = build_config(argv if argv is not None else sys.argv[1:])
    if config.service_overrides:
        os.environ["AUDIO_SERVICE_OVERRIDES"] = config.service_overrides
    warn_if_process_local(get_status_cache(), component="worker")
    pool = WorkerPool(config)
    install_signal_handlers(pool)
    pool.start()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
