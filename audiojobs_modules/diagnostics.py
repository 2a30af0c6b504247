"""Operator CLI for inspecting and nudging the audio job queue.

Every subcommand exits 0 on success and 1 on any error.
"""

from __future__ import annotations

import argparse
import json
import sys
import uuid
from typing import Callable, Optional, TextIO

from audiojobs_modules.config import AUDIO_QUEUE_NAME, logger
from audiojobs_modules.db import check_connection, init_db
from audiojobs_modules.jobs.producer import cancel_recording_job, retry_recording_job
from audiojobs_modules.jobs.queue import (
    depth_counts,
    enqueue_job,
    list_failed_jobs,
    purge_finished_jobs,
)
from audiojobs_modules.status.cache import RedisStatusCache, get_status, get_status_cache
from audiojobs_modules.storage.object_storage import get_object_storage


def cmd_failed(args: argparse.Namespace, out: TextIO) -> int:
    jobs = list_failed_jobs(limit=args.limit, queue_name=args.queue)
    if not jobs:
        print("✅ No failed jobs found.", file=out)
        return 0

    print(f"❌ Found {len(jobs)} failed jobs:", file=out)
    for job in jobs:
        payload = job.payload or {}
        print("-" * 60, file=out)
        print(f"Job ID: {job.id}", file=out)
        print(f"Recording ID: {job.recording_id}", file=out)
        print(f"File path: {payload.get('filePath')}", file=out)
        print(f"Attempts: {job.attempts}/{job.max_attempts}", file=out)
        print(f"Failed at: {job.finished_at.isoformat() if job.finished_at else '-'}", file=out)
        print(f"Failed reason: {job.failed_reason}", file=out)
        if job.stacktrace:
            print("Stack trace:", file=out)
            print(job.stacktrace.rstrip(), file=out)
    return 0


def cmd_depth(args: argparse.Namespace, out: TextIO) -> int:
    counts = depth_counts(queue_name=args.queue)
    print(f"Queue: {args.queue or 'all'}", file=out)
    for name in ("waiting", "active", "delayed", "failed", "completed"):
        print(f"  {name:<10} {counts[name]}", file=out)
    return 0


def cmd_probe(args: argparse.Namespace, out: TextIO) -> int:
    job_id = args.job_id or f"probe-{uuid.uuid4().hex[:12]}"
    job = enqueue_job(
        recording_id=f"probe-{job_id}",
        user_id="diagnostics",
        organization_id="diagnostics",
        file_path=args.file_path,
        job_id=job_id,
        queue_name=args.queue,
    )
    print(f"✅ Probe job enqueued: {job.id} (status {job.status})", file=out)
    return 0


def cmd_ping(args: argparse.Namespace, out: TextIO) -> int:
    healthy = True

    try:
        check_connection()
        print("✅ Database: reachable", file=out)
    except Exception as exc:  # noqa: BLE001 - reported as a failed check
        healthy = False
        print(f"❌ Database: {exc}", file=out)

    try:
        cache = get_status_cache()
        cache.ping()
        print(f"✅ Status cache: {type(cache).__name__} reachable", file=out)
        if isinstance(cache, RedisStatusCache):
            server = cache.describe_server()
            print(f"   maxmemory-policy: {server['maxmemory_policy']}", file=out)
            print(f"   appendonly: {server['appendonly']}", file=out)
            for warning in server["warnings"]:
                print(f"⚠️  {warning}", file=out)
    except Exception as exc:  # noqa: BLE001
        healthy = False
        print(f"❌ Status cache: {exc}", file=out)

    try:
        storage = get_object_storage()
        storage.ping()
        print(f"✅ Object storage: {type(storage).__name__} reachable", file=out)
    except Exception as exc:  # noqa: BLE001
        healthy = False
        print(f"❌ Object storage: {exc}", file=out)

    return 0 if healthy else 1


def cmd_status(args: argparse.Namespace, out: TextIO) -> int:
    record = get_status(args.recording_id)
    if record is None:
        print(f"❌ No job found for recording {args.recording_id}", file=out)
        return 1
    print(json.dumps(record.to_dict(), ensure_ascii=False, indent=2), file=out)
    return 0


def cmd_retry(args: argparse.Namespace, out: TextIO) -> int:
    if not retry_recording_job(args.job_id):
        print(f"❌ Job {args.job_id} is not in failed state", file=out)
        return 1
    print(f"✅ Job {args.job_id} moved back to the queue", file=out)
    return 0


def cmd_cancel(args: argparse.Namespace, out: TextIO) -> int:
    if not cancel_recording_job(args.job_id):
        print(f"❌ Job {args.job_id} not found or already finished", file=out)
        return 1
    print(f"✅ Job {args.job_id} cancelled", file=out)
    return 0


def cmd_purge(args: argparse.Namespace, out: TextIO) -> int:
    removed = purge_finished_jobs(older_than_hours=args.older_than_hours)
    print(f"🧹 Purged {removed} finished jobs", file=out)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audio job queue diagnostics")
    sub = parser.add_subparsers(dest="command", required=True)

    failed = sub.add_parser("failed", help="List most recently failed jobs")
    failed.add_argument("--limit", type=int, default=3)
    failed.add_argument("--queue", default=None)
    failed.set_defaults(handler=cmd_failed)

    depth = sub.add_parser("depth", help="Show queue depth counts")
    depth.add_argument("--queue", default=None)
    depth.set_defaults(handler=cmd_depth)

    probe = sub.add_parser("probe", help="Enqueue a synthetic job without storage validation")
    probe.add_argument("--job-id", default=None)
    probe.add_argument("--file-path", default="test/sample.mp3")
    probe.add_argument("--queue", default=AUDIO_QUEUE_NAME)
    probe.set_defaults(handler=cmd_probe)

    ping = sub.add_parser("ping", help="Check database, status cache and storage connectivity")
    ping.set_defaults(handler=cmd_ping)

    status = sub.add_parser("status", help="Show the status record for a recording")
    status.add_argument("recording_id")
    status.set_defaults(handler=cmd_status)

    retry = sub.add_parser("retry", help="Re-queue a failed job")
    retry.add_argument("job_id")
    retry.set_defaults(handler=cmd_retry)

    cancel = sub.add_parser("cancel", help="Cancel a queued or running job")
    cancel.add_argument("job_id")
    cancel.set_defaults(handler=cmd_cancel)

    purge = sub.add_parser("purge", help="Delete finished jobs past retention")
    purge.add_argument("--older-than-hours", type=float, default=None)
    purge.set_defaults(handler=cmd_purge)

    return parser


def main(argv: Optional[list[str]] = None, *, out: Optional[TextIO] = None) -> int:
    out = out or sys.stdout
    args = build_parser().parse_args(argv)
    handler: Callable[[argparse.Namespace, TextIO], int] = args.handler
    try:
        init_db()
        return handler(args, out)
    except Exception as exc:  # noqa: BLE001 - CLI boundary
        logger.exception("Diagnostics command failed", extra={"command": args.command})
        print(f"❌ {type(exc).__name__}: {exc}", file=out)
        return 1


__all__ = ["build_parser", "main"]
