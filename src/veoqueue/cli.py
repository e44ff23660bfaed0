from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .app_logging import LOGGER_NAME, log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .generation import GenerationClient, GenerationError
from .scheduler import InboxFormatError, Scheduler, load_shots_file
from .store import JobStore
from .sync import sync_remote_videos
from .timers import SystemClock
from .utils import move_non_destructive


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="veoqueue", description="Rate-limited Veo generation queue and poller")
    parser.add_argument("--config", required=True, help="Path to veoqueue YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the admission queue and completion poller")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Submit at most one queued shot, drive pending jobs through one poll cycle, then exit",
    )

    enqueue = subparsers.add_parser("enqueue", help="Drop a shots YAML file into the inbox")
    enqueue.add_argument("shots_file", help="YAML list of {id, title, prompt} shots")

    subparsers.add_parser("status", help="Show job counts and recent jobs")

    delete = subparsers.add_parser("delete", help="Delete a job record")
    delete.add_argument("--job-id", required=True, help="Job id to delete")

    subparsers.add_parser("sync", help="Download remote videos missing locally")
    return parser


def _open_store(config: AppConfig) -> JobStore:
    ensure_local_paths(config)
    store = JobStore(config.paths.db)
    store.init_schema()
    return store


def _open_runtime(config: AppConfig) -> tuple[JobStore, Scheduler]:
    store = _open_store(config)
    logger = setup_logger(config.paths.log)
    client = GenerationClient(config.generation)
    scheduler = Scheduler(config=config, store=store, client=client, logger=logger)
    return store, scheduler


def cmd_run(config: AppConfig, *, once: bool = False) -> int:
    store, scheduler = _open_runtime(config)
    try:
        if once:
            scheduler.run_once()
            return 0
        scheduler.run_forever()
    except KeyboardInterrupt:
        scheduler.stop_queue()
        scheduler.stop_poller()
        log_with_fields(
            logging.getLogger(LOGGER_NAME),
            logging.INFO,
            "shutdown",
            reason="keyboard_interrupt",
            unsubmitted=scheduler.queue_status().length,
        )
        return 0
    finally:
        scheduler.close()
        store.close()
    return 0


def cmd_enqueue(config: AppConfig, shots_file: str) -> int:
    source = Path(shots_file)
    try:
        entries = load_shots_file(source)
    except (InboxFormatError, OSError) as exc:
        print(f"invalid shots file: {exc}", file=sys.stderr)
        return 2
    ensure_local_paths(config)
    staged = config.paths.inbox / f".{source.name}.staging"
    staged.write_bytes(source.read_bytes())
    target = move_non_destructive(staged, config.paths.inbox, source.name)
    print(f"queued {len(entries)} shot(s) -> {target}")
    return 0


def cmd_status(config: AppConfig) -> int:
    store = _open_store(config)
    try:
        counts = store.summary_counts()
        print("Jobs:")
        for status, count in counts.items():
            print(f"  {status:8} {count}")

        print("\nRecent:")
        jobs = store.list_jobs(limit=20)
        if not jobs:
            print("  (no jobs yet)")
        for job in jobs:
            file_part = f" file={job.file_path}" if job.file_path else ""
            print(f"  {job.job_id} {job.status.value:8} {job.title or '-'} created={job.created_at}{file_part}")
        pending_inbox = sorted(path.name for path in config.paths.inbox.iterdir() if path.is_file())
        if pending_inbox:
            print(f"\nInbox: {', '.join(pending_inbox)}")
        return 0
    finally:
        store.close()


def cmd_delete(config: AppConfig, job_id: str) -> int:
    store = _open_store(config)
    try:
        if not store.delete_job(job_id):
            print(f"job not found: {job_id}", file=sys.stderr)
            return 2
        print(f"deleted {job_id}")
        return 0
    finally:
        store.close()


def cmd_sync(config: AppConfig) -> int:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log, console=False)
    client = GenerationClient(config.generation)
    try:
        report = sync_remote_videos(client, config.paths.videos, SystemClock(), logger)
    except GenerationError as exc:
        print(f"sync failed: {exc}", file=sys.stderr)
        return 2
    print(
        f"remote={report.remote_count} already_have={report.already_have} "
        f"synced={report.synced} errors={len(report.errors)} -> {report.target_dir}"
    )
    for error in report.errors:
        print(f"  {error['id']}: {error['error']}", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config, once=bool(args.once))
    if args.command == "enqueue":
        return cmd_enqueue(config, args.shots_file)
    if args.command == "status":
        return cmd_status(config)
    if args.command == "delete":
        return cmd_delete(config, args.job_id)
    if args.command == "sync":
        return cmd_sync(config)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
