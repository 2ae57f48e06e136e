from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any

from . import notify
from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, load_config
from .models import Job, JobAction
from .pool import WorkerPool
from .store import SharedStore, StoreError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relaybot", description="LLM job relay for chat bots")
    parser.add_argument("--config", required=True, help="Path to relaybot YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Start the worker pool and relay jobs until interrupted")
    subparsers.add_parser("status", help="Show pending jobs and worker status")
    subparsers.add_parser("jobs", help="List pending jobs in assignment order")
    subparsers.add_parser("listen", help="Print notification events as JSON lines")

    submit = subparsers.add_parser("submit", help="Queue a job for the worker pool")
    submit.add_argument("--engine", required=True, help="Name of the llm_clients entry to run against")
    submit.add_argument(
        "--action",
        default=JobAction.CHAT.value,
        choices=[action.value for action in JobAction],
        help="Job action",
    )
    submit.add_argument("--priority", type=int, default=0, help="Lower values are assigned first")
    submit.add_argument("--payload", default="{}", help="JSON request payload")
    submit.add_argument("--channel-id", help="Reply into this channel")
    submit.add_argument("--message-id", help="Reply to this message (needs --channel-id)")
    submit.add_argument("--user-id", help="Send the result to this user")
    return parser


async def _serve(config: AppConfig, logger: logging.Logger) -> None:
    store = await SharedStore.connect(config.cache, logger)
    pool = WorkerPool(config, store, logger)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    async def on_job_added(event: dict[str, Any]) -> None:
        log_with_fields(logger, logging.DEBUG, "job_announced", job_id=event.get("jobId"))
        await pool.assign_available_workers()

    listener: asyncio.Task[None] | None = None
    try:
        await pool.initialize()
        listener = asyncio.create_task(notify.listen(store, notify.JOBS_CHANNEL, on_job_added))
        await stop.wait()
        log_with_fields(logger, logging.INFO, "shutdown", reason="signal")
    finally:
        if listener is not None:
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)
        await pool.shutdown()
        await store.close()


def cmd_run(config: AppConfig) -> int:
    logger = setup_logger(config.logging.path, config.logging.level)
    try:
        asyncio.run(_serve(config, logger))
    except StoreError as exc:
        print(f"store unavailable: {exc}", file=sys.stderr)
        return 1
    return 0


async def _status(config: AppConfig, logger: logging.Logger) -> None:
    store = await SharedStore.connect(config.cache, logger)
    try:
        jobs = await store.get_jobs()
        claimed = await store.list_claimed_job_ids()
        print(f"Jobs:\n  pending      {len(jobs)}\n  claimed      {len(claimed)}")

        print("\nWorkers:")
        worker_ids = await store.list_worker_ids()
        if not worker_ids:
            print("  (no worker state yet)")
        for worker_id in worker_ids:
            status = await store.get_worker_status(worker_id)
            job_id = await store.get_worker_job(worker_id)
            state = status.name if status is not None else "UNKNOWN"
            print(f"  {worker_id}: status={state} job={job_id or '-'}")
    finally:
        await store.close()


async def _jobs(config: AppConfig, logger: logging.Logger) -> None:
    store = await SharedStore.connect(config.cache, logger)
    try:
        jobs = await store.get_jobs()
        if not jobs:
            print("(no pending jobs)")
        for job in jobs:
            print(f"{job.job_id} priority={job.priority} created_at={job.created_at}")
    finally:
        await store.close()


async def _submit(config: AppConfig, logger: logging.Logger, job: Job) -> None:
    store = await SharedStore.connect(config.cache, logger)
    try:
        await store.save_job(job)
        await store.publish(notify.JOBS_CHANNEL, {"type": "job:added", "jobId": job.job_id})
        log_with_fields(logger, logging.INFO, "job_submitted", job_id=job.job_id, engine=job.engine)
    finally:
        await store.close()


async def _listen(config: AppConfig, logger: logging.Logger) -> None:
    store = await SharedStore.connect(config.cache, logger)
    try:
        await notify.listen(store, config.notify.channel, lambda event: print(json.dumps(event), flush=True))
    finally:
        await store.close()


def build_job(args: argparse.Namespace, config: AppConfig) -> Job:
    if args.engine not in config.llm_clients:
        raise ValueError(f"unknown engine `{args.engine}`, configured: {sorted(config.llm_clients)}")
    payload = json.loads(args.payload)
    if not isinstance(payload, dict):
        raise ValueError("--payload must be a JSON object")
    reply_to = {
        key: value
        for key, value in {
            "channel_id": args.channel_id,
            "message_id": args.message_id,
            "user_id": args.user_id,
        }.items()
        if value
    }
    return Job(
        data={"action": args.action, "payload": payload, "reply_to": reply_to},
        engine=args.engine,
        priority=args.priority,
    )


def _run_tool(config: AppConfig, command: Any, *args: Any) -> int:
    logger = setup_logger(None, "WARNING")
    try:
        asyncio.run(command(config, logger, *args))
    except StoreError as exc:
        print(f"store unavailable: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config)
    if args.command == "status":
        return _run_tool(config, _status)
    if args.command == "jobs":
        return _run_tool(config, _jobs)
    if args.command == "listen":
        return _run_tool(config, _listen)
    if args.command == "submit":
        try:
            job = build_job(args, config)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        code = _run_tool(config, _submit, job)
        if code == 0:
            print(job.job_id)
        return code
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
