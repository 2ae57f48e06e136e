from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from .app_logging import log_with_fields
from .config import AppConfig, worker_settings
from .handle import Message, ProcessWorkerHandle
from .models import Job, JobKey, PoolAction, WorkerResponse, WorkerState
from .store import SharedStore, StoreError
from .utils import new_worker_id

MessageCallback = Callable[[Any, Message], None]
HandleFactory = Callable[[str, MessageCallback], Any]


class WorkerPool:
    """Owns the worker handles and keeps idle workers fed with pending jobs.

    Created once at startup and passed to whatever needs to submit jobs or
    shut the workers down. Worker messages are queued by reader threads and
    handled one at a time by ``pump_messages``.
    """

    def __init__(
        self,
        config: AppConfig,
        store: SharedStore,
        logger: logging.Logger,
        handle_factory: HandleFactory | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.logger = logger
        self.handle_factory = handle_factory or self._process_handle
        self.handles: dict[str, Any] = {}
        # worker id -> job id dispatched but not yet reported back
        self.in_flight: dict[str, str] = {}
        # workers whose current handle has reported response:ready
        self.ready: set[str] = set()
        self.restarts: dict[str, int] = {}
        self.messages: asyncio.Queue[tuple[Any, Message]] = asyncio.Queue()
        self._assign_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._closing = False

    def _process_handle(self, worker_id: str, on_message: MessageCallback) -> ProcessWorkerHandle:
        return ProcessWorkerHandle(worker_settings(self.config, worker_id), on_message)

    def _post_message(self, handle: Any, message: Message) -> None:
        # called from reader threads
        if self._loop is None:
            raise RuntimeError("worker pool is not running")
        self._loop.call_soon_threadsafe(self.messages.put_nowait, (handle, message))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "background_task_failed",
                task=task.get_name(),
                error=str(exc),
            )

    async def initialize(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._closing = False
        for worker_id in await self.store.list_worker_ids():
            self.add_worker(worker_id)
            log_with_fields(self.logger, logging.INFO, "worker_reattached", worker=worker_id)
        if self.get_worker_count() > self.config.workers.max:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "pool_above_max",
                workers=self.get_worker_count(),
                max=self.config.workers.max,
            )
        self._top_up()
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = self._spawn(self.pump_messages(), "pool-messages")
        log_with_fields(self.logger, logging.INFO, "pool_initialized", workers=self.get_worker_count())

    def _top_up(self) -> None:
        while self.get_worker_count() < self.config.workers.min:
            self.add_worker()

    def add_worker(self, worker_id: str | None = None) -> str:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        worker_id = worker_id or new_worker_id()
        if worker_id in self.handles:
            log_with_fields(self.logger, logging.WARNING, "worker_exists", worker=worker_id)
            return worker_id
        handle = self.handle_factory(worker_id, self._post_message)
        self.handles[worker_id] = handle
        try:
            handle.start()
        except OSError as exc:
            self.handles.pop(worker_id, None)
            log_with_fields(self.logger, logging.ERROR, "worker_start_failed", worker=worker_id, error=str(exc))
            raise
        log_with_fields(self.logger, logging.INFO, "worker_added", worker=worker_id)
        return worker_id

    def remove_worker(self, worker_id: str) -> bool:
        handle = self.handles.pop(worker_id, None)
        self.in_flight.pop(worker_id, None)
        self.ready.discard(worker_id)
        if handle is None:
            return False
        handle.terminate()
        log_with_fields(self.logger, logging.INFO, "worker_removed", worker=worker_id)
        return True

    def has_worker(self, worker_id: str) -> bool:
        return worker_id in self.handles

    def get_worker_count(self) -> int:
        return len(self.handles)

    def keys(self) -> list[str]:
        return list(self.handles)

    async def get_jobs(self) -> list[JobKey]:
        return await self.store.get_jobs()

    async def get_worker_status(self, worker_id: str) -> WorkerState | None:
        return await self.store.get_worker_status(worker_id)

    async def add_job(self, data: dict[str, Any], engine: str, priority: int = 0) -> Job:
        job = Job(data=data, engine=engine, priority=priority)
        try:
            await self.store.save_job(job)
        except StoreError as exc:
            log_with_fields(self.logger, logging.ERROR, "job_add_failed", job_id=job.job_id, error=str(exc))
            raise
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_added",
            job_id=job.job_id,
            engine=engine,
            priority=priority,
        )
        self._spawn(self.assign_available_workers(), f"assign-after-{job.job_id}")
        return job

    async def assign_available_workers(self) -> list[tuple[str, str]]:
        """Give each idle worker the next unclaimed job by (priority, created_at).

        Returns the ``(worker_id, job_id)`` pairs dispatched by this pass.
        """
        async with self._assign_lock:
            pending = await self.store.get_jobs()
            if not pending:
                return []
            claimed = await self.store.list_claimed_job_ids()
            taken = set(claimed) | set(self.in_flight.values())
            candidates = [job for job in pending if job.job_id not in taken]

            assignments: list[tuple[str, str]] = []
            for worker_id in list(self.handles):
                if not candidates:
                    break
                if worker_id in self.in_flight or worker_id not in self.ready:
                    continue
                status = await self.store.get_worker_status(worker_id)
                if status is not WorkerState.IDLE:
                    continue
                handle = self.handles.get(worker_id)
                if handle is None:
                    continue

                job = candidates.pop(0)
                try:
                    handle.send({"id": job.job_id})
                except OSError as exc:
                    candidates.insert(0, job)
                    log_with_fields(
                        self.logger,
                        logging.ERROR,
                        "job_dispatch_failed",
                        worker=worker_id,
                        job_id=job.job_id,
                        error=str(exc),
                    )
                    continue
                self.in_flight[worker_id] = job.job_id
                assignments.append((worker_id, job.job_id))
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "job_dispatched",
                    worker=worker_id,
                    job_id=job.job_id,
                    priority=job.priority,
                )
            return assignments

    async def pump_messages(self) -> None:
        while True:
            handle, message = await self.messages.get()
            try:
                await self.handle_message(handle, message)
            except Exception as exc:
                # one bad message must not stop the pool from hearing its workers
                self.logger.error(
                    "worker_message_failed",
                    exc_info=not isinstance(exc, StoreError),
                    extra={
                        "extra_fields": {
                            "worker": getattr(handle, "worker_id", None),
                            "action": message.get("action"),
                            "error": str(exc),
                        }
                    },
                )

    async def handle_message(self, handle: Any, message: Message) -> None:
        worker_id = handle.worker_id
        if self.handles.get(worker_id) is not handle:
            log_with_fields(
                self.logger,
                logging.DEBUG,
                "stale_worker_message",
                worker=worker_id,
                action=message.get("action"),
            )
            return

        action = message.get("action")
        if action == WorkerResponse.READY.value:
            self.ready.add(worker_id)
            log_with_fields(self.logger, logging.INFO, "worker_ready", worker=worker_id)
            await self.assign_available_workers()
        elif action == WorkerResponse.COMPLETE.value:
            job_id = str(message.get("job"))
            await self._settle(worker_id, job_id, delete=True)
            self.restarts.pop(worker_id, None)
            log_with_fields(self.logger, logging.INFO, "job_completed", worker=worker_id, job_id=job_id)
            await self.assign_available_workers()
        elif action == WorkerResponse.RELEASE.value:
            job_id = str(message.get("job"))
            await self._settle(worker_id, job_id, delete=False)
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_released",
                worker=worker_id,
                job_id=job_id,
                error=message.get("message"),
            )
            await self.assign_available_workers()
        elif action == WorkerResponse.ERROR.value:
            job_id = message.get("job")
            log_with_fields(
                self.logger,
                logging.ERROR,
                "worker_error",
                worker=worker_id,
                job_id=job_id,
                error=message.get("message"),
            )
            if job_id:
                await self._settle(worker_id, str(job_id), delete=True)
                log_with_fields(self.logger, logging.WARNING, "job_dropped", worker=worker_id, job_id=job_id)
                await self.assign_available_workers()
        elif action == WorkerResponse.STATUS.value:
            state = message.get("state")
            log_with_fields(self.logger, logging.INFO, "worker_status", worker=worker_id, state=state)
        elif action == WorkerResponse.TERMINATE.value:
            self.remove_worker(worker_id)
            self.restarts.pop(worker_id, None)
            await self.store.clear_worker(worker_id)
            if not self._closing:
                self._top_up()
        elif action == WorkerResponse.EXIT.value:
            await self._handle_exit(worker_id, message.get("exitcode"))
        else:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "worker_message_unknown",
                worker=worker_id,
                payload=str(message)[:200],
            )

    async def _settle(self, worker_id: str, job_id: str, delete: bool) -> None:
        # under the assign lock so no pass sees the job pending but no longer in flight
        async with self._assign_lock:
            try:
                if delete:
                    await self.store.delete_job(job_id)
            finally:
                if self.in_flight.get(worker_id) == job_id:
                    self.in_flight.pop(worker_id)

    async def _handle_exit(self, worker_id: str, exitcode: object) -> None:
        self.remove_worker(worker_id)
        log_with_fields(self.logger, logging.WARNING, "worker_exited", worker=worker_id, exitcode=exitcode)
        if self._closing:
            return

        crashes = self.restarts.get(worker_id, 0) + 1
        if crashes <= self.config.workers.max_restarts and self._respawn(worker_id, crashes):
            return

        self.restarts.pop(worker_id, None)
        log_with_fields(self.logger, logging.ERROR, "worker_retired", worker=worker_id, crashes=crashes)
        await self.store.clear_worker(worker_id)
        self._top_up()
        await self.assign_available_workers()

    def _respawn(self, worker_id: str, attempt: int) -> bool:
        self.restarts[worker_id] = attempt
        log_with_fields(self.logger, logging.INFO, "worker_respawn", worker=worker_id, attempt=attempt)
        try:
            # same id, so the new process resumes any job it had claimed
            self.add_worker(worker_id)
        except OSError:
            return False
        return True

    def _control(self, worker_id: str, action: PoolAction) -> bool:
        handle = self.handles.get(worker_id)
        if handle is None:
            log_with_fields(self.logger, logging.WARNING, "worker_unknown", worker=worker_id, action=action.value)
            return False
        handle.send({"action": action.value})
        return True

    def request_status(self, worker_id: str) -> bool:
        return self._control(worker_id, PoolAction.STATUS)

    def request_terminate(self, worker_id: str) -> bool:
        return self._control(worker_id, PoolAction.TERMINATE)

    async def shutdown(self) -> None:
        self._closing = True
        for worker_id in list(self.handles):
            self.remove_worker(worker_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pump_task = None
        log_with_fields(self.logger, logging.INFO, "pool_shutdown")
