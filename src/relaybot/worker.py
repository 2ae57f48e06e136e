from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from multiprocessing.connection import Connection
from typing import Any

from . import notify
from .app_logging import log_with_fields, setup_logger
from .backends import BackendError, LLMClient, build_clients
from .config import WorkerSettings
from .handle import Message, start_reader
from .models import Job, JobAction, PoolAction, WorkerResponse, WorkerState
from .store import SharedStore, StoreError

# failures that end one job but leave the worker usable; Type/AttributeError come
# from payloads or records of the wrong shape
PROCESSING_ERRORS = (BackendError, StoreError, LookupError, ValueError, TypeError, AttributeError)


class WorkerRuntime:
    """Job execution inside one worker process.

    The runtime owns its ``worker:{id}:status`` and ``worker:{id}:job`` keys.
    A claimed job id is written before any work starts so a restarted process
    can resume it.
    """

    def __init__(
        self,
        worker_id: str,
        store: SharedStore,
        clients: dict[str, LLMClient],
        send: Callable[[Message], None],
        logger: logging.Logger,
        notify_channel: str = "discord",
    ) -> None:
        self.worker_id = worker_id
        self.store = store
        self.clients = clients
        self.send = send
        self.logger = logger
        self.notify_channel = notify_channel
        self.state = WorkerState.INITIALIZING
        self.jobs: asyncio.Queue[tuple[str, bool]] = asyncio.Queue()
        self.done = asyncio.Event()
        self.terminate_requested = False

    def _log(self, level: int, message: str, **fields: object) -> None:
        log_with_fields(self.logger, level, message, worker=self.worker_id, **fields)

    async def _set_state(self, state: WorkerState) -> None:
        await self.store.set_worker_status(self.worker_id, state)
        self.state = state

    async def recover(self) -> str | None:
        """Read persisted status and return the job id to resume, if any."""
        status = await self.store.get_worker_status(self.worker_id)
        if status is WorkerState.BUSY:
            job_id = await self.store.get_worker_job(self.worker_id)
            if job_id:
                self.state = WorkerState.BUSY
                self._log(logging.INFO, "worker_resuming_job", job_id=job_id)
                return job_id
            self._log(logging.ERROR, "worker_busy_without_job")

        await self._set_state(WorkerState.INITIALIZING)
        await self.store.set_worker_job(self.worker_id, None)
        await self._set_state(WorkerState.IDLE)
        return None

    async def start(self) -> None:
        resume_job_id = await self.recover()
        if resume_job_id:
            self.jobs.put_nowait((resume_job_id, True))
        self.send({"action": WorkerResponse.READY.value})
        self._log(logging.INFO, "worker_ready", state=self.state.name)

    async def serve(self, inbox: asyncio.Queue[Message | None]) -> None:
        await self.start()
        tasks = {
            asyncio.create_task(self._control_loop(inbox), name=f"control-{self.worker_id}"),
            asyncio.create_task(self._job_loop(), name=f"jobs-{self.worker_id}"),
            asyncio.create_task(self.done.wait(), name=f"done-{self.worker_id}"),
        }
        try:
            finished, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                task.result()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _control_loop(self, inbox: asyncio.Queue[Message | None]) -> None:
        while not self.done.is_set():
            message = await inbox.get()
            if message is None:
                self._log(logging.INFO, "worker_pool_disconnected")
                self.done.set()
                return
            await self.handle_message(message)

    async def _job_loop(self) -> None:
        while not self.done.is_set():
            job_id, claimed = await self.jobs.get()
            if claimed:
                await self.process_job(job_id)
            else:
                await self.accept_job(job_id)
            if self.terminate_requested:
                await self._finish_terminate()

    async def handle_message(self, message: Message) -> None:
        if "id" in message:
            self.jobs.put_nowait((str(message["id"]), False))
            return

        action = message.get("action")
        if action == PoolAction.STATUS.value:
            self.send({"action": WorkerResponse.STATUS.value, "state": int(self.state)})
        elif action == PoolAction.TERMINATE.value:
            self.terminate_requested = True
            if self.state is not WorkerState.BUSY and self.jobs.empty():
                await self._finish_terminate()
        else:
            self._log(logging.WARNING, "worker_unknown_message", payload=str(message)[:200])
            self.send({"action": WorkerResponse.UNKNOWN.value, "payload": message})

    async def _finish_terminate(self) -> None:
        await self._set_state(WorkerState.TERMINATING)
        self.send({"action": WorkerResponse.TERMINATE.value})
        self._log(logging.INFO, "worker_terminating")
        self.done.set()

    async def accept_job(self, job_id: str) -> None:
        self.state = WorkerState.BUSY
        # job id first: a crash in between leaves IDLE plus a stale id, which recover() clears
        try:
            await self.store.set_worker_job(self.worker_id, job_id)
            await self._set_state(WorkerState.BUSY)
        except StoreError as exc:
            self._log(logging.ERROR, "job_claim_failed", job_id=job_id, error=str(exc))
            await self._release()
            self.send({"action": WorkerResponse.RELEASE.value, "job": job_id, "message": str(exc)})
            return
        await self.process_job(job_id)

    async def process_job(self, job_id: str) -> bool:
        self.state = WorkerState.BUSY
        job: Job | None = None
        try:
            job = await self.store.load_job(job_id)
            self._log(logging.INFO, "job_started", job_id=job_id, engine=job.engine, action=job.data.get("action"))
            result = await self.execute(job)
            content = str(result.get("content") or "")
            for event in notify.result_events(job_id, job.reply_to, content, result):
                await self.store.publish(self.notify_channel, event)
        except PROCESSING_ERRORS as exc:
            self._log(logging.ERROR, "job_failed", job_id=job_id, error=str(exc))
            if job is not None:
                await self._publish_failure(job)
            await self._release()
            self.send({"action": WorkerResponse.ERROR.value, "job": job_id, "message": str(exc)})
            return False

        await self._release()
        self.send({"action": WorkerResponse.COMPLETE.value, "job": job_id})
        self._log(logging.INFO, "job_completed", job_id=job_id)
        return True

    async def _publish_failure(self, job: Job) -> None:
        event = notify.failure_event(job.job_id, job.reply_to)
        if event is None:
            return
        try:
            await self.store.publish(self.notify_channel, event)
        except StoreError as exc:
            self._log(logging.ERROR, "failure_notice_failed", job_id=job.job_id, error=str(exc))

    async def _release(self) -> None:
        try:
            await self._set_state(WorkerState.IDLE)
            await self.store.set_worker_job(self.worker_id, None)
        except StoreError as exc:
            self.state = WorkerState.IDLE
            self._log(logging.ERROR, "worker_release_failed", error=str(exc))

    async def execute(self, job: Job) -> dict[str, Any]:
        action = job.action
        if action is JobAction.STATUS:
            return {"content": f"worker {self.worker_id} is {self.state.name}"}
        if action is JobAction.TERMINATE:
            self.terminate_requested = True
            return {"content": f"worker {self.worker_id} is terminating"}

        client = self.clients.get(job.engine)
        if client is None:
            raise BackendError(f"no usable backend for engine {job.engine}")

        if action in (JobAction.CHAT, JobAction.GENERATE):
            typing = notify.typing_event(job.reply_to)
            if typing is not None:
                await self.store.publish(self.notify_channel, typing)

        if action is JobAction.CHAT:
            return await client.chat(job.payload)
        if action is JobAction.GENERATE:
            return await client.generate(job.payload)
        return await client.embed(job.payload)


async def _run_worker(settings: WorkerSettings, conn: Connection, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()
    inbox: asyncio.Queue[Message | None] = asyncio.Queue()
    start_reader(
        f"relaybot-inbox-{settings.worker_id}",
        conn,
        lambda message: loop.call_soon_threadsafe(inbox.put_nowait, message),
    )

    clients = build_clients(settings.llm_clients, logger)
    log_with_fields(logger, logging.INFO, "worker_clients_ready", worker=settings.worker_id, clients=sorted(clients))
    store = await SharedStore.connect(settings.cache, logger)
    runtime = WorkerRuntime(settings.worker_id, store, clients, conn.send, logger, settings.notify_channel)
    try:
        await runtime.serve(inbox)
    finally:
        for client in clients.values():
            await client.aclose()
        await store.close()


def worker_main(settings: WorkerSettings, conn: Connection) -> None:
    """Process entry point for one worker."""
    logger = setup_logger(settings.log_path, settings.log_level)
    log_with_fields(logger, logging.INFO, "worker_started", worker=settings.worker_id)
    try:
        asyncio.run(_run_worker(settings, conn, logger))
    except Exception as exc:
        logger.exception("worker_crashed", extra={"extra_fields": {"worker": settings.worker_id, "error": str(exc)}})
        try:
            conn.send({"action": WorkerResponse.ERROR.value, "message": str(exc)})
        except (OSError, ValueError):
            log_with_fields(logger, logging.WARNING, "worker_crash_report_failed", worker=settings.worker_id)
        raise SystemExit(1) from exc
    finally:
        conn.close()
