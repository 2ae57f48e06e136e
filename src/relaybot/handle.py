from __future__ import annotations

import multiprocessing
import threading
from collections.abc import Callable
from multiprocessing.connection import Connection
from typing import Any

from .config import WorkerSettings
from .models import WorkerResponse

Message = dict[str, Any]


def pump_connection(conn: Connection, deliver: Callable[[Message | None], None]) -> None:
    """Forward every message read from ``conn`` to ``deliver``; ``None`` marks end of stream."""
    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        try:
            deliver(message)
        except RuntimeError:
            # receiving event loop already closed
            return
    try:
        deliver(None)
    except RuntimeError:
        return


def start_reader(name: str, conn: Connection, deliver: Callable[[Message | None], None]) -> threading.Thread:
    thread = threading.Thread(target=pump_connection, args=(conn, deliver), name=name, daemon=True)
    thread.start()
    return thread


class ProcessWorkerHandle:
    """The pool's side of one worker process: a duplex pipe plus a reader thread."""

    join_timeout = 5.0

    def __init__(
        self,
        settings: WorkerSettings,
        on_message: Callable[[ProcessWorkerHandle, Message], None],
    ) -> None:
        self.settings = settings
        self.worker_id = settings.worker_id
        self.on_message = on_message
        self.context = multiprocessing.get_context("spawn")
        self.process: Any = None
        self.conn: Connection | None = None

    def start(self) -> None:
        # imported here so the handle module stays light for the spawn bootstrap
        from .worker import worker_main

        parent_conn, child_conn = self.context.Pipe(duplex=True)
        self.process = self.context.Process(
            target=worker_main,
            args=(self.settings, child_conn),
            name=f"relaybot-worker-{self.worker_id}",
            daemon=True,
        )
        self.process.start()
        child_conn.close()
        self.conn = parent_conn
        start_reader(f"relaybot-reader-{self.worker_id}", parent_conn, self._deliver)

    def _deliver(self, message: Message | None) -> None:
        if message is None:
            exitcode = None
            if self.process is not None:
                self.process.join(timeout=self.join_timeout)
                exitcode = self.process.exitcode
            message = {"action": WorkerResponse.EXIT.value, "exitcode": exitcode}
        self.on_message(self, message)

    def send(self, message: Message) -> None:
        if self.conn is None:
            raise OSError(f"worker {self.worker_id} is not started")
        self.conn.send(message)

    def is_alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    def terminate(self) -> None:
        if self.process is not None and self.process.is_alive():
            self.process.terminate()
            self.process.join(timeout=self.join_timeout)
            if self.process.is_alive():
                self.process.kill()
                self.process.join(timeout=self.join_timeout)
        if self.conn is not None:
            self.conn.close()
