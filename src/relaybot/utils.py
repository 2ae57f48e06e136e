from __future__ import annotations

import time
import uuid


def now_ms() -> int:
    return int(time.time() * 1000)


def new_job_id() -> str:
    return str(uuid.uuid4())


def new_worker_id() -> str:
    return uuid.uuid4().hex[:12]
