from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .app_logging import log_with_fields
from .config import CacheConfig
from .models import JOB_NAMESPACE, Job, JobKey, WorkerState, parse_job_key, sort_list_by_keys

T = TypeVar("T")

WORKER_NAMESPACE = "worker"


class StoreError(RuntimeError):
    pass


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


def worker_status_key(worker_id: str) -> str:
    return f"{WORKER_NAMESPACE}:{worker_id}:status"


def worker_job_key(worker_id: str) -> str:
    return f"{WORKER_NAMESPACE}:{worker_id}:job"


def _worker_id_from_key(key: str) -> str | None:
    parts = key.split(":")
    if len(parts) != 3 or parts[0] != WORKER_NAMESPACE or not parts[1]:
        return None
    return parts[1]


def create_client(cache: CacheConfig) -> aioredis.Redis:
    return aioredis.Redis.from_url(
        cache.url,
        username=cache.username,
        password=cache.password,
        decode_responses=True,
    )


class SharedStore:
    """Key layout and typed access over the shared key-value/pub-sub service.

    Every call goes through ``_call`` so connectivity failures are logged once
    here and surface to the caller as ``StoreError``.
    """

    def __init__(
        self,
        client: Any,
        logger: logging.Logger,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.client = client
        self.logger = logger
        self.client_factory = client_factory

    @classmethod
    async def connect(cls, cache: CacheConfig, logger: logging.Logger) -> SharedStore:
        store = cls(create_client(cache), logger, client_factory=lambda: create_client(cache))
        await store.ping()
        log_with_fields(logger, logging.INFO, "store_connected", location=cache.location)
        return store

    async def duplicate(self) -> SharedStore:
        if self.client_factory is None:
            raise StoreError("store cannot be duplicated without a client factory")
        clone = SharedStore(self.client_factory(), self.logger, client_factory=self.client_factory)
        await clone.ping()
        return clone

    async def close(self) -> None:
        await self._call("close", self.client.aclose())

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "store_error",
                operation=operation,
                error=str(exc),
            )
            raise StoreError(f"{operation} failed: {exc}") from exc

    async def ping(self) -> None:
        await self._call("ping", self.client.ping())

    async def get(self, key: str) -> str | None:
        return await self._call("get", self.client.get(key))

    async def set(self, key: str, value: str | int) -> None:
        await self._call("set", self.client.set(key, value))

    async def keys(self, pattern: str) -> list[str]:
        return list(await self._call("keys", self.client.keys(pattern)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("del", self.client.delete(*keys)))

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        await self._call("publish", self.client.publish(channel, json.dumps(message)))

    async def subscribe(self, channel: str) -> Any:
        pubsub = self.client.pubsub()
        await self._call("subscribe", pubsub.subscribe(channel))
        return pubsub

    async def save_job(self, job: Job) -> None:
        await self.set(job.key, json.dumps(job.to_dict()))

    async def list_job_keys(self) -> list[str]:
        return await self.keys(f"{JOB_NAMESPACE}:*")

    async def get_jobs(self) -> list[JobKey]:
        return sort_list_by_keys(await self.list_job_keys())

    async def find_job_key(self, job_id: str) -> str | None:
        # priority and created_at are unknown to the reader, so match by id prefix
        for key in await self.keys(f"{JOB_NAMESPACE}:{job_id}:*"):
            parsed = parse_job_key(key)
            if parsed is not None and parsed.job_id == job_id:
                return key
        return None

    async def load_job(self, job_id: str) -> Job:
        key = await self.find_job_key(job_id)
        if key is None:
            raise JobNotFoundError(job_id)
        raw = await self.get(key)
        if raw is None:
            raise JobNotFoundError(job_id)
        return Job.from_dict(json.loads(raw), job_id=job_id)

    async def delete_job(self, job_id: str) -> bool:
        key = await self.find_job_key(job_id)
        if key is None:
            return False
        return await self.delete(key) > 0

    async def list_worker_ids(self) -> list[str]:
        keys = await self.keys(worker_status_key("*"))
        worker_ids = {_worker_id_from_key(key) for key in keys}
        return sorted(worker_id for worker_id in worker_ids if worker_id)

    async def get_worker_status(self, worker_id: str) -> WorkerState | None:
        raw = await self.get(worker_status_key(worker_id))
        if raw is None:
            return None
        try:
            return WorkerState(int(raw))
        except ValueError:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "worker_status_invalid",
                worker=worker_id,
                value=raw,
            )
            return None

    async def set_worker_status(self, worker_id: str, status: WorkerState) -> None:
        await self.set(worker_status_key(worker_id), int(status))

    async def get_worker_job(self, worker_id: str) -> str | None:
        raw = await self.get(worker_job_key(worker_id))
        return raw or None

    async def set_worker_job(self, worker_id: str, job_id: str | None) -> None:
        await self.set(worker_job_key(worker_id), job_id or "")

    async def list_claimed_job_ids(self) -> dict[str, str]:
        """Map of job id -> worker id for every job recorded as claimed."""
        claimed: dict[str, str] = {}
        for key in await self.keys(worker_job_key("*")):
            worker_id = _worker_id_from_key(key)
            if worker_id is None:
                continue
            job_id = await self.get(key)
            if job_id:
                claimed[job_id] = worker_id
        return claimed

    async def clear_worker(self, worker_id: str) -> None:
        await self.delete(worker_status_key(worker_id), worker_job_key(worker_id))
