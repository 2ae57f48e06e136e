from __future__ import annotations

import asyncio
import unittest
from typing import Any

import httpx

from fakes import FakeBackend, FakeRedis, quiet_logger, wait_for
from relaybot.backends import BackendError, OllamaClient
from relaybot.config import LLMClientConfig
from relaybot.models import Job, WorkerState
from relaybot.notify import FAILURE_TEXT
from relaybot.store import SharedStore
from relaybot.worker import WorkerRuntime


def chat_job(text: str = "hello", **reply_to: str) -> Job:
    return Job(
        data={
            "action": "chat",
            "payload": {"messages": [{"role": "user", "content": text}]},
            "reply_to": reply_to,
        },
        engine="local",
    )


class WorkerRuntimeTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.redis = FakeRedis()
        self.store = SharedStore(self.redis, quiet_logger())
        self.backend = FakeBackend()
        self.sent: list[dict[str, Any]] = []
        self.runtime = WorkerRuntime(
            "w1",
            self.store,
            {"local": self.backend},
            self.sent.append,
            quiet_logger(),
        )

    def actions(self) -> list[str]:
        return [message["action"] for message in self.sent]

    async def serve(self) -> tuple[asyncio.Queue, asyncio.Task]:
        inbox: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self.runtime.serve(inbox))
        self.addAsyncCleanup(self._stop, inbox, task)
        return inbox, task

    async def _stop(self, inbox: asyncio.Queue, task: asyncio.Task) -> None:
        inbox.put_nowait(None)
        await asyncio.wait_for(task, timeout=2)

    async def test_fresh_start_reports_ready_and_idle(self) -> None:
        self.assertEqual(self.runtime.state, WorkerState.INITIALIZING)
        await self.runtime.start()
        self.assertEqual(self.actions(), ["response:ready"])
        self.assertEqual(self.redis.data["worker:w1:status"], str(int(WorkerState.IDLE)))
        self.assertEqual(self.redis.data["worker:w1:job"], "")

    async def test_dispatched_job_runs_and_completes(self) -> None:
        job = chat_job("ping", channel_id="c1", message_id="m1")
        await self.store.save_job(job)
        inbox, _ = await self.serve()

        inbox.put_nowait({"id": job.job_id})
        await wait_for(lambda: "response:complete" in self.actions())

        self.assertEqual(self.backend.calls, [("chat", job.payload)])
        self.assertEqual(self.sent[-1], {"action": "response:complete", "job": job.job_id})
        events = self.redis.events()
        self.assertEqual(events[0], {"type": "send:typing", "channelId": "c1"})
        self.assertEqual(events[1]["type"], "reply:message")
        self.assertEqual(events[1]["messageId"], "m1")
        self.assertEqual(events[1]["content"], "echo: ping")
        self.assertEqual(await self.store.get_worker_status("w1"), WorkerState.IDLE)
        self.assertIsNone(await self.store.get_worker_job("w1"))
        # deleting the job record is the pool's job
        self.assertIn(job.key, self.redis.data)

    async def test_claim_is_persisted_before_backend_call(self) -> None:
        job = chat_job()
        await self.store.save_job(job)
        seen: dict[str, str | None] = {}

        def capture(action: str, request: dict[str, Any]) -> None:
            seen["status"] = self.redis.data.get("worker:w1:status")
            seen["job"] = self.redis.data.get("worker:w1:job")

        self.backend.on_call = capture
        await self.runtime.start()
        await self.runtime.accept_job(job.job_id)

        self.assertEqual(seen, {"status": str(int(WorkerState.BUSY)), "job": job.job_id})

    async def test_resumes_claimed_job_on_restart(self) -> None:
        job = chat_job("resume me")
        await self.store.save_job(job)
        await self.store.set_worker_status("w1", WorkerState.BUSY)
        await self.store.set_worker_job("w1", job.job_id)

        await self.serve()
        await wait_for(lambda: "response:complete" in self.actions())

        self.assertEqual(self.actions()[0], "response:ready")
        self.assertEqual(self.backend.calls, [("chat", job.payload)])
        self.assertEqual(self.sent[-1]["job"], job.job_id)
        self.assertEqual(await self.store.get_worker_status("w1"), WorkerState.IDLE)

    async def test_busy_without_job_resets_to_idle(self) -> None:
        await self.store.set_worker_status("w1", WorkerState.BUSY)

        with self.assertLogs("test_relaybot", level="ERROR") as captured:
            resume = await self.runtime.recover()

        self.assertIsNone(resume)
        self.assertIn("worker_busy_without_job", captured.output[0])
        self.assertEqual(await self.store.get_worker_status("w1"), WorkerState.IDLE)
        self.assertEqual(self.backend.calls, [])

    async def test_missing_job_is_reported_and_worker_returns_to_idle(self) -> None:
        await self.runtime.start()
        await self.runtime.accept_job("does-not-exist")

        self.assertEqual(self.sent[-1]["action"], "response:error")
        self.assertEqual(self.sent[-1]["job"], "does-not-exist")
        self.assertIn("job not found", self.sent[-1]["message"])
        self.assertEqual(self.runtime.state, WorkerState.IDLE)
        self.assertEqual(await self.store.get_worker_status("w1"), WorkerState.IDLE)
        self.assertIsNone(await self.store.get_worker_job("w1"))

    async def test_backend_failure_sends_generic_notice(self) -> None:
        job = chat_job(channel_id="c9")
        await self.store.save_job(job)
        self.backend.error = BackendError("HTTP 502: Bad Gateway")

        await self.runtime.start()
        completed = await self.runtime.process_job(job.job_id)

        self.assertFalse(completed)
        self.assertEqual(self.sent[-1], {"action": "response:error", "job": job.job_id, "message": "HTTP 502: Bad Gateway"})
        notice = self.redis.events()[-1]
        self.assertEqual(notice["content"], FAILURE_TEXT)
        self.assertTrue(notice["error"])
        self.assertEqual(await self.store.get_worker_status("w1"), WorkerState.IDLE)

    async def test_unconfigured_engine_fails_job(self) -> None:
        job = Job(data={"action": "generate", "payload": {"prompt": "x"}}, engine="missing")
        await self.store.save_job(job)
        await self.runtime.start()

        self.assertFalse(await self.runtime.process_job(job.job_id))
        self.assertIn("no usable backend", self.sent[-1]["message"])

    async def test_generate_and_embed_route_to_backend(self) -> None:
        generate = Job(data={"action": "generate", "payload": {"prompt": "p"}, "reply_to": {"user_id": "u1"}}, engine="local")
        embed = Job(data={"action": "embed", "payload": {"input": "e"}, "reply_to": {"user_id": "u1"}}, engine="local")
        await self.store.save_job(generate)
        await self.store.save_job(embed)
        await self.runtime.start()

        self.assertTrue(await self.runtime.process_job(generate.job_id))
        self.assertTrue(await self.runtime.process_job(embed.job_id))

        self.assertEqual([call[0] for call in self.backend.calls], ["generate", "embed"])
        events = self.redis.events()
        self.assertEqual(events[0]["type"], "send:user")
        self.assertEqual(events[0]["content"], "generated: p")
        self.assertEqual(events[1]["result"]["embeddings"], [[0.1, 0.2]])

    async def test_startup_persists_initializing_before_idle(self) -> None:
        await self.runtime.start()

        statuses = [value for key, value in self.redis.writes if key == "worker:w1:status"]
        self.assertEqual(statuses, [str(int(WorkerState.INITIALIZING)), str(int(WorkerState.IDLE))])

    async def test_claim_writes_job_id_before_busy(self) -> None:
        job = chat_job()
        await self.store.save_job(job)
        await self.runtime.start()
        self.redis.writes.clear()

        await self.runtime.accept_job(job.job_id)

        self.assertEqual(
            self.redis.writes[:2],
            [("worker:w1:job", job.job_id), ("worker:w1:status", str(int(WorkerState.BUSY)))],
        )

    async def test_claim_failure_releases_job_without_dropping_it(self) -> None:
        job = chat_job(channel_id="c1")
        await self.store.save_job(job)
        await self.runtime.start()
        self.redis.fail = True

        await self.runtime.accept_job(job.job_id)

        self.assertEqual(self.sent[-1]["action"], "response:release")
        self.assertEqual(self.sent[-1]["job"], job.job_id)
        self.assertEqual(self.runtime.state, WorkerState.IDLE)
        self.assertEqual(self.backend.calls, [])
        self.redis.fail = False
        self.assertIn(job.key, self.redis.data)

    async def test_malformed_payload_fails_job_and_keeps_worker(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"message": {"content": "unused"}})

        client = OllamaClient(
            LLMClientConfig(engine="ollama", base_url="http://ollama.test", model="llama3.2"),
            quiet_logger(),
            transport=httpx.MockTransport(handler),
        )
        self.addAsyncCleanup(client.aclose)
        self.runtime.clients = {"local": client}
        job = Job(
            data={"action": "chat", "payload": {"messages": "hello"}, "reply_to": {"channel_id": "c1"}},
            engine="local",
        )
        await self.store.save_job(job)
        await self.runtime.start()

        await self.runtime.accept_job(job.job_id)

        self.assertEqual(requests, [])
        self.assertEqual(self.sent[-1]["action"], "response:error")
        self.assertIn("messages", self.sent[-1]["message"])
        self.assertEqual(self.redis.events()[-1]["content"], FAILURE_TEXT)
        self.assertEqual(await self.store.get_worker_status("w1"), WorkerState.IDLE)
        self.assertIsNone(await self.store.get_worker_job("w1"))

    async def test_record_of_wrong_shape_fails_job(self) -> None:
        self.redis.data["job:odd:0:1"] = "[1, 2]"
        await self.runtime.start()

        self.assertFalse(await self.runtime.process_job("odd"))
        self.assertEqual(self.sent[-1]["action"], "response:error")
        self.assertEqual(self.runtime.state, WorkerState.IDLE)

    async def test_status_and_unknown_messages(self) -> None:
        await self.runtime.start()
        await self.runtime.handle_message({"action": "status"})
        await self.runtime.handle_message({"action": "dance"})

        self.assertEqual(self.sent[1], {"action": "response:status", "state": int(WorkerState.IDLE)})
        self.assertEqual(self.sent[2]["action"], "response:unknown")
        self.assertEqual(self.sent[2]["payload"], {"action": "dance"})

    async def test_terminate_while_idle(self) -> None:
        await self.runtime.start()
        await self.runtime.handle_message({"action": "terminate"})

        self.assertEqual(self.sent[-1], {"action": "response:terminate"})
        self.assertTrue(self.runtime.done.is_set())
        self.assertEqual(await self.store.get_worker_status("w1"), WorkerState.TERMINATING)

    async def test_terminate_job_completes_then_leaves(self) -> None:
        job = Job(data={"action": "terminate"}, engine="local")
        await self.store.save_job(job)
        inbox, task = await self.serve()

        inbox.put_nowait({"id": job.job_id})
        await asyncio.wait_for(task, timeout=2)

        self.assertEqual(self.actions(), ["response:ready", "response:complete", "response:terminate"])
        self.assertEqual(self.backend.calls, [])


if __name__ == "__main__":
    unittest.main()
