from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .app_logging import log_with_fields
from .store import SharedStore

MAX_MESSAGE_LENGTH = 2000
FAILURE_TEXT = "Sorry, I encountered an error processing your message."

SEND_CHANNEL = "send:channel"
SEND_USER = "send:user"
REPLY_MESSAGE = "reply:message"
SEND_TYPING = "send:typing"

# announces newly persisted jobs to a running pool
JOBS_CHANNEL = "relaybot:jobs"


def chunk_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current.strip():
            chunks.append(current.strip())
        current = ""

    for line in text.split("\n"):
        if len(line) <= max_length:
            candidate = f"{current}\n{line}" if current else line
            if len(candidate) > max_length:
                flush()
                current = line
            else:
                current = candidate
            continue

        flush()
        for word in line.split(" "):
            while len(word) > max_length:
                flush()
                chunks.append(word[:max_length])
                word = word[max_length:]
            candidate = f"{current} {word}" if current else word
            if len(candidate) > max_length:
                flush()
                current = word
            else:
                current = candidate
    flush()
    return chunks


def route_fields(reply_to: dict[str, Any]) -> dict[str, Any] | None:
    """Pick the event type and addressing fields for a requester."""
    channel_id = reply_to.get("channel_id")
    message_id = reply_to.get("message_id")
    user_id = reply_to.get("user_id")
    if message_id and channel_id:
        return {"type": REPLY_MESSAGE, "channelId": str(channel_id), "messageId": str(message_id)}
    if channel_id:
        return {"type": SEND_CHANNEL, "channelId": str(channel_id)}
    if user_id:
        return {"type": SEND_USER, "userId": str(user_id)}
    return None


def result_events(job_id: str, reply_to: dict[str, Any], content: str, result: Any = None) -> list[dict[str, Any]]:
    route = route_fields(reply_to)
    if route is None:
        return []
    events = []
    for index, chunk in enumerate(chunk_message(content) if content else [""]):
        event = {**route, "jobId": job_id, "content": chunk}
        if index == 0 and result is not None:
            event["result"] = result
        events.append(event)
    return events


def failure_event(job_id: str, reply_to: dict[str, Any]) -> dict[str, Any] | None:
    route = route_fields(reply_to)
    if route is None:
        return None
    return {**route, "jobId": job_id, "content": FAILURE_TEXT, "error": True}


def typing_event(reply_to: dict[str, Any]) -> dict[str, Any] | None:
    channel_id = reply_to.get("channel_id")
    if not channel_id:
        return None
    return {"type": SEND_TYPING, "channelId": str(channel_id)}


async def listen(
    store: SharedStore,
    channel: str,
    handler: Callable[[dict[str, Any]], Awaitable[None] | None],
) -> None:
    """Deliver every event published on ``channel`` to ``handler`` until cancelled."""
    subscriber = await store.duplicate()
    pubsub = await subscriber.subscribe(channel)
    try:
        log_with_fields(store.logger, logging.INFO, "notify_subscribed", channel=channel)
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                event = json.loads(message["data"])
            except (TypeError, ValueError):
                log_with_fields(
                    store.logger,
                    logging.WARNING,
                    "notify_event_invalid",
                    channel=channel,
                    data=str(message.get("data"))[:200],
                )
                continue
            outcome = handler(event)
            if outcome is not None:
                await outcome
    finally:
        await pubsub.aclose()
        await subscriber.close()
