"""
RedisBus — Redis Streams implementation of EventBus.

    - One stream per event type: plm:{event_type}, capped at MAX_STREAM_LEN
    - One consumer group per subscriber group
    - At-least-once delivery via XREADGROUP + XACK
    - A message whose handler fails MAX_RETRIES times is copied to
      plm:dead_letter and acknowledged
    - publish() retries PUBLISH_RETRIES times on connection errors
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from datetime import datetime, timezone

import orjson
import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from bus.base import EventBus, EventHandler
from bus.events import Event

logger = logging.getLogger("plm.bus.redis")

STREAM_PREFIX   = "plm"
DLQ_STREAM      = "plm:dead_letter"
MAX_STREAM_LEN  = 10_000
POLL_BLOCK_MS   = 1_000
BATCH_SIZE      = 10
MAX_RETRIES     = 3
PUBLISH_RETRIES = 3


def _stream_key(event_type: str) -> str:
    return f"{STREAM_PREFIX}:{event_type}"


def _serialize(event: Event) -> bytes:
    # Decimal payload values fall back to their string form.
    return orjson.dumps(event.to_dict(), default=str)


def _deserialize(raw: str | bytes) -> Event:
    return Event.from_dict(orjson.loads(raw))


class RedisBus(EventBus):
    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._redis: Redis | None = None
        self._subscriptions: dict[tuple[str, str], EventHandler] = {}
        self._attempts: dict[tuple[str, str], int] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._consumer = f"{socket.gethostname()}:{os.getpid()}"

    # ── EventBus interface ────────────────────────────────────────────────────

    async def publish(self, event: Event) -> None:
        data = _serialize(event)
        for attempt in range(1, PUBLISH_RETRIES + 1):
            try:
                r = await self._get_redis()
                await r.xadd(
                    _stream_key(event.event_type),
                    {"event_json": data},
                    maxlen=MAX_STREAM_LEN,
                    approximate=True,
                )
                return
            except (aioredis.ConnectionError, aioredis.TimeoutError) as exc:
                logger.warning("publish attempt %d/%d failed: %s", attempt, PUBLISH_RETRIES, exc)
                self._redis = None
                if attempt == PUBLISH_RETRIES:
                    raise
                await asyncio.sleep(attempt)

    async def subscribe(self, event_type: str, group: str, handler: EventHandler) -> None:
        self._subscriptions[(event_type, group)] = handler

    async def start(self) -> None:
        self._running = True
        r = await self._get_redis()
        for event_type, group in self._subscriptions:
            try:
                await r.xgroup_create(_stream_key(event_type), group, id="$", mkstream=True)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise
            self._tasks.append(asyncio.create_task(
                self._poll(event_type, group), name=f"plm-bus-{event_type}-{group}",
            ))
        logger.info("RedisBus started with %d subscription(s)", len(self._subscriptions))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def _poll(self, event_type: str, group: str) -> None:
        stream  = _stream_key(event_type)
        handler = self._subscriptions[(event_type, group)]
        backoff = 1
        while self._running:
            try:
                r = await self._get_redis()
                results = await r.xreadgroup(
                    groupname=group,
                    consumername=f"{group}:{self._consumer}",
                    streams={stream: ">"},
                    count=BATCH_SIZE,
                    block=POLL_BLOCK_MS,
                )
                backoff = 1
                for _stream, messages in results or []:
                    for msg_id, fields in messages:
                        await self._dispatch(r, stream, group, msg_id, fields, handler)
            except asyncio.CancelledError:
                return
            except (aioredis.ConnectionError, aioredis.TimeoutError) as exc:
                logger.warning("redis poll error on %s/%s: %s; retry in %ds", stream, group, exc, backoff)
                self._redis = None
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)

    async def _dispatch(
        self,
        r: Redis,
        stream: str,
        group: str,
        msg_id: str,
        fields: dict[str, str],
        handler: EventHandler,
    ) -> None:
        raw = fields.get("event_json")
        if not raw:
            await r.xack(stream, group, msg_id)
            return

        key = (stream, msg_id)
        attempt = self._attempts.get(key, 0) + 1
        self._attempts[key] = attempt
        try:
            await handler(_deserialize(raw))
        except Exception as exc:
            logger.error(
                "handler failed for %s on %s (attempt %d/%d): %s",
                msg_id, stream, attempt, MAX_RETRIES, exc, exc_info=True,
            )
            if attempt < MAX_RETRIES:
                return
            await r.xadd(DLQ_STREAM, {
                "original_stream":     stream,
                "original_message_id": msg_id,
                "event_json":          raw,
                "error_type":          type(exc).__name__,
                "error_message":       str(exc),
                "failed_at_utc":       datetime.now(timezone.utc).isoformat(),
            })
        await r.xack(stream, group, msg_id)
        self._attempts.pop(key, None)
