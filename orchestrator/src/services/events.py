"""
Lifecycle event bus and Redis pub/sub broadcaster.

The runner and rollback coordinator publish into an in-process queue; the
broadcaster drains it toward Redis channels that dashboards subscribe to.
Delivery is best effort.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import redis.asyncio as redis

from orchestrator.src.config import get_settings

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "pipelinex:events"
PIPELINE_CHANNEL = "pipelinex:pipeline:{pipeline_id}"

class EventBus:
    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def publish(self, event: str, payload: Dict[str, Any], pipeline_id: Optional[int] = None):
        """Queue an event without blocking; drops it if the queue is full."""
        message = {
            "event": event,
            "pipeline_id": pipeline_id,
            "payload": payload,
            "emitted_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping {event} for pipeline {pipeline_id}")

    def drain(self) -> list:
        """Return and remove every queued event."""
        messages = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages

class RedisBroadcaster:
    def __init__(self, bus: EventBus, redis_url: str = None, client: redis.Redis = None):
        self.bus = bus
        self.redis_url = redis_url or get_settings().redis_url
        self._client = client

    async def get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def broadcast(self, message: Dict[str, Any]):
        client = await self.get_client()
        data = json.dumps(message, default=str)

        await client.publish(EVENTS_CHANNEL, data)
        if message.get("pipeline_id") is not None:
            await client.publish(
                PIPELINE_CHANNEL.format(pipeline_id=message["pipeline_id"]), data
            )

    async def run(self):
        """Drain the bus forever."""
        logger.info("Event broadcaster started")
        try:
            while True:
                message = await self.bus.queue.get()
                try:
                    await self.broadcast(message)
                except Exception as e:
                    logger.error(f"Failed to broadcast {message['event']}: {e}")
                finally:
                    self.bus.queue.task_done()
        finally:
            if self._client is not None:
                await self._client.close()
                self._client = None
