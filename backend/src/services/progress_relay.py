"""Cross-process progress relay over Redis pub/sub.

Celery workers publish progress messages; the API process runs a relay that
re-broadcasts them on its local ``ProgressHub`` where websocket clients are
joined. Delivery is fire-and-forget, like the hub itself.
"""

import asyncio
import json
import logging
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from src.services.progress import build_progress_message
from src.services.progress_hub import ProgressHub

logger = logging.getLogger(__name__)


class RedisProgressPublisher:
    """Progress sink that publishes to a Redis pub/sub channel."""

    def __init__(
        self,
        client: aioredis.Redis,
        pubsub_channel: str,
        channel: str,
        event: str,
        key: str,
        value: str,
    ):
        self._redis = client
        self._pubsub_channel = pubsub_channel
        self._channel = channel
        self._event = event
        self._key = key
        self._value = value

    async def report(self, progress: int, status: str) -> None:
        payload = {
            "channel": self._channel,
            "event": self._event,
            "data": build_progress_message(self._key, self._value, progress, status),
        }
        try:
            await self._redis.publish(self._pubsub_channel, json.dumps(payload))
        except RedisError as e:
            logger.warning(f"Failed to publish progress for {self._channel}: {e}")


class RedisProgressRelay:
    """Forwards published progress messages into a local hub."""

    def __init__(self, client: aioredis.Redis, pubsub_channel: str, hub: ProgressHub):
        self._redis = client
        self._pubsub_channel = pubsub_channel
        self._hub = hub
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="progress-relay")
            logger.info(f"Progress relay listening on {self._pubsub_channel}")

    async def _run(self) -> None:
        retry_delay = 1.0
        while True:
            try:
                async with self._redis.pubsub() as pubsub:
                    await pubsub.subscribe(self._pubsub_channel)
                    retry_delay = 1.0
                    async for message in pubsub.listen():
                        if message.get("type") != "message":
                            continue
                        await self.forward(message["data"])
            except RedisError as e:
                logger.warning(f"Progress relay disconnected: {e}. Reconnecting in {retry_delay}s")
                await asyncio.sleep(retry_delay)
                retry_delay = min(retry_delay * 2, 30.0)

    async def forward(self, raw: str | bytes) -> None:
        """Re-broadcast one published payload on the local hub."""
        try:
            payload: dict[str, Any] = json.loads(raw)
            await self._hub.broadcast(payload["channel"], payload["event"], payload["data"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed progress message: {e}")

    async def shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
