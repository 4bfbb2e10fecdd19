"""Live notification config for one merchant branch."""

import asyncio
import re
from typing import AsyncIterator, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel

from orderbell.common.logging import logger


EMAIL_PATTERN = re.compile(r"^[\w.-]+@[\w.-]+\.\w{2,}$")
TRUE_VALUES = {"1", "true", "yes", "on"}


class NotificationConfig(BaseModel):
    """Config document `{enabled, destination}`.

    Disabled, empty, or malformed destinations all mean "no destination";
    that is a gate, never an error.
    """

    enabled: bool = False
    destination: str | None = None

    @classmethod
    def disabled(cls) -> "NotificationConfig":
        return cls(enabled=False, destination=None)

    @property
    def deliverable_destination(self) -> str | None:
        if not self.enabled or self.destination is None:
            return None
        destination = self.destination.strip()
        if not destination or not EMAIL_PATTERN.match(destination):
            return None
        return destination

    @property
    def available(self) -> bool:
        return self.deliverable_destination is not None


def config_key(merchant_id: str, branch_id: str) -> str:
    return f"notification-config:{merchant_id}:{branch_id}"


def parse_config_hash(values: dict[str, str]) -> NotificationConfig:
    """Parse the Redis hash; `email` is accepted as a legacy name for `destination`."""

    if not values:
        return NotificationConfig.disabled()
    enabled = str(values.get("enabled", "")).strip().lower() in TRUE_VALUES
    destination = values.get("destination") or values.get("email")
    return NotificationConfig(enabled=enabled, destination=destination)


class ConfigSource(Protocol):
    def watch(self) -> AsyncIterator[NotificationConfig]:
        ...


class MemoryConfigSource:
    """In-process config value; every `set()` is pushed to active watchers."""

    def __init__(self, initial: NotificationConfig | None = None) -> None:
        self.current = initial or NotificationConfig.disabled()
        self._watchers: list[asyncio.Queue] = []

    def set(self, config: NotificationConfig) -> None:
        self.current = config
        for queue in self._watchers:
            queue.put_nowait(config)

    async def watch(self) -> AsyncIterator[NotificationConfig]:
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.append(queue)
        try:
            yield self.current
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(queue)


class RedisConfigSource:
    """Config hash in Redis plus a pub/sub channel announcing changes.

    Any message on the channel triggers a re-read of the hash, so publishers
    only need to send a ping after writing.
    """

    def __init__(self, redis_url: str, merchant_id: str, branch_id: str, retry_delay_seconds: float = 2.0) -> None:
        self.redis_url = redis_url
        self.key = config_key(merchant_id, branch_id)
        self.retry_delay_seconds = retry_delay_seconds

    async def _read(self, client) -> NotificationConfig:
        return parse_config_hash(await client.hgetall(self.key))

    async def watch(self) -> AsyncIterator[NotificationConfig]:
        while True:
            client = aioredis.Redis.from_url(self.redis_url, decode_responses=True)
            pubsub = client.pubsub()
            try:
                await pubsub.subscribe(self.key)
                yield await self._read(client)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    yield await self._read(client)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("config_watch_error key=%s error=%s", self.key, exc)
                await asyncio.sleep(self.retry_delay_seconds)
            finally:
                await pubsub.aclose()
                await client.aclose()
