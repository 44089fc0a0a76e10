import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from chatsync.core.config import settings


logger = logging.getLogger(__name__)


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def close(self) -> None:
        return


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def close(self) -> None:
        await self._redis.aclose()


def user_channel(identity: str) -> str:
    return f"user:{identity}"


async def publish_event(bus, identity: str, event: Dict[str, Any]) -> None:
    """Fan an event out to one user's channel; delivery failures are logged only."""
    if not getattr(bus, "enabled", False):
        return
    try:
        await bus.publish(user_channel(identity), json.dumps(event))
    except redis.RedisError as exc:
        logger.warning("Realtime publish to %s failed: %s", identity, exc)


_bus = None


async def get_bus(url: Optional[str] = None):
    global _bus
    if _bus is not None:
        return _bus
    url = url if url is not None else settings.REDIS_URL
    if not url:
        _bus = NoopBus()
        return _bus
    _bus = RedisBus(url)
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None
