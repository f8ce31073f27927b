import asyncio
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from loguru import logger

from support_chat.config import PRESENCE_TTL_SECONDS, REDIS_URL


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        class _Sub:
            async def run(self):
                await asyncio.Future()

            async def cancel(self):
                return

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = PRESENCE_TTL_SECONDS) -> None:
        return

    async def clear_presence(self, user_id: str) -> None:
        return

    async def is_present(self, user_id: str) -> bool:
        return False

    async def close(self) -> None:
        return


class RedisBus:
    """Relays delivery envelopes between processes and mirrors presence as TTL keys."""

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except RedisError as exc:
                        logger.warning(f"Redis subscription on {channel} interrupted: {exc}")
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = PRESENCE_TTL_SECONDS) -> None:
        await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)

    async def clear_presence(self, user_id: str) -> None:
        await self._redis.delete(f"presence:{user_id}")

    async def is_present(self, user_id: str) -> bool:
        ttl = await self._redis.ttl(f"presence:{user_id}")
        return bool(ttl and ttl > 0)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    if not REDIS_URL:
        _bus = NoopBus()
    else:
        _bus = RedisBus(REDIS_URL)
        logger.info("Redis relay enabled for live delivery")
    return _bus


def set_bus(bus: Optional[object]) -> None:
    global _bus
    _bus = bus
