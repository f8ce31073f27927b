import asyncio
import json
from typing import Iterable, Optional

from loguru import logger

from support_chat.config import DELIVERY_CHANNEL
from support_chat.utils.realtime_bus import NoopBus
from support_chat.utils.websocket_manager import ConnectionManager


class DeliveryService:
    """Best-effort live fan-out used by the chat service.

    Without a relay, events go straight to the local ``ConnectionManager``.
    With the Redis relay enabled, events are published as envelopes and every
    process applies them to its own connections. Failures are logged and never
    reach the request that triggered them.
    """

    def __init__(self, manager: ConnectionManager, bus=None, channel: str = DELIVERY_CHANNEL) -> None:
        self.manager = manager
        self._bus = bus or NoopBus()
        self._channel = channel
        self._subscriber = None
        self._task: Optional[asyncio.Task] = None

    @property
    def relayed(self) -> bool:
        return bool(getattr(self._bus, "enabled", False))

    async def deliver(self, identities: Iterable[str], event: dict, groups: Iterable[str] = ()) -> None:
        identities = sorted(set(identities))
        groups = sorted(set(groups))
        try:
            if self.relayed:
                envelope = {"identities": identities, "groups": groups, "event": event}
                await self._bus.publish(self._channel, json.dumps(envelope))
            else:
                await self.manager.deliver(identities, event, groups=groups)
        except Exception as exc:
            logger.warning(f"Live delivery of {event.get('type')} to {identities or groups} failed: {exc!r}")

    async def deliver_to_group(self, group: str, event: dict) -> None:
        await self.deliver((), event, groups=[group])

    async def broadcast(self, event: dict) -> None:
        try:
            if self.relayed:
                await self._bus.publish(self._channel, json.dumps({"broadcast": True, "event": event}))
            else:
                await self.manager.broadcast(event)
        except Exception as exc:
            logger.warning(f"Broadcast of {event.get('type')} failed: {exc!r}")

    async def handle_envelope(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
            event = envelope["event"]
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Ignoring malformed delivery envelope: {exc!r}")
            return
        if envelope.get("broadcast"):
            await self.manager.broadcast(event)
        else:
            await self.manager.deliver(envelope.get("identities") or (), event, groups=envelope.get("groups") or ())

    async def start_relay(self) -> None:
        if not self.relayed or self._task is not None:
            return
        self._subscriber = await self._bus.subscribe(self._channel, self.handle_envelope)
        self._task = asyncio.create_task(self._subscriber.run())
        logger.info(f"Listening for relayed deliveries on {self._channel}")

    async def stop_relay(self) -> None:
        if self._subscriber is not None:
            try:
                await self._subscriber.cancel()
            except Exception as exc:
                logger.warning(f"Could not unsubscribe from {self._channel}: {exc!r}")
            self._subscriber = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning(f"Relay on {self._channel} had stopped with an error: {exc!r}")
            self._task = None
