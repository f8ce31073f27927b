import asyncio
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from loguru import logger

from support_chat.config import ADMIN_BROADCAST_GROUP
from support_chat.models.user import Role


class Channel(Protocol):

    async def send_json(self, data: Any) -> None: ...


class ConnectionManager:
    """In-process map of identity -> open channels, plus named groups.

    Nothing here is durable: after a restart the map is rebuilt as clients
    reconnect. Pushes are at-most-once; an identity without channels is skipped.
    """

    def __init__(self, broadcast_group: str = ADMIN_BROADCAST_GROUP) -> None:
        self.broadcast_group = broadcast_group
        self.active_connections: Dict[str, Set[Channel]] = {}
        self.groups: Dict[str, Set[Channel]] = {}
        # identities a failed push took offline; reported by the next unregister
        self._dropped_offline: Set[str] = set()
        self._lock = asyncio.Lock()

    async def register(self, identity: str, role: Role, channel: Channel) -> bool:
        """Returns True when this is the identity's first open channel."""
        async with self._lock:
            channels = self.active_connections.setdefault(identity, set())
            first = not channels
            self._dropped_offline.discard(identity)
            channels.add(channel)
            if Role(role) is Role.ADMIN:
                self.groups.setdefault(self.broadcast_group, set()).add(channel)
        logger.debug(f"Registered channel for {identity} ({role}); first={first}")
        return first

    async def unregister(self, identity: str, channel: Channel) -> bool:
        """Returns True when the identity has no channel left. Safe to call twice.

        If a failed push already dropped the identity's last channel, the first
        unregister afterwards still reports it as gone offline.
        """
        async with self._lock:
            if self._discard(identity, channel) is not None:
                return True
            if identity in self._dropped_offline and not self.active_connections.get(identity):
                self._dropped_offline.discard(identity)
                return True
            return False

    async def join(self, group: str, channel: Channel) -> None:
        async with self._lock:
            self.groups.setdefault(group, set()).add(channel)

    async def leave(self, group: str, channel: Channel) -> None:
        async with self._lock:
            members = self.groups.get(group)
            if members is not None:
                members.discard(channel)
                if not members:
                    del self.groups[group]

    async def deliver(self, identities: Iterable[str], event: dict, groups: Iterable[str] = ()) -> int:
        """Push ``event`` once per open channel of the given identities and groups."""
        async with self._lock:
            targets: Dict[int, tuple] = {}
            for identity in set(identities):
                for channel in self.active_connections.get(identity, ()):
                    targets.setdefault(id(channel), (identity, channel))
            for group in set(groups):
                for channel in self.groups.get(group, ()):
                    targets.setdefault(id(channel), (None, channel))
        return await self._push(list(targets.values()), event)

    async def deliver_to_group(self, group: str, event: dict) -> int:
        return await self.deliver((), event, groups=[group])

    async def broadcast(self, event: dict) -> int:
        async with self._lock:
            identities = list(self.active_connections)
        return await self.deliver(identities, event)

    async def is_online(self, identity: str) -> bool:
        async with self._lock:
            return bool(self.active_connections.get(identity))

    async def online_identities(self) -> List[str]:
        async with self._lock:
            return sorted(identity for identity, channels in self.active_connections.items() if channels)

    async def _push(self, targets: List[tuple], event: dict) -> int:
        delivered = 0
        dead = []
        for identity, channel in targets:
            try:
                await channel.send_json(event)
                delivered += 1
            except Exception as exc:
                logger.warning(f"Dropping channel after failed push of {event.get('type')}: {exc!r}")
                dead.append((identity, channel))
        if dead:
            async with self._lock:
                for identity, channel in dead:
                    gone = self._discard(identity, channel)
                    if gone is not None:
                        self._dropped_offline.add(gone)
        return delivered

    def _discard(self, identity, channel: Channel) -> Optional[str]:
        """Remove ``channel`` everywhere; returns the identity it took offline, if any."""
        went_offline = None
        if identity is None:
            identity = next((i for i, chans in self.active_connections.items() if channel in chans), None)
        if identity is not None and identity in self.active_connections:
            self.active_connections[identity].discard(channel)
            if not self.active_connections[identity]:
                del self.active_connections[identity]
                went_offline = identity
        for group in list(self.groups):
            self.groups[group].discard(channel)
            if not self.groups[group]:
                del self.groups[group]
        return went_offline
