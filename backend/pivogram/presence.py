"""Who is connected, where they are, and when they were last seen.

Entries are keyed by connection. A disconnect only flips the entry offline;
the entry is dropped after a grace window so a quick reconnect does not make
the user blink out of everyone's list.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Awaitable, Callable, Dict
from .schemas import utcnow
from .sessions import Identity

logger = logging.getLogger(__name__)

@dataclass
class PresenceEntry:
    connection_id: str
    identity: Identity
    online: bool = True
    last_seen: datetime = field(default_factory=utcnow)
    room: str | None = None

    def wire(self) -> dict:
        return {
            "id": self.connection_id,
            "username": self.identity.username,
            "currentRoom": self.room,
            "avatarUrl": self.identity.avatar_url,
            "role": self.identity.role,
            "online": self.online,
            "lastSeen": self.last_seen.isoformat(),
        }

class PresenceRegistry:
    def __init__(self, grace_seconds: float = 5.0,
                 on_expire: Callable[[str], Awaitable[None]] | None = None) -> None:
        self.grace_seconds = grace_seconds
        self.on_expire = on_expire
        self.entries: Dict[str, PresenceEntry] = {}
        self._timers: Dict[str, asyncio.Task] = {}

    def register(self, conn_id: str, identity: Identity) -> PresenceEntry:
        # a reconnect supersedes the lingering offline record of the same user
        for stale_id, stale in list(self.entries.items()):
            if stale_id != conn_id and not stale.online and stale.identity.username == identity.username:
                self._drop(stale_id)
        entry = self.entries.get(conn_id)
        if entry is None:
            entry = PresenceEntry(connection_id=conn_id, identity=identity)
            self.entries[conn_id] = entry
        else:
            entry.identity = identity
            entry.online = True
            entry.last_seen = utcnow()
        return entry

    def mark_offline(self, conn_id: str) -> bool:
        entry = self.entries.get(conn_id)
        if entry is None:
            return False
        entry.online = False
        entry.last_seen = utcnow()
        self._cancel_timer(conn_id)
        self._timers[conn_id] = asyncio.get_running_loop().create_task(self._expire_later(conn_id))
        return True

    async def _expire_later(self, conn_id: str) -> None:
        await asyncio.sleep(self.grace_seconds)
        self._timers.pop(conn_id, None)
        if self.on_expire is not None:
            # the owner removes the entry under its own lock
            await self.on_expire(conn_id)
        else:
            self.expire(conn_id)

    def expire(self, conn_id: str) -> bool:
        """Drops the entry if it is still offline. True when something went."""
        entry = self.entries.get(conn_id)
        if entry is None or entry.online:
            return False
        del self.entries[conn_id]
        logger.debug("presence entry for %s (%s) expired", entry.identity.username, conn_id)
        return True

    def set_room(self, conn_id: str, room_id: str | None) -> None:
        entry = self.entries.get(conn_id)
        if entry is not None:
            entry.room = room_id

    def update_avatar(self, username: str, avatar_url: str | None) -> None:
        for entry in self.entries.values():
            if entry.identity.username == username:
                entry.identity = replace(entry.identity, avatar_url=avatar_url)

    def connections_for(self, username: str) -> list[str]:
        return [cid for cid, e in self.entries.items() if e.online and e.identity.username == username]

    def connection_for(self, username: str) -> str | None:
        """Most recently registered live connection of `username`."""
        conns = self.connections_for(username)
        return conns[-1] if conns else None

    def snapshot(self) -> list[dict]:
        return [e.wire() for e in self.entries.values()]

    def _cancel_timer(self, conn_id: str) -> None:
        task = self._timers.pop(conn_id, None)
        if task is not None:
            task.cancel()

    def _drop(self, conn_id: str) -> None:
        self._cancel_timer(conn_id)
        self.entries.pop(conn_id, None)

    def clear(self) -> None:
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
        self.entries.clear()
