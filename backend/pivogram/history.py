"""Capped message history per room and per direct conversation.

The in-memory map is the source of truth; every mutation is mirrored into
the `messages` table before the caller gets control back, one writer per
partition at a time.
"""
import asyncio
import json
import logging
import time
from collections import defaultdict, deque
from pathlib import Path
from typing import Deque, Dict, Tuple
from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from .models import StoredMessage
from .schemas import ChatMessage, utcnow

logger = logging.getLogger(__name__)

HISTORY_FORMAT = 2
ROOM = "room"
DM = "dm"

Partition = Tuple[str, str]

def dm_key(a: str, b: str) -> str:
    return "|".join(sorted([str(a or "").strip(), str(b or "").strip()]))

def room_partition(room_id: str) -> Partition:
    return (ROOM, str(room_id))

def direct_partition(a: str, b: str) -> Partition:
    return (DM, dm_key(a, b))

class HistoryStore:
    def __init__(self, session_factory: async_sessionmaker | None, max_history: int = 500) -> None:
        self.session_factory = session_factory
        self.max_history = max_history
        self.partitions: Dict[Partition, Deque[ChatMessage]] = {}
        self._locks: Dict[Partition, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_id = 0

    def next_message_id(self) -> int:
        self._last_id = max(int(time.time() * 1000), self._last_id + 1)
        return self._last_id

    def _partition(self, partition: Partition) -> Deque[ChatMessage]:
        if partition not in self.partitions:
            self.partitions[partition] = deque(maxlen=self.max_history)
        return self.partitions[partition]

    # ---------------------- reads ----------------------
    def recent(self, room_id: str, limit: int) -> list[ChatMessage]:
        return self._recent(room_partition(room_id), limit)

    def recent_direct(self, a: str, b: str, limit: int) -> list[ChatMessage]:
        return self._recent(direct_partition(a, b), limit)

    def _recent(self, partition: Partition, limit: int) -> list[ChatMessage]:
        entries = self.partitions.get(partition)
        if not entries or limit <= 0:
            return []
        return list(entries)[-limit:]

    # ---------------------- writes ----------------------
    async def append_room(self, room_id: str, message: ChatMessage) -> None:
        await self.append(room_partition(room_id), message)

    async def append_direct(self, a: str, b: str, message: ChatMessage) -> None:
        await self.append(direct_partition(a, b), message)

    async def append(self, partition: Partition, message: ChatMessage) -> None:
        self._partition(partition).append(message)
        self._last_id = max(self._last_id, message.id)
        async with self._locks[partition]:
            await self._persist_append(partition, message)

    async def update_message(self, partition: Partition, message_id: int, author: str,
                             new_body: str) -> ChatMessage | None:
        """Edits in place. Unknown id and foreign author both return None."""
        entries = self.partitions.get(partition) or ()
        target = next((m for m in entries if m.id == message_id and m.username == author), None)
        if target is None:
            return None
        target.message = new_body
        target.edited = True
        target.edited_at = utcnow()
        async with self._locks[partition]:
            await self._persist_update(partition, target)
        return target

    async def _persist_append(self, partition: Partition, message: ChatMessage) -> None:
        if self.session_factory is None:
            return
        kind, key = partition
        try:
            async with self.session_factory() as db:
                db.add(StoredMessage(kind=kind, key=key, message_id=message.id, author=message.username,
                                     format=HISTORY_FORMAT, payload=message.wire()))
                await db.flush()
                res = await db.execute(
                    select(StoredMessage.id)
                    .where(StoredMessage.kind == kind, StoredMessage.key == key)
                    .order_by(StoredMessage.id.desc())
                    .offset(self.max_history - 1)
                    .limit(1)
                )
                cutoff = res.scalar_one_or_none()
                if cutoff is not None:
                    await db.execute(delete(StoredMessage).where(
                        StoredMessage.kind == kind, StoredMessage.key == key, StoredMessage.id < cutoff))
                await db.commit()
        except SQLAlchemyError:
            logger.exception("failed to persist message %s to %s:%s", message.id, kind, key)

    async def _persist_update(self, partition: Partition, message: ChatMessage) -> None:
        if self.session_factory is None:
            return
        kind, key = partition
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(StoredMessage)
                    .where(StoredMessage.kind == kind, StoredMessage.key == key,
                           StoredMessage.message_id == message.id)
                    .values(payload=message.wire(), format=HISTORY_FORMAT)
                )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("failed to persist edit of %s in %s:%s", message.id, kind, key)

    # ---------------------- startup ----------------------
    async def load(self) -> int:
        """Rebuilds the in-memory map from the table. Returns the entry count."""
        self.partitions.clear()
        if self.session_factory is None:
            return 0
        count = 0
        async with self.session_factory() as db:
            res = await db.execute(select(StoredMessage).order_by(StoredMessage.id))
            for row in res.scalars():
                if row.format > HISTORY_FORMAT:
                    logger.warning("skipping message %s with unknown format %s", row.message_id, row.format)
                    continue
                try:
                    message = ChatMessage.model_validate(row.payload)
                except ValidationError:
                    logger.warning("skipping unreadable message %s in %s:%s", row.message_id, row.kind, row.key)
                    continue
                self._partition((row.kind, row.key)).append(message)
                self._last_id = max(self._last_id, message.id)
                count += 1
        logger.info("loaded %d message(s) in %d partition(s)", count, len(self.partitions))
        return count

    async def import_legacy(self, path: str | Path) -> int:
        """Imports an older JSON history file when the store is still empty.

        Two layouts exist: a bare `{roomId: [message, ...]}` object (rooms only)
        and `{"__format": "v2", "rooms": {...}, "dms": {...}}`.
        """
        path = Path(path)
        if self.partitions or not path.exists():
            return 0
        try:
            parsed = json.loads(path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            logger.exception("failed to read legacy history file %s", path)
            return 0
        if not isinstance(parsed, dict):
            return 0
        if "rooms" in parsed or "dms" in parsed:
            sources = [(ROOM, parsed.get("rooms") or {}), (DM, parsed.get("dms") or {})]
        else:
            sources = [(ROOM, parsed)]
        count = 0
        for kind, bucket in sources:
            for key, items in bucket.items():
                if not isinstance(items, list):
                    continue
                if kind == DM and "|" in key:
                    # older files sorted the pair case-insensitively
                    key = dm_key(*key.split("|", 1))
                for raw in items[-self.max_history:]:
                    try:
                        message = ChatMessage.model_validate(raw)
                    except ValidationError:
                        continue
                    await self.append((kind, str(key)), message)
                    count += 1
        logger.info("imported %d legacy message(s) from %s", count, path)
        return count

    def clear(self) -> None:
        self.partitions.clear()
        self._locks.clear()
