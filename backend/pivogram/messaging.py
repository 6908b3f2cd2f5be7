import logging
from .history import HistoryStore, direct_partition, room_partition
from .presence import PresenceRegistry
from .rooms import RoomIndex
from .schemas import ChatMessage, ReplyRef, utcnow
from .sessions import Identity
from .transport import WebSocketHub

logger = logging.getLogger(__name__)

class MessageRouter:
    """Builds messages, persists them, then fans them out.

    Room traffic goes to the room's members; direct traffic goes to both
    parties' live connections. Each notification is sent only after the
    history write for its partition finished, so per-partition order holds.
    """

    def __init__(self, history: HistoryStore, rooms: RoomIndex, presence: PresenceRegistry,
                 hub: WebSocketHub) -> None:
        self.history = history
        self.rooms = rooms
        self.presence = presence
        self.hub = hub

    def _build(self, author: Identity, body: str, attachment: str | None,
               reply: ReplyRef | None, **scope) -> ChatMessage:
        return ChatMessage(
            id=self.history.next_message_id(),
            username=author.username,
            message=body,
            image_url=attachment,
            avatar_url=author.avatar_url,
            role=author.role,
            timestamp=utcnow(),
            reply_to_id=reply.target_message_id if reply else None,
            reply_to_username=reply.target_author if reply else None,
            reply_to_snippet=reply.snippet if reply else None,
            **scope,
        )

    def _direct_audience(self, author: str, target: str, origin: str | None) -> list[str]:
        audience = [origin] if origin else []
        audience += self.presence.connections_for(author) + self.presence.connections_for(target)
        return list(dict.fromkeys(audience))

    async def post_room(self, author: Identity, room_id: str, body: str = "",
                        attachment: str | None = None, reply: ReplyRef | None = None) -> ChatMessage | None:
        if not body and not attachment:
            return None
        message = self._build(author, body, attachment, reply, room_id=room_id)
        await self.history.append_room(room_id, message)
        await self.hub.broadcast(self.rooms.members(room_id), "new-message", message.wire())
        return message

    async def post_direct(self, author: Identity, target: str, body: str = "",
                          attachment: str | None = None, reply: ReplyRef | None = None,
                          origin: str | None = None) -> ChatMessage | None:
        """`origin` is the sending connection; it gets the echo even before
        its user registered presence."""
        target = target.strip()
        if not target or "|" in target or (not body and not attachment):
            return None
        message = self._build(author, body, attachment, reply, to=target)
        await self.history.append_direct(author.username, target, message)
        await self.hub.broadcast(self._direct_audience(author.username, target, origin),
                                 "private-message", message.wire())
        return message

    def recent_direct(self, username: str, other: str, limit: int) -> list[ChatMessage]:
        return self.history.recent_direct(username, other, limit)

    async def edit(self, author: Identity, message_id: int, new_body: str, *,
                   room_id: str | None = None, with_user: str | None = None,
                   origin: str | None = None) -> ChatMessage | None:
        """Edits one of the author's own messages in a room or a direct thread.

        Exactly one of `room_id` / `with_user` names the scope. A missing
        message and someone else's message look the same: nothing happens.
        """
        if (room_id is None) == (with_user is None):
            raise ValueError("edit needs exactly one of room_id or with_user")
        if room_id is not None:
            updated = await self.history.update_message(room_partition(room_id), message_id,
                                                        author.username, new_body)
            if updated is None:
                logger.debug("edit of %s in room %s by %s dropped", message_id, room_id, author.username)
                return None
            await self.hub.broadcast(self.rooms.members(room_id), "message-edited", {
                "messageId": updated.id,
                "newMessage": updated.message,
                "edited": True,
                "editedAt": updated.edited_at.isoformat(),
                "roomId": room_id,
            })
            return updated

        updated = await self.history.update_message(direct_partition(author.username, with_user), message_id,
                                                    author.username, new_body)
        if updated is None:
            logger.debug("direct edit of %s by %s dropped", message_id, author.username)
            return None
        await self.hub.broadcast(self._direct_audience(author.username, with_user, origin),
                                 "private-message-edited", {
            "messageId": updated.id,
            "newMessage": updated.message,
            "edited": True,
            "editedAt": updated.edited_at.isoformat(),
            "otherUser": with_user,
        })
        return updated
