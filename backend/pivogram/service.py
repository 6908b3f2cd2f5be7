"""The chat core: one object owning sessions, presence, rooms, history and calls.

Every inbound event runs to completion under `self.lock` before the next one
starts. Handlers never raise; bad input is logged and dropped.
"""
import asyncio
import logging
import uuid
from functools import partial
from typing import Any, Awaitable, Callable, Dict
from fastapi import WebSocket
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from .calls import SIGNAL_FIELDS, CallCoordinator
from .config import Settings
from .history import HistoryStore
from .messaging import MessageRouter
from .presence import PresenceRegistry
from .rooms import RoomIndex
from .schemas import (
    CallResponseIn, EditMessageIn, EditPrivateIn, InitiateCallIn, PrivateHistoryIn,
    ReplyRef, SendMessageIn, SendPrivateIn, SignalIn, utcnow,
)
from .sessions import Identity, SessionDirectory
from .transport import WebSocketHub

logger = logging.getLogger(__name__)

Handler = Callable[[str, Identity, Any], Awaitable[None]]

def _scalar(data: Any, *keys: str) -> str:
    """Some events carry a bare string, others an object with the value inside."""
    if isinstance(data, dict):
        for key in keys:
            if data.get(key) is not None:
                data = data[key]
                break
        else:
            return ""
    return str(data).strip() if isinstance(data, (str, int)) else ""

class ChatService:
    def __init__(self, settings: Settings, session_factory: async_sessionmaker | None = None) -> None:
        self.settings = settings
        self.lock = asyncio.Lock()
        self.hub = WebSocketHub()
        self.sessions = SessionDirectory()
        self.presence = PresenceRegistry(settings.presence_grace_seconds, on_expire=self._presence_expired)
        self.rooms = RoomIndex(settings.default_room)
        self.history = HistoryStore(session_factory, settings.max_history)
        self.router = MessageRouter(self.history, self.rooms, self.presence, self.hub)
        self.calls = CallCoordinator(self.presence, self.hub, settings.call_record_ttl_seconds)
        self.pending_invites: Dict[str, str] = {}
        self.handlers: Dict[str, Handler] = {
            "user-join": self.on_user_join,
            "join-room": self.on_join_room,
            "create-group": self.on_create_group,
            "get-groups": self.on_get_groups,
            "send-message": self.on_send_message,
            "edit-message": self.on_edit_message,
            "send-private": self.on_send_private,
            "get-private-history": self.on_private_history,
            "edit-private-message": self.on_edit_private,
            "initiate-call": self.on_initiate_call,
            "call-response": self.on_call_response,
            "end-call": self.on_end_call,
            "admin-notification": self.on_admin_notification,
        }
        for event in SIGNAL_FIELDS:
            self.handlers[event] = partial(self.on_signal, event)

    # ---------------------- lifecycle ----------------------
    async def start(self) -> None:
        await self.history.load()
        if self.settings.legacy_messages_file:
            await self.history.import_legacy(self.settings.legacy_messages_file)

    async def stop(self) -> None:
        async with self.lock:
            self.presence.clear()
            self.calls.clear()
            self.rooms.clear()
            self.sessions.clear()
            self.hub.clear()
            self.history.clear()
            self.pending_invites.clear()

    async def connect(self, ws: WebSocket, identity: Identity, invite: str | None = None) -> str:
        conn_id = uuid.uuid4().hex
        async with self.lock:
            self.hub.attach(conn_id, ws)
            self.sessions.bind(conn_id, identity)
            if invite and invite.strip():
                self.pending_invites[conn_id] = invite.strip()
        logger.info("%s connected as %s", identity.username, conn_id)
        return conn_id

    async def disconnect(self, conn_id: str) -> None:
        async with self.lock:
            identity = self.sessions.unbind(conn_id)
            self.pending_invites.pop(conn_id, None)
            await self.calls.drop_connection(conn_id)
            self.hub.detach(conn_id)
            self.presence.mark_offline(conn_id)
            self.rooms.purge(conn_id)
            await self.publish_presence()
            await self.publish_groups()
        logger.info("%s disconnected (%s)", identity.username if identity else "?", conn_id)

    async def _presence_expired(self, conn_id: str) -> None:
        async with self.lock:
            if self.presence.expire(conn_id):
                await self.publish_presence()

    # ---------------------- dispatch ----------------------
    async def handle(self, conn_id: str, event: str | None, data: Any = None) -> None:
        async with self.lock:
            identity = self.sessions.resolve(conn_id)
            if identity is None:
                logger.debug("event %s from unbound connection %s", event, conn_id)
                return
            handler = self.handlers.get(event) if isinstance(event, str) else None
            if handler is None:
                await self.hub.send(conn_id, "error", {"message": "unknown message"})
                return
            try:
                await handler(conn_id, identity, data)
            except ValidationError as e:
                logger.warning("malformed %s from %s: %s", event, identity.username, e.errors())
            except SQLAlchemyError:
                logger.exception("storage failure while handling %s", event)

    # ---------------------- publishing ----------------------
    async def publish_presence(self) -> None:
        await self.hub.broadcast_all("users-update", self.presence.snapshot())

    async def publish_groups(self) -> None:
        for conn_id in self.hub.connections():
            await self.hub.send(conn_id, "groups-update", self.rooms.list_for_connection(conn_id))

    # ---------------------- presence and rooms ----------------------
    async def on_user_join(self, conn_id: str, identity: Identity, data: Any) -> None:
        self.presence.register(conn_id, identity)
        self.presence.set_room(conn_id, self.rooms.current_room(conn_id))
        await self.publish_presence()
        invite = self.pending_invites.pop(conn_id, None)
        if invite:
            await self._join(conn_id, invite)

    async def on_join_room(self, conn_id: str, identity: Identity, data: Any) -> None:
        room_id = _scalar(data, "roomId", "room")
        if room_id:
            await self._join(conn_id, room_id)

    async def _join(self, conn_id: str, room_id: str) -> None:
        room_id, created = self.rooms.join(conn_id, room_id)
        if created:
            logger.info("room %s created on join", room_id)
        await self.hub.send(conn_id, "room-joined", room_id)
        for message in self.history.recent(room_id, self.settings.replay_limit):
            await self.hub.send(conn_id, "new-message", message.wire())
        self.presence.set_room(conn_id, room_id)
        await self.publish_presence()
        await self.publish_groups()

    async def on_create_group(self, conn_id: str, identity: Identity, data: Any) -> None:
        room_id = _scalar(data, "groupId", "roomId", "id")
        if self.rooms.create(room_id, creator=conn_id):
            logger.info("%s created group %s", identity.username, room_id)
            await self.publish_groups()

    async def on_get_groups(self, conn_id: str, identity: Identity, data: Any) -> None:
        await self.hub.send(conn_id, "groups-update", self.rooms.list_for_connection(conn_id))

    # ---------------------- messages ----------------------
    async def on_send_message(self, conn_id: str, identity: Identity, data: Any) -> None:
        payload = SendMessageIn.model_validate(data or {})
        await self.router.post_room(identity, payload.room_id, payload.message, reply=payload.reply())

    async def on_edit_message(self, conn_id: str, identity: Identity, data: Any) -> None:
        payload = EditMessageIn.model_validate(data or {})
        await self.router.edit(identity, payload.message_id, payload.new_message, room_id=payload.room_id)

    async def on_send_private(self, conn_id: str, identity: Identity, data: Any) -> None:
        payload = SendPrivateIn.model_validate(data or {})
        await self.router.post_direct(identity, payload.to, payload.message.strip(),
                                      reply=payload.reply(), origin=conn_id)

    async def on_private_history(self, conn_id: str, identity: Identity, data: Any) -> None:
        if isinstance(data, str):
            data = {"with": data}
        payload = PrivateHistoryIn.model_validate(data or {})
        other = payload.with_user.strip()
        if not other or "|" in other:
            return
        for message in self.router.recent_direct(identity.username, other, self.settings.replay_limit):
            await self.hub.send(conn_id, "private-message", message.wire())

    async def on_edit_private(self, conn_id: str, identity: Identity, data: Any) -> None:
        payload = EditPrivateIn.model_validate(data or {})
        await self.router.edit(identity, payload.message_id, payload.new_message,
                               with_user=payload.other_user.strip(), origin=conn_id)

    async def post_attachment(self, identity: Identity, room_id: str, image_url: str,
                              reply: ReplyRef | None = None):
        """Entry point for the upload collaborator; the file is already stored."""
        async with self.lock:
            return await self.router.post_room(identity, room_id, "", attachment=image_url, reply=reply)

    async def update_avatar(self, username: str, avatar_url: str | None) -> None:
        async with self.lock:
            self.sessions.update_avatar(username, avatar_url)
            self.presence.update_avatar(username, avatar_url)
            await self.publish_presence()

    async def on_admin_notification(self, conn_id: str, identity: Identity, data: Any) -> None:
        if not identity.is_admin:
            logger.debug("non-admin %s tried to send an admin notification", identity.username)
            return
        message = _scalar(data, "message")
        if message:
            await self.hub.broadcast_all("admin-notification", {
                "message": message,
                "from": identity.username,
                "timestamp": utcnow().isoformat(),
            })

    # ---------------------- calls ----------------------
    async def on_initiate_call(self, conn_id: str, identity: Identity, data: Any) -> None:
        payload = InitiateCallIn.model_validate(data or {})
        await self.calls.initiate(conn_id, identity, payload.target_user_id.strip(), payload.call_type)

    async def on_call_response(self, conn_id: str, identity: Identity, data: Any) -> None:
        payload = CallResponseIn.model_validate(data or {})
        await self.calls.respond(conn_id, payload.call_id, payload.accepted)

    async def on_end_call(self, conn_id: str, identity: Identity, data: Any) -> None:
        call_id = _scalar(data, "callId")
        if call_id:
            await self.calls.end(conn_id, call_id)

    async def on_signal(self, event: str, conn_id: str, identity: Identity, data: Any) -> None:
        payload = SignalIn.model_validate(data or {})
        await self.calls.relay(conn_id, identity, event, payload.target_id, data.get(SIGNAL_FIELDS[event]))
