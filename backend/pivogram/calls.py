"""Call signaling: pairs a caller with a target and relays their SDP/ICE.

    PENDING --accept--> ACTIVE --end/disconnect--> ENDED
       |--decline--> DECLINED
       |--end/disconnect--> ENDED

Terminal calls stay inspectable until `expires_at`, then get purged.
Media never passes through here.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict
from .presence import PresenceRegistry
from .sessions import Identity
from .transport import WebSocketHub

logger = logging.getLogger(__name__)

SIGNAL_FIELDS = {
    "webrtc-offer": "offer",
    "webrtc-answer": "answer",
    "webrtc-ice-candidate": "candidate",
}

class CallStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DECLINED = "declined"
    ENDED = "ended"

    @property
    def live(self) -> bool:
        return self in (CallStatus.PENDING, CallStatus.ACTIVE)

@dataclass
class Call:
    call_id: str
    caller: str
    target: str
    caller_name: str
    target_name: str
    media_kind: str
    status: CallStatus = CallStatus.PENDING
    expires_at: float | None = None

    def involves(self, conn_id: str) -> bool:
        return conn_id in (self.caller, self.target)

    def peer_of(self, conn_id: str) -> str:
        return self.target if conn_id == self.caller else self.caller

    def name_of(self, conn_id: str) -> str:
        return self.caller_name if conn_id == self.caller else self.target_name

class CallCoordinator:
    def __init__(self, presence: PresenceRegistry, hub: WebSocketHub,
                 record_ttl: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.presence = presence
        self.hub = hub
        self.record_ttl = record_ttl
        self.clock = clock
        self.calls: Dict[str, Call] = {}

    # ---------------------- queries ----------------------
    def get(self, call_id: str) -> Call | None:
        """Live (pending or active) call, or None."""
        self._purge()
        call = self.calls.get(call_id)
        return call if call is not None and call.status.live else None

    def status(self, call_id: str) -> CallStatus | None:
        self._purge()
        call = self.calls.get(call_id)
        return call.status if call else None

    def live_calls_for(self, conn_id: str) -> list[Call]:
        return [c for c in self.calls.values() if c.status.live and c.involves(conn_id)]

    def _purge(self) -> None:
        now = self.clock()
        for call_id in [cid for cid, c in self.calls.items() if c.expires_at is not None and c.expires_at <= now]:
            del self.calls[call_id]

    def _close(self, call: Call, status: CallStatus) -> None:
        call.status = status
        call.expires_at = self.clock() + self.record_ttl

    # ---------------------- transitions ----------------------
    async def initiate(self, caller: str, caller_identity: Identity, target_username: str,
                       media_kind: str) -> Call | None:
        self._purge()
        target = self.presence.connection_for(target_username)
        reason = None
        if target is None:
            reason = "target-offline"
        elif target == caller:
            reason = "self-call"
        elif self.live_calls_for(caller) or self.live_calls_for(target):
            reason = "busy"
        if reason is not None:
            logger.info("call from %s to %s refused: %s", caller_identity.username, target_username, reason)
            await self.hub.send(caller, "call-failed", {"reason": reason, "targetUserId": target_username})
            return None

        call = Call(
            call_id=f"call_{uuid.uuid4().hex}",
            caller=caller,
            target=target,
            caller_name=caller_identity.username,
            target_name=target_username,
            media_kind=media_kind,
        )
        self.calls[call.call_id] = call
        logger.info("call %s: %s -> %s (%s) pending", call.call_id, call.caller_name, call.target_name, media_kind)
        await self.hub.send(target, "incoming-call", {
            "callerId": caller,
            "callerName": call.caller_name,
            "callType": media_kind,
            "callId": call.call_id,
        })
        return call

    async def respond(self, conn_id: str, call_id: str, accepted: bool) -> Call | None:
        """Only the designated target may answer, and only while pending."""
        call = self.get(call_id)
        if call is None or call.status is not CallStatus.PENDING or conn_id != call.target:
            logger.debug("ignoring call-response for %s from %s", call_id, conn_id)
            return None
        if accepted:
            call.status = CallStatus.ACTIVE
            logger.info("call %s active", call_id)
            for side in (call.caller, call.target):
                await self.hub.send(side, "call-started", {
                    "callId": call_id,
                    "peerId": call.peer_of(side),
                    "peerName": call.name_of(call.peer_of(side)),
                })
        else:
            self._close(call, CallStatus.DECLINED)
            logger.info("call %s declined", call_id)
            await self.hub.send(call.caller, "call-declined", {"callId": call_id})
        return call

    async def end(self, conn_id: str, call_id: str) -> bool:
        """Idempotent: ending an unknown or finished call does nothing."""
        call = self.get(call_id)
        if call is None or not call.involves(conn_id):
            return False
        self._close(call, CallStatus.ENDED)
        logger.info("call %s ended by %s", call_id, call.name_of(conn_id))
        await self.hub.send(call.peer_of(conn_id), "call-ended", {"callId": call_id})
        return True

    async def drop_connection(self, conn_id: str) -> list[str]:
        """Ends every live call the vanished connection took part in."""
        ended = []
        for call in self.live_calls_for(conn_id):
            if await self.end(conn_id, call.call_id):
                ended.append(call.call_id)
        return ended

    async def relay(self, sender: str, sender_identity: Identity, event: str, target: str, payload: Any) -> bool:
        """Forwards an offer/answer/candidate untouched, but only between
        the two ends of a live call."""
        field = SIGNAL_FIELDS.get(event)
        if field is None or not self.hub.is_connected(target):
            return False
        if not any(c.peer_of(sender) == target for c in self.live_calls_for(sender)):
            logger.debug("dropping %s from %s to %s outside a call", event, sender, target)
            return False
        return await self.hub.send(target, event, {
            field: payload,
            "senderId": sender,
            "senderName": sender_identity.username,
        })

    def clear(self) -> None:
        self.calls.clear()
