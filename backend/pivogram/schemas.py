from pydantic import BaseModel, Field, AliasChoices, field_validator
from datetime import datetime, timezone

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ---------------------- REST ----------------------
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str

class UserCreate(BaseModel):
    # "|" joins the two names of a direct-conversation key
    username: str = Field(min_length=3, max_length=20, pattern=r"^[^|]+$")
    password: str = Field(min_length=6, max_length=100)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, v):
        return v.strip() if isinstance(v, str) else v

class UserOut(BaseModel):
    username: str
    role: str
    avatar_url: str | None = None
    class Config:
        from_attributes = True

class LoginIn(BaseModel):
    username: str
    password: str

class AvatarIn(BaseModel):
    avatar_url: str = Field(min_length=1, max_length=512)

class AttachmentIn(BaseModel):
    image_url: str = Field(min_length=1, max_length=512)
    reply_to_id: int | str | None = None
    reply_to_username: str | None = None
    reply_to_snippet: str | None = None

# ---------------------- CHAT ----------------------
class ReplyRef(BaseModel):
    """Point-in-time quote of the message being replied to."""
    target_message_id: int | str
    target_author: str | None = None
    snippet: str | None = None

class ChatMessage(BaseModel):
    id: int
    username: str
    message: str = ""
    image_url: str | None = Field(default=None, alias="imageUrl")
    avatar_url: str | None = Field(default=None, alias="avatarUrl")
    role: str = "user"
    timestamp: datetime = Field(default_factory=utcnow)
    room_id: str | None = Field(default=None, alias="roomId")
    to: str | None = None
    edited: bool = False
    edited_at: datetime | None = Field(default=None, alias="editedAt")
    reply_to_id: int | str | None = Field(default=None, alias="replyToId")
    reply_to_username: str | None = Field(default=None, alias="replyToUsername")
    reply_to_snippet: str | None = Field(default=None, alias="replyToSnippet")

    class Config:
        populate_by_name = True
        extra = "ignore"

    def wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

# Inbound websocket payloads. Aliases follow the browser client's field names.
class _Inbound(BaseModel):
    class Config:
        populate_by_name = True
        extra = "ignore"

class _ReplyFields(_Inbound):
    reply_to_id: int | str | None = Field(default=None, alias="replyToId")
    reply_to_username: str | None = Field(default=None, alias="replyToUsername")
    reply_to_snippet: str | None = Field(default=None, alias="replyToSnippet")

    def reply(self) -> ReplyRef | None:
        if self.reply_to_id is None:
            return None
        return ReplyRef(target_message_id=self.reply_to_id, target_author=self.reply_to_username,
                        snippet=self.reply_to_snippet)

class SendMessageIn(_ReplyFields):
    room_id: str = Field(alias="roomId", min_length=1)
    message: str = ""

class EditMessageIn(_Inbound):
    message_id: int = Field(alias="messageId")
    new_message: str = Field(alias="newMessage", min_length=1)
    room_id: str = Field(alias="roomId", min_length=1)

class SendPrivateIn(_ReplyFields):
    to: str = Field(validation_alias=AliasChoices("to", "toUsername"))
    message: str = ""

class PrivateHistoryIn(_Inbound):
    with_user: str = Field(validation_alias=AliasChoices("with", "username"))

class EditPrivateIn(_Inbound):
    message_id: int = Field(alias="messageId")
    new_message: str = Field(alias="newMessage", min_length=1)
    other_user: str = Field(alias="otherUser", min_length=1)

class InitiateCallIn(_Inbound):
    target_user_id: str = Field(alias="targetUserId", min_length=1)
    call_type: str = Field(default="video", alias="callType")

class CallResponseIn(_Inbound):
    call_id: str = Field(alias="callId")
    accepted: bool = False

class SignalIn(_Inbound):
    target_id: str = Field(alias="targetId", min_length=1)
