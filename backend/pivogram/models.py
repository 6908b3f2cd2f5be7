from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, BigInteger, Integer, String, DateTime, func, Boolean, Index
from .db import Base

class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    avatar_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

class StoredMessage(Base):
    """Write-through mirror of one history entry.

    `kind` is "room" or "dm"; `key` is the room id or the normalized pair key.
    `format` tags the payload layout so older rows can be told apart.
    """
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_partition", "kind", "key", "message_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    message_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    author: Mapped[str] = mapped_column(String(20), nullable=False)
    format: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
