from dataclasses import dataclass, replace
from typing import Dict

@dataclass(frozen=True)
class Identity:
    username: str
    role: str = "user"
    avatar_url: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

class SessionDirectory:
    """Connection id -> authenticated identity."""

    def __init__(self) -> None:
        self._by_conn: Dict[str, Identity] = {}

    def bind(self, conn_id: str, identity: Identity) -> None:
        self._by_conn[conn_id] = identity

    def unbind(self, conn_id: str) -> Identity | None:
        return self._by_conn.pop(conn_id, None)

    def resolve(self, conn_id: str) -> Identity | None:
        return self._by_conn.get(conn_id)

    def update_avatar(self, username: str, avatar_url: str | None) -> None:
        for conn_id, identity in self._by_conn.items():
            if identity.username == username:
                self._by_conn[conn_id] = replace(identity, avatar_url=avatar_url)

    def clear(self) -> None:
        self._by_conn.clear()
