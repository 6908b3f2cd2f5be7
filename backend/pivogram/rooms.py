from typing import Dict

class RoomIndex:
    """room id -> member connections, plus each connection's current room.

    Membership is also visibility: a room is listed for a connection only
    while that connection is a member. Rooms that empty out are dropped,
    except the permanent ones.
    """

    def __init__(self, default_room: str = "general") -> None:
        self.default_room = default_room
        self.permanent: set[str] = {default_room}
        self.rooms: Dict[str, set[str]] = {default_room: set()}
        self.current: Dict[str, str] = {}

    def exists(self, room_id: str) -> bool:
        return room_id in self.rooms

    def create(self, room_id: str, creator: str | None = None) -> bool:
        room_id = room_id.strip()
        if not room_id or room_id in self.rooms:
            return False
        self.rooms[room_id] = set()
        if creator is not None:
            self.rooms[room_id].add(creator)
        return True

    def join(self, conn_id: str, room_id: str) -> tuple[str, bool]:
        """Returns (room_id, created)."""
        previous = self.current.get(conn_id)
        if previous is not None and previous != room_id:
            self._remove(previous, conn_id)
        created = room_id not in self.rooms
        self.rooms.setdefault(room_id, set()).add(conn_id)
        self.current[conn_id] = room_id
        return room_id, created

    def purge(self, conn_id: str) -> list[str]:
        """Drops the connection everywhere; returns the rooms deleted as a result."""
        self.current.pop(conn_id, None)
        deleted = []
        for room_id in [r for r, members in self.rooms.items() if conn_id in members]:
            if self._remove(room_id, conn_id):
                deleted.append(room_id)
        return deleted

    def _remove(self, room_id: str, conn_id: str) -> bool:
        members = self.rooms.get(room_id)
        if members is None or conn_id not in members:
            return False
        members.discard(conn_id)
        if not members and room_id not in self.permanent:
            self.rooms.pop(room_id, None)
            return True
        return False

    def members(self, room_id: str) -> list[str]:
        return list(self.rooms.get(room_id, ()))

    def current_room(self, conn_id: str) -> str | None:
        return self.current.get(conn_id)

    def list_for_connection(self, conn_id: str) -> list[dict]:
        return [
            {"id": room_id, "memberCount": len(members)}
            for room_id, members in self.rooms.items()
            if conn_id in members
        ]

    def clear(self) -> None:
        self.rooms = {room_id: set() for room_id in self.permanent}
        self.current.clear()
