from typing import Dict, Optional, Set


class PresenceTracker:
    """Which connections are live in each room, and which users they belong to.

    Players outlive their connections: a user stays in the roster while offline
    and counts as online again as soon as any of their connections is back.
    """

    def __init__(self):
        self._connections: Dict[str, Dict[str, str]] = {}  # room_code -> {connection_id: stable_user_id}

    def connect(self, room_code: str, stable_user_id: str, connection_id: str):
        self._connections.setdefault(room_code, {})[connection_id] = stable_user_id

    def disconnect(self, room_code: str, connection_id: str) -> Optional[str]:
        """Drop a connection and return the user it belonged to."""
        room = self._connections.get(room_code)
        if not room:
            return None
        return room.pop(connection_id, None)

    def user_for(self, room_code: str, connection_id: str) -> Optional[str]:
        return self._connections.get(room_code, {}).get(connection_id)

    def connections_of(self, room_code: str, stable_user_id: str) -> Set[str]:
        return {cid for cid, uid in self._connections.get(room_code, {}).items() if uid == stable_user_id}

    def is_online(self, room_code: str, stable_user_id: str) -> bool:
        return stable_user_id in self._connections.get(room_code, {}).values()

    def online_users(self, room_code: str) -> Set[str]:
        return set(self._connections.get(room_code, {}).values())

    def online_count(self, room_code: str) -> int:
        return len(self.online_users(room_code))

    def drop_room(self, room_code: str):
        self._connections.pop(room_code, None)
