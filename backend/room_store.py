import logging
import random
import threading
from typing import Dict, List, Optional

import config
from errors import RoomCreationFailed
from pack_catalog import PackCatalog, pack_catalog
from room_session import Player, RoomSession, RoomState

logger = logging.getLogger(__name__)


class RoomStore:
    """In-memory registry of live rooms keyed by room code.

    Code allocation is check-then-insert under one lock, so two rooms can never
    share a code even briefly. Codes are reused only after destroy().
    """

    def __init__(self, catalog: PackCatalog, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.rooms: Dict[str, RoomSession] = {}
        self._lock = threading.Lock()
        self._rng = rng or random.SystemRandom()

    def _new_code(self) -> str:
        low = 10 ** (config.ROOM_CODE_LENGTH - 1)
        return str(self._rng.randint(low, 10 * low - 1))

    def create(self, host_connection_id: str, host_profile: dict, settings: Optional[dict] = None) -> RoomSession:
        """Create a room in the waiting state with the host as its only player.

        host_profile: stable_user_id, nickname, avatar.
        settings: pack_id, question_count, time_limit (all optional).
        """
        settings = settings or {}
        pack = self.catalog.get_pack_by_id(settings.get("pack_id"))
        if pack is None:
            if settings.get("pack_id"):
                logger.warning("Pack %s not found, falling back to the first pack", settings["pack_id"])
            pack = self.catalog.first_pack()

        host = Player(
            id=host_connection_id,
            stable_user_id=host_profile["stable_user_id"],
            nickname=host_profile.get("nickname") or "Host",
            avatar=host_profile.get("avatar", ""),
        )

        with self._lock:
            if len(self.rooms) >= config.MAX_ROOMS:
                raise RoomCreationFailed("Too many active rooms. Please try again later.")
            for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
                code = self._new_code()
                if code not in self.rooms:
                    break
            else:
                raise RoomCreationFailed()
            session = RoomSession(
                code, host, pack,
                question_count=settings.get("question_count"),
                time_limit=settings.get("time_limit") or config.DEFAULT_TIME_LIMIT,
            )
            self.rooms[code] = session

        logger.info("Room created: %s by '%s' (pack: %s)", code, host.nickname, pack.id if pack else None)
        return session

    def get(self, code: str) -> Optional[RoomSession]:
        return self.rooms.get(code)

    def destroy(self, code: str) -> bool:
        with self._lock:
            session = self.rooms.pop(code, None)
        if session is not None:
            logger.info("Room %s destroyed", code)
        return session is not None

    def list_active(self) -> List[dict]:
        return [
            session.summary()
            for session in list(self.rooms.values())
            if session.state != RoomState.FINISHED
            and len(session.players) < config.ACTIVE_ROOM_PLAYER_LIMIT
        ]

    def clear(self):
        with self._lock:
            count = len(self.rooms)
            self.rooms.clear()
        if count:
            logger.info("Purged %d rooms", count)

    def __contains__(self, code: str) -> bool:
        return code in self.rooms

    def __len__(self) -> int:
        return len(self.rooms)


room_store = RoomStore(pack_catalog)
