from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, List, Optional, Tuple
import json
import hmac
import re
import secrets
import time
import asyncio
import logging

import config
from errors import GameError, InvalidRequest, NotAuthorized, PlayerNotFound, RoomNotFound
from presence import PresenceTracker
from room_session import Player, RoomSession
from room_store import RoomStore, room_store

logger = logging.getLogger(__name__)


def _clean_text(value: str) -> str:
    value = re.sub(r'<[^>]+>', '', value)
    return re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', value).strip()


class RoomChannel:
    """Transport side of one room: live sockets, the round timer and pending removals."""

    def __init__(self, room_code: str, host_token: str = "", token_user_id: str = ""):
        self.room_code = room_code
        self.host_token = host_token  # secret handed to the room creator
        self.token_user_id = token_user_id
        self.connections: Dict[str, WebSocket] = {}
        self.lock = asyncio.Lock()
        self.timer_task: Optional[asyncio.Task] = None
        self.removal_tasks: Dict[str, asyncio.Task] = {}  # stable_user_id -> grace period task
        self.msg_timestamps: Dict[str, list] = {}
        self.last_activity = time.time()

    def touch(self):
        """Update last activity timestamp."""
        self.last_activity = time.time()

    def is_expired(self) -> bool:
        return time.time() - self.last_activity > config.ROOM_TTL_SECONDS

    def detach(self, client_id: str):
        self.connections.pop(client_id, None)
        self.msg_timestamps.pop(client_id, None)

    async def broadcast(self, message: dict):
        disconnected = []
        for client_id, ws in list(self.connections.items()):
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(client_id)
        for client_id in disconnected:
            self.detach(client_id)

    async def send_to(self, client_id: str, message: dict):
        ws = self.connections.get(client_id)
        if not ws:
            return
        try:
            await ws.send_json(message)
        except Exception:
            self.detach(client_id)


class SocketManager:
    def __init__(self, store: RoomStore, presence: Optional[PresenceTracker] = None):
        self.store = store
        self.presence = presence or PresenceTracker()
        self.channels: Dict[str, RoomChannel] = {}
        self.game_history: List[dict] = []
        self.allowed_origins: List[str] = []
        self.grace_seconds = config.RECONNECT_GRACE_SECONDS
        self._cleanup_task: Optional[asyncio.Task] = None

    def start_cleanup_loop(self):
        """Start the background room cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_rooms())

    def stop_cleanup_loop(self):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_expired_rooms(self):
        """Periodically remove idle rooms."""
        while True:
            try:
                await asyncio.sleep(60)
                expired = [code for code in list(self.store.rooms)
                           if code not in self.channels or self.channels[code].is_expired()]
                for code in expired:
                    await self.close_room(code, reason="expired")
                    logger.info("Cleaned up expired room %s", code)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in room cleanup loop")

    # ------------------------------------------------------------------
    # Room lifecycle

    def create_room(self, host_profile: dict, settings: Optional[dict] = None) -> Tuple[RoomSession, str]:
        """Create a room and return it with the host's secret token."""
        session = self.store.create("", host_profile, settings)
        token = secrets.token_urlsafe(32)
        self.channels[session.code] = RoomChannel(session.code, host_token=token,
                                                  token_user_id=session.host_id)
        return session, token

    def _channel(self, room_code: str) -> RoomChannel:
        channel = self.channels.get(room_code)
        if channel is None:
            channel = self.channels[room_code] = RoomChannel(room_code)
        return channel

    async def close_room(self, room_code: str, reason: str = "closed"):
        channel = self.channels.pop(room_code, None)
        if channel:
            self._cancel_timer(channel)
            current = asyncio.current_task()
            for task in channel.removal_tasks.values():
                if task is not current:
                    task.cancel()
            channel.removal_tasks.clear()
            await channel.broadcast({"type": "ROOM_CLOSED", "reason": reason})
        self.presence.drop_room(room_code)
        self.store.destroy(room_code)
        logger.info("Room %s closed (%s)", room_code, reason)

    def _cancel_timer(self, channel: RoomChannel):
        task = channel.timer_task
        channel.timer_task = None
        # The timer itself ends rounds; it must not cancel itself mid-broadcast.
        if task and task is not asyncio.current_task():
            task.cancel()

    def _start_timer(self, session: RoomSession, channel: RoomChannel):
        self._cancel_timer(channel)
        channel.timer_task = asyncio.create_task(
            self.question_timer(session.code, session.time_limit, session.question_index)
        )

    def _cancel_removal(self, channel: RoomChannel, stable_user_id: str):
        task = channel.removal_tasks.pop(stable_user_id, None)
        if task and task is not asyncio.current_task():
            task.cancel()

    def _quorum(self, room_code: str):
        if config.ANSWER_QUORUM == "online":
            return self.presence.online_users(room_code)
        return None

    # ------------------------------------------------------------------
    # Connections

    async def connect(self, websocket: WebSocket, room_code: str, client_id: str,
                      is_host: bool = False, token: str = ""):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        session = self.store.get(room_code)
        if session is None:
            await websocket.send_json(RoomNotFound().to_message())
            await websocket.close()
            return

        channel = self._channel(room_code)

        if is_host:
            if not token or not channel.host_token or not hmac.compare_digest(token, channel.host_token):
                await websocket.send_json({"type": "ERROR", "code": "NOT_AUTHORIZED",
                                           "message": "Invalid host token"})
                await websocket.close()
                return
            async with channel.lock:
                player = session.reconnect(channel.token_user_id, client_id)
                if player is None:
                    await websocket.send_json(PlayerNotFound().to_message())
                    await websocket.close()
                    return
                channel.connections[client_id] = websocket
                self.presence.connect(room_code, player.stable_user_id, client_id)
                self._cancel_removal(channel, player.stable_user_id)
                await websocket.send_json({"type": "ROOM_STATE", "you": player.stable_user_id,
                                           **session.snapshot()})
                await channel.broadcast({"type": "PLAYER_LIST", "players": session.roster()})
            logger.info("Host connected to room %s", room_code)
        else:
            channel.connections[client_id] = websocket
            await websocket.send_json({"type": "CONNECTED", "room_code": room_code})

        channel.touch()

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "ERROR", "code": "INVALID_REQUEST",
                                               "message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = channel.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "ERROR", "code": "RATE_LIMITED",
                                               "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    await websocket.send_json({"type": "ERROR", "code": "INVALID_REQUEST",
                                               "message": "Invalid message format"})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "ERROR", "code": "INVALID_REQUEST",
                                               "message": "Invalid message format"})
                    continue

                channel.touch()
                await self.handle_message(room_code, client_id, message, websocket)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected from room %s", client_id, room_code)
        except Exception:
            logger.exception("WebSocket error for client %s in room %s", client_id, room_code)
        finally:
            await self.disconnect(room_code, client_id)

    async def disconnect(self, room_code: str, client_id: str):
        """Mark a connection offline; the player is removed only if the grace period runs out."""
        channel = self.channels.get(room_code)
        if channel:
            channel.detach(client_id)
        stable_user_id = self.presence.disconnect(room_code, client_id)
        session = self.store.get(room_code)
        if stable_user_id is None or session is None or channel is None:
            return
        if self.presence.is_online(room_code, stable_user_id):
            return

        player = session.get_player(stable_user_id)
        if player is None:
            return
        logger.info("Player '%s' went offline in room %s, holding spot for %ss",
                    player.nickname, room_code, self.grace_seconds)
        await channel.broadcast({
            "type": "PLAYER_DISCONNECTED",
            "stable_user_id": stable_user_id,
            "nickname": player.nickname,
        })
        self._cancel_removal(channel, stable_user_id)
        channel.removal_tasks[stable_user_id] = asyncio.create_task(
            self._remove_after_grace(room_code, stable_user_id)
        )

    async def _remove_after_grace(self, room_code: str, stable_user_id: str):
        try:
            await asyncio.sleep(self.grace_seconds)
            channel = self.channels.get(room_code)
            session = self.store.get(room_code)
            if channel is None or session is None:
                return
            async with channel.lock:
                channel.removal_tasks.pop(stable_user_id, None)
                if self.store.get(room_code) is not session or self.presence.is_online(room_code, stable_user_id):
                    return
                player = session.leave(stable_user_id)
                if player:
                    logger.info("Player '%s' did not reconnect to room %s within %ss",
                                player.nickname, room_code, self.grace_seconds)
                    await self._after_removal(session, channel, player, kicked=False)
                if self.store.get(room_code) is session and self.presence.online_count(room_code) == 0:
                    await self.close_room(room_code, reason="abandoned")
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Messages

    async def handle_message(self, room_code: str, client_id: str, message: dict,
                             websocket: Optional[WebSocket] = None):
        msg_type = message.get("type")
        channel = self.channels.get(room_code)
        session = self.store.get(room_code)

        async def reject(error: GameError):
            if channel and client_id in channel.connections:
                await channel.send_to(client_id, error.to_message())
            elif websocket is not None:
                try:
                    await websocket.send_json(error.to_message())
                except Exception:
                    logger.debug("Could not deliver %s to client %s", error.code, client_id)

        if session is None or channel is None:
            await reject(RoomNotFound())
            return

        try:
            async with channel.lock:
                # The room may have been closed while this message waited for the lock.
                if self.store.get(room_code) is not session:
                    raise RoomNotFound()

                if msg_type == "JOIN":
                    await self._handle_join(session, channel, client_id, message)
                    return

                stable_user_id = self.presence.user_for(room_code, client_id)
                if stable_user_id is None or session.get_player(stable_user_id) is None:
                    raise PlayerNotFound("Join the room first")

                if msg_type == "TOGGLE_READY":
                    ready = message.get("is_ready")
                    if not isinstance(ready, bool):
                        raise InvalidRequest("is_ready must be true or false")
                    player = session.set_ready(stable_user_id, ready)
                    await channel.broadcast({"type": "PLAYER_LIST", "players": session.roster()})
                    await channel.broadcast({
                        "type": "READY_CHANGED",
                        "stable_user_id": player.stable_user_id,
                        "nickname": player.nickname,
                        "is_ready": player.is_ready,
                    })

                elif msg_type == "JOIN_TEAM":
                    result = session.join_team(stable_user_id, message.get("team_index"),
                                               message.get("spot_index"))
                    await channel.broadcast({"type": "TEAM_UPDATE", "teams": session.teams_view()})
                    if result.team_full:
                        await channel.broadcast({"type": "TEAM_FULL", "team": result.team.to_dict()})

                elif msg_type == "START_GAME":
                    payload = session.start(stable_user_id, online=self._quorum(room_code))
                    await channel.broadcast({"type": "GAME_STARTED", **payload,
                                             "players": session.roster()})
                    self._start_timer(session, channel)

                elif msg_type == "SUBMIT_ANSWER":
                    answer = message.get("answer")
                    if answer is not None and not isinstance(answer, (str, int, float)):
                        raise InvalidRequest("Answer must be text")
                    answer = "" if answer is None else _clean_text(str(answer))[:config.MAX_ANSWER_LENGTH]
                    result = session.submit_answer(stable_user_id, answer)
                    if result is None:
                        return
                    await channel.broadcast({"type": "PLAYER_LIST", "players": session.roster()})
                    # Scores are revealed with ROUND_ENDED, not here.
                    await channel.send_to(client_id, {"type": "ANSWER_ACCEPTED", "pending": result.pending})
                    if session.all_required_answered():
                        await self._end_round(session, channel, session.host_id, reason="all_answered")

                elif msg_type == "END_ROUND":
                    await self._end_round(session, channel, stable_user_id, reason="host")

                elif msg_type == "NEXT_QUESTION":
                    payload = session.advance_round(stable_user_id, online=self._quorum(room_code))
                    if payload.get("game_over"):
                        await self._game_over(session, channel)
                    else:
                        await channel.broadcast({"type": "NEW_QUESTION", **payload})
                        self._start_timer(session, channel)

                elif msg_type == "KICK_PLAYER":
                    target_id = message.get("target_id")
                    target_connections = self.presence.connections_of(room_code, str(target_id))
                    player = session.kick(stable_user_id, str(target_id))
                    if player is None:
                        return
                    for cid in target_connections:
                        await channel.send_to(cid, {"type": "KICKED", "room_code": room_code})
                        self.presence.disconnect(room_code, cid)
                        channel.detach(cid)
                    await self._after_removal(session, channel, player, kicked=True)

                elif msg_type == "RESET_GAME":
                    pack = None
                    pack_id = message.get("pack_id")
                    if pack_id:
                        pack = self.store.catalog.get_pack_by_id(pack_id)
                        if pack is None:
                            raise InvalidRequest("Pack not found")
                    session.reset(stable_user_id, pack)
                    self._cancel_timer(channel)
                    await channel.broadcast({"type": "GAME_RESET", **session.snapshot()})

                elif msg_type == "LEAVE":
                    leaving = set(self.presence.connections_of(room_code, stable_user_id))
                    leaving.add(client_id)
                    for cid in leaving:
                        self.presence.disconnect(room_code, cid)
                        channel.detach(cid)
                    player = session.leave(stable_user_id)
                    if player:
                        await self._after_removal(session, channel, player, kicked=False)

                else:
                    raise InvalidRequest(f"Unknown message type: {msg_type}")
        except GameError as e:
            logger.warning("Room %s: %s rejected for client %s: %s", room_code, msg_type, client_id, e.code)
            await reject(e)

    async def _handle_join(self, session: RoomSession, channel: RoomChannel, client_id: str, message: dict):
        stable_user_id = message.get("stable_user_id")
        if not isinstance(stable_user_id, str) or not stable_user_id.strip() or len(stable_user_id) > 64:
            raise InvalidRequest("stable_user_id is required")
        stable_user_id = stable_user_id.strip()

        bound = self.presence.user_for(session.code, client_id)
        if bound is not None and bound != stable_user_id:
            raise InvalidRequest("This connection already joined as another player")
        # Only the creator's identity is token-protected; a migrated host rejoins like any player.
        if stable_user_id == channel.token_user_id == session.host_id and bound != stable_user_id:
            raise NotAuthorized("Use the host link to rejoin as host")

        nickname = message.get("nickname", "")
        nickname = _clean_text(nickname) if isinstance(nickname, str) else ""
        if not nickname or len(nickname) > config.MAX_NICKNAME_LENGTH:
            raise InvalidRequest(f"Nickname must be 1-{config.MAX_NICKNAME_LENGTH} characters")

        # Sanitize and limit avatar length
        avatar = message.get("avatar", "")
        if not isinstance(avatar, str):
            avatar = ""
        avatar = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', avatar)[:config.MAX_AVATAR_LENGTH]

        result = session.join(stable_user_id, client_id, nickname, avatar)
        self.presence.connect(session.code, stable_user_id, client_id)
        self._cancel_removal(channel, stable_user_id)

        await channel.broadcast({"type": "PLAYER_LIST", "players": session.roster()})
        await channel.send_to(client_id, {
            "type": "JOINED",
            "you": stable_user_id,
            "reconnected": result.reconnected,
            "late_join": result.late_join,
            **session.snapshot(),
        })

    async def _after_removal(self, session: RoomSession, channel: RoomChannel, player: Player, kicked: bool):
        """Broadcast a roster change and deal with host loss, an empty room and round completion."""
        room_code = session.code
        self._cancel_removal(channel, player.stable_user_id)
        if session.is_empty:
            await self.close_room(room_code, reason="empty")
            return

        if player.is_host:
            if not config.HOST_MIGRATION:
                await self.close_room(room_code, reason="host_left")
                return
            new_host = session.migrate_host(prefer=self.presence.online_users(room_code))
            if new_host:
                await channel.broadcast({"type": "HOST_CHANGED", "host_id": new_host.stable_user_id,
                                         "nickname": new_host.nickname})

        await channel.broadcast({
            "type": "PLAYER_LEFT",
            "stable_user_id": player.stable_user_id,
            "nickname": player.nickname,
            "kicked": kicked,
        })
        await channel.broadcast({"type": "PLAYER_LIST", "players": session.roster()})
        if session.teams is not None:
            await channel.broadcast({"type": "TEAM_UPDATE", "teams": session.teams_view()})
        if session.all_required_answered():
            await self._end_round(session, channel, session.host_id, reason="all_answered")

    # ------------------------------------------------------------------
    # Rounds

    async def question_timer(self, room_code: str, time_limit: int, question_index: int):
        """Timer that ends the round after time_limit seconds."""
        try:
            channel = self.channels.get(room_code)
            if channel is None:
                return
            for remaining in range(time_limit, -1, -1):
                await channel.broadcast({"type": "TIMER", "remaining": remaining})
                if remaining > 0:
                    await asyncio.sleep(1)

            async with channel.lock:
                session = self.store.get(room_code)
                if session is None or session.question_index != question_index:
                    return
                await self._end_round(session, channel, session.host_id, reason="timer")
        except asyncio.CancelledError:
            pass

    async def _end_round(self, session: RoomSession, channel: RoomChannel, requesting_id: str, reason: str):
        # Timer expiry, "all answered" and the host all race here; only the first call ends the round.
        result = session.end_round(requesting_id)
        if result is None:
            return None
        self._cancel_timer(channel)
        await channel.broadcast({"type": "ROUND_ENDED", "reason": reason, **result.to_dict()})
        if result.finished:
            await self._game_over(session, channel)
        return result

    async def _game_over(self, session: RoomSession, channel: RoomChannel):
        self._cancel_timer(channel)
        await channel.broadcast({"type": "GAME_OVER", **session.game_over_payload()})
        self.game_history.append(self.get_game_summary(session))
        if len(self.game_history) > config.MAX_GAME_HISTORY:
            del self.game_history[:len(self.game_history) - config.MAX_GAME_HISTORY]
        logger.info("Game history saved for room %s", session.code)

    def get_game_summary(self, session: RoomSession) -> dict:
        """Build a game summary for history storage."""
        return {
            "room_code": session.code,
            "pack_id": session.pack.id if session.pack else None,
            "pack_title": session.pack.title if session.pack else None,
            "grading_mode": session.grading_mode.value,
            "total_questions": len(session.questions),
            "player_count": len(session.contestants),
            "scoreboard": session.scoreboard(),
            "winner": session.winner(),
            "completed_at": time.time(),
        }


socket_manager = SocketManager(room_store)
