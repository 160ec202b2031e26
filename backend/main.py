from fastapi import FastAPI, WebSocket, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
from typing import List, Optional
import re
from contextlib import asynccontextmanager
import uvicorn
import logging
import socket as socketlib

import config
config.setup_logging()

from errors import RoomCreationFailed
from pack_catalog import GradingMode, pack_catalog
from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting quiz room server")
    socket_manager.start_cleanup_loop()
    yield
    socket_manager.stop_cleanup_loop()
    logger.info("Shutting down quiz room server")


app = FastAPI(title="Party Quiz Room Server", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


def _clean(v: str) -> str:
    v = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', v)
    v = re.sub(r'<[^>]+>', '', v)
    return v.strip()


class RoomCreateRequest(BaseModel):
    stable_user_id: str
    nickname: str = "Host"
    avatar: str = ""
    pack_id: Optional[str] = None
    question_count: Optional[int] = None
    time_limit: int = config.DEFAULT_TIME_LIMIT

    @field_validator('stable_user_id')
    @classmethod
    def validate_stable_user_id(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > 64:
            raise ValueError('stable_user_id must be 1-64 characters')
        return v

    @field_validator('nickname')
    @classmethod
    def validate_nickname(cls, v: str) -> str:
        v = _clean(v)
        if not v or len(v) > config.MAX_NICKNAME_LENGTH:
            raise ValueError(f'Nickname must be 1-{config.MAX_NICKNAME_LENGTH} characters')
        return v

    @field_validator('avatar')
    @classmethod
    def validate_avatar(cls, v: str) -> str:
        return _clean(v)[:config.MAX_AVATAR_LENGTH]

    @field_validator('question_count')
    @classmethod
    def validate_question_count(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and (v < 1 or v > config.MAX_PACK_QUESTIONS):
            raise ValueError(f'Question count must be 1-{config.MAX_PACK_QUESTIONS}')
        return v

    @field_validator('time_limit')
    @classmethod
    def validate_time_limit(cls, v: int) -> int:
        if v < config.MIN_TIME_LIMIT or v > config.MAX_TIME_LIMIT:
            raise ValueError(f'Time limit must be between {config.MIN_TIME_LIMIT} and {config.MAX_TIME_LIMIT} seconds')
        return v


class PackCreateRequest(BaseModel):
    title: str
    category: str = "custom"
    difficulty: str = "medium"
    grading_mode: GradingMode = GradingMode.STANDARD
    questions: list

    @field_validator('questions')
    @classmethod
    def validate_questions(cls, v: list) -> list:
        if len(v) == 0:
            raise ValueError('Pack must have at least 1 question')
        for q in v:
            if not isinstance(q, dict):
                raise ValueError('Each question must be an object')
            if not all(k in q for k in ('id', 'text')):
                raise ValueError('Question missing required fields')
        return v


@app.get("/system/info")
async def get_system_info():
    return {"ip": get_local_ip()}


# --- Packs ---

@app.get("/packs")
async def list_packs():
    return {"packs": pack_catalog.list_pack_metadata()}


@app.get("/packs/{pack_id}")
async def get_pack(pack_id: str):
    pack = pack_catalog.get_pack_by_id(pack_id)
    if pack is None:
        raise HTTPException(status_code=404, detail="Pack not found")
    return pack.model_dump(mode="json")


@app.post("/packs")
async def create_pack(request: PackCreateRequest):
    try:
        pack = pack_catalog.save_custom_pack(request.model_dump(mode="json"))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"pack_id": pack.id, "pack": pack.summary()}


# --- Rooms ---

@app.post("/room/create")
async def create_room(request: RoomCreateRequest):
    host_profile = {
        "stable_user_id": request.stable_user_id,
        "nickname": request.nickname,
        "avatar": request.avatar,
    }
    settings = {
        "pack_id": request.pack_id,
        "question_count": request.question_count,
        "time_limit": request.time_limit,
    }
    try:
        session, host_token = socket_manager.create_room(host_profile, settings)
    except RoomCreationFailed as e:
        raise HTTPException(status_code=429, detail=e.message)
    return {
        "room_code": session.code,
        "host_token": host_token,
        "pack": session.pack.summary() if session.pack else None,
    }


@app.get("/rooms")
async def list_rooms():
    return {"rooms": socket_manager.store.list_active()}


@app.get("/rooms/{room_code}")
async def get_room(room_code: str):
    session = socket_manager.store.get(room_code)
    if session is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return session.summary()


@app.websocket("/ws/{room_code}/{client_id}")
async def websocket_endpoint(websocket: WebSocket, room_code: str, client_id: str,
                             host: bool = False, token: str = ""):
    await socket_manager.connect(websocket, room_code, client_id, is_host=host, token=token)


# --- Game History ---

@app.get("/history")
async def get_game_history():
    """Get history of completed games."""
    return {"games": socket_manager.game_history}


@app.get("/history/{room_code}")
async def get_game_detail(room_code: str):
    """Get the results of a specific game."""
    game = next((g for g in reversed(socket_manager.game_history) if g["room_code"] == room_code), None)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    return game


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins: List[str] = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        f"http://{local_ip}:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Party Quiz API is running"}


@app.get("/health")
async def health():
    return {"status": "healthy", "rooms": len(socket_manager.store)}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
