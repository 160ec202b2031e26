"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

_BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Packs ---
PACKS_FILE = os.getenv("PACKS_FILE", os.path.join(_BACKEND_DIR, "data", "packs.json"))
CUSTOM_PACKS_FILE = os.getenv("CUSTOM_PACKS_FILE", os.path.join(_BACKEND_DIR, "data", "custom_packs.json"))
MAX_PACK_TITLE_LENGTH = 100
MAX_QUESTION_TEXT_LENGTH = 2000
MAX_OPTION_LENGTH = 500
MAX_PACK_QUESTIONS = 200

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_AVATAR_LENGTH = 10  # emoji avatars only
MAX_ANSWER_LENGTH = 200

# --- Rooms ---
MAX_ROOMS = int(os.getenv("MAX_ROOMS", "200"))
ROOM_CODE_LENGTH = 6
MAX_ROOM_CODE_ATTEMPTS = 10
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", "1800"))
ACTIVE_ROOM_PLAYER_LIMIT = 15  # rooms at or above this size are hidden from the lobby browser
MAX_PLAYERS_PER_ROOM = int(os.getenv("MAX_PLAYERS_PER_ROOM", "50"))

# --- Game ---
MAX_NICKNAME_LENGTH = 20
DEFAULT_TIME_LIMIT = 30
MIN_TIME_LIMIT = 5
MAX_TIME_LIMIT = 120
TEAM_COUNT = 6
TEAM_SIZE = 2

# --- Presence ---
RECONNECT_GRACE_SECONDS = float(os.getenv("RECONNECT_GRACE_SECONDS", "30"))
# "online": only players online when the round starts must answer before an early end
# "all": every active player must answer
ANSWER_QUORUM = os.getenv("ANSWER_QUORUM", "online").lower()
HOST_MIGRATION = os.getenv("HOST_MIGRATION", "true").lower() in ("1", "true", "yes")

# --- History ---
MAX_GAME_HISTORY = 1000

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
