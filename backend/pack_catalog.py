import json
import logging
import os
import re
import threading
import time
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

import config

logger = logging.getLogger(__name__)


class GradingMode(str, Enum):
    STANDARD = "standard"
    TEAM_MATCH = "team_match"
    DUPLICATE_DETECTION = "duplicate_detection"


class QuestionKind(str, Enum):
    MCQ = "mcq"
    FREE_TEXT = "free_text"


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from pack text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    kind: QuestionKind = QuestionKind.FREE_TEXT
    options: Optional[List[str]] = None
    correct_answer: Optional[str] = None

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v) -> str:
        return str(v)

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = _sanitize_text(v)[:config.MAX_QUESTION_TEXT_LENGTH]
        if not v:
            raise ValueError('Question text must not be empty')
        return v

    @field_validator('options')
    @classmethod
    def validate_options(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [_sanitize_text(opt)[:config.MAX_OPTION_LENGTH] for opt in v]

    @field_validator('correct_answer')
    @classmethod
    def validate_correct_answer(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = _sanitize_text(v)
        return v or None

    @model_validator(mode='after')
    def check_mcq_options(self):
        if self.kind == QuestionKind.MCQ and (not self.options or len(self.options) < 2):
            raise ValueError(f'Multiple choice question {self.id} needs at least 2 options')
        return self

    @property
    def is_graded(self) -> bool:
        return self.correct_answer is not None

    def public_view(self) -> dict:
        """Question as sent to players, without the correct answer."""
        return self.model_dump(mode="json", exclude={"correct_answer"})


class Pack(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    category: str = "general"
    difficulty: str = "medium"
    grading_mode: GradingMode = GradingMode.STANDARD
    is_custom: bool = False
    questions: List[Question] = []

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v) -> str:
        return str(v)

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = _sanitize_text(v)[:config.MAX_PACK_TITLE_LENGTH]
        if not v:
            raise ValueError('Pack title must not be empty')
        return v

    @field_validator('questions')
    @classmethod
    def validate_questions(cls, v: List[Question]) -> List[Question]:
        if len(v) > config.MAX_PACK_QUESTIONS:
            raise ValueError(f'Pack may hold at most {config.MAX_PACK_QUESTIONS} questions')
        return v

    @property
    def supports_teams(self) -> bool:
        return self.grading_mode == GradingMode.TEAM_MATCH

    def summary(self) -> dict:
        data = self.model_dump(mode="json", exclude={"questions"})
        data["question_count"] = len(self.questions)
        return data


class PackCatalog:
    """Read-only catalog of quiz packs: the official file plus user-submitted custom packs."""

    def __init__(self, packs_file: Optional[str] = None, custom_packs_file: Optional[str] = None):
        self.packs_file = packs_file or config.PACKS_FILE
        self.custom_packs_file = custom_packs_file or config.CUSTOM_PACKS_FILE
        self._packs: Dict[str, Pack] = {}
        self._write_lock = threading.Lock()
        self.load()

    @classmethod
    def from_packs(cls, packs: Iterable[Pack]) -> "PackCatalog":
        """Build an in-memory catalog that never touches the filesystem."""
        catalog = cls.__new__(cls)
        catalog.packs_file = ""
        catalog.custom_packs_file = ""
        catalog._write_lock = threading.Lock()
        catalog._packs = {p.id: p for p in packs}
        return catalog

    def load(self):
        packs: Dict[str, Pack] = {}
        for pack in self._read_file(self.packs_file, required=True):
            packs[pack.id] = pack
        for pack in self._read_file(self.custom_packs_file, required=False):
            packs[pack.id] = pack.model_copy(update={"is_custom": True})
        # Swap in a fresh mapping; sessions keep references to the packs they already hold.
        self._packs = packs
        logger.info("Loaded %d packs", len(packs))

    def _read_file(self, path: str, required: bool) -> List[Pack]:
        if not path or not os.path.exists(path):
            if required:
                logger.error("Pack file not found: %s", path)
            return []
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.exception("Error loading packs from %s", path)
            return []
        if not isinstance(raw, list):
            logger.error("Pack file %s must contain a JSON list", path)
            return []
        packs = []
        for entry in raw:
            try:
                packs.append(Pack.model_validate(entry))
            except ValidationError as e:
                logger.warning("Skipping invalid pack %r in %s: %s",
                               entry.get("id") if isinstance(entry, dict) else None, path, e.error_count())
        return packs

    def get_pack_by_id(self, pack_id: Optional[str]) -> Optional[Pack]:
        if pack_id is None:
            return None
        return self._packs.get(str(pack_id))

    def first_pack(self) -> Optional[Pack]:
        return next(iter(self._packs.values()), None)

    def list_pack_metadata(self) -> List[dict]:
        return [p.summary() for p in self._packs.values()]

    def __len__(self) -> int:
        return len(self._packs)

    def save_custom_pack(self, data: dict) -> Pack:
        """Validate and persist a user-submitted pack. Raises ValueError on invalid data."""
        data = dict(data)
        with self._write_lock:
            pack_id = f"custom_{int(time.time() * 1000)}"
            while pack_id in self._packs:
                pack_id = f"custom_{int(time.time() * 1000)}_{len(self._packs)}"
            data["id"] = pack_id
            data["is_custom"] = True
            try:
                pack = Pack.model_validate(data)
            except ValidationError as e:
                raise ValueError(str(e)) from e

            if self.custom_packs_file:
                existing = []
                if os.path.exists(self.custom_packs_file):
                    try:
                        with open(self.custom_packs_file, encoding="utf-8") as f:
                            existing = json.load(f)
                    except (OSError, json.JSONDecodeError) as e:
                        logger.error("Custom pack file %s unreadable, refusing to overwrite: %s",
                                     self.custom_packs_file, e)
                        raise ValueError("Custom pack storage is unreadable") from e
                    if not isinstance(existing, list):
                        logger.error("Custom pack file %s is not a list, refusing to overwrite",
                                     self.custom_packs_file)
                        raise ValueError("Custom pack storage is malformed")
                existing.append(pack.model_dump(mode="json"))
                os.makedirs(os.path.dirname(self.custom_packs_file) or ".", exist_ok=True)
                tmp_path = self.custom_packs_file + ".tmp"
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(existing, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.custom_packs_file)

            packs = dict(self._packs)
            packs[pack.id] = pack
            self._packs = packs
        logger.info("Custom pack saved: %s ('%s'), %d questions", pack.id, pack.title, len(pack.questions))
        return pack


pack_catalog = PackCatalog()
