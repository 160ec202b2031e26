"""Per-room game state machine.

A RoomSession owns the roster, team spots, round lifecycle and scoring of one
room. Its methods never block or await; the caller must serialize every call
on the same room (the socket manager holds the room lock around each one).
Rejected actions raise a GameError, expected races (double submit, double
end-of-round, leaving twice) return None.
"""
import logging
import random
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

import config
from errors import (
    InvalidSpot,
    InvalidState,
    InvalidTeam,
    NicknameTaken,
    NoQuestions,
    NotAuthorized,
    PlayerNotFound,
    RoomFinished,
    RoomFull,
    SpotOccupied,
    TeamsNotSupported,
)
from pack_catalog import GradingMode, Pack, Question

logger = logging.getLogger(__name__)


class RoomState(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    INTERMISSION = "intermission"
    FINISHED = "finished"


class PlayerStatus(str, Enum):
    ACTIVE = "active"
    ANSWERED = "waiting"
    SPECTATING = "waiting-next-round"


class _NoAnswer:
    """Marks a player who did not submit before the round ended."""

    def __repr__(self):
        return "NO_ANSWER"


NO_ANSWER = _NoAnswer()
NO_ANSWER_LABEL = "no answer"


def normalize_answer(answer) -> str:
    if answer is None:
        return ""
    return str(answer).strip().casefold()


@dataclass
class Player:
    id: str  # connection id, replaced on reconnect
    stable_user_id: str
    nickname: str
    avatar: str = ""
    score: int = 0
    is_host: bool = False
    is_ready: bool = False
    status: PlayerStatus = PlayerStatus.ACTIVE
    team_id: Optional[str] = None
    teammate_id: Optional[str] = None  # teammate's stable_user_id
    correct_answers: int = 0
    total_questions: int = 0
    last_answer: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stable_user_id": self.stable_user_id,
            "nickname": self.nickname,
            "avatar": self.avatar,
            "score": self.score,
            "is_host": self.is_host,
            "is_ready": self.is_ready,
            "status": self.status.value,
            "team_id": self.team_id,
            "teammate_id": self.teammate_id,
            "correct_answers": self.correct_answers,
            "total_questions": self.total_questions,
        }


@dataclass
class Team:
    id: str
    name: str
    spots: List[Optional[str]] = field(default_factory=lambda: [None] * config.TEAM_SIZE)

    @property
    def is_full(self) -> bool:
        return all(spot is not None for spot in self.spots)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "spots": list(self.spots), "is_full": self.is_full}


@dataclass
class JoinResult:
    player: Player
    reconnected: bool = False
    late_join: bool = False


@dataclass
class TeamJoinResult:
    team: Team
    team_full: bool


@dataclass
class SubmitResult:
    player: Player
    pending: bool = False  # outcome decided later (teammate or end of round)
    correct: Optional[bool] = None
    points: int = 0
    team_matched: Optional[bool] = None

    def to_dict(self) -> dict:
        return {
            "pending": self.pending,
            "correct": self.correct,
            "points": self.points,
            "team_matched": self.team_matched,
        }


@dataclass
class RoundResult:
    question_index: int
    correct_answer: Optional[str]
    scoreboard: List[dict]
    outcomes: List[dict]
    next_question_index: int
    total_questions: int
    finished: bool = False
    winner: Optional[dict] = None
    team_results: Optional[List[dict]] = None

    def to_dict(self) -> dict:
        return {
            "question_index": self.question_index,
            "correct_answer": self.correct_answer,
            "scoreboard": self.scoreboard,
            "outcomes": self.outcomes,
            "next_question_index": self.next_question_index,
            "total_questions": self.total_questions,
            "finished": self.finished,
            "winner": self.winner,
            "team_results": self.team_results,
        }


class RoomSession:
    def __init__(self, code: str, host: Player, pack: Optional[Pack],
                 question_count: Optional[int] = None,
                 time_limit: int = config.DEFAULT_TIME_LIMIT,
                 rng: Optional[random.Random] = None):
        self.code = code
        host.is_host = True
        host.is_ready = True
        self.host_id = host.stable_user_id
        self.players: Dict[str, Player] = {host.stable_user_id: host}  # roster, join order
        self.state = RoomState.WAITING
        self.pack = pack
        self.grading_mode = pack.grading_mode if pack else GradingMode.STANDARD
        self.question_count = question_count
        self.time_limit = time_limit
        self.questions: List[Question] = []
        self.question_index = 0
        self.teams: Optional[List[Team]] = self._build_teams()
        self.round_submissions: Dict[str, object] = {}
        self.last_result: Optional[RoundResult] = None
        self.created_at = time.time()
        self._rng = rng or random.Random()
        self._required: Set[str] = set()
        self._round_outcomes: Dict[str, bool] = {}
        self._round_resolved = False

    # ------------------------------------------------------------------
    # Lookups

    @property
    def host(self) -> Optional[Player]:
        return self.players.get(self.host_id)

    @property
    def is_empty(self) -> bool:
        return not self.players

    @property
    def contestants(self) -> List[Player]:
        return [p for p in self.players.values() if not p.is_host]

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.question_index < len(self.questions):
            return self.questions[self.question_index]
        return None

    def get_player(self, stable_user_id: str) -> Optional[Player]:
        return self.players.get(stable_user_id)

    def find_by_connection(self, connection_id: str) -> Optional[Player]:
        return next((p for p in self.players.values() if p.id == connection_id), None)

    def _require_host(self, requesting_id: str):
        if requesting_id != self.host_id:
            logger.warning("Room %s: non-host %s attempted a host action", self.code, requesting_id)
            raise NotAuthorized()

    def _build_teams(self) -> Optional[List[Team]]:
        if not self.pack or not self.pack.supports_teams:
            return None
        return [Team(id=f"team-{i}", name=f"Team {i + 1}") for i in range(config.TEAM_COUNT)]

    def _free_spot(self, stable_user_id: str):
        for team in self.teams or []:
            for idx, occupant in enumerate(team.spots):
                if occupant == stable_user_id:
                    team.spots[idx] = None

    # ------------------------------------------------------------------
    # Roster

    def join(self, stable_user_id: str, connection_id: str, nickname: str,
             avatar: str = "") -> JoinResult:
        existing = self.reconnect(stable_user_id, connection_id)
        if existing:
            return JoinResult(existing, reconnected=True, late_join=self.state != RoomState.WAITING)

        if self.state == RoomState.FINISHED:
            raise RoomFinished()
        nickname = nickname.strip()
        if any(p.nickname == nickname for p in self.players.values()):
            raise NicknameTaken()
        if len(self.players) >= config.MAX_PLAYERS_PER_ROOM:
            raise RoomFull()

        late_join = self.state != RoomState.WAITING
        player = Player(
            id=connection_id,
            stable_user_id=stable_user_id,
            nickname=nickname,
            avatar=avatar,
            status=PlayerStatus.SPECTATING if late_join else PlayerStatus.ACTIVE,
            is_ready=late_join,
        )
        self.players[stable_user_id] = player
        logger.info("Player '%s' joined room %s%s", nickname, self.code, " (late join)" if late_join else "")
        return JoinResult(player, late_join=late_join)

    def reconnect(self, stable_user_id: str, connection_id: str) -> Optional[Player]:
        player = self.players.get(stable_user_id)
        if player is None:
            return None
        if player.id != connection_id:
            logger.info("Player '%s' reconnected to room %s", player.nickname, self.code)
        player.id = connection_id
        return player

    def leave(self, stable_user_id: str) -> Optional[Player]:
        player = self.players.pop(stable_user_id, None)
        if player is None:
            return None
        self._free_spot(stable_user_id)
        for other in self.players.values():
            if other.teammate_id == stable_user_id:
                other.teammate_id = None
        self._required.discard(stable_user_id)
        self.round_submissions.pop(stable_user_id, None)
        logger.info("Player '%s' left room %s", player.nickname, self.code)
        return player

    def kick(self, requesting_id: str, target_id: str) -> Optional[Player]:
        self._require_host(requesting_id)
        if target_id == self.host_id:
            raise NotAuthorized("The host cannot kick themselves")
        player = self.leave(target_id)
        if player:
            logger.info("Player '%s' was kicked from room %s", player.nickname, self.code)
        return player

    def migrate_host(self, prefer: Optional[Iterable[str]] = None) -> Optional[Player]:
        """Hand host rights to a remaining player once the host has left the roster."""
        if self.host_id in self.players or not self.players:
            return None
        preferred = set(prefer or ())
        candidates = list(self.players.values())
        new_host = next((p for p in candidates if p.stable_user_id in preferred), candidates[0])
        uid = new_host.stable_user_id

        new_host.is_host = True
        new_host.is_ready = True
        self.host_id = uid
        # The host drives the game and no longer plays.
        self._free_spot(uid)
        for other in self.players.values():
            if other.teammate_id == uid:
                other.teammate_id = None
        new_host.team_id = None
        new_host.teammate_id = None
        self._required.discard(uid)
        self.round_submissions.pop(uid, None)
        logger.info("Room %s: host migrated to '%s'", self.code, new_host.nickname)
        return new_host

    def set_ready(self, stable_user_id: str, ready: bool) -> Player:
        player = self.players.get(stable_user_id)
        if player is None:
            raise PlayerNotFound()
        if player.is_host:
            raise NotAuthorized("The host is always ready")
        if self.state != RoomState.WAITING:
            raise InvalidState("Ready-up is only available in the lobby")
        player.is_ready = bool(ready)
        logger.info("Player '%s' is %s in room %s", player.nickname,
                    "ready" if player.is_ready else "not ready", self.code)
        return player

    # ------------------------------------------------------------------
    # Teams

    def join_team(self, stable_user_id: str, team_index, spot_index) -> TeamJoinResult:
        if self.teams is None:
            raise TeamsNotSupported()
        if self.state != RoomState.WAITING:
            raise InvalidState("Teams can only be chosen before the game starts")
        player = self.players.get(stable_user_id)
        if player is None:
            raise PlayerNotFound()
        if player.is_host:
            raise NotAuthorized("The host does not play on a team")
        if not isinstance(team_index, int) or isinstance(team_index, bool) \
                or not 0 <= team_index < len(self.teams):
            raise InvalidTeam()
        team = self.teams[team_index]
        if not isinstance(spot_index, int) or isinstance(spot_index, bool) \
                or not 0 <= spot_index < len(team.spots):
            raise InvalidSpot()
        occupant = team.spots[spot_index]
        if occupant is not None and occupant != stable_user_id:
            raise SpotOccupied()

        self._free_spot(stable_user_id)
        team.spots[spot_index] = stable_user_id
        logger.info("Player '%s' took spot %d of %s in room %s", player.nickname, spot_index, team.name, self.code)
        return TeamJoinResult(team=team, team_full=team.is_full)

    def _assign_teams(self):
        players = self.contestants
        for p in players:
            p.team_id = None
            p.teammate_id = None

        # Only complete manual teams are kept; half-filled ones go into the random draw.
        for team in self.teams or []:
            members = [self.players.get(uid) for uid in team.spots if uid is not None]
            members = [m for m in members if m is not None and not m.is_host]
            if len(members) == 2:
                a, b = members
                a.team_id = b.team_id = team.id
                a.teammate_id = b.stable_user_id
                b.teammate_id = a.stable_user_id

        unassigned = [p for p in players if p.team_id is None]
        self._rng.shuffle(unassigned)
        for n in range(0, len(unassigned) - 1, 2):
            a, b = unassigned[n], unassigned[n + 1]
            a.team_id = b.team_id = f"pair-{n // 2}"
            a.teammate_id = b.stable_user_id
            b.teammate_id = a.stable_user_id
        # An odd player out stays teamless and is graded individually.

    # ------------------------------------------------------------------
    # Rounds

    def start(self, requesting_id: str, online: Optional[Iterable[str]] = None) -> dict:
        self._require_host(requesting_id)
        if self.state != RoomState.WAITING:
            raise InvalidState("Game already started")
        available = list(self.pack.questions) if self.pack else []
        requested = len(available) if self.question_count is None else self.question_count
        count = min(requested, len(available))
        if count <= 0:
            raise NoQuestions()

        self.questions = available[:count]
        self.question_index = 0
        self.last_result = None
        if self.grading_mode == GradingMode.TEAM_MATCH:
            self._assign_teams()
        self.state = RoomState.PLAYING
        self._begin_round(online)
        logger.info("Room %s started: %d questions, %s grading", self.code, count, self.grading_mode.value)
        return self.current_question_payload()

    def _begin_round(self, online: Optional[Iterable[str]]):
        self.round_submissions = {}
        self._round_outcomes = {}
        self._round_resolved = False
        for p in self.contestants:
            p.status = PlayerStatus.ACTIVE
            p.last_answer = None
            p.total_questions += 1
        required = {p.stable_user_id for p in self.contestants}
        if online is not None:
            required &= set(online)
        self._required = required

    def all_required_answered(self) -> bool:
        if self.state != RoomState.PLAYING or self._round_resolved:
            return False
        return all(uid in self.round_submissions for uid in self._required if uid in self.players)

    def submit_answer(self, stable_user_id: str, answer) -> Optional[SubmitResult]:
        if self.state != RoomState.PLAYING or self._round_resolved:
            return None
        player = self.players.get(stable_user_id)
        if player is None or player.is_host or player.status != PlayerStatus.ACTIVE:
            return None
        if stable_user_id in self.round_submissions:
            return None

        normalized = normalize_answer(answer)
        player.status = PlayerStatus.ANSWERED
        player.last_answer = "" if answer is None else str(answer)
        self.round_submissions[stable_user_id] = normalized
        question = self.current_question

        if self.grading_mode == GradingMode.DUPLICATE_DETECTION:
            return SubmitResult(player, pending=True)

        if self.grading_mode == GradingMode.TEAM_MATCH and player.teammate_id:
            teammate = self.players.get(player.teammate_id)
            if teammate is not None:
                if teammate.stable_user_id in self.round_submissions:
                    return self._resolve_pair(player, teammate, question)
                return SubmitResult(player, pending=True)

        correct = self._is_correct(normalized, question)
        self._record(player, correct)
        return SubmitResult(player, correct=correct, points=1 if correct else 0)

    def _is_correct(self, normalized, question: Question) -> bool:
        if normalized is NO_ANSWER:
            return False
        if question.correct_answer is None:
            return True
        return normalized == normalize_answer(question.correct_answer)

    def _record(self, player: Player, correct: bool):
        self._round_outcomes[player.stable_user_id] = correct
        if correct:
            player.score += 1
            player.correct_answers += 1

    def _resolve_pair(self, a: Player, b: Player, question: Question) -> SubmitResult:
        ans_a = self.round_submissions.get(a.stable_user_id, NO_ANSWER)
        ans_b = self.round_submissions.get(b.stable_user_id, NO_ANSWER)
        matched = ans_a is not NO_ANSWER and ans_a != "" and ans_a == ans_b
        correct = matched and self._is_correct(ans_a, question)
        self._record(a, correct)
        self._record(b, correct)
        return SubmitResult(a, correct=correct, points=1 if correct else 0, team_matched=matched)

    def end_round(self, requesting_id: str) -> Optional[RoundResult]:
        self._require_host(requesting_id)
        if self.state != RoomState.PLAYING or self._round_resolved:
            return None
        self._round_resolved = True
        question = self.current_question

        in_round = [p for p in self.contestants if p.status != PlayerStatus.SPECTATING]
        for p in in_round:
            if p.stable_user_id not in self.round_submissions:
                self.round_submissions[p.stable_user_id] = NO_ANSWER
                p.last_answer = None
                p.status = PlayerStatus.ANSWERED

        team_results = None
        if self.grading_mode == GradingMode.DUPLICATE_DETECTION:
            self._grade_duplicates(in_round)
        elif self.grading_mode == GradingMode.TEAM_MATCH:
            self._grade_open_pairs(in_round, question)
            team_results = self._team_results(in_round)
        for p in in_round:
            if p.stable_user_id not in self._round_outcomes:
                self._record(p, False)

        next_index = self.question_index + 1
        finished = next_index >= len(self.questions)
        correct_answer = None
        if self.grading_mode != GradingMode.DUPLICATE_DETECTION and question is not None:
            correct_answer = question.correct_answer

        result = RoundResult(
            question_index=self.question_index,
            correct_answer=correct_answer,
            scoreboard=self.scoreboard(),
            outcomes=[self._outcome(p) for p in in_round],
            next_question_index=next_index,
            total_questions=len(self.questions),
            finished=finished,
            team_results=team_results,
        )
        if finished:
            self.state = RoomState.FINISHED
            result.winner = self.winner()
            logger.info("Room %s finished, winner: %s", self.code,
                        result.winner["nickname"] if result.winner else None)
        else:
            self.state = RoomState.INTERMISSION
            logger.info("Room %s round %d/%d ended", self.code, next_index, len(self.questions))
        self.last_result = result
        return result

    def _grade_duplicates(self, in_round: List[Player]):
        def counts_as_answer(ans) -> bool:
            return ans is not NO_ANSWER and ans != "" and ans != NO_ANSWER_LABEL

        given = Counter(a for a in self.round_submissions.values() if counts_as_answer(a))
        for p in in_round:
            ans = self.round_submissions.get(p.stable_user_id, NO_ANSWER)
            self._record(p, counts_as_answer(ans) and given[ans] == 1)

    def _grade_open_pairs(self, in_round: List[Player], question: Question):
        for p in in_round:
            if p.stable_user_id in self._round_outcomes:
                continue
            teammate = self.players.get(p.teammate_id) if p.teammate_id else None
            if teammate is not None and not teammate.is_host:
                self._resolve_pair(p, teammate, question)
            else:
                # Lone player, or a teammate who left mid-round.
                ans = self.round_submissions.get(p.stable_user_id, NO_ANSWER)
                self._record(p, self._is_correct(ans, question))

    def _team_results(self, in_round: List[Player]) -> List[dict]:
        results = []
        seen: Set[str] = set()
        for p in in_round:
            if p.stable_user_id in seen:
                continue
            teammate = self.players.get(p.teammate_id) if p.teammate_id else None
            members = [p] if teammate is None else [p, teammate]
            seen.update(m.stable_user_id for m in members)
            answers = [self.round_submissions.get(m.stable_user_id, NO_ANSWER) for m in members]
            results.append({
                "team_id": p.team_id,
                "players": [m.nickname for m in members],
                "answers": [m.last_answer for m in members],
                "matched": teammate is not None and answers[0] is not NO_ANSWER
                           and answers[0] != "" and answers[0] == answers[1],
                "earned_point": self._round_outcomes.get(p.stable_user_id, False),
                "lone": teammate is None,
            })
        return results

    def _outcome(self, player: Player) -> dict:
        submitted = self.round_submissions.get(player.stable_user_id, NO_ANSWER)
        return {
            "stable_user_id": player.stable_user_id,
            "nickname": player.nickname,
            "answer": player.last_answer,
            "answered": submitted is not NO_ANSWER,
            "correct": self._round_outcomes.get(player.stable_user_id, False),
        }

    def advance_round(self, requesting_id: str, online: Optional[Iterable[str]] = None) -> dict:
        self._require_host(requesting_id)
        if self.state != RoomState.INTERMISSION:
            raise InvalidState("The current round has not ended")
        self.question_index += 1
        if self.question_index >= len(self.questions):
            self.state = RoomState.FINISHED
            return self.game_over_payload()
        self.state = RoomState.PLAYING
        self._begin_round(online)
        return self.current_question_payload()

    def reset(self, requesting_id: str, pack: Optional[Pack] = None):
        self._require_host(requesting_id)
        if pack is not None:
            self.pack = pack
            self.grading_mode = pack.grading_mode
        self.teams = self._build_teams()
        self.state = RoomState.WAITING
        self.questions = []
        self.question_index = 0
        self.round_submissions = {}
        self.last_result = None
        self._required = set()
        self._round_outcomes = {}
        self._round_resolved = False
        for p in self.players.values():
            p.score = 0
            p.correct_answers = 0
            p.total_questions = 0
            p.status = PlayerStatus.ACTIVE
            p.is_ready = p.is_host
            p.team_id = None
            p.teammate_id = None
            p.last_answer = None
        logger.info("Room %s reset (pack: %s)", self.code, self.pack.id if self.pack else None)

    # ------------------------------------------------------------------
    # Views

    def scoreboard(self) -> List[dict]:
        ranked = sorted(self.contestants, key=lambda p: p.score, reverse=True)
        return [
            {
                "stable_user_id": p.stable_user_id,
                "nickname": p.nickname,
                "avatar": p.avatar,
                "score": p.score,
                "correct_answers": p.correct_answers,
            }
            for p in ranked
        ]

    def winner(self) -> Optional[dict]:
        players = self.contestants
        if not players:
            return None
        # max() keeps the first of equal scores, so ties go to the earliest joiner
        best = max(players, key=lambda p: p.score)
        return {"stable_user_id": best.stable_user_id, "nickname": best.nickname,
                "avatar": best.avatar, "score": best.score}

    def roster(self) -> List[dict]:
        return [p.to_dict() for p in self.players.values()]

    def teams_view(self) -> Optional[List[dict]]:
        if self.teams is None:
            return None
        return [t.to_dict() for t in self.teams]

    def current_question_payload(self) -> dict:
        question = self.current_question
        return {
            "question": question.public_view() if question else None,
            "index": self.question_index,
            "total": len(self.questions),
            "grading_mode": self.grading_mode.value,
            "is_team_mode": self.grading_mode == GradingMode.TEAM_MATCH,
            "time_limit": self.time_limit,
        }

    def game_over_payload(self) -> dict:
        return {"game_over": True, "scoreboard": self.scoreboard(), "winner": self.winner()}

    def summary(self) -> dict:
        host = self.host
        return {
            "room_code": self.code,
            "player_count": len(self.players),
            "host_name": host.nickname if host else None,
            "pack_name": self.pack.title if self.pack else None,
            "state": self.state.value,
        }

    def snapshot(self) -> dict:
        """Full room state for a (re)connecting client."""
        data = {
            "room_code": self.code,
            "state": self.state.value,
            "host_id": self.host_id,
            "pack": self.pack.summary() if self.pack else None,
            "grading_mode": self.grading_mode.value,
            "players": self.roster(),
            "teams": self.teams_view(),
        }
        if self.state == RoomState.PLAYING:
            data["question"] = self.current_question_payload()
        elif self.last_result is not None:
            data["last_result"] = self.last_result.to_dict()
        return data
