import sys
import os
import random

import pytest

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from errors import (
    InvalidSpot,
    InvalidState,
    InvalidTeam,
    NicknameTaken,
    NoQuestions,
    NotAuthorized,
    PlayerNotFound,
    RoomFinished,
    SpotOccupied,
    TeamsNotSupported,
)
from pack_catalog import GradingMode, Pack, Question
from room_session import NO_ANSWER, Player, PlayerStatus, RoomSession, RoomState, normalize_answer


def make_pack(mode=GradingMode.STANDARD, answers=("Paris", "Rome", "Berlin"), pack_id="p1"):
    return Pack(
        id=pack_id,
        title="Test Pack",
        grading_mode=mode,
        questions=[
            Question(id=str(i + 1), text=f"Question {i + 1}?", correct_answer=a)
            for i, a in enumerate(answers)
        ],
    )


def make_session(mode=GradingMode.STANDARD, answers=("Paris", "Rome", "Berlin"),
                 question_count=None, seed=1):
    host = Player(id="conn-host", stable_user_id="host", nickname="Host")
    return RoomSession("123456", host, make_pack(mode, answers),
                       question_count=question_count, rng=random.Random(seed))


def add_players(session, *names):
    for name in names:
        session.join(name.lower(), f"conn-{name.lower()}", name)


def score_of(session, uid):
    return session.players[uid].score


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

class TestNormalize:
    def test_trims_and_casefolds(self):
        assert normalize_answer("  PaRiS ") == "paris"

    def test_none_is_empty(self):
        assert normalize_answer(None) == ""

    def test_sentinel_is_not_a_string(self):
        assert NO_ANSWER != ""
        assert NO_ANSWER != "no answer"


# ---------------------------------------------------------------------------
# Join / leave / kick
# ---------------------------------------------------------------------------

class TestJoin:
    def test_host_is_only_player_at_creation(self):
        session = make_session()
        assert list(session.players) == ["host"]
        assert session.players["host"].is_host
        assert session.state == RoomState.WAITING

    def test_join_adds_active_player(self):
        session = make_session()
        result = session.join("alice", "c1", "Alice", "🐱")
        assert not result.late_join
        assert not result.reconnected
        assert result.player.status == PlayerStatus.ACTIVE
        assert session.players["alice"].avatar == "🐱"

    def test_nickname_taken_exact_match(self):
        session = make_session()
        session.join("alice", "c1", "Alice")
        with pytest.raises(NicknameTaken):
            session.join("alice2", "c2", "Alice")

    def test_nickname_check_is_case_sensitive(self):
        session = make_session()
        session.join("alice", "c1", "Alice")
        session.join("alice2", "c2", "alice")
        assert len(session.players) == 3

    def test_nickname_is_trimmed_before_check(self):
        session = make_session()
        session.join("alice", "c1", "Alice")
        with pytest.raises(NicknameTaken):
            session.join("alice2", "c2", "  Alice ")

    def test_nickname_uniqueness_is_per_room(self):
        a = make_session()
        b = make_session()
        a.join("u1", "c1", "Alice")
        b.join("u2", "c2", "Alice")
        assert a.players["u1"].nickname == b.players["u2"].nickname == "Alice"

    def test_nickname_freed_after_leave(self):
        session = make_session()
        session.join("alice", "c1", "Alice")
        session.leave("alice")
        session.join("alice2", "c2", "Alice")
        assert "alice2" in session.players

    def test_reconnect_by_stable_id_keeps_score(self):
        session = make_session()
        session.join("alice", "c1", "Alice")
        session.players["alice"].score = 3
        result = session.join("alice", "c-new", "Alice")
        assert result.reconnected
        assert session.players["alice"].id == "c-new"
        assert session.players["alice"].score == 3
        assert len(session.players) == 2

    def test_join_finished_room_fails(self):
        session = make_session()
        session.state = RoomState.FINISHED
        with pytest.raises(RoomFinished):
            session.join("bob", "c2", "Bob")

    def test_late_join_is_spectator(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        result = session.join("bob", "c2", "Bob")
        assert result.late_join
        assert session.players["bob"].status == PlayerStatus.SPECTATING


class TestLeaveAndKick:
    def test_leave_is_idempotent(self):
        session = make_session()
        add_players(session, "Alice")
        assert session.leave("alice") is not None
        assert session.leave("alice") is None

    def test_leave_frees_team_spot(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice")
        session.join_team("alice", 0, 0)
        session.leave("alice")
        assert session.teams[0].spots == [None, None]

    def test_room_empty_after_everyone_leaves(self):
        session = make_session()
        add_players(session, "Alice")
        session.leave("alice")
        session.leave("host")
        assert session.is_empty

    def test_kick_requires_host(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        with pytest.raises(NotAuthorized):
            session.kick("alice", "bob")
        assert "bob" in session.players

    def test_kick_removes_target(self):
        session = make_session()
        add_players(session, "Alice")
        kicked = session.kick("host", "alice")
        assert kicked.nickname == "Alice"
        assert "alice" not in session.players

    def test_kick_absent_player_is_noop(self):
        session = make_session()
        assert session.kick("host", "ghost") is None

    def test_host_cannot_kick_self(self):
        session = make_session()
        with pytest.raises(NotAuthorized):
            session.kick("host", "host")


class TestHostMigration:
    def test_first_remaining_player_becomes_host(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.leave("host")
        new_host = session.migrate_host()
        assert new_host.stable_user_id == "alice"
        assert session.host_id == "alice"
        assert [p.stable_user_id for p in session.players.values() if p.is_host] == ["alice"]

    def test_prefers_online_players(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.leave("host")
        new_host = session.migrate_host(prefer={"bob"})
        assert new_host.stable_user_id == "bob"

    def test_noop_while_host_present(self):
        session = make_session()
        add_players(session, "Alice")
        assert session.migrate_host() is None
        assert session.host_id == "host"


class TestReady:
    def test_players_start_unready_host_ready(self):
        session = make_session()
        add_players(session, "Alice")
        assert session.players["host"].is_ready
        assert not session.players["alice"].is_ready
        assert session.roster()[1]["is_ready"] is False

    def test_toggle(self):
        session = make_session()
        add_players(session, "Alice")
        assert session.set_ready("alice", True).is_ready
        assert not session.set_ready("alice", False).is_ready

    def test_host_cannot_toggle(self):
        session = make_session()
        with pytest.raises(NotAuthorized):
            session.set_ready("host", False)
        assert session.players["host"].is_ready

    def test_only_in_lobby(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        with pytest.raises(InvalidState):
            session.set_ready("alice", True)

    def test_unknown_player(self):
        session = make_session()
        with pytest.raises(PlayerNotFound):
            session.set_ready("ghost", True)

    def test_late_joiner_is_ready(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        add_players(session, "Bob")
        assert session.players["bob"].is_ready

    def test_migrated_host_is_ready(self):
        session = make_session()
        add_players(session, "Alice")
        session.leave("host")
        assert session.migrate_host().is_ready


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

class TestJoinTeam:
    def test_teams_not_supported_for_standard_pack(self):
        session = make_session()
        add_players(session, "Alice")
        with pytest.raises(TeamsNotSupported):
            session.join_team("alice", 0, 0)

    def test_invalid_team_and_spot(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice")
        with pytest.raises(InvalidTeam):
            session.join_team("alice", 99, 0)
        with pytest.raises(InvalidTeam):
            session.join_team("alice", -1, 0)
        with pytest.raises(InvalidSpot):
            session.join_team("alice", 0, 2)

    def test_spot_occupied(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice", "Bob")
        session.join_team("alice", 0, 0)
        with pytest.raises(SpotOccupied):
            session.join_team("bob", 0, 0)

    def test_moving_frees_previous_spot(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice")
        session.join_team("alice", 0, 0)
        session.join_team("alice", 1, 1)
        assert session.teams[0].spots == [None, None]
        assert session.teams[1].spots == [None, "alice"]
        held = [s for t in session.teams for s in t.spots if s == "alice"]
        assert len(held) == 1

    def test_failed_move_keeps_current_spot(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice", "Bob")
        session.join_team("alice", 0, 0)
        session.join_team("bob", 1, 0)
        with pytest.raises(SpotOccupied):
            session.join_team("alice", 1, 0)
        assert session.teams[0].spots[0] == "alice"

    def test_team_full_signal(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice", "Bob")
        assert session.join_team("alice", 2, 0).team_full is False
        assert session.join_team("bob", 2, 1).team_full is True

    def test_only_in_waiting_state(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice", "Bob")
        session.start("host")
        with pytest.raises(InvalidState):
            session.join_team("alice", 0, 0)


class TestTeamAssignment:
    def test_manual_teams_are_kept(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice", "Bob", "Carol", "Dave")
        session.join_team("alice", 0, 0)
        session.join_team("carol", 0, 1)
        session.start("host")
        assert session.players["alice"].teammate_id == "carol"
        assert session.players["carol"].teammate_id == "alice"
        assert session.players["alice"].team_id == "team-0"
        # the other two are paired randomly with each other
        assert session.players["bob"].teammate_id == "dave"
        assert session.players["dave"].teammate_id == "bob"

    def test_odd_player_out_is_lone(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice", "Bob", "Carol")
        session.start("host")
        lone = [p for p in session.contestants if p.teammate_id is None]
        paired = [p for p in session.contestants if p.teammate_id is not None]
        assert len(lone) == 1
        assert len(paired) == 2
        assert lone[0].team_id is None

    def test_host_is_never_assigned(self):
        session = make_session(GradingMode.TEAM_MATCH)
        add_players(session, "Alice", "Bob")
        session.start("host")
        assert session.players["host"].team_id is None
        assert session.players["host"].teammate_id is None


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

class TestStart:
    def test_start_requires_host(self):
        session = make_session()
        add_players(session, "Alice")
        with pytest.raises(NotAuthorized):
            session.start("alice")
        assert session.state == RoomState.WAITING

    def test_start_returns_first_question(self):
        session = make_session()
        add_players(session, "Alice")
        payload = session.start("host")
        assert session.state == RoomState.PLAYING
        assert payload["index"] == 0
        assert payload["total"] == 3
        assert payload["question"]["text"] == "Question 1?"
        assert "correct_answer" not in payload["question"]

    def test_question_count_capped_by_pack(self):
        session = make_session(question_count=10)
        session.start("host")
        assert len(session.questions) == 3

    def test_question_count_limits_rounds(self):
        session = make_session(question_count=2)
        session.start("host")
        assert [q.id for q in session.questions] == ["1", "2"]

    def test_no_questions(self):
        session = make_session(answers=())
        with pytest.raises(NoQuestions):
            session.start("host")
        assert session.state == RoomState.WAITING

    def test_zero_question_count_means_no_rounds(self):
        session = make_session(question_count=0)
        with pytest.raises(NoQuestions):
            session.start("host")
        assert session.state == RoomState.WAITING

    def test_cannot_start_twice(self):
        session = make_session()
        session.start("host")
        with pytest.raises(InvalidState):
            session.start("host")


# ---------------------------------------------------------------------------
# Standard grading
# ---------------------------------------------------------------------------

class TestStandardGrading:
    def test_correct_answer_normalized(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        result = session.submit_answer("alice", "  paris ")
        assert result.correct is True
        assert result.points == 1
        assert score_of(session, "alice") == 1
        assert session.round_submissions["alice"] == "paris"

    def test_wrong_answer(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        result = session.submit_answer("alice", "Lyon")
        assert result.correct is False
        assert score_of(session, "alice") == 0

    def test_ungraded_question_gives_participation_credit(self):
        session = make_session(answers=(None,))
        add_players(session, "Alice")
        session.start("host")
        assert session.submit_answer("alice", "anything").correct is True
        assert score_of(session, "alice") == 1

    def test_double_submission_is_noop(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.submit_answer("alice", "Paris")
        assert session.submit_answer("alice", "Paris") is None
        assert score_of(session, "alice") == 1

    def test_submission_marks_player_waiting(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.submit_answer("alice", "Paris")
        assert session.players["alice"].status == PlayerStatus.ANSWERED

    def test_submit_outside_playing_is_noop(self):
        session = make_session()
        add_players(session, "Alice")
        assert session.submit_answer("alice", "Paris") is None
        session.start("host")
        session.end_round("host")
        assert session.submit_answer("alice", "Paris") is None
        assert score_of(session, "alice") == 0

    def test_host_and_spectator_cannot_submit(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.join("bob", "c2", "Bob")
        assert session.submit_answer("host", "Paris") is None
        assert session.submit_answer("bob", "Paris") is None


# ---------------------------------------------------------------------------
# Team-match grading
# ---------------------------------------------------------------------------

def team_session(answers=("Paris",)):
    session = make_session(GradingMode.TEAM_MATCH, answers=answers)
    add_players(session, "Alice", "Bob")
    session.join_team("alice", 0, 0)
    session.join_team("bob", 0, 1)
    session.start("host")
    return session


class TestTeamMatchGrading:
    def test_first_submission_is_pending(self):
        session = team_session()
        result = session.submit_answer("alice", "paris ")
        assert result.pending is True
        assert result.correct is None
        assert score_of(session, "alice") == 0

    def test_matching_correct_answers_score_both(self):
        session = team_session()
        session.submit_answer("alice", "paris ")
        result = session.submit_answer("bob", "Paris")
        assert result.correct is True
        assert result.team_matched is True
        assert score_of(session, "alice") == 1
        assert score_of(session, "bob") == 1

    def test_mismatch_scores_neither(self):
        session = team_session()
        session.submit_answer("alice", "paris")
        result = session.submit_answer("bob", "lyon")
        assert result.team_matched is False
        assert score_of(session, "alice") == 0
        assert score_of(session, "bob") == 0

    def test_matching_wrong_answers_score_neither(self):
        session = team_session()
        session.submit_answer("alice", "lyon")
        session.submit_answer("bob", "Lyon")
        assert score_of(session, "alice") == 0
        assert score_of(session, "bob") == 0

    def test_ungraded_match_scores(self):
        session = team_session(answers=(None,))
        session.submit_answer("alice", "Red")
        session.submit_answer("bob", "red")
        assert score_of(session, "alice") == 1
        assert score_of(session, "bob") == 1

    def test_pending_partner_unresolved_at_round_end(self):
        session = team_session()
        session.submit_answer("alice", "Paris")
        result = session.end_round("host")
        assert score_of(session, "alice") == 0
        assert score_of(session, "bob") == 0
        team = result.team_results[0]
        assert team["matched"] is False
        assert team["earned_point"] is False

    def test_lone_player_graded_individually(self):
        session = make_session(GradingMode.TEAM_MATCH, answers=("Paris",))
        add_players(session, "Alice")
        session.start("host")
        result = session.submit_answer("alice", "paris")
        assert result.pending is False
        assert result.correct is True
        assert score_of(session, "alice") == 1

    def test_team_results_in_round_payload(self):
        session = team_session()
        session.submit_answer("alice", "Paris")
        session.submit_answer("bob", "Paris")
        result = session.end_round("host")
        assert result.team_results[0]["players"] == ["Alice", "Bob"]
        assert result.team_results[0]["earned_point"] is True


# ---------------------------------------------------------------------------
# Duplicate-detection grading
# ---------------------------------------------------------------------------

def duplicate_round(answers):
    session = make_session(GradingMode.DUPLICATE_DETECTION, answers=(None, None))
    add_players(session, *answers.keys())
    session.start("host")
    for name, answer in answers.items():
        result = session.submit_answer(name.lower(), answer)
        assert result.pending is True
    return session, session.end_round("host")


class TestDuplicateDetection:
    def test_only_unique_answer_scores(self):
        session, _ = duplicate_round({"A": "cat", "B": "cat", "C": "dog"})
        assert [score_of(session, u) for u in ("a", "b", "c")] == [0, 0, 1]

    def test_unique_answer_in_the_middle(self):
        session, _ = duplicate_round({"A": "cat", "B": "dog", "C": "cat"})
        assert [score_of(session, u) for u in ("a", "b", "c")] == [0, 1, 0]

    def test_duplicates_detected_after_normalization(self):
        session, _ = duplicate_round({"A": "Cat ", "B": "cat", "C": "dog"})
        assert score_of(session, "a") == 0

    def test_empty_and_no_answer_never_score(self):
        session, _ = duplicate_round({"A": "", "B": "No Answer", "C": "dog"})
        assert [score_of(session, u) for u in ("a", "b", "c")] == [0, 0, 1]

    def test_no_points_before_round_end(self):
        session = make_session(GradingMode.DUPLICATE_DETECTION, answers=(None,))
        add_players(session, "A", "B")
        session.start("host")
        session.submit_answer("a", "cat")
        assert score_of(session, "a") == 0

    def test_correct_answer_is_none(self):
        _, result = duplicate_round({"A": "cat", "B": "dog"})
        assert result.correct_answer is None

    def test_non_submitter_does_not_affect_uniqueness(self):
        session = make_session(GradingMode.DUPLICATE_DETECTION, answers=(None,))
        add_players(session, "A", "B", "C")
        session.start("host")
        session.submit_answer("a", "cat")
        session.submit_answer("b", "dog")
        session.end_round("host")
        assert [score_of(session, u) for u in ("a", "b", "c")] == [1, 1, 0]


# ---------------------------------------------------------------------------
# End round / advance / reset
# ---------------------------------------------------------------------------

class TestEndRound:
    def test_requires_host(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        with pytest.raises(NotAuthorized):
            session.end_round("alice")
        assert session.state == RoomState.PLAYING

    def test_second_call_is_noop(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.start("host")
        session.submit_answer("alice", "Paris")
        first = session.end_round("host")
        scores = {p.stable_user_id: p.score for p in session.players.values()}
        assert first is not None
        assert session.end_round("host") is None
        assert {p.stable_user_id: p.score for p in session.players.values()} == scores
        assert session.state == RoomState.INTERMISSION

    def test_non_submitter_gets_sentinel(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.start("host")
        session.submit_answer("alice", "Paris")
        result = session.end_round("host")
        assert session.round_submissions["bob"] is NO_ANSWER
        bob = next(o for o in result.outcomes if o["stable_user_id"] == "bob")
        assert bob["answered"] is False
        assert bob["correct"] is False
        assert score_of(session, "bob") == 0

    def test_sentinel_never_correct_on_ungraded_question(self):
        session = make_session(answers=(None, None))
        add_players(session, "Alice")
        session.start("host")
        session.end_round("host")
        assert score_of(session, "alice") == 0

    def test_payload(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.start("host")
        session.submit_answer("bob", "Paris")
        result = session.end_round("host")
        assert result.correct_answer == "Paris"
        assert result.next_question_index == 1
        assert result.total_questions == 3
        assert [e["nickname"] for e in result.scoreboard] == ["Bob", "Alice"]
        assert result.finished is False
        assert result.winner is None

    def test_spectator_not_in_outcomes(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.join("bob", "c2", "Bob")
        result = session.end_round("host")
        assert [o["stable_user_id"] for o in result.outcomes] == ["alice"]
        assert session.players["bob"].status == PlayerStatus.SPECTATING

    def test_last_round_finishes_with_winner(self):
        session = make_session(answers=("Paris",))
        add_players(session, "Alice")
        session.start("host")
        session.submit_answer("alice", "Paris")
        result = session.end_round("host")
        assert result.finished is True
        assert session.state == RoomState.FINISHED
        assert result.winner["nickname"] == "Alice"


class TestAllRequiredAnswered:
    def test_waits_for_every_active_player(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.start("host")
        session.submit_answer("alice", "Paris")
        assert not session.all_required_answered()
        session.submit_answer("bob", "Paris")
        assert session.all_required_answered()

    def test_late_joiner_does_not_block(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.join("bob", "c2", "Bob")
        session.submit_answer("alice", "Paris")
        assert session.all_required_answered()

    def test_offline_at_round_start_not_required(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.start("host", online={"host", "alice"})
        session.submit_answer("alice", "Paris")
        assert session.all_required_answered()

    def test_player_who_left_not_required(self):
        session = make_session()
        add_players(session, "Alice", "Bob")
        session.start("host")
        session.submit_answer("alice", "Paris")
        session.leave("bob")
        assert session.all_required_answered()

    def test_false_after_round_resolved(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.submit_answer("alice", "Paris")
        session.end_round("host")
        assert not session.all_required_answered()


class TestAdvanceRound:
    def test_requires_intermission(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        with pytest.raises(InvalidState):
            session.advance_round("host")

    def test_requires_host(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.end_round("host")
        with pytest.raises(NotAuthorized):
            session.advance_round("alice")

    def test_next_question_resets_round(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.submit_answer("alice", "Paris")
        session.end_round("host")
        payload = session.advance_round("host")
        assert payload["index"] == 1
        assert session.state == RoomState.PLAYING
        assert session.round_submissions == {}
        assert session.players["alice"].status == PlayerStatus.ACTIVE

    def test_late_joiner_becomes_active_next_round(self):
        session = make_session()
        add_players(session, "Alice")
        session.start("host")
        session.join("bob", "c2", "Bob")
        session.end_round("host")
        session.advance_round("host")
        assert session.players["bob"].status == PlayerStatus.ACTIVE
        assert session.submit_answer("bob", "Rome").correct is True


class TestReset:
    def test_requires_host(self):
        session = make_session()
        add_players(session, "Alice")
        with pytest.raises(NotAuthorized):
            session.reset("alice")

    def test_reset_zeroes_scores_keeps_roster(self):
        session = make_session(GradingMode.TEAM_MATCH, answers=("Paris",))
        add_players(session, "Alice", "Bob")
        session.join_team("alice", 0, 0)
        session.join_team("bob", 0, 1)
        session.set_ready("alice", True)
        session.start("host")
        session.submit_answer("alice", "Paris")
        session.submit_answer("bob", "Paris")
        session.end_round("host")
        assert session.state == RoomState.FINISHED

        session.reset("host")
        assert session.state == RoomState.WAITING
        assert list(session.players) == ["host", "alice", "bob"]
        assert all(p.score == 0 for p in session.players.values())
        assert all(p.team_id is None and p.teammate_id is None for p in session.players.values())
        assert all(t.spots == [None, None] for t in session.teams)
        assert session.round_submissions == {}
        assert session.players["host"].is_ready
        assert not session.players["alice"].is_ready

    def test_reset_with_new_pack_switches_grading(self):
        session = make_session()
        session.reset("host", make_pack(GradingMode.TEAM_MATCH, pack_id="p2"))
        assert session.grading_mode == GradingMode.TEAM_MATCH
        assert session.teams is not None


# ---------------------------------------------------------------------------
# Whole game
# ---------------------------------------------------------------------------

class TestFullGame:
    def test_three_question_game(self):
        session = make_session(question_count=3)
        add_players(session, "Alice", "Bob", "Carol")
        payload = session.start("host")
        answers = {
            "alice": ["Paris", "x", "x"],
            "bob": ["Paris", "Rome", "x"],
            "carol": ["x", "x", "x"],
        }
        rounds = 0
        while True:
            for uid, given in answers.items():
                session.submit_answer(uid, given[payload["index"]])
            result = session.end_round("host")
            rounds += 1
            assert len(session.players) == 4
            assert sum(p.is_host for p in session.players.values()) == 1
            if result.finished:
                break
            payload = session.advance_round("host")

        assert rounds == 3
        assert session.state == RoomState.FINISHED
        scores = [e["score"] for e in result.scoreboard]
        assert scores == sorted(scores, reverse=True) == [2, 1, 0]
        assert result.winner["nickname"] == "Bob"

    def test_tied_winner_is_first_in_roster(self):
        session = make_session(answers=("Paris",))
        add_players(session, "Alice", "Bob")
        session.start("host")
        session.submit_answer("bob", "Paris")
        session.submit_answer("alice", "Paris")
        result = session.end_round("host")
        assert result.winner["nickname"] == "Alice"
        assert [e["nickname"] for e in result.scoreboard] == ["Alice", "Bob"]

    def test_rounds_played_matches_question_count(self):
        for count, expected in ((1, 1), (2, 2), (5, 3)):
            session = make_session(question_count=count)
            add_players(session, "Alice")
            session.start("host")
            rounds = 1
            while session.end_round("host").finished is False:
                session.advance_round("host")
                rounds += 1
            assert rounds == expected
