"""Phase engine tests against an in-memory store and a recording notifier."""
import sys
import os
import asyncio

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import game_engine as game_engine_module
from db import make_engine as make_db_engine, make_session_factory, init_db
from content_engine import ContentEngine, FALLBACK_QUESTIONS
from game_engine import (
    GameEngine, NotFound, NotAllowed,
    clamp_int, normalize_room_config, compute_points, rank_players,
)
from room_store import RoomStore
from session_registry import SessionRegistry, TRANSITION_TIMER, QUESTION_TIMER
import config


class RecordingNotifier:
    def __init__(self):
        self.room_messages = []
        self.direct_messages = []

    async def send_to_room(self, room_code, message):
        self.room_messages.append((room_code, message))

    async def send_to_connection(self, connection_id, message):
        self.direct_messages.append((connection_id, message))

    def room_types(self):
        return [m["type"] for _, m in self.room_messages]

    def last(self, msg_type):
        return [m for _, m in self.room_messages if m["type"] == msg_type][-1]

    def direct(self, msg_type):
        return [(cid, m) for cid, m in self.direct_messages if m["type"] == msg_type]


class FreeTextContent:
    async def generate_round_content(self, topic, count, difficulty="Mixed"):
        return {
            "title": "Capital Punishment",
            "questions": [{
                "type": "free_text",
                "text": "What is the capital of France?",
                "accepted_answers": ["Paris"],
                "display_answer": "Paris",
            }],
        }


class BrokenContent:
    async def generate_round_content(self, topic, count, difficulty="Mixed"):
        raise RuntimeError("upstream exploded")


class Harness:
    def __init__(self, content=None, **timings):
        db_engine = make_db_engine("sqlite://")
        init_db(db_engine)
        self.store = RoomStore(make_session_factory(db_engine))
        self.registry = SessionRegistry()
        self.notifier = RecordingNotifier()
        delays = {
            "question_time": 60, "reveal_time": 60, "starting_delay": 60,
            "topic_delay": 60, "round_over_delay": 60,
        }
        delays.update(timings)
        self.engine = GameEngine(
            self.store, self.registry, content or ContentEngine(provider="mock"),
            notifier=self.notifier, **delays,
        )

    def seed_room(self, players=("Alice", "Bob"), max_players=3,
                  rounds_per_player=1, questions_per_round=3, phase="STARTING"):
        """A room with members seated, by default just past the starting countdown."""
        room = self.engine.create_game(
            "host", max_players=max_players, rounds_per_player=rounds_per_player,
            questions_per_round=questions_per_round,
        )
        code = room["game_code"]
        for name in players:
            self.store.upsert_player(code, name, f"conn-{name}")
        self.store.update_room(code, phase=phase)
        return code

    async def to_question(self, code, topic="science"):
        await self.engine.start_topic_selection(code)
        result = await self.engine.handle_topic_submission(code, topic, "conn-Alice")
        assert result.ok, result.error
        self.registry.get(code).cancel_timer(TRANSITION_TIMER)
        await self.engine.start_question(code)


@pytest.fixture
def plain_harness():
    """For sync tests that never arm a timer."""
    return Harness()


@pytest_asyncio.fixture
async def harness():
    h = Harness()
    yield h
    await h.engine.shutdown()


# ---------------------------------------------------------------------------
# Room config & scoring
# ---------------------------------------------------------------------------

class TestRoomConfig:
    def test_clamp_to_bounds(self):
        assert clamp_int(99, 2, 8, 3) == 8
        assert clamp_int(0, 2, 8, 3) == 2
        assert clamp_int("5", 2, 8, 3) == 5

    def test_junk_gives_default(self):
        assert clamp_int("lots", 2, 8, 3) == 3
        assert clamp_int(None, 2, 8, 3) == 3
        assert clamp_int(True, 2, 8, 3) == 3
        assert clamp_int(float("nan"), 2, 8, 3) == 3

    def test_normalize_defaults(self):
        assert normalize_room_config() == {
            "max_players": 3,
            "rounds_per_player": 2,
            "questions_per_round": 5,
            "difficulty": "Mixed",
        }

    def test_normalize_clamps_and_rejects_unknown_difficulty(self):
        cfg = normalize_room_config(max_players=20, rounds_per_player=-1,
                                    questions_per_round=11, difficulty="Impossible")
        assert cfg["max_players"] == 8
        assert cfg["rounds_per_player"] == 1
        assert cfg["questions_per_round"] == 10
        assert cfg["difficulty"] == "Mixed"

    def test_valid_difficulty_kept(self):
        assert normalize_room_config(difficulty="Hard")["difficulty"] == "Hard"


class TestScoring:
    def test_instant_answer_max_points(self):
        assert compute_points(0, 30) == config.MAX_POINTS

    def test_half_time(self):
        assert compute_points(15, 30) == 55

    def test_at_and_past_limit_floor(self):
        assert compute_points(30, 30) == config.MIN_POINTS
        assert compute_points(45, 30) == config.MIN_POINTS

    def test_always_in_range(self):
        for elapsed in [0, 0.001, 5, 10, 29.999, 30, 100]:
            assert config.MIN_POINTS <= compute_points(elapsed, 30) <= config.MAX_POINTS


class TestRanking:
    def test_ties_keep_join_order(self, plain_harness):
        harness = plain_harness
        code = harness.seed_room(players=("Alice", "Bob", "Carol"))
        players = harness.store.list_players(code)
        harness.store.increment_score(players[0].id, 50)
        harness.store.increment_score(players[1].id, 50)
        harness.store.increment_score(players[2].id, 80)
        ranking = rank_players(harness.store.list_players(code))
        assert [r["username"] for r in ranking] == ["Carol", "Alice", "Bob"]
        assert [r["rank"] for r in ranking] == [1, 2, 3]


# ---------------------------------------------------------------------------
# Lobby
# ---------------------------------------------------------------------------

class TestCreateGame:
    def test_code_is_four_uppercase_letters(self, plain_harness):
        harness = plain_harness
        room = harness.engine.create_game("host")
        code = room["game_code"]
        assert len(code) == 4 and code.isalpha() and code.isupper()
        assert room["game_state"] == "LOBBY"

    def test_retries_on_collision(self, plain_harness, monkeypatch):
        harness = plain_harness
        harness.store.create_room("ABCD", None, 3, 2, 5, "Mixed")
        codes = iter(["ABCD", "WXYZ"])
        monkeypatch.setattr(game_engine_module, "random_game_code", lambda: next(codes))
        room = harness.engine.create_game("host")
        assert room["game_code"] == "WXYZ"

    def test_gives_up_after_max_attempts(self, plain_harness, monkeypatch):
        harness = plain_harness
        harness.store.create_room("ABCD", None, 3, 2, 5, "Mixed")
        monkeypatch.setattr(game_engine_module, "random_game_code", lambda: "ABCD")
        with pytest.raises(RuntimeError):
            harness.engine.create_game("host")


class TestJoinGame:
    @pytest.mark.asyncio
    async def test_unknown_room(self, harness):
        with pytest.raises(NotFound):
            await harness.engine.join_game("ZZZZ", "Alice", "c1")

    @pytest.mark.asyncio
    async def test_last_seat_starts_game(self, harness):
        code = harness.engine.create_game("host", max_players=2)["game_code"]
        await harness.engine.join_game(code, "Alice", "c1")
        assert harness.store.get_room(code).phase == "LOBBY"
        await harness.engine.join_game(code, "Bob", "c2")
        assert harness.store.get_room(code).phase == "STARTING"
        assert harness.notifier.room_types() == ["GAME_STARTED"]
        assert harness.registry.get(code).has_timer(TRANSITION_TIMER)

    @pytest.mark.asyncio
    async def test_room_full(self, harness):
        code = harness.engine.create_game("host", max_players=2)["game_code"]
        await harness.engine.join_game(code, "Alice", "c1")
        await harness.engine.join_game(code, "Bob", "c2")
        with pytest.raises(NotAllowed, match="Room Full"):
            await harness.engine.join_game(code, "Carol", "c3")

    @pytest.mark.asyncio
    async def test_no_new_players_after_start(self, harness):
        code = harness.seed_room()
        harness.store.update_room(code, phase="TOPIC_SELECTION")
        with pytest.raises(NotAllowed, match="already started"):
            await harness.engine.join_game(code, "Carol", "c3")

    @pytest.mark.asyncio
    async def test_rejoin_reuses_membership(self, harness):
        code = harness.seed_room()
        original = harness.store.find_player(code, "Bob")
        harness.store.detach_connection("conn-Bob")
        harness.store.update_room(code, phase="QUESTION")
        result = await harness.engine.join_game(code, "Bob", "conn-Bob-2")
        assert result.rejoined
        assert result.player_id == original.id
        assert harness.store.count_players(code) == 2


# ---------------------------------------------------------------------------
# Topic selection
# ---------------------------------------------------------------------------

class TestTopicSelection:
    @pytest.mark.asyncio
    async def test_picker_gets_private_request(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        requests_sent = harness.notifier.direct("TOPIC_REQUEST")
        assert requests_sent == [("conn-Alice", {"type": "TOPIC_REQUEST", "round": 1, "total_rounds": 2})]
        waiting = harness.notifier.last("TOPIC_WAITING")
        assert waiting["picker_username"] == "Alice"
        room = harness.store.get_room(code)
        assert room.phase == "TOPIC_SELECTION"
        assert room.current_round == 1

    @pytest.mark.asyncio
    async def test_picker_rotates(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        harness.store.update_room(code, phase="ROUND_OVER")
        await harness.engine.start_topic_selection(code)
        pickers = [cid for cid, _ in harness.notifier.direct("TOPIC_REQUEST")]
        assert pickers == ["conn-Alice", "conn-Bob"]

    @pytest.mark.asyncio
    async def test_wrong_picker_rejected(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        result = await harness.engine.handle_topic_submission(code, "science", "conn-Bob")
        assert not result.ok
        assert result.error == "You are not the topic picker"

    @pytest.mark.asyncio
    async def test_second_topic_rejected(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        assert (await harness.engine.handle_topic_submission(code, "science", "conn-Alice")).ok
        again = await harness.engine.handle_topic_submission(code, "history", "conn-Alice")
        assert not again.ok
        assert again.error == "Topic already chosen"

    @pytest.mark.asyncio
    async def test_wrong_phase_and_missing_session(self, harness):
        code = harness.seed_room()
        missing = await harness.engine.handle_topic_submission(code, "science", "conn-Alice")
        assert missing.error == "Game session not found"
        harness.registry.get_or_create(code)
        wrong_phase = await harness.engine.handle_topic_submission(code, "science", "conn-Alice")
        assert wrong_phase.error == "Not in topic selection phase"

    @pytest.mark.asyncio
    async def test_accepted_topic_broadcasts_title(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        await harness.engine.handle_topic_submission(code, "science", "conn-Alice")
        types = harness.notifier.room_types()
        assert types[-2:] == ["TOPIC_CHOSEN", "ROUND_TITLE"]
        assert harness.notifier.last("ROUND_TITLE")["title"] == "Element-ary My Dear Watson"
        assert harness.registry.get(code).has_timer(TRANSITION_TIMER)

    @pytest.mark.asyncio
    async def test_content_failure_falls_back(self):
        h = Harness(content=BrokenContent())
        try:
            code = h.seed_room()
            await h.to_question(code, topic="Quantum Knitting")
            assert h.notifier.last("ROUND_TITLE")["title"] == "Quantum Knitting"
            question = h.notifier.last("QUESTION_START")
            assert question["text"] == FALLBACK_QUESTIONS[0]["text"]
        finally:
            await h.engine.shutdown()

    @pytest.mark.asyncio
    async def test_last_round_ends_game(self, harness):
        code = harness.seed_room()
        harness.registry.get_or_create(code).current_round = 2
        await harness.engine.start_topic_selection(code)
        assert harness.store.get_room(code).phase == "GAME_OVER"
        assert "GAME_OVER" in harness.notifier.room_types()


# ---------------------------------------------------------------------------
# Questions, answers, reveal
# ---------------------------------------------------------------------------

class TestQuestionFlow:
    @pytest.mark.asyncio
    async def test_question_start_payload(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        question = harness.notifier.last("QUESTION_START")
        assert question["question_type"] == "multiple_choice"
        assert question["options"] == FALLBACK_QUESTIONS[0]["options"]
        assert question["question_number"] == 1
        assert question["round"] == 1
        assert "correct" not in question
        assert harness.registry.get(code).has_timer(QUESTION_TIMER)

    @pytest.mark.asyncio
    async def test_answer_is_idempotent(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        assert await harness.engine.record_answer(code, "conn-Alice", answer_index=0) is True
        assert await harness.engine.record_answer(code, "conn-Alice", answer_index=3) is False
        session = harness.registry.get(code)
        assert len(session.answers) == 1
        assert next(iter(session.answers.values()))["answer_index"] == 0
        pings = harness.notifier.direct("PLAYER_ANSWERED")
        assert len(pings) == 1
        assert pings[0][0] == "host"
        assert pings[0][1]["username"] == "Alice"

    @pytest.mark.asyncio
    async def test_answer_outside_question_rejected(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        with pytest.raises(NotAllowed):
            await harness.engine.record_answer(code, "conn-Alice", answer_index=0)

    @pytest.mark.asyncio
    async def test_unknown_connection_rejected(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        with pytest.raises(NotFound):
            await harness.engine.record_answer(code, "stranger", answer_index=0)

    @pytest.mark.asyncio
    async def test_all_answered_reveals_and_scores(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        correct = FALLBACK_QUESTIONS[0]["correct"]
        await harness.engine.record_answer(code, "conn-Alice", answer_index=correct)
        assert "ROUND_REVEAL" not in harness.notifier.room_types()
        await harness.engine.record_answer(code, "conn-Bob", answer_index=(correct + 1) % 4)

        reveal = harness.notifier.last("ROUND_REVEAL")
        assert reveal["correct_index"] == correct
        by_name = {s["username"]: s for s in reveal["scores"]}
        assert by_name["Alice"]["points"] >= 90
        assert by_name["Alice"]["score"] == by_name["Alice"]["points"]
        assert by_name["Bob"]["points"] == 0
        assert harness.store.get_room(code).phase == "REVEAL"
        assert not harness.registry.get(code).has_timer(QUESTION_TIMER)

    @pytest.mark.asyncio
    async def test_reveal_runs_once_under_race(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        await asyncio.gather(
            harness.engine.record_answer(code, "conn-Alice", answer_index=0),
            harness.engine.record_answer(code, "conn-Bob", answer_index=0),
            harness.engine.reveal_answer(code),
            harness.engine.reveal_answer(code),
            return_exceptions=True,
        )
        assert harness.notifier.room_types().count("ROUND_REVEAL") == 1

    @pytest.mark.asyncio
    async def test_question_timer_reveals_without_answers(self):
        h = Harness(question_time=0.05)
        try:
            code = h.seed_room()
            await h.to_question(code)
            await asyncio.sleep(0.3)
            reveal = h.notifier.last("ROUND_REVEAL")
            assert all(s["points"] == 0 for s in reveal["scores"])
            assert h.store.get_room(code).phase == "REVEAL"
        finally:
            await h.engine.shutdown()

    @pytest.mark.asyncio
    async def test_free_text_answer_with_typo(self):
        h = Harness(content=FreeTextContent())
        try:
            code = h.seed_room()
            await h.to_question(code)
            question = h.notifier.last("QUESTION_START")
            assert question["question_type"] == "free_text"
            assert "options" not in question
            await h.engine.record_answer(code, "conn-Alice", answer_text="pariss")
            await h.engine.record_answer(code, "conn-Bob", answer_text="London")
            reveal = h.notifier.last("ROUND_REVEAL")
            assert reveal["correct_answer"] == "Paris"
            by_name = {s["username"]: s["points"] for s in reveal["scores"]}
            assert by_name["Alice"] > 0
            assert by_name["Bob"] == 0
        finally:
            await h.engine.shutdown()

    @pytest.mark.asyncio
    async def test_rejoin_payload_is_live_question(self):
        h = Harness(content=FreeTextContent())
        try:
            code = h.seed_room()
            await h.to_question(code)
            payload = h.engine.current_question_payload(code)
            assert payload["text"] == "What is the capital of France?"
            assert 0 < payload["time_remaining"] <= 60
        finally:
            await h.engine.shutdown()

    @pytest.mark.asyncio
    async def test_no_payload_outside_question(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        assert harness.engine.current_question_payload(code) is None


class TestRoundAndGameOver:
    @pytest.mark.asyncio
    async def test_round_over_sorted_scores(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        bob = harness.store.find_player(code, "Bob")
        harness.store.increment_score(bob.id, 70)
        harness.store.update_room(code, phase="REVEAL")
        await harness.engine.start_round_over(code)
        message = harness.notifier.last("ROUND_OVER")
        assert [s["username"] for s in message["scores"]] == ["Bob", "Alice"]
        assert message["round"] == 1
        assert message["total_rounds"] == 2
        assert harness.store.get_room(code).phase == "ROUND_OVER"

    @pytest.mark.asyncio
    async def test_end_game_records_and_cleans_up(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        alice = harness.store.find_player(code, "Alice")
        harness.store.increment_score(alice.id, 40)

        await harness.engine.end_game(code)

        final = harness.notifier.last("GAME_OVER")
        assert [s["username"] for s in final["scores"]] == ["Alice", "Bob"]
        assert [s["rank"] for s in final["scores"]] == [1, 2]
        assert harness.store.get_room(code).phase == "GAME_OVER"
        assert harness.store.list_players(code) == []
        assert code not in harness.registry
        history = harness.store.get_result(code)
        assert [(r["username"], r["score"], r["rank"]) for r in history["results"]] == [
            ("Alice", 40, 1), ("Bob", 0, 2),
        ]

    @pytest.mark.asyncio
    async def test_game_over_room_refuses_joins(self, harness):
        code = harness.seed_room()
        await harness.engine.end_game(code)
        with pytest.raises(NotAllowed):
            await harness.engine.join_game(code, "Alice", "c9")


class TestFullRound:
    @pytest.mark.asyncio
    async def test_one_round_runs_on_timers(self):
        h = Harness(question_time=5, reveal_time=0.01, topic_delay=0.01, round_over_delay=60)
        try:
            code = h.seed_room(questions_per_round=3)
            await h.engine.start_topic_selection(code)
            await h.engine.handle_topic_submission(code, "music", "conn-Alice")
            for _ in range(3):
                for _ in range(100):
                    if h.store.get_room(code).phase == "QUESTION":
                        break
                    await asyncio.sleep(0.01)
                await h.engine.record_answer(code, "conn-Alice", answer_index=0)
                await h.engine.record_answer(code, "conn-Bob", answer_index=1)
            for _ in range(100):
                if h.store.get_room(code).phase == "ROUND_OVER":
                    break
                await asyncio.sleep(0.01)
            assert h.notifier.room_types().count("QUESTION_START") == 3
            assert h.notifier.room_types().count("ROUND_REVEAL") == 3
            assert h.store.get_room(code).phase == "ROUND_OVER"
        finally:
            await h.engine.shutdown()


class TestPhaseGuards:
    @pytest.mark.asyncio
    async def test_repeat_question_start_keeps_answers(self, harness):
        code = harness.seed_room(players=("Alice", "Bob", "Carol"))
        await harness.to_question(code)
        await harness.engine.record_answer(code, "conn-Alice", answer_index=0)

        await harness.engine.start_question(code)

        assert len(harness.registry.get(code).answers) == 1
        assert harness.notifier.room_types().count("QUESTION_START") == 1

    @pytest.mark.asyncio
    async def test_round_over_only_after_reveal(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        await harness.engine.start_round_over(code)
        assert harness.store.get_room(code).phase == "QUESTION"
        assert "ROUND_OVER" not in harness.notifier.room_types()

    @pytest.mark.asyncio
    async def test_topic_selection_ignored_mid_question(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        await harness.engine.start_topic_selection(code)
        assert harness.store.get_room(code).phase == "QUESTION"
        assert len(harness.notifier.direct("TOPIC_REQUEST")) == 1

    @pytest.mark.asyncio
    async def test_lobby_room_cannot_skip_start(self, harness):
        code = harness.seed_room(phase="LOBBY")
        await harness.engine.start_topic_selection(code)
        assert harness.store.get_room(code).phase == "LOBBY"


class TestSessionExpiry:
    @pytest.mark.asyncio
    async def test_abandoned_game_is_closed(self, harness):
        code = harness.seed_room()
        await harness.to_question(code)
        harness.registry.get(code).last_activity -= config.ROOM_TTL_SECONDS + 1

        assert harness.engine.sweep_expired_sessions() == [code]

        assert code not in harness.registry
        assert harness.store.get_room(code).phase == "GAME_OVER"
        assert harness.store.list_players(code) == []
        assert harness.store.get_result(code) is None
        with pytest.raises(NotAllowed, match="Game is over"):
            await harness.engine.join_game(code, "Alice", "conn-Alice-2")

    @pytest.mark.asyncio
    async def test_fresh_sessions_kept(self, harness):
        code = harness.seed_room()
        await harness.engine.start_topic_selection(code)
        assert harness.engine.sweep_expired_sessions() == []
        assert code in harness.registry
        assert harness.store.get_room(code).phase == "TOPIC_SELECTION"
