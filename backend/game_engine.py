"""Per-room phase machine for the trivia game.

LOBBY -> STARTING -> TOPIC_SELECTION -> QUESTION -> REVEAL -> (QUESTION | ROUND_OVER)
-> (TOPIC_SELECTION | GAME_OVER)

Public coroutines take the session lock; the underscore variants expect the
caller to hold it. Timers are asyncio tasks stored on the session by kind.
Each transition checks the persisted phase against the phases it may follow,
so a late or duplicate trigger is a no-op.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
import math
import random
import string
import time

import config
from answer_validator import is_answer_correct
from content_engine import ContentEngine, MULTIPLE_CHOICE, FREE_TEXT, fallback_question
from room_store import RoomStore, CodeCollision
from session_registry import (
    SessionRegistry, GameSession,
    QUESTION_TIMER, REVEAL_TIMER, ROUND_OVER_TIMER, TRANSITION_TIMER,
)

logger = logging.getLogger(__name__)

LOBBY = "LOBBY"
STARTING = "STARTING"
TOPIC_SELECTION = "TOPIC_SELECTION"
QUESTION = "QUESTION"
REVEAL = "REVEAL"
ROUND_OVER = "ROUND_OVER"
GAME_OVER = "GAME_OVER"


class GameError(Exception):
    """A rejected player action. The message is sent back to the sender only."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(GameError):
    pass


class NotAllowed(GameError):
    pass


@dataclass
class SubmissionResult:
    ok: bool
    error: Optional[str] = None


@dataclass
class JoinResult:
    player_id: int
    username: str
    phase: str
    rejoined: bool


def clamp_int(value, lo: int, hi: int, default: int) -> int:
    """Coerce to an int within [lo, hi]. Non-numeric input gives the default."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(num):
        return default
    return max(lo, min(hi, int(num)))


def normalize_room_config(max_players=None, rounds_per_player=None,
                          questions_per_round=None, difficulty=None) -> dict:
    return {
        "max_players": clamp_int(max_players, *config.MAX_PLAYERS_RANGE),
        "rounds_per_player": clamp_int(rounds_per_player, *config.ROUNDS_PER_PLAYER_RANGE),
        "questions_per_round": clamp_int(questions_per_round, *config.QUESTIONS_PER_ROUND_RANGE),
        "difficulty": difficulty if difficulty in config.VALID_DIFFICULTIES else config.DEFAULT_DIFFICULTY,
    }


def random_game_code() -> str:
    return ''.join(random.choices(string.ascii_uppercase, k=config.GAME_CODE_LENGTH))


def compute_points(elapsed: float, time_limit: float) -> int:
    """Linear decay from MAX_POINTS (instant) to MIN_POINTS (at or past the limit)."""
    ratio = min(max(elapsed, 0) / time_limit, 1) if time_limit > 0 else 1
    points = round(config.MAX_POINTS - (config.MAX_POINTS - config.MIN_POINTS) * ratio)
    return max(config.MIN_POINTS, min(config.MAX_POINTS, points))


def is_correct(question: dict, answer: dict) -> bool:
    if question["type"] == FREE_TEXT:
        text = answer.get("answer_text")
        return bool(text) and is_answer_correct(text, question["accepted_answers"])
    return answer.get("answer_index") is not None and answer["answer_index"] == question["correct"]


def rank_players(players) -> List[dict]:
    """Descending by score; ties keep join order (sorted() is stable)."""
    ordered = sorted(players, key=lambda p: p.score, reverse=True)
    return [
        {"id": p.id, "username": p.username, "score": p.score, "rank": i + 1, "user_id": p.user_id}
        for i, p in enumerate(ordered)
    ]


def _score_rows(players) -> List[dict]:
    return [{"id": p.id, "username": p.username, "score": p.score} for p in players]


class GameEngine:
    """Drives every room's phase transitions.

    `notifier` must provide `send_to_room(code, message)` and
    `send_to_connection(connection_id, message)` coroutines.
    """

    def __init__(self, store: RoomStore, registry: SessionRegistry, content: ContentEngine,
                 notifier=None, *,
                 question_time: float = config.QUESTION_TIME_SEC,
                 reveal_time: float = config.REVEAL_TIME_SEC,
                 starting_delay: float = config.STARTING_DELAY_SEC,
                 topic_delay: float = config.TOPIC_CHOSEN_DELAY_SEC,
                 round_over_delay: float = config.ROUND_OVER_DELAY_SEC):
        self.store = store
        self.registry = registry
        self.content = content
        self.notifier = notifier
        self.question_time = question_time
        self.reveal_time = reveal_time
        self.starting_delay = starting_delay
        self.topic_delay = topic_delay
        self.round_over_delay = round_over_delay
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm(self, session: GameSession, kind: str, delay: float,
             callback: Callable[[str], Awaitable[None]]):
        session.cancel_timer(kind)
        session.timers[kind] = asyncio.create_task(
            self._run_timer(session, kind, delay, callback),
            name=f"{session.room_code}:{kind}",
        )

    async def _run_timer(self, session: GameSession, kind: str, delay: float,
                         callback: Callable[[str], Awaitable[None]]):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if session.timers.get(kind) is asyncio.current_task():
            session.timers.pop(kind, None)
        try:
            await callback(session.room_code)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Nothing awaits a timer task; the room stays in its last persisted phase
            logger.exception("Timer '%s' failed for room %s", kind, session.room_code)

    def start_cleanup_loop(self):
        """Start the background sweep of idle sessions."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_sessions())

    async def _cleanup_expired_sessions(self):
        while True:
            try:
                await asyncio.sleep(config.SESSION_SWEEP_INTERVAL_SEC)
                self.sweep_expired_sessions()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in session cleanup loop")

    async def shutdown(self):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        self.registry.clear()

    def teardown(self, code: str):
        """Drop a room's session and cancel all of its timers."""
        self.registry.discard(code)

    def sweep_expired_sessions(self) -> List[str]:
        """Tear down idle sessions. A game abandoned mid-play is closed without results."""
        expired = self.registry.expired_codes()
        for code in expired:
            logger.info("Session for room %s expired", code)
            self.teardown(code)
            room = self.store.get_room(code)
            if room and room.phase not in (LOBBY, GAME_OVER):
                self.store.update_room(code, phase=GAME_OVER)
                removed = self.store.delete_players(code)
                logger.info("Closed abandoned room %s (%d memberships removed)", code, removed)
        return expired

    # ------------------------------------------------------------------
    # Lobby
    # ------------------------------------------------------------------

    def create_game(self, host_connection_id: Optional[str], **settings) -> dict:
        room_config = normalize_room_config(**settings)
        for _ in range(config.MAX_GAME_CODE_ATTEMPTS):
            code = random_game_code()
            try:
                room = self.store.create_room(code, host_connection_id, **room_config)
            except CodeCollision:
                continue
            logger.info("Room created: %s (%s)", code, room_config)
            return room.to_dict()
        raise RuntimeError("Unable to generate unique game code")

    async def join_game(self, code: str, username: str, connection_id: str,
                        user_id: Optional[int] = None) -> JoinResult:
        room = self.store.get_room(code)
        if not room:
            raise NotFound("Game not found")

        existing = self.store.find_player(code, username, user_id)
        if not existing:
            if room.phase == GAME_OVER:
                raise NotAllowed("Game is over")
            if self.store.count_players(code) >= room.max_players:
                raise NotAllowed("Room Full")
            if room.phase != LOBBY:
                raise NotAllowed("Game already started")

        player = self.store.upsert_player(code, username, connection_id, user_id=user_id)
        if existing:
            logger.info("Player '%s' rejoined room %s", player.username, code)
        else:
            logger.info("Player '%s' joined room %s", player.username, code)

        if room.phase == LOBBY and self.store.count_players(code) == room.max_players:
            await self.start_game(code)

        return JoinResult(
            player_id=player.id,
            username=player.username,
            phase=room.phase,
            rejoined=existing is not None,
        )

    async def start_game(self, code: str):
        session = self.registry.get_or_create(code)
        async with session.lock:
            room = self.store.get_room(code)
            if not room or room.phase != LOBBY:
                return
            self.store.update_room(code, phase=STARTING)
            session.touch()
            logger.info("Room %s is full, starting game", code)
            await self.notifier.send_to_room(code, {"type": "GAME_STARTED"})
            self._arm(session, TRANSITION_TIMER, self.starting_delay, self.start_topic_selection)

    # ------------------------------------------------------------------
    # Topic selection
    # ------------------------------------------------------------------

    async def start_topic_selection(self, code: str):
        session = self.registry.get_or_create(code)
        async with session.lock:
            await self._start_topic_selection(session)

    async def _start_topic_selection(self, session: GameSession):
        code = session.room_code
        room = self.store.get_room(code)
        if not room:
            self.teardown(code)
            return
        if room.phase not in (STARTING, ROUND_OVER):
            logger.debug("Room %s: topic selection skipped in phase %s", code, room.phase)
            return
        players = self.store.list_active_players(code)
        if not players:
            logger.warning("Room %s has no connected players, topic selection skipped", code)
            return

        total_rounds = room.rounds_per_player * len(players)
        if session.current_round >= total_rounds:
            await self._end_game(session)
            return

        session.current_round += 1
        session.current_question_index = (session.current_round - 1) * room.questions_per_round
        session.current_topic = None
        session.round_title = None
        session.round_questions = []
        session.current_question = None

        picker = players[session.current_picker_index % len(players)]
        session.current_picker_index += 1
        session.touch()

        self.store.update_room(code, phase=TOPIC_SELECTION, current_round=session.current_round)
        logger.info("Room %s round %d/%d: '%s' picks the topic",
                    code, session.current_round, total_rounds, picker.username)

        if picker.connection_id:
            await self.notifier.send_to_connection(picker.connection_id, {
                "type": "TOPIC_REQUEST",
                "round": session.current_round,
                "total_rounds": total_rounds,
            })
        await self.notifier.send_to_room(code, {
            "type": "TOPIC_WAITING",
            "picker_username": picker.username,
            "round": session.current_round,
            "total_rounds": total_rounds,
        })

    async def handle_topic_submission(self, code: str, topic: str,
                                      connection_id: str) -> SubmissionResult:
        session = self.registry.get(code)
        if not session:
            return SubmissionResult(False, "Game session not found")

        async with session.lock:
            room = self.store.get_room(code)
            if not room or room.phase != TOPIC_SELECTION:
                return SubmissionResult(False, "Not in topic selection phase")

            players = self.store.list_active_players(code)
            if not players:
                return SubmissionResult(False, "No players in game")
            expected = players[(session.current_picker_index - 1) % len(players)]
            submitter = self.store.find_player_by_connection(code, connection_id)
            if not submitter or submitter.id != expected.id:
                return SubmissionResult(False, "You are not the topic picker")
            if session.current_topic is not None:
                return SubmissionResult(False, "Topic already chosen")

            session.current_topic = topic
            session.touch()
            await self.notifier.send_to_room(code, {
                "type": "TOPIC_CHOSEN",
                "topic": topic,
                "picker_username": expected.username,
            })

            # Questions must exist before anyone sees a question screen
            try:
                content = await self.content.generate_round_content(
                    topic, room.questions_per_round, room.difficulty
                )
            except Exception:
                logger.exception("Content generation failed for room %s, using built-in questions", code)
                content = {"title": topic, "questions": []}

            session.round_title = content.get("title") or topic
            session.round_questions = list(content.get("questions") or [])
            await self.notifier.send_to_room(code, {
                "type": "ROUND_TITLE",
                "title": session.round_title,
                "topic": topic,
                "round": session.current_round,
            })
            self._arm(session, TRANSITION_TIMER, self.topic_delay, self.start_question)
            return SubmissionResult(True)

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def _round_offset(self, session: GameSession, room) -> int:
        return (session.current_round - 1) * room.questions_per_round

    def _select_question(self, session: GameSession, room) -> dict:
        if session.round_questions:
            index_in_round = session.current_question_index - self._round_offset(session, room)
            return dict(session.round_questions[index_in_round % len(session.round_questions)])
        return fallback_question(session.current_question_index)

    def _question_payload(self, session: GameSession, room, player_count: int) -> dict:
        question = session.current_question
        payload = {
            "type": "QUESTION_START",
            "question_type": question["type"],
            "text": question["text"],
            "round": session.current_round,
            "total_rounds": room.rounds_per_player * player_count,
            "question_number": session.current_question_index - self._round_offset(session, room) + 1,
            "questions_per_round": room.questions_per_round,
            "topic": session.current_topic,
            "round_title": session.round_title,
            "time_limit": self.question_time,
        }
        if question["type"] == MULTIPLE_CHOICE:
            payload["options"] = question["options"]
        return payload

    async def start_question(self, code: str):
        session = self.registry.get(code)
        if not session:
            return
        async with session.lock:
            await self._start_question(session)

    async def _start_question(self, session: GameSession):
        code = session.room_code
        room = self.store.get_room(code)
        if not room:
            self.teardown(code)
            return
        if room.phase not in (TOPIC_SELECTION, REVEAL):
            logger.debug("Room %s: question start skipped in phase %s", code, room.phase)
            return

        self.store.update_room(code, phase=QUESTION)
        session.answers.clear()
        session.is_revealing = False
        session.current_question = self._select_question(session, room)
        session.question_start_time = time.time()
        session.touch()

        players = self.store.list_active_players(code)
        await self.notifier.send_to_room(code, self._question_payload(session, room, len(players)))
        self._arm(session, QUESTION_TIMER, self.question_time, self.reveal_answer)

    def current_question_payload(self, code: str) -> Optional[dict]:
        """The live question for a player rejoining mid-question, or None."""
        session = self.registry.get(code)
        room = self.store.get_room(code)
        if not session or not room or room.phase != QUESTION or not session.current_question:
            return None
        players = self.store.list_active_players(code)
        payload = self._question_payload(session, room, len(players))
        elapsed = time.time() - session.question_start_time
        payload["time_remaining"] = max(0, self.question_time - elapsed)
        return payload

    async def record_answer(self, code: str, connection_id: str,
                            answer_index: Optional[int] = None,
                            answer_text: Optional[str] = None) -> bool:
        """Store a player's answer. Returns False when the player already answered."""
        session = self.registry.get(code)
        if not session:
            raise NotFound("Game session not found")

        async with session.lock:
            room = self.store.get_room(code)
            if not room or room.phase != QUESTION:
                raise NotAllowed("Not accepting answers at this time")
            player = self.store.find_player_by_connection(code, connection_id)
            if not player:
                raise NotFound("Player not found in game session")
            if player.id in session.answers:
                return False

            entry: Dict[str, object] = {"submitted_at": time.time()}
            if answer_index is not None:
                entry["answer_index"] = answer_index
            if answer_text is not None:
                entry["answer_text"] = answer_text
            session.answers[player.id] = entry
            session.touch()

            active = self.store.list_active_players(code)
            if room.host_connection_id:
                await self.notifier.send_to_connection(room.host_connection_id, {
                    "type": "PLAYER_ANSWERED",
                    "player_id": player.id,
                    "username": player.username,
                    "answered": len(session.answers),
                    "total": len(active),
                })

            if all(p.id in session.answers for p in active):
                session.cancel_timer(QUESTION_TIMER)
                await self._reveal_answer(session)
            return True

    # ------------------------------------------------------------------
    # Reveal / round over / game over
    # ------------------------------------------------------------------

    async def reveal_answer(self, code: str):
        session = self.registry.get(code)
        if not session:
            return
        async with session.lock:
            await self._reveal_answer(session)

    def _score_answers(self, session: GameSession) -> Dict[int, int]:
        question = session.current_question
        points = {}
        for player_id, answer in session.answers.items():
            if is_correct(question, answer):
                elapsed = answer["submitted_at"] - session.question_start_time
                points[player_id] = compute_points(elapsed, self.question_time)
            else:
                points[player_id] = 0
        return points

    async def _reveal_answer(self, session: GameSession):
        if session.is_revealing:
            return
        code = session.room_code
        room = self.store.get_room(code)
        if not room:
            self.teardown(code)
            return
        if room.phase != QUESTION:
            return

        session.is_revealing = True
        try:
            session.cancel_timer(QUESTION_TIMER)
            # Close the submission window before scoring
            self.store.update_room(code, phase=REVEAL)

            question = session.current_question
            points = self._score_answers(session)
            for player_id, earned in points.items():
                if earned:
                    self.store.increment_score(player_id, earned)

            players = self.store.list_active_players(code)
            scores = [
                {"id": p.id, "username": p.username, "score": p.score, "points": points.get(p.id, 0)}
                for p in players
            ]
            reveal = {"type": "ROUND_REVEAL", "question_type": question["type"], "scores": scores}
            if question["type"] == MULTIPLE_CHOICE:
                reveal["correct_index"] = question["correct"]
            else:
                reveal["correct_answer"] = question["display_answer"]
            session.touch()
            await self.notifier.send_to_room(code, reveal)

            session.current_question_index += 1
            answered_in_round = session.current_question_index - self._round_offset(session, room)
            if answered_in_round >= room.questions_per_round:
                self._arm(session, REVEAL_TIMER, self.reveal_time, self.start_round_over)
            else:
                self._arm(session, REVEAL_TIMER, self.reveal_time, self.start_question)
        finally:
            session.is_revealing = False

    async def start_round_over(self, code: str):
        session = self.registry.get(code)
        if not session:
            return
        async with session.lock:
            room = self.store.get_room(code)
            if not room:
                self.teardown(code)
                return
            if room.phase != REVEAL:
                logger.debug("Room %s: round over skipped in phase %s", code, room.phase)
                return

            self.store.update_room(code, phase=ROUND_OVER)
            players = self.store.list_active_players(code)
            total_rounds = room.rounds_per_player * len(players)
            scores = sorted(_score_rows(players), key=lambda s: s["score"], reverse=True)
            session.touch()
            await self.notifier.send_to_room(code, {
                "type": "ROUND_OVER",
                "scores": scores,
                "round": session.current_round,
                "total_rounds": total_rounds,
            })

            if session.current_round >= total_rounds:
                self._arm(session, ROUND_OVER_TIMER, self.round_over_delay, self.end_game)
            else:
                self._arm(session, ROUND_OVER_TIMER, self.round_over_delay, self.start_topic_selection)

    async def end_game(self, code: str):
        session = self.registry.get(code)
        if not session:
            await self._end_game(None, code)
            return
        async with session.lock:
            await self._end_game(session)

    async def _end_game(self, session: Optional[GameSession], code: Optional[str] = None):
        code = session.room_code if session else code
        if session:
            session.cancel_all_timers()

        self.store.update_room(code, phase=GAME_OVER)
        ranking = rank_players(self.store.list_players(code))
        await self.notifier.send_to_room(code, {
            "type": "GAME_OVER",
            "scores": [{k: v for k, v in entry.items() if k != "user_id"} for entry in ranking],
        })

        self.store.record_results(code, ranking)
        removed = self.store.delete_players(code)
        self.registry.discard(code)
        logger.info("Game over in room %s (%d players removed)", code, removed)
