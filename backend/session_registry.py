from typing import Dict, List, Optional
import asyncio
import logging
import time

import config

logger = logging.getLogger(__name__)

# Timer kinds, at most one armed per kind
QUESTION_TIMER = "question"
REVEAL_TIMER = "reveal"
ROUND_OVER_TIMER = "round_over"
TRANSITION_TIMER = "transition"  # starting delay and topic-chosen delay
TIMER_KINDS = (QUESTION_TIMER, REVEAL_TIMER, ROUND_OVER_TIMER, TRANSITION_TIMER)


def _running_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:  # no running loop
        return None


class GameSession:
    """Transient per-room state owned by the engine while a game is running."""

    def __init__(self, room_code: str):
        self.room_code = room_code
        self.current_question_index = 0  # running count across all rounds
        self.current_round = 0
        self.current_picker_index = 0
        self.current_topic: Optional[str] = None
        self.round_title: Optional[str] = None
        self.round_questions: List[dict] = []
        self.current_question: Optional[dict] = None
        self.question_start_time: float = 0
        self.answers: Dict[int, dict] = {}  # player_id -> {answer_index | answer_text, submitted_at}
        self.timers: Dict[str, asyncio.Task] = {}
        self.is_revealing = False
        self.lock = asyncio.Lock()
        self.last_activity = time.time()

    def touch(self):
        self.last_activity = time.time()

    def is_expired(self) -> bool:
        return time.time() - self.last_activity > config.ROOM_TTL_SECONDS

    def cancel_timer(self, kind: str):
        """Cancel one armed timer. A timer never cancels itself while it runs."""
        task = self.timers.pop(kind, None)
        if task and not task.done() and task is not _running_task():
            task.cancel()

    def cancel_all_timers(self):
        for kind in list(self.timers):
            self.cancel_timer(kind)

    def has_timer(self, kind: str) -> bool:
        task = self.timers.get(kind)
        return task is not None and not task.done()


class SessionRegistry:
    """Room code -> live GameSession. One instance per process (or per test)."""

    def __init__(self):
        self._sessions: Dict[str, GameSession] = {}

    def get(self, room_code: str) -> Optional[GameSession]:
        return self._sessions.get(room_code)

    def get_or_create(self, room_code: str) -> GameSession:
        session = self._sessions.get(room_code)
        if session is None:
            session = GameSession(room_code)
            self._sessions[room_code] = session
            logger.info("Session created for room %s", room_code)
        return session

    def discard(self, room_code: str) -> Optional[GameSession]:
        session = self._sessions.pop(room_code, None)
        if session:
            session.cancel_all_timers()
            logger.info("Session destroyed for room %s", room_code)
        return session

    def expired_codes(self) -> List[str]:
        return [code for code, session in self._sessions.items() if session.is_expired()]

    def codes(self) -> List[str]:
        return list(self._sessions)

    def clear(self):
        for code in list(self._sessions):
            self.discard(code)

    def __contains__(self, room_code: str) -> bool:
        return room_code in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
