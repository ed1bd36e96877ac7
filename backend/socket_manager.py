from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union
import json
import time
import uuid
import logging
import re

import config
from game_engine import GameEngine, GameError, NotFound
from identity import Identity, verify_token
from room_store import RoomStore

logger = logging.getLogger(__name__)

_TAGS = re.compile(r'<[^>]+>')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_GAME_CODE = re.compile(r'^[A-Z]{%d}$' % config.GAME_CODE_LENGTH)


def sanitize_text(value: str) -> str:
    """Strip HTML tags and control characters."""
    value = _TAGS.sub('', value)
    return _CONTROL_CHARS.sub('', value).strip()


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------

class CreateGameEvent(BaseModel):
    type: Literal["CREATE_GAME"]
    # Out-of-range or junk values are clamped by the engine, never rejected
    max_players: Any = None
    rounds_per_player: Any = None
    questions_per_round: Any = None
    difficulty: Any = None


class _RoomEvent(BaseModel):
    game_code: str

    @field_validator('game_code')
    @classmethod
    def validate_game_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not _GAME_CODE.match(v):
            raise ValueError('Invalid game code')
        return v


class JoinGameEvent(_RoomEvent):
    type: Literal["JOIN_GAME"]
    username: str

    @field_validator('username')
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = sanitize_text(v)
        if not v or len(v) > config.MAX_USERNAME_LENGTH:
            raise ValueError(f'Username must be 1-{config.MAX_USERNAME_LENGTH} characters')
        return v


class ReconnectHostEvent(_RoomEvent):
    type: Literal["RECONNECT_HOST"]


class RequestPlayerListEvent(_RoomEvent):
    type: Literal["REQUEST_PLAYER_LIST"]


class SubmitTopicEvent(_RoomEvent):
    type: Literal["SUBMIT_TOPIC"]
    topic: str

    @field_validator('topic')
    @classmethod
    def validate_topic(cls, v: str) -> str:
        v = sanitize_text(v)
        if not v:
            raise ValueError('Invalid topic payload')
        return v[:config.MAX_TOPIC_LENGTH]


class SubmitAnswerEvent(_RoomEvent):
    type: Literal["SUBMIT_ANSWER"]
    answer_index: Optional[int] = Field(default=None, strict=True)
    answer: Optional[str] = None

    @model_validator(mode='after')
    def check_answer(self):
        if self.answer_index is None and self.answer is None:
            raise ValueError('Invalid answer payload: must provide answer_index or answer')
        if self.answer_index is not None and not 0 <= self.answer_index <= 3:
            raise ValueError('Invalid answer index')
        return self


InboundEvent = Annotated[
    Union[CreateGameEvent, JoinGameEvent, ReconnectHostEvent, RequestPlayerListEvent,
          SubmitTopicEvent, SubmitAnswerEvent],
    Field(discriminator='type'),
]
_inbound_adapter = TypeAdapter(InboundEvent)

# Event type -> phrase used in "Unable to ..." errors
ACTIONS = {
    "CREATE_GAME": "create game",
    "JOIN_GAME": "join game",
    "RECONNECT_HOST": "reconnect host",
    "REQUEST_PLAYER_LIST": "fetch player list",
    "SUBMIT_TOPIC": "submit topic",
    "SUBMIT_ANSWER": "submit answer",
}


def _validation_message(exc: ValidationError) -> str:
    error = exc.errors()[0]
    cause = (error.get("ctx") or {}).get("error")
    if cause:
        return str(cause)
    return f"Invalid {'.'.join(str(p) for p in error['loc'][1:]) or 'payload'}: {error['msg']}"


# ---------------------------------------------------------------------------
# Connections and room channels
# ---------------------------------------------------------------------------

class ConnectionManager:
    """Live sockets by connection id, plus which room channels each one listens on."""

    def __init__(self):
        self.active: Dict[str, WebSocket] = {}
        self.channels: Dict[str, Set[str]] = {}  # room code -> connection ids

    def register(self, connection_id: str, websocket: WebSocket):
        self.active[connection_id] = websocket

    def unregister(self, connection_id: str):
        self.active.pop(connection_id, None)
        for code in list(self.channels):
            self.leave(code, connection_id)

    def join(self, room_code: str, connection_id: str):
        self.channels.setdefault(room_code, set()).add(connection_id)

    def leave(self, room_code: str, connection_id: str):
        members = self.channels.get(room_code)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.channels[room_code]

    async def send_to_connection(self, connection_id: str, message: dict) -> bool:
        ws = self.active.get(connection_id)
        if ws is None:
            return False
        try:
            await ws.send_json(message)
            return True
        except Exception:
            logger.warning("Send to %s failed, dropping connection", connection_id)
            self.unregister(connection_id)
            return False

    async def send_to_room(self, room_code: str, message: dict):
        for connection_id in list(self.channels.get(room_code, ())):
            await self.send_to_connection(connection_id, message)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class SocketManager:
    def __init__(self, store: RoomStore, engine: GameEngine, connections: ConnectionManager):
        self.store = store
        self.engine = engine
        self.connections = connections
        self.identities: Dict[str, Optional[Identity]] = {}
        self.msg_timestamps: Dict[str, List[float]] = {}
        self.allowed_origins: List[str] = []
        self._handlers = {
            "CREATE_GAME": self.handle_create_game,
            "JOIN_GAME": self.handle_join_game,
            "RECONNECT_HOST": self.handle_reconnect_host,
            "REQUEST_PLAYER_LIST": self.handle_request_player_list,
            "SUBMIT_TOPIC": self.handle_submit_topic,
            "SUBMIT_ANSWER": self.handle_submit_answer,
        }

    async def connect(self, websocket: WebSocket, token: str = ""):
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        connection_id = uuid.uuid4().hex
        identity = verify_token(token)
        self.connections.register(connection_id, websocket)
        self.identities[connection_id] = identity
        logger.info("Socket connected: %s (user: %s)", connection_id,
                    identity.username if identity else "Guest")

        await websocket.send_json({
            "type": "CONNECTED",
            "connection_id": connection_id,
            "user": {"id": identity.id, "username": identity.username} if identity else None,
        })

        try:
            while True:
                data = await websocket.receive_text()

                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "ERROR", "message": "Message too large"})
                    continue

                now = time.time()
                timestamps = self.msg_timestamps.setdefault(connection_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "ERROR", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from %s: %s", connection_id, data[:100])
                    await websocket.send_json({"type": "ERROR", "message": "Invalid message format"})
                    continue

                await self.handle_message(connection_id, message)
        except WebSocketDisconnect:
            logger.info("Socket disconnected: %s", connection_id)
        except Exception:
            logger.exception("WebSocket error for %s", connection_id)
        finally:
            await self.disconnect(connection_id)

    async def send_error(self, connection_id: str, message: str):
        await self.connections.send_to_connection(connection_id, {"type": "ERROR", "message": message})

    async def handle_message(self, connection_id: str, message):
        msg_type = message.get("type") if isinstance(message, dict) else None
        if msg_type not in self._handlers:
            await self.send_error(connection_id, "Unknown message type")
            return

        try:
            event = _inbound_adapter.validate_python(message)
        except ValidationError as exc:
            reason = _validation_message(exc)
            logger.warning("Rejected %s from %s: %s", msg_type, connection_id, reason)
            await self.send_error(connection_id, reason)
            return

        try:
            await self._handlers[msg_type](connection_id, event)
        except GameError as exc:
            await self.send_error(connection_id, exc.message)
        except Exception:
            logger.exception("[%s] failed for %s", msg_type, connection_id)
            await self.send_error(connection_id, f"Unable to {ACTIONS[msg_type]}")

    async def broadcast_player_list(self, room_code: str):
        players = self.store.list_active_players(room_code)
        await self.connections.send_to_room(room_code, {
            "type": "PLAYER_LIST",
            "game_code": room_code,
            "players": [p.to_dict() for p in players],
        })

    # --- handlers ---

    async def handle_create_game(self, connection_id: str, event: CreateGameEvent):
        room = self.engine.create_game(
            connection_id,
            max_players=event.max_players,
            rounds_per_player=event.rounds_per_player,
            questions_per_round=event.questions_per_round,
            difficulty=event.difficulty,
        )
        code = room["game_code"]
        self.connections.join(code, connection_id)
        await self.connections.send_to_connection(connection_id, {
            "type": "GAME_CREATED",
            "game_code": code,
            "max_players": room["max_players"],
            "rounds_per_player": room["rounds_per_player"],
            "questions_per_round": room["questions_per_round"],
            "difficulty": room["difficulty"],
        })
        await self.broadcast_player_list(code)

    async def handle_join_game(self, connection_id: str, event: JoinGameEvent):
        identity = self.identities.get(connection_id)
        code = event.game_code
        # Listen before joining: a join that fills the room broadcasts GAME_STARTED
        self.connections.join(code, connection_id)
        try:
            result = await self.engine.join_game(
                code, event.username, connection_id,
                user_id=identity.id if identity else None,
            )
        except GameError:
            self.connections.leave(code, connection_id)
            raise

        if result.rejoined and result.phase != "LOBBY":
            await self.connections.send_to_connection(connection_id, {"type": "GAME_STARTED"})
            question = self.engine.current_question_payload(code)
            if question:
                await self.connections.send_to_connection(connection_id, question)

        await self.broadcast_player_list(code)

    async def handle_reconnect_host(self, connection_id: str, event: ReconnectHostEvent):
        code = event.game_code
        room = self.store.get_room(code)
        if not room:
            raise NotFound("Game not found")

        self.store.update_room(code, host_connection_id=connection_id)
        self.connections.join(code, connection_id)
        snapshot = {"type": "HOST_RECONNECTED", **room.to_dict()}
        question = self.engine.current_question_payload(code)
        if question:
            snapshot["question"] = question
        await self.connections.send_to_connection(connection_id, snapshot)
        logger.info("Host reconnected to room %s (phase: %s)", code, room.phase)
        await self.broadcast_player_list(code)

    async def handle_request_player_list(self, connection_id: str, event: RequestPlayerListEvent):
        players = self.store.list_active_players(event.game_code)
        await self.connections.send_to_connection(connection_id, {
            "type": "PLAYER_LIST",
            "game_code": event.game_code,
            "players": [p.to_dict() for p in players],
        })

    async def handle_submit_topic(self, connection_id: str, event: SubmitTopicEvent):
        result = await self.engine.handle_topic_submission(event.game_code, event.topic, connection_id)
        if not result.ok:
            raise GameError(result.error)

    async def handle_submit_answer(self, connection_id: str, event: SubmitAnswerEvent):
        await self.engine.record_answer(
            event.game_code, connection_id,
            answer_index=event.answer_index,
            answer_text=event.answer,
        )

    async def disconnect(self, connection_id: str):
        """Detach the connection from every membership and refresh affected rooms."""
        self.connections.unregister(connection_id)
        self.identities.pop(connection_id, None)
        self.msg_timestamps.pop(connection_id, None)
        try:
            codes = self.store.detach_connection(connection_id)
            hosted = self.store.clear_host_connection(connection_id)
            for code in hosted:
                logger.info("Host disconnected from room %s", code)
            for code in codes:
                await self.broadcast_player_list(code)
        except Exception:
            logger.exception("Disconnect cleanup failed for %s", connection_id)
