"""Durable rooms, memberships, and result history backed by SQLAlchemy.

Every call opens its own short session and commits before returning, so a
write is visible to the very next read for the same room. Returned ORM
objects are detached (the factory disables expire-on-commit).
"""
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence
import logging

from sqlalchemy import delete, select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker, selectinload

from models import Room, Player, GameResult, GameResultEntry

logger = logging.getLogger(__name__)

_UNSET = object()


class CodeCollision(Exception):
    """Raised when a room with the requested code already exists."""
    pass


class RoomStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- rooms ---

    def create_room(self, code: str, host_connection_id: Optional[str], max_players: int,
                    rounds_per_player: int, questions_per_round: int, difficulty: str) -> Room:
        room = Room(
            code=code,
            host_connection_id=host_connection_id,
            phase="LOBBY",
            max_players=max_players,
            rounds_per_player=rounds_per_player,
            questions_per_round=questions_per_round,
            difficulty=difficulty,
            current_round=0,
        )
        try:
            with self._session() as db:
                if db.get(Room, code) is not None:
                    raise CodeCollision(code)
                db.add(room)
        except IntegrityError as exc:
            raise CodeCollision(code) from exc
        return room

    def get_room(self, code: str) -> Optional[Room]:
        with self._session() as db:
            return db.get(Room, code)

    def room_exists(self, code: str) -> bool:
        return self.get_room(code) is not None

    def update_room(self, code: str, phase=_UNSET, current_round=_UNSET,
                    host_connection_id=_UNSET) -> None:
        values = {}
        if phase is not _UNSET:
            values["phase"] = phase
        if current_round is not _UNSET:
            values["current_round"] = current_round
        if host_connection_id is not _UNSET:
            values["host_connection_id"] = host_connection_id
        if not values:
            return
        with self._session() as db:
            db.execute(update(Room).where(Room.code == code).values(**values))

    def get_host_connection(self, code: str) -> Optional[str]:
        room = self.get_room(code)
        return room.host_connection_id if room else None

    def clear_host_connection(self, connection_id: str) -> List[str]:
        """Null the host connection of every room it controls. Returns the room codes."""
        with self._session() as db:
            codes = list(db.scalars(
                select(Room.code).where(Room.host_connection_id == connection_id)
            ))
            if codes:
                db.execute(
                    update(Room).where(Room.code.in_(codes)).values(host_connection_id=None)
                )
            return codes

    # --- memberships ---

    def list_active_players(self, room_code: str) -> List[Player]:
        """Connected members of a room in join order."""
        with self._session() as db:
            return list(db.scalars(
                select(Player)
                .where(Player.room_code == room_code, Player.connection_id.is_not(None))
                .order_by(Player.id)
            ))

    def list_players(self, room_code: str) -> List[Player]:
        """All members of a room in join order, connected or not."""
        with self._session() as db:
            return list(db.scalars(
                select(Player).where(Player.room_code == room_code).order_by(Player.id)
            ))

    def count_players(self, room_code: str) -> int:
        """All members, connected or not."""
        with self._session() as db:
            return db.scalar(
                select(func.count(Player.id)).where(Player.room_code == room_code)
            ) or 0

    def find_player(self, room_code: str, username: str,
                    user_id: Optional[int] = None) -> Optional[Player]:
        """Match on linked identity first, then on the exact display name."""
        with self._session() as db:
            if user_id is not None:
                player = db.scalars(
                    select(Player).where(Player.room_code == room_code, Player.user_id == user_id)
                ).first()
                if player:
                    return player
            return db.scalars(
                select(Player).where(Player.room_code == room_code, Player.username == username)
            ).first()

    def find_player_by_connection(self, room_code: str, connection_id: str) -> Optional[Player]:
        with self._session() as db:
            return db.scalars(
                select(Player).where(
                    Player.room_code == room_code, Player.connection_id == connection_id
                )
            ).first()

    def upsert_player(self, room_code: str, username: str, connection_id: str,
                      user_id: Optional[int] = None, is_host: bool = False) -> Player:
        """Attach a connection to an existing membership, or create a new one."""
        existing = self.find_player(room_code, username, user_id)
        with self._session() as db:
            if existing:
                player = db.get(Player, existing.id)
                player.connection_id = connection_id
                if user_id is not None:
                    player.user_id = user_id
            else:
                player = Player(
                    room_code=room_code,
                    username=username,
                    connection_id=connection_id,
                    user_id=user_id,
                    score=0,
                    is_host=is_host,
                )
                db.add(player)
            db.flush()
            return player

    def detach_connection(self, connection_id: str) -> List[str]:
        """Null the connection on every membership using it. Returns the affected room codes."""
        with self._session() as db:
            codes = list(db.scalars(
                select(Player.room_code).where(Player.connection_id == connection_id).distinct()
            ))
            if codes:
                db.execute(
                    update(Player)
                    .where(Player.connection_id == connection_id)
                    .values(connection_id=None)
                )
            return codes

    def increment_score(self, player_id: int, points: int) -> None:
        with self._session() as db:
            db.execute(
                update(Player).where(Player.id == player_id).values(score=Player.score + points)
            )

    def delete_players(self, room_code: str) -> int:
        with self._session() as db:
            result = db.execute(
                delete(Player).where(Player.room_code == room_code)
            )
            return result.rowcount or 0

    # --- history ---

    def record_results(self, room_code: str, ranking: Sequence[dict]) -> int:
        """Persist a finished game. `ranking` items carry username, score, rank and user_id."""
        with self._session() as db:
            result = GameResult(room_code=room_code)
            for entry in ranking:
                result.entries.append(GameResultEntry(
                    username=entry["username"],
                    user_id=entry.get("user_id"),
                    score=entry["score"],
                    rank=entry["rank"],
                ))
            db.add(result)
            db.flush()
            logger.info("Recorded results for room %s (%d players)", room_code, len(ranking))
            return result.id

    def list_results(self, limit: int = 100) -> List[dict]:
        with self._session() as db:
            results = db.scalars(
                select(GameResult)
                .options(selectinload(GameResult.entries))
                .order_by(GameResult.id.desc())
                .limit(limit)
            )
            return [r.to_dict() for r in results]

    def get_result(self, room_code: str) -> Optional[dict]:
        with self._session() as db:
            result = db.scalars(
                select(GameResult)
                .options(selectinload(GameResult.entries))
                .where(GameResult.room_code == room_code)
                .order_by(GameResult.id.desc())
            ).first()
            return result.to_dict() if result else None
