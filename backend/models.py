# models.py
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Room(Base):
    __tablename__ = "rooms"

    code = Column(String(4), primary_key=True)
    host_connection_id = Column(String, nullable=True, index=True)
    phase = Column(String, nullable=False, default="LOBBY")

    max_players = Column(Integer, nullable=False, default=3)
    rounds_per_player = Column(Integer, nullable=False, default=2)
    questions_per_round = Column(Integer, nullable=False, default=5)
    difficulty = Column(String, nullable=False, default="Mixed")
    current_round = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=_utcnow, nullable=False)

    players = relationship("Player", back_populates="room")

    def to_dict(self) -> dict:
        return {
            "game_code": self.code,
            "game_state": self.phase,
            "max_players": self.max_players,
            "rounds_per_player": self.rounds_per_player,
            "questions_per_round": self.questions_per_round,
            "difficulty": self.difficulty,
            "current_round": self.current_round,
        }


class Player(Base):
    __tablename__ = "players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_code = Column(String(4), ForeignKey("rooms.code"), nullable=False, index=True)
    connection_id = Column(String, nullable=True, index=True)
    username = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    score = Column(Integer, nullable=False, default=0)
    is_host = Column(Boolean, nullable=False, default=False)

    room = relationship("Room", back_populates="players")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "score": self.score,
            "is_host": bool(self.is_host),
        }


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class GameResult(Base):
    __tablename__ = "game_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_code = Column(String(4), ForeignKey("rooms.code"), nullable=False, index=True)
    completed_at = Column(DateTime, default=_utcnow, nullable=False)

    entries = relationship(
        "GameResultEntry",
        back_populates="result",
        cascade="all, delete-orphan",
        order_by="GameResultEntry.rank",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_code": self.room_code,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "results": [e.to_dict() for e in self.entries],
        }


class GameResultEntry(Base):
    __tablename__ = "game_result_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    result_id = Column(Integer, ForeignKey("game_results.id"), nullable=False, index=True)
    username = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    score = Column(Integer, nullable=False, default=0)
    rank = Column(Integer, nullable=False)

    result = relationship("GameResult", back_populates="entries")

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "score": self.score,
            "rank": self.rank,
        }
