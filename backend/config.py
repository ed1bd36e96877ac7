"""Centralized configuration. Every env var is read here."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./trivia_party.db")

# --- Auth ---
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-in-production")
TOKEN_TTL_SECONDS = 7 * 24 * 3600
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6

# --- Content generation ---
CONTENT_PROVIDER = os.getenv("CONTENT_PROVIDER", "openai")  # openai, gemini, claude, ollama, mock
CONTENT_TIMEOUT_SEC = float(os.getenv("CONTENT_TIMEOUT_SEC", "45"))
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929")
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434/api/generate")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen2.5:14b-instruct")
LLM_REQUEST_TIMEOUT = 30

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes

# --- Timings (seconds) ---
QUESTION_TIME_SEC = float(os.getenv("QUESTION_TIME_SEC", "30"))
REVEAL_TIME_SEC = float(os.getenv("REVEAL_TIME_SEC", "5"))
STARTING_DELAY_SEC = float(os.getenv("STARTING_DELAY_SEC", "3"))
TOPIC_CHOSEN_DELAY_SEC = float(os.getenv("TOPIC_CHOSEN_DELAY_SEC", "2"))
ROUND_OVER_DELAY_SEC = float(os.getenv("ROUND_OVER_DELAY_SEC", "10"))
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", "1800"))
SESSION_SWEEP_INTERVAL_SEC = 60

# --- Game ---
GAME_CODE_LENGTH = 4
MAX_GAME_CODE_ATTEMPTS = 25
MAX_USERNAME_LENGTH = 20
MAX_TOPIC_LENGTH = 100

# Room config: (min, max, default)
MAX_PLAYERS_RANGE = (2, 8, 3)
ROUNDS_PER_PLAYER_RANGE = (1, 5, 2)
QUESTIONS_PER_ROUND_RANGE = (3, 10, 5)
VALID_DIFFICULTIES = ("Easy", "Medium", "Hard", "Mixed")
DEFAULT_DIFFICULTY = "Mixed"

# --- Scoring ---
MAX_POINTS = 100
MIN_POINTS = 10

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
