"""Account signup/login and signed bearer tokens for WebSocket identity."""
from dataclasses import dataclass
from typing import Optional
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

import config
from models import User

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000


class AuthError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class Identity:
    id: int
    username: str


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, iterations, salt, expected = stored.split("$")
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(body: str) -> str:
    return _b64encode(hmac.new(config.SECRET_KEY.encode(), body.encode(), hashlib.sha256).digest())


def issue_token(user_id: int, username: str, ttl: int = config.TOKEN_TTL_SECONDS) -> str:
    payload = {"id": user_id, "username": username, "exp": int(time.time()) + ttl}
    body = _b64encode(json.dumps(payload, separators=(",", ":")).encode())
    return f"{body}.{_sign(body)}"


def verify_token(token: Optional[str]) -> Optional[Identity]:
    """Decode a bearer token. Bad signature, expiry or garbage all mean a guest (None)."""
    if not token or token.count(".") != 1:
        return None
    body, signature = token.split(".")
    if not hmac.compare_digest(signature.encode(), _sign(body).encode()):
        logger.warning("Rejected token with invalid signature")
        return None
    try:
        payload = json.loads(_b64decode(body))
        user_id, username, expires = int(payload["id"]), str(payload["username"]), payload["exp"]
    except (ValueError, KeyError, TypeError):
        return None
    if expires < time.time():
        return None
    return Identity(id=user_id, username=username)


def _normalize_credentials(username, password):
    if not username or not password:
        raise AuthError("Username and password are required")
    if not isinstance(username, str) or not isinstance(password, str):
        raise AuthError("Invalid username or password format")
    return username.strip().lower(), password


class IdentityService:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _find_user(self, db, username: str) -> Optional[User]:
        return db.scalars(select(User).where(func.lower(User.username) == username)).first()

    def signup(self, username, password) -> dict:
        username, password = _normalize_credentials(username, password)
        if len(username) < config.MIN_USERNAME_LENGTH or len(password) < config.MIN_PASSWORD_LENGTH:
            raise AuthError(
                f"Username must be at least {config.MIN_USERNAME_LENGTH} characters "
                f"and password at least {config.MIN_PASSWORD_LENGTH} characters"
            )

        with self._session_factory() as db:
            if self._find_user(db, username):
                raise AuthError("Username already exists", status_code=409)
            user = User(username=username, password_hash=hash_password(password))
            db.add(user)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise AuthError("Username already exists", status_code=409) from exc
            logger.info("User '%s' signed up", username)
            return {"token": issue_token(user.id, username), "user": {"id": user.id, "username": username}}

    def login(self, username, password) -> dict:
        username, password = _normalize_credentials(username, password)
        with self._session_factory() as db:
            user = self._find_user(db, username)
            if not user or not verify_password(password, user.password_hash):
                raise AuthError("Invalid credentials", status_code=401)
            return {
                "token": issue_token(user.id, user.username),
                "user": {"id": user.id, "username": user.username},
            }
