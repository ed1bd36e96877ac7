from fastapi import FastAPI, WebSocket, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from contextlib import asynccontextmanager
import uvicorn
import logging
import socket as socketlib

import config
config.setup_logging()

from db import SessionLocal, engine as db_engine, init_db
from content_engine import ContentEngine
from game_engine import GameEngine
from identity import AuthError, IdentityService
from room_store import RoomStore
from session_registry import SessionRegistry
from socket_manager import ConnectionManager, SocketManager

logger = logging.getLogger(__name__)

store = RoomStore(SessionLocal)
registry = SessionRegistry()
content_engine = ContentEngine()
connection_manager = ConnectionManager()
game_engine = GameEngine(store, registry, content_engine, notifier=connection_manager)
socket_manager = SocketManager(store, game_engine, connection_manager)
identity_service = IdentityService(SessionLocal)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting trivia party backend")
    init_db(db_engine)
    game_engine.start_cleanup_loop()
    yield
    logger.info("Shutting down trivia party backend")
    await game_engine.shutdown()


app = FastAPI(title="Trivia Party Backend", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


@app.get("/system/info")
async def get_system_info():
    return {"ip": get_local_ip(), "hostname": socketlib.gethostname()}


@app.get("/providers")
async def get_providers():
    return {"providers": content_engine.get_available_providers()}


# --- Auth ---

class Credentials(BaseModel):
    username: str = ""
    password: str = ""


@app.post("/auth/signup", status_code=201)
async def signup(request: Credentials):
    try:
        return identity_service.signup(request.username, request.password)
    except AuthError as exc:
        logger.warning("Signup rejected: %s", exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message)


@app.post("/auth/login")
async def login(request: Credentials):
    try:
        return identity_service.login(request.username, request.password)
    except AuthError as exc:
        logger.warning("Login rejected: %s", exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message)


# --- Game ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str = ""):
    await socket_manager.connect(websocket, token=token)


@app.get("/history")
async def get_game_history():
    """Completed games, newest first."""
    return {"games": store.list_results()}


@app.get("/history/{room_code}")
async def get_game_detail(room_code: str):
    game = store.get_result(room_code.upper())
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    return game


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    socket_manager.allowed_origins = origins
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        f"http://{local_ip}:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/")
async def root():
    return {"message": "Trivia Party API is running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
