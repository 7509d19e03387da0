import os
import json
import uuid
import logging
import asyncio
from pathlib import Path
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Header, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from pydantic import BaseModel
from typing import Optional
import uvicorn
from agent_manager import AgentManager
from conversation_store import DEFAULT_TITLE, ConversationStore
from protocol import (
    ActiveQueriesEvent,
    ArchiveCommand,
    ChatCommand,
    CommandError,
    ErrorEvent,
    InterruptCommand,
    PermissionResponseCommand,
    UserInputResponseCommand,
    parse_client_command,
)


# Config
logger = logging.getLogger(__name__)

AUTH_TOKEN = os.environ.get("NEXIA_AUTH_TOKEN")

if not AUTH_TOKEN:
    raise RuntimeError("NEXIA_AUTH_TOKEN is required.")

DB_PATH = os.environ.get("NEXIA_DB_PATH", str(Path("data") / "nexia.db"))
DEFAULT_CWD = os.environ.get("NEXIA_DEFAULT_CWD") or str(Path.home())
REDIS_URL = os.environ.get("REDIS_URL") or None
HOST = os.environ.get("NEXIA_HOST", "127.0.0.1")
PORT = int(os.environ.get("NEXIA_PORT", "5101"))
SHUTDOWN_GRACE_S = 5.0

conversation_store: Optional[ConversationStore] = None
agent_manager: Optional[AgentManager] = None
# Query and archive runs outlive the socket that started them.
_command_tasks: set[asyncio.Task] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global conversation_store, agent_manager
    conversation_store = await ConversationStore.open(DB_PATH)
    agent_manager = AgentManager(conversation_store, redis_url=REDIS_URL)
    yield
    await agent_manager.close()
    if _command_tasks:
        await asyncio.wait(list(_command_tasks), timeout=SHUTDOWN_GRACE_S)
    await conversation_store.close()


app = FastAPI(
    title="Nexia",
    description="Web chat relay for the Claude Agent SDK",
    version="1.0.0",
    lifespan=lifespan
)

# Rate limiting
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "1") == "1"
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return Response(
        content=json.dumps({"detail": "Rate limit exceeded. Please slow down."}),
        status_code=429,
        media_type="application/json"
    )

# CORS for browser clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # bearer token via header, not cookies
    allow_methods=["*"],
    allow_headers=["*"],
)


def _token_matches(token: Optional[str]) -> bool:
    return bool(token) and token == AUTH_TOKEN


async def verify_token(
    authorization: Optional[str] = Header(None),
):
    """Verify the bearer token from the Authorization header."""
    token = (authorization or "").removeprefix("Bearer ")
    if not _token_matches(token):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _require_manager() -> AgentManager:
    if not agent_manager:
        raise HTTPException(status_code=503, detail="Agent manager not initialized")
    return agent_manager


class ConversationCreate(BaseModel):
    cwd: Optional[str] = None
    title: Optional[str] = None


@app.get("/api/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api/conversations", dependencies=[Depends(verify_token)])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_conversations(request: Request):
    manager = _require_manager()
    conversations = await manager.store.list_conversations()
    return [conversation.to_dict() for conversation in conversations]


@app.post("/api/conversations", status_code=201, dependencies=[Depends(verify_token)])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def create_conversation(request: Request, req: Optional[ConversationCreate] = None):
    manager = _require_manager()
    req = req or ConversationCreate()
    cwd = Path(req.cwd or DEFAULT_CWD).expanduser().resolve()
    if not cwd.is_dir():
        raise HTTPException(status_code=400, detail="cwd must be an existing directory")
    conversation = await manager.store.create_conversation(
        str(uuid.uuid4()),
        req.title or DEFAULT_TITLE,
        str(cwd),
    )
    return conversation.to_dict()


@app.delete("/api/conversations/{conversation_id}", dependencies=[Depends(verify_token)])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def delete_conversation(request: Request, conversation_id: str):
    manager = _require_manager()
    if not await manager.store.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Not found")
    if manager.is_active(conversation_id):
        raise HTTPException(status_code=409, detail="A query is active for this conversation")
    await manager.store.delete_messages(conversation_id)
    await manager.store.delete_conversation(conversation_id)
    return {"ok": True}


@app.get("/api/conversations/{conversation_id}/messages", dependencies=[Depends(verify_token)])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_messages(request: Request, conversation_id: str):
    manager = _require_manager()
    if not await manager.store.get_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Not found")
    messages = await manager.store.list_messages(conversation_id)
    return [message.to_dict() for message in messages]


@app.get("/api/filesystem/list", dependencies=[Depends(verify_token)])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_directories(request: Request, path: str = ""):
    """List the subdirectories of a directory under the browse root."""
    root = Path(DEFAULT_CWD).expanduser().resolve()
    target = Path(path).expanduser().resolve() if path else root
    if target != root and root not in target.parents:
        raise HTTPException(status_code=403, detail="Access denied: path must be within home directory")
    if not target.exists():
        raise HTTPException(status_code=404, detail="Path not found")
    if not target.is_dir():
        raise HTTPException(status_code=400, detail="Not a directory")

    try:
        entries = [
            {"name": child.name, "path": str(child)}
            for child in target.iterdir()
            if not child.name.startswith(".") and child.is_dir()
        ]
    except OSError:
        logger.exception("Failed to read directory %s", target)
        raise HTTPException(status_code=500, detail="Cannot read directory")
    entries.sort(key=lambda entry: entry["name"])

    return {
        "path": str(target),
        "parent": None if target == root else str(target.parent),
        "entries": entries,
    }


@app.get("/api/permissions/log", dependencies=[Depends(verify_token)])
@limiter.limit(RATE_LIMIT_DEFAULT)
async def permission_log(request: Request, conversation_id: Optional[str] = None, limit: int = 100):
    manager = _require_manager()
    entries = await manager.get_permission_log(conversation_id=conversation_id, limit=limit)
    return {"entries": entries}


def _spawn_command(coro) -> None:
    task = asyncio.create_task(coro)
    _command_tasks.add(task)
    task.add_done_callback(_command_tasks.discard)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    if not _token_matches(token) or not agent_manager:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    manager = agent_manager
    logger.info("WebSocket client connected")

    async def send(event) -> None:
        try:
            await websocket.send_json(event.to_wire())
        except Exception:
            # Client went away; the query keeps running.
            logger.debug("Dropped %s event for disconnected client", event.type)

    active_ids = manager.active_query_ids()
    if active_ids:
        await send(ActiveQueriesEvent(conversation_ids=active_ids))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                command = parse_client_command(raw)
            except CommandError as e:
                await send(ErrorEvent(conversation_id=e.conversation_id, message=str(e)))
                continue

            if isinstance(command, ChatCommand):
                _spawn_command(manager.start_query(command.conversation_id, command.message, send))
            elif isinstance(command, ArchiveCommand):
                _spawn_command(manager.archive_conversation(command.conversation_id, send))
            elif isinstance(command, InterruptCommand):
                if not await manager.interrupt_query(command.conversation_id):
                    await send(
                        ErrorEvent(
                            conversation_id=command.conversation_id,
                            message="No active query to interrupt",
                        )
                    )
            elif isinstance(command, PermissionResponseCommand):
                if not await manager.resolve_permission(command.permission_id, command.approved):
                    logger.info("Ignoring response for unknown permission %s", command.permission_id)
            elif isinstance(command, UserInputResponseCommand):
                if not await manager.resolve_user_input(command.request_id, command.answers):
                    logger.info("Ignoring response for unknown input request %s", command.request_id)
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")


@app.get("/")
async def root():
    """API information."""
    return {
        "name": "Nexia",
        "version": "1.0.0",
        "endpoints": {
            "GET /api/health": "Health check",
            "GET /api/conversations": "List conversations (most recently updated first)",
            "POST /api/conversations": "Create a conversation (optional cwd and title)",
            "DELETE /api/conversations/{id}": "Delete a conversation and its messages",
            "GET /api/conversations/{id}/messages": "List a conversation's messages",
            "GET /api/filesystem/list": "List subdirectories for the working-directory picker",
            "GET /api/permissions/log": "Recent permission decisions",
            "WS /ws?token=": "Chat, interrupt, archive and permission responses",
        }
    }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=HOST, port=PORT)
