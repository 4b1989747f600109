"""AgentRoom — Main FastAPI application."""

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from . import database as db
from . import dispatcher
from .models import MessageIn, WSMessage
from .routes_api import post_user_message, router as api_router
from .runtime_config import MODEL_BASE_URL, MODEL_NAME, ensure_runtime_dirs
from .websocket import manager

# ── Logging ────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("agentroom")


# ── Lifespan ───────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("AgentRoom starting up...")
    ensure_runtime_dirs()
    await db.init_db()
    logger.info("Database initialized")
    logger.info("Model boundary: %s (%s)", MODEL_BASE_URL, MODEL_NAME)
    yield
    for channel in await db.get_channels():
        await dispatcher.stop_channel(channel["id"])
    logger.info("AgentRoom shutting down.")


# ── App ────────────────────────────────────────────────────
app = FastAPI(title="AgentRoom", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


# ── WebSocket endpoint ─────────────────────────────────────
@app.websocket("/ws/{channel_id}")
async def websocket_endpoint(ws: WebSocket, channel_id: str):
    await manager.connect(ws, channel_id)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = WSMessage(**json.loads(raw))
                body = MessageIn(content=msg.content, author_id=msg.author_id, id=msg.id)
            except (TypeError, ValueError, ValidationError):
                await manager.send_personal(ws, {"error": "Invalid message format"})
                continue
            if not await db.get_channel(channel_id):
                await manager.send_personal(ws, {"error": "Channel not found"})
                continue
            try:
                await post_user_message(channel_id, body)
            except HTTPException as exc:
                await manager.send_personal(ws, {"error": exc.detail})

    except WebSocketDisconnect:
        manager.disconnect(ws)
        logger.info("WS disconnected: #%s", channel_id)
