"""FastAPI application exposing the pastoral assistant and content lookups."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .config import configure_logging, load_config
from .content import (
    BiblePassage,
    DailyDevotional,
    SongLyrics,
    fetch_bible_passage,
    fetch_song_lyrics,
    generate_daily_devotional,
)
from .conversation import PendingTurn, StreamOutcome
from .gateway import GatewayFailure, MalformedResponse
from .gemini import GeminiGateway, create_from_config
from .sessions import DEFAULT_GREETING, ChatSession, SessionRegistry
from .transcript import Message

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class MessageRequest(BaseModel):
    message: str = Field(..., description="The user's utterance.")
    stream: bool = Field(default=False)


class TurnResponse(BaseModel):
    outcome: str
    message: Dict[str, Any]


# -----------------------------
# Utilities
# -----------------------------
def _make_registry(cfg: Dict[str, Any], gateway: Any) -> SessionRegistry:
    chat_cfg = cfg.get("chat", {}) or {}
    greeting = chat_cfg.get("greeting", DEFAULT_GREETING)
    max_sessions = chat_cfg.get("max_sessions")
    return SessionRegistry(
        gateway,
        greeting=greeting,
        max_sessions=int(max_sessions) if max_sessions else None,
    )


def _ndjson(obj: Dict[str, Any]) -> bytes:
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")


async def _relay_turn(
    session: ChatSession,
    turn: PendingTurn,
    task: "asyncio.Task[StreamOutcome]",
    queue: "asyncio.Queue[Optional[str]]",
) -> AsyncIterator[bytes]:
    """Relay a running turn's updates as NDJSON lines, then a final ``done`` line."""
    while True:
        item = await queue.get()
        if item is None:
            break
        yield _ndjson({"event": "update", "text": item})

    outcome = await task
    reply = session.transcript.find(turn.reply_id)
    yield _ndjson({
        "event": "done",
        "outcome": outcome.value,
        "message": reply.to_dict() if reply else None,
    })


def _provider_error(e: Exception) -> HTTPException:
    if isinstance(e, MalformedResponse):
        return HTTPException(status_code=502, detail="The assistant returned an unexpected response.")
    return HTTPException(status_code=503, detail="The assistant is unavailable right now.")


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    gateway: Any = None,
    registry: Optional[SessionRegistry] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    configure_logging(cfg)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    gateway = gateway or create_from_config(cfg)
    registry = registry or _make_registry(cfg, gateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        registry.close_all()
        if isinstance(gateway, GeminiGateway):
            await gateway.aclose()

    app = FastAPI(title="Anugrah Assistant Server", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.registry = registry
    app.state.gateway = gateway
    # Strong references to turns running independently of their responses
    turns: Set["asyncio.Task[StreamOutcome]"] = set()
    app.state.turns = turns

    def _session(session_id: str) -> ChatSession:
        try:
            return registry.get(session_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Session not found.")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions": len(registry),
            "model": getattr(gateway, "model", None),
        }

    # ---------------- Chat sessions ----------------
    @app.post("/sessions", status_code=201)
    async def create_session() -> Dict[str, Any]:
        return registry.create().to_dict()

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        return _session(session_id).to_dict()

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> Dict[str, Any]:
        if not registry.close(session_id):
            raise HTTPException(status_code=404, detail="Session not found.")
        return {"ok": True}

    @app.post("/sessions/{session_id}/messages")
    async def post_message(session_id: str, req: MessageRequest):
        session = _session(session_id)
        text = req.message or ""
        if not text.strip():
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        # Reserve the turn before responding so a concurrent post sees it as busy.
        turn = session.service.begin(text)
        if turn is None:
            raise HTTPException(status_code=409, detail="A reply is still streaming for this session.")

        if req.stream:
            queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

            def on_update(msg: Message) -> None:
                queue.put_nowait(msg.text)

            # The task outlives a disconnected client, so the transcript
            # always reaches a terminal state.
            task = asyncio.create_task(session.service.run(turn, on_update=on_update))
            turns.add(task)
            task.add_done_callback(turns.discard)
            task.add_done_callback(lambda _t: queue.put_nowait(None))
            return StreamingResponse(_relay_turn(session, turn, task, queue), media_type="application/x-ndjson")

        outcome = await session.service.run(turn)
        reply = session.transcript.find(turn.reply_id)
        return TurnResponse(outcome=outcome.value, message=reply.to_dict() if reply else {})

    # ---------------- Content lookups ----------------
    @app.get("/bible", response_model=BiblePassage)
    async def bible(
        q: str = Query(..., min_length=1),
        language: str = "English",
        translation: str = "NIV",
    ):
        try:
            return await fetch_bible_passage(gateway, q, language=language, translation=translation)
        except (GatewayFailure, MalformedResponse) as e:
            logger.warning("bible lookup failed for %r: %s", q, e)
            raise _provider_error(e)

    @app.get("/lyrics", response_model=SongLyrics)
    async def lyrics(q: str = Query(..., min_length=1)):
        try:
            return await fetch_song_lyrics(gateway, q)
        except (GatewayFailure, MalformedResponse) as e:
            logger.warning("lyrics lookup failed for %r: %s", q, e)
            raise _provider_error(e)

    @app.get("/devotional", response_model=DailyDevotional)
    async def devotional():
        try:
            return await generate_daily_devotional(gateway)
        except (GatewayFailure, MalformedResponse) as e:
            logger.warning("devotional generation failed: %s", e)
            raise _provider_error(e)

    return app
