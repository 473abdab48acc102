"""HTTP surface: chat turns, history and session management.

    POST   /api/chat                 stream a turn (text/event-stream)
    GET    /api/chat?sessionId=      ordered message history
    GET    /api/sessions?userId=     sessions with at least one message
    POST   /api/sessions             create a session
    GET    /api/sessions/{id}
    PUT    /api/sessions/{id}        rename
    DELETE /api/sessions/{id}

Run with ``uvicorn app:app``.
"""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

import worker
from chat_service import ChatService, TurnRequest
from errors import ChatError
from history_store import PostgresHistoryStore, init_db
from settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SESSION_HEADER = "x-session-id"


class ChatRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)
    sessionId: Optional[str] = None
    userId: Optional[str] = None


class SessionCreate(BaseModel):
    userId: Optional[str] = None
    title: Optional[str] = None


class SessionRename(BaseModel):
    title: Optional[str] = None


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def create_app(service: ChatService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            app.state.service = ChatService.from_settings()
        if isinstance(app.state.service.store, PostgresHistoryStore):
            init_db()
        yield
        await worker.drain(timeout=10)
        await app.state.service.store.close()

    app = FastAPI(title="chat-context", lifespan=lifespan)
    app.state.service = service

    def _service(request: Request) -> ChatService:
        return request.app.state.service

    @app.exception_handler(ChatError)
    async def _chat_error(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.error("Request failed (session=%s, stage=%s): %s",
                         exc.session_id, exc.stage, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.public_message, "details": str(exc)},
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error")
        return JSONResponse(
            status_code=500,
            content={"error": ChatError.public_message, "details": str(exc)},
        )

    @app.post("/api/chat")
    async def post_chat(body: ChatRequest, request: Request):
        turn = await _service(request).start_turn(
            TurnRequest(messages=body.messages, session_id=body.sessionId, user_id=body.userId)
        )

        async def body_iter():
            async for event in turn.events():
                yield _sse(event)
            yield "data: [DONE]\n\n"

        return StreamingResponse(
            body_iter(),
            media_type="text/event-stream",
            headers={SESSION_HEADER: turn.session_id, "Cache-Control": "no-cache"},
        )

    @app.get("/api/chat")
    async def get_chat_history(request: Request, sessionId: Optional[str] = Query(None)):
        messages = await _service(request).get_history(sessionId)
        return {"messages": messages}

    @app.get("/api/sessions")
    async def list_sessions(request: Request, userId: Optional[str] = Query(None)):
        sessions = await _service(request).list_sessions(userId)
        return {"sessions": [s.to_api() for s in sessions]}

    @app.post("/api/sessions")
    async def create_session(body: SessionCreate, request: Request):
        session = await _service(request).create_session(body.userId, body.title)
        return {"session": session.to_api()}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, request: Request):
        session = await _service(request).get_session(session_id)
        return {"session": session.to_api()}

    @app.put("/api/sessions/{session_id}")
    async def rename_session(session_id: str, body: SessionRename, request: Request):
        session = await _service(request).rename_session(session_id, body.title)
        return {"session": session.to_api()}

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str, request: Request):
        await _service(request).delete_session(session_id)
        return {"deleted": True}

    return app


app = create_app()
