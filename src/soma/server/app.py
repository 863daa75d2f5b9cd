"""HTTP adapter for the memory core.

Endpoints:
- `GET /health`: liveness probe.
- `POST /chat`: text turn, `{text, sessionId?}`.
- `POST /vision`: screenshot turn, `{imageB64, windowTitle?, sessionId?}`.
- `GET /history`, `GET /stats`: per-session history and context stats.
- `GET /identities`, `GET /search`: durable bindings and message search.

The session id comes from the `X-Session-Id` header, then the body
`sessionId`, then the `sessionId` query parameter. Text and vision turns
without one get a generated id; the query endpoints require one.

Errors always come back as `{"error": ...}`: invalid input is 400, an
unavailable completion backend is 503, anything else is 500.
"""

from __future__ import annotations

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvalidInput, SomaError, UpstreamUnavailable

if TYPE_CHECKING:
    from ..agent import ConversationService

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Id"


class ChatRequest(BaseModel):
    """Body of `POST /chat`."""

    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    session_id: str | None = Field(default=None, alias="sessionId")


class VisionRequest(BaseModel):
    """Body of `POST /vision`."""

    model_config = ConfigDict(populate_by_name=True)

    image_b64: str = Field(default="", alias="imageB64")
    window_title: str = Field(default="", alias="windowTitle")
    session_id: str | None = Field(default=None, alias="sessionId")


def resolve_session_id(request: Request, body_session_id: str | None = None) -> str | None:
    """Pick the session id from header, body or query, in that order."""
    for candidate in (
        request.headers.get(SESSION_HEADER),
        body_session_id,
        request.query_params.get("sessionId"),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def decode_image(image_b64: str) -> bytes:
    """Decode a base64 image, accepting an optional data URL prefix."""
    payload = (image_b64 or "").strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    if not payload:
        raise InvalidInput("Missing imageB64")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInput("imageB64 is not valid base64") from e


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _require_session(request: Request) -> str:
    session_id = resolve_session_id(request)
    if session_id is None:
        raise InvalidInput("Missing sessionId")
    return session_id


def create_app(service: ConversationService) -> FastAPI:
    """Build the FastAPI application around a conversation service.

    The service's background maintenance starts with the app and the
    service is closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.start()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(title="Soma", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Malformed request body")

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_handler(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
        return _error(503, str(exc))

    @app.exception_handler(SomaError)
    async def soma_error_handler(request: Request, exc: SomaError) -> JSONResponse:
        logger.error("Request failed: %s", exc)
        return _error(500, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error")
        return _error(500, str(exc))

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/chat")
    async def chat(body: ChatRequest, request: Request):
        session_id = resolve_session_id(request, body.session_id)
        result = await service.submit_text_turn(session_id, body.text)
        return {"assistant_text": result.response_text, "session_id": result.session_id}

    @app.post("/vision")
    async def vision(body: VisionRequest, request: Request):
        session_id = resolve_session_id(request, body.session_id)
        image = decode_image(body.image_b64)
        result = await service.submit_vision_turn(session_id, image, body.window_title)
        return {
            "assistant_text": result.response_text,
            "image_hash": result.image_fingerprint,
            "session_id": result.session_id,
        }

    @app.get("/history")
    def history(request: Request, limit: int = 20):
        session_id = _require_session(request)
        messages = service.get_history(session_id, limit)
        return {"session_id": session_id, "messages": [m.to_dict() for m in messages]}

    @app.get("/stats")
    def stats(request: Request):
        session_id = _require_session(request)
        return {
            "session_id": session_id,
            "stats": service.get_context_stats(session_id).to_dict(),
            "should_prune": service.should_prune(session_id),
        }

    @app.get("/identities")
    def identities():
        return {"identities": [b.to_dict() for b in service.get_all_identities()]}

    @app.get("/search")
    def search(q: str = "", limit: int = 10, caseSensitive: bool = False):
        if not q:
            raise InvalidInput("Missing q")
        messages = service.search_messages(q, limit, caseSensitive)
        return {"query": q, "messages": [m.to_dict() for m in messages]}

    return app
