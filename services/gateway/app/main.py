from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from services.agents.text.adapters import ChatModelClient
from services.agents.text.worker import (
    LLMEngineError,
    completion_options,
    llm_capabilities,
    select_chat_model,
    timeout_s,
)
from services.config.runtime_config import (
    EDITABLE_KEYS,
    ConfigurationError,
    apply_setup_values,
    current_values,
    masked_state,
    require_valid_setup,
    validate_setup,
)
from services.gateway.app.metrics import metrics_response, record_http
from services.orchestrator.stream import ChatTurn, StreamOrchestrator
from services.protocol.sse import build_encoder, wire_variant
from services.scene.detector import SceneJsonDetector
from services.scene.objects import snapshot_to_payload
from services.store.conversations import ConversationNotFound, ConversationStore
from services.versioning import project_revision, project_version

logger = logging.getLogger("scenechat.gateway")

DETECTION_WINDOW_ENV = "SCENECHAT_DETECTION_WINDOW_CHARS"
MAX_MESSAGE_CHARS = 8000

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatMessage(BaseModel):
    role: str
    content: str = ""


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(default_factory=list)
    new_message: str | None = Field(default=None, alias="newMessage")
    conversation_id: str | None = Field(default=None, alias="chatId")


class ConversationCreateRequest(BaseModel):
    title: str = ""


def _detection_window_chars() -> int:
    raw = os.getenv(DETECTION_WINDOW_ENV, "32000").strip()
    try:
        value = int(raw)
    except ValueError:
        return 32_000
    return max(1_024, min(1_000_000, value))


def _split_turn(req: ChatRequest) -> ChatTurn:
    history = [{"role": row.role, "content": row.content} for row in req.messages]
    new_message = req.new_message
    if new_message is None:
        new_message = history[-1]["content"]
        history = history[:-1]
    elif history and history[-1]["role"] == "user" and history[-1]["content"] == new_message:
        # clients that send the new message in both places
        history = history[:-1]
    return ChatTurn(new_message=new_message, history=history, conversation_id=req.conversation_id)


def _runtime_setup() -> dict[str, str]:
    """Merge ``.env`` under the process env and publish the result to ``os.environ``.

    Provider selection and the encoder read ``os.environ``, so they see the
    same values that were validated.
    """
    values = current_values()
    apply_setup_values(values)
    return values


def _not_found(conversation_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"error": "conversation_not_found", "conversation_id": conversation_id},
    )


def create_app(store: ConversationStore | None = None, model: ChatModelClient | None = None) -> FastAPI:
    """Build the gateway; ``store`` and ``model`` replace the env-selected defaults."""
    app = FastAPI(title="SceneChat Gateway", version=project_version())
    app.state.store = store
    app.state.model = model

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_store() -> ConversationStore:
        if app.state.store is None:
            app.state.store = ConversationStore()
        return app.state.store

    def get_model() -> ChatModelClient:
        if app.state.model is not None:
            return app.state.model
        return select_chat_model()

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):  # type: ignore[override]
        started = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            record_http(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_s=perf_counter() - started,
            )

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "service": "gateway",
            "version": project_version(),
            "revision": project_revision(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/metrics")
    def metrics() -> Response:
        payload, content_type = metrics_response()
        return Response(content=payload, media_type=content_type)

    @app.get("/v1/runtime/capabilities")
    async def runtime_capabilities(probe: bool = False) -> dict:
        values = _runtime_setup()
        validation = validate_setup(values)
        if app.state.model is not None:
            llm_payload: dict[str, Any] = {
                "selected_provider": "injected",
                "active_provider_ready": True,
                "capabilities": app.state.model.capabilities(probe=probe),
            }
        else:
            llm_payload = await asyncio.to_thread(llm_capabilities, probe)
        return {
            "llm": llm_payload,
            "wire_variant": wire_variant(),
            "setup": {
                "ok": validation["ok"],
                "errors": validation["errors"],
                "warnings": validation["warnings"],
                "state": masked_state(values),
                "editable_keys": sorted(EDITABLE_KEYS),
            },
        }

    @app.post("/v1/chat")
    async def chat(req: ChatRequest):
        try:
            require_valid_setup(_runtime_setup())
            chat_model = get_model()
        except (ConfigurationError, LLMEngineError) as exc:
            logger.error("Chat request rejected, server misconfigured: %s", exc)
            return JSONResponse(
                status_code=500,
                content={"error": "configuration_error", "message": str(exc)},
            )
        if not req.messages:
            return JSONResponse(
                status_code=400,
                content={"error": "messages_required", "message": "messages must not be empty"},
            )
        turn = _split_turn(req)
        if not turn.new_message.strip():
            return JSONResponse(
                status_code=400,
                content={"error": "empty_message", "message": "the new message has no content"},
            )
        if len(turn.new_message) > MAX_MESSAGE_CHARS:
            return JSONResponse(
                status_code=422,
                content={"error": "message_too_long", "max_chars": MAX_MESSAGE_CHARS},
            )

        orchestrator = StreamOrchestrator(
            model=chat_model,
            store=get_store(),
            detector=SceneJsonDetector(window_chars=_detection_window_chars()),
            chunk_timeout_s=timeout_s(),
            options=completion_options(),
        )
        return StreamingResponse(
            orchestrator.stream(turn, build_encoder()),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/v1/conversations")
    def create_conversation(req: ConversationCreateRequest) -> dict:
        conversation_id = get_store().create_conversation(req.title)
        conversation = get_store().get_conversation(conversation_id)
        return {"conversation": conversation}

    @app.get("/v1/conversations")
    def list_conversations() -> dict:
        return {"conversations": get_store().list_conversations()}

    @app.get("/v1/conversations/{conversation_id}")
    def get_conversation(conversation_id: str) -> dict:
        conversation = get_store().get_conversation(conversation_id)
        if conversation is None:
            raise _not_found(conversation_id)
        return {"conversation": conversation}

    @app.delete("/v1/conversations/{conversation_id}")
    def delete_conversation(conversation_id: str) -> dict:
        if not get_store().delete_conversation(conversation_id):
            raise _not_found(conversation_id)
        return {"ok": True, "conversation_id": conversation_id}

    @app.get("/v1/conversations/{conversation_id}/messages")
    def list_messages(conversation_id: str) -> dict:
        if get_store().get_conversation(conversation_id) is None:
            raise _not_found(conversation_id)
        return {"conversation_id": conversation_id, "messages": get_store().list_messages(conversation_id)}

    @app.get("/v1/conversations/{conversation_id}/scene")
    def conversation_scene(conversation_id: str) -> dict:
        try:
            scene = get_store().latest_scene(conversation_id)
        except ConversationNotFound as exc:
            raise _not_found(conversation_id) from exc
        return {"conversation_id": conversation_id, "objects": snapshot_to_payload(scene)}

    return app


app = create_app()


__all__ = ["ChatMessage", "ChatRequest", "SSE_HEADERS", "app", "create_app"]
