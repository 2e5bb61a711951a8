"""对外 HTTP 服务模块。

create_app() 构造 FastAPI 应用；ChatService 在进程内只创建一次，
挂在 app.state 上并通过依赖注入交给各个路由，不使用模块级全局状态。
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sidecar_chat import __version__
from sidecar_chat.api.schemas import (
    ConversationListOut,
    ConversationOut,
    ConversationSummary,
    CreateConversationBody,
    CreateConversationOut,
    DeleteOut,
    ImportBody,
    MessageOut,
    SendMessageBody,
    SendMessageOut,
    SidecarHealthOut,
)
from sidecar_chat.config.settings import settings
from sidecar_chat.domain.exceptions import BusinessError
from sidecar_chat.domain.models import SamplingOptions, format_ts, utcnow
from sidecar_chat.infrastructure.logging.logger import log_event, logger
from sidecar_chat.infrastructure.storage.memory_store import InMemoryConversationStore
from sidecar_chat.infrastructure.storage.retention import RetentionSweeper
from sidecar_chat.providers import create_inference_client
from sidecar_chat.services.chat_service import ChatService


def build_default_service(cfg=settings) -> ChatService:
    store = InMemoryConversationStore(
        max_messages=cfg.max_conversation_length,
        retention=timedelta(seconds=cfg.conversation_ttl_seconds),
    )
    return ChatService(store=store, client=create_inference_client(cfg), cfg=cfg)


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def create_app(service: Optional[ChatService] = None, cfg=settings) -> FastAPI:
    chat_service = service or build_default_service(cfg)
    sweeper = RetentionSweeper(chat_service.store, cfg.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper.start()
        log_event(logging.INFO, "Service started", {}, sidecar=getattr(chat_service.client, "base_url", None))
        yield
        sweeper.stop()
        close = getattr(chat_service.client, "close", None)
        if close is not None:
            close()
        log_event(logging.INFO, "Service stopped", {})

    app = FastAPI(
        title="Sidecar Chat API",
        description="Chat session orchestration in front of a local inference sidecar",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.chat_service = chat_service
    app.state.sweeper = sweeper

    if cfg.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.cors_origins,
            allow_credentials=cfg.cors_allow_credentials,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError):
        return JSONResponse(status_code=exc.http_status, content={"error": exc.code, "message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "INVALID_REQUEST", "message": "Validation failed", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "INTERNAL_ERROR", "message": "Internal server error"},
        )

    @app.get("/health")
    def health():
        return {"status": "healthy", "timestamp": format_ts(utcnow()), "version": __version__}

    @app.get("/sidecar/health", response_model=SidecarHealthOut)
    def sidecar_health(svc: ChatService = Depends(get_chat_service)):
        result = svc.health_check()
        body = SidecarHealthOut(
            status="healthy" if result.healthy else "unhealthy",
            sidecar_status="connected" if result.healthy else "disconnected",
            available_models=result.models,
            latency_ms=result.latency_ms,
            error=result.error,
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK if result.healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(by_alias=True, exclude_none=True),
        )

    @app.get("/models")
    def list_models(svc: ChatService = Depends(get_chat_service)):
        health = svc.health_check()
        if not health.healthy:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"error": "SIDECAR_UNAVAILABLE", "message": health.error or "Sidecar unavailable"},
            )
        return {"models": svc.list_models()}

    @app.post("/conversations", status_code=status.HTTP_201_CREATED, response_model=CreateConversationOut)
    def create_conversation(body: CreateConversationBody, svc: ChatService = Depends(get_chat_service)):
        conv = svc.create_conversation(
            title=body.title,
            metadata=body.metadata,
            conversation_id=body.conversation_id,
        )
        return CreateConversationOut(conversation_id=conv.id, conversation=ConversationOut.model_validate(conv))

    @app.get("/conversations", response_model=ConversationListOut)
    def list_conversations(
        limit: int = Query(default=cfg.list_limit, ge=1, le=500),
        svc: ChatService = Depends(get_chat_service),
    ):
        items, total = svc.list_conversations(limit)
        return ConversationListOut(
            conversations=[
                ConversationSummary(
                    id=c.id,
                    title=c.title,
                    created_at=c.created_at,
                    last_activity=c.last_activity,
                    message_count=len(c.messages),
                    metadata=c.metadata,
                )
                for c in items
            ],
            total=total,
        )

    @app.get("/conversations/{conversation_id}", response_model=ConversationOut)
    def get_conversation(conversation_id: str, svc: ChatService = Depends(get_chat_service)):
        return ConversationOut.model_validate(svc.get_conversation(conversation_id))

    @app.post("/conversations/{conversation_id}/messages", response_model=SendMessageOut)
    def send_message(conversation_id: str, body: SendMessageBody, svc: ChatService = Depends(get_chat_service)):
        opts = body.sampling_options
        sampling = SamplingOptions(**opts.model_dump()) if opts else None
        result = svc.send_message(conversation_id, body.message, sampling)
        return SendMessageOut(
            conversation_id=result.conversation_id,
            user_message=MessageOut.model_validate(result.user_message),
            assistant_message=MessageOut.model_validate(result.assistant_message),
            message_count=result.conversation_length,
            outcome=result.outcome,
            error=result.failed,
            error_code=result.error.code if result.error else None,
        )

    @app.delete("/conversations/{conversation_id}", response_model=DeleteOut)
    def delete_conversation(conversation_id: str, svc: ChatService = Depends(get_chat_service)):
        svc.delete_conversation(conversation_id)
        return DeleteOut(deleted=True, conversation_id=conversation_id)

    @app.get("/stats")
    def stats(svc: ChatService = Depends(get_chat_service)):
        return svc.statistics()

    @app.get("/export")
    def export_conversations(svc: ChatService = Depends(get_chat_service)):
        return {"conversations": svc.export_conversations()}

    @app.post("/import")
    def import_conversations(body: ImportBody, svc: ChatService = Depends(get_chat_service)):
        return {"imported": svc.import_conversations(body.conversations)}

    return app
