"""会话编排核心模块。

实现发送消息的完整流程：定位会话、追加用户消息、裁剪上下文、
调用推理客户端、记录助手回复（成功或兜底道歉）。
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sidecar_chat.config.settings import settings
from sidecar_chat.domain.conversation import Conversation, ConversationStore
from sidecar_chat.domain.exceptions import BusinessError, InvalidRequestError, SidecarUnavailableError
from sidecar_chat.domain.models import (
    ChatMessage,
    InferenceRequest,
    InferenceResult,
    InferenceUsage,
    Message,
    Outcome,
    SamplingOptions,
    SidecarHealth,
)
from sidecar_chat.infrastructure.logging.logger import log_event
from sidecar_chat.prompts import load_system_prompt
from sidecar_chat.providers.base import InferenceClient

APOLOGY_MESSAGE = "I apologize, but I'm experiencing technical difficulties. Please try again in a moment."


@dataclass
class SendResult:
    """一次发送的结果。

    推理失败时 error 不为空，assistant_message 为带 error 标记的道歉消息，
    调用方据此记录日志/指标，但依然把这条回复展示给用户。
    """

    conversation_id: str
    user_message: Message
    assistant_message: Message
    conversation_length: int
    outcome: Outcome
    error: Optional[BusinessError] = None
    usage: Optional[InferenceUsage] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ChatService:
    def __init__(
        self,
        store: ConversationStore,
        client: InferenceClient,
        cfg=settings,
        system_prompt: Optional[str] = None,
    ):
        self._store = store
        self._client = client
        self._settings = cfg
        self._system_prompt = system_prompt or cfg.system_prompt or load_system_prompt()

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def client(self) -> InferenceClient:
        return self._client

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def update_system_prompt(self, prompt: str) -> None:
        if not prompt or not prompt.strip():
            raise InvalidRequestError("System prompt must not be empty")
        self._system_prompt = prompt.strip()
        log_event(logging.INFO, "System prompt updated", {}, length=len(self._system_prompt))

    # ---- 会话管理 ----

    def create_conversation(
        self,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        conv = self._store.create_conversation(title=title, metadata=metadata, conversation_id=conversation_id)
        log_event(logging.INFO, "Created new conversation", {"conversation_id": conv.id}, title=conv.title)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self._store.get_conversation(conversation_id)

    def list_conversations(self, limit: Optional[int] = None) -> Tuple[List[Conversation], int]:
        """按最近活跃时间倒序列出会话，返回 (会话列表, 总数)。"""
        items = self._store.list_conversations(limit or self._settings.list_limit)
        return items, self._store.count()

    def delete_conversation(self, conversation_id: str) -> None:
        self._store.delete_conversation(conversation_id)
        log_event(logging.INFO, "Deleted conversation", {"conversation_id": conversation_id})

    # ---- 发送消息 ----

    def send_message(
        self,
        conversation_id: str,
        text: str,
        sampling: Optional[SamplingOptions] = None,
    ) -> SendResult:
        """发送一条用户消息并记录助手回复。

        同一会话的发送在会话锁内串行执行，保证消息按完成顺序追加；
        推理失败不会抛异常，而是追加一条 error=True 的道歉消息。

        Raises:
            InvalidRequestError: 消息为空或只有空白。
            NotFoundError: 会话不存在（发送不会隐式创建会话）。
        """
        content = (text or "").strip()
        if not content:
            raise InvalidRequestError("Message content is required")

        start_time = time.time()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
        }

        with self._store.conversation_lock(conversation_id) as conv:
            history = list(conv.messages)
            user_msg = Message.create("user", content)
            self._store.append_message(conversation_id, user_msg)
            log_event(logging.INFO, "Stored user message", log_ctx, message_id=user_msg.id)

            request = self._build_request(history, user_msg, conv.metadata, sampling, log_ctx)
            try:
                result = self._client.complete(request)
            except Exception as e:
                # 保证每条用户消息后都有一条助手回复
                log_event(
                    logging.ERROR,
                    "Inference client raised unexpectedly",
                    log_ctx,
                    client=getattr(self._client, "name", None),
                    error=str(e) or type(e).__name__,
                )
                result = InferenceResult(
                    outcome="sidecar_unavailable",
                    model=request.model,
                    error=SidecarUnavailableError(
                        "Inference client failed unexpectedly",
                        attempts=0,
                        last_error=str(e) or type(e).__name__,
                    ),
                )

            if result.ok:
                assistant_msg = Message.create(
                    "assistant",
                    result.text,
                    model=result.model,
                    tokens=result.usage.completion_tokens if result.usage else 0,
                )
            else:
                log_event(
                    logging.WARNING,
                    "Inference failed, recording fallback reply",
                    log_ctx,
                    outcome=result.outcome,
                    error_code=result.error.code if result.error else None,
                    error=result.error.message if result.error else None,
                    attempts=result.attempts,
                )
                assistant_msg = Message.create(
                    "assistant",
                    APOLOGY_MESSAGE,
                    model=result.model,
                    error=True,
                    error_code=result.error.code if result.error else result.outcome.upper(),
                )
            length = self._store.append_message(conversation_id, assistant_msg)
            self._store.touch(conversation_id)

        log_event(
            logging.INFO,
            "Completed chat exchange",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            outcome=result.outcome,
            attempts=result.attempts,
            conversation_length=length,
        )

        if self._settings.sweep_on_send:
            self.sweep_expired()

        return SendResult(
            conversation_id=conversation_id,
            user_message=user_msg,
            assistant_message=assistant_msg,
            conversation_length=length,
            outcome=result.outcome,
            error=result.error,
            usage=result.usage,
        )

    # ---- 维护与诊断 ----

    def sweep_expired(self) -> int:
        return self._store.sweep_expired()

    def health_check(self) -> SidecarHealth:
        return self._client.health_check()

    def list_models(self) -> List[Dict[str, Any]]:
        list_models = getattr(self._client, "list_models", None)
        if list_models is None:
            health = self._client.health_check()
            return [{"name": name} for name in health.models]
        return list_models()

    def statistics(self) -> Dict[str, Any]:
        return self._store.statistics()

    def export_conversations(self, conversation_id: Optional[str] = None) -> Any:
        return self._store.export_conversations(conversation_id)

    def import_conversations(self, data: Dict[str, Any]) -> int:
        return self._store.import_conversations(data)

    # ---- 辅助方法 ----

    def _build_request(
        self,
        history: List[Message],
        user_msg: Message,
        metadata: Dict[str, Any],
        sampling: Optional[SamplingOptions],
        log_ctx: Dict[str, Any],
    ) -> InferenceRequest:
        """系统提示词 + 最近 max_history_messages 条历史 + 本轮用户消息。"""
        max_history = self._settings.max_history_messages
        window = history[-max_history:] if max_history > 0 else []
        if len(history) > len(window):
            log_event(
                logging.INFO,
                "Truncated context",
                log_ctx,
                max_history=max_history,
                trimmed=len(history) - len(window),
            )

        messages = [ChatMessage(role="system", content=self._system_prompt)]
        messages.extend(ChatMessage(role=m.role, content=m.content) for m in window)
        messages.append(ChatMessage(role="user", content=user_msg.content))

        opts = sampling or SamplingOptions()
        return InferenceRequest(
            messages=messages,
            temperature=_first_set(opts.temperature, metadata.get("temperature"), self._settings.default_temperature),
            max_tokens=_first_set(opts.max_tokens, metadata.get("max_tokens"), self._settings.default_max_tokens),
            model=_first_set(opts.model, metadata.get("model"), None),
            top_p=_first_set(opts.top_p, metadata.get("top_p"), None),
            timeout=self._settings.llm_timeout,
        )


def _first_set(*values):
    for v in values:
        if v is not None:
            return v
    return None
