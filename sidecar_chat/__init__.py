"""Sidecar Chat 顶层包。

该包提供位于用户与本地推理 Sidecar 之间的会话编排层，
包括配置加载、领域模型、带重试的推理客户端、进程内会话存储、
发送消息工作流以及 FastAPI HTTP 接口。
"""

__version__ = "1.0.0"

from sidecar_chat.infrastructure.storage.memory_store import InMemoryConversationStore
from sidecar_chat.providers.sidecar_client import SidecarClient
from sidecar_chat.services.chat_service import ChatService, SendResult

__all__ = ["ChatService", "InMemoryConversationStore", "SendResult", "SidecarClient", "__version__"]
