"""统一的消息与推理数据模型。

本模块定义了会话存储与推理客户端之间共享的标准数据结构：

- Message: 会话历史中的一条消息，追加后不可变。
- ChatMessage: 发给 Sidecar 的 role/content 对。
- InferenceRequest: 发给 Sidecar 的完整请求。
- InferenceResult: Sidecar 调用的统一结果（成功、空回复或失败）。

SidecarClient 只依赖这些模型，并负责在 Sidecar 的 JSON 与它们之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, get_args
from uuid import uuid4

from sidecar_chat.domain.exceptions import BusinessError


# 消息角色（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]

# 一次推理调用的最终结局
Outcome = Literal["success", "empty_response", "invalid_request", "sidecar_unavailable"]

EMPTY_RESPONSE_NOTICE = "I apologize, but I was unable to generate a response."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    """解析 ISO-8601 时间；不带时区的按 UTC 处理。格式错误抛 ValueError。"""
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Message:
    """会话中的一条消息。

    - model / tokens: 仅助手消息携带，记录生成模型与 token 数。
    - error: 助手消息是否为推理失败后的兜底回复。
    - error_code: 失败分类（如 "SIDECAR_UNAVAILABLE"），不保存原始错误文本。
    """

    id: str
    role: Role
    content: str
    timestamp: datetime
    model: Optional[str] = None
    tokens: Optional[int] = None
    error: bool = False
    error_code: Optional[str] = None

    @classmethod
    def create(cls, role: Role, content: str, **kwargs: Any) -> "Message":
        kwargs.setdefault("timestamp", utcnow())
        return cls(id=f"m-{uuid4().hex}", role=role, content=content, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": format_ts(self.timestamp),
        }
        if self.model is not None:
            payload["model"] = self.model
        if self.tokens is not None:
            payload["tokens"] = self.tokens
        if self.error:
            payload["error"] = True
            payload["error_code"] = self.error_code
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """从 to_dict 的输出还原消息；结构不合法时抛 ValueError。"""
        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        role = data.get("role")
        if role not in get_args(Role):
            raise ValueError(f"invalid message role: {role!r}")
        tokens = data.get("tokens")
        if tokens is not None and (isinstance(tokens, bool) or not isinstance(tokens, int)):
            raise ValueError(f"invalid token count: {tokens!r}")
        return cls(
            id=str(data.get("id") or f"m-{uuid4().hex}"),
            role=role,
            content=str(data.get("content") or ""),
            timestamp=parse_ts(data["timestamp"]) if data.get("timestamp") else utcnow(),
            model=data.get("model"),
            tokens=tokens,
            error=bool(data.get("error", False)),
            error_code=data.get("error_code"),
        )


@dataclass
class SamplingOptions:
    """单次发送的采样参数，未设置的字段回退到会话元数据和全局默认值。"""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None
    top_p: Optional[float] = None


@dataclass
class ChatMessage:
    role: Role
    content: str


@dataclass
class InferenceRequest:
    """一次完整的推理请求。

    messages 顺序固定：系统提示词在前，然后是裁剪后的历史，最后是本轮用户输入。
    timeout 为单次尝试的超时（秒），None 表示使用配置中的默认值。
    """

    messages: List[ChatMessage]
    temperature: float = 0.7
    max_tokens: int = 1000
    model: Optional[str] = None
    top_p: Optional[float] = None
    timeout: Optional[float] = None


@dataclass
class InferenceUsage:
    """Sidecar 返回的 token 统计与本次调用耗时。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0


@dataclass
class InferenceResult:
    """一次推理调用的最终结果。

    - outcome: success / empty_response 视为成功；其余为失败。
    - text: 回复文本；空回复时为兜底提示。
    - attempts: 实际发起的尝试次数。
    - error: 失败时携带的业务异常（InvalidRequestError / SidecarUnavailableError）。
    - raw: 原始响应 JSON，用于调试。
    """

    outcome: Outcome
    text: str = ""
    model: Optional[str] = None
    usage: Optional[InferenceUsage] = None
    attempts: int = 0
    error: Optional[BusinessError] = None
    raw: Optional[dict] = None

    @property
    def ok(self) -> bool:
        return self.outcome in ("success", "empty_response")


@dataclass
class SidecarHealth:
    """健康检查结果；healthy 为 True 时 models 为可用模型名列表。"""

    healthy: bool
    models: List[str] = field(default_factory=list)
    latency_ms: int = 0
    error: Optional[str] = None
