"""HTTP 请求/响应模型。

对外 JSON 统一使用 camelCase 字段名，内部仍使用 snake_case；
响应模型通过 from_attributes 直接从领域 dataclass 构造。
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class SamplingOptionsBody(ApiModel):
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    model: Optional[str] = None
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)


class CreateConversationBody(ApiModel):
    title: Optional[str] = Field(default=None, max_length=200)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    conversation_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class SendMessageBody(ApiModel):
    message: str = Field(..., max_length=4000)
    sampling_options: Optional[SamplingOptionsBody] = None


class ImportBody(ApiModel):
    conversations: Dict[str, Any]


class MessageOut(ApiModel):
    id: str
    role: str
    content: str
    timestamp: datetime
    model: Optional[str] = None
    tokens: Optional[int] = None
    error: bool = False
    error_code: Optional[str] = None


class ConversationOut(ApiModel):
    id: str
    title: str
    created_at: datetime
    last_activity: datetime
    messages: List[MessageOut]
    metadata: Dict[str, Any]


class ConversationSummary(ApiModel):
    id: str
    title: str
    created_at: datetime
    last_activity: datetime
    message_count: int
    metadata: Dict[str, Any]


class CreateConversationOut(ApiModel):
    conversation_id: str
    conversation: ConversationOut


class ConversationListOut(ApiModel):
    conversations: List[ConversationSummary]
    total: int


class SendMessageOut(ApiModel):
    conversation_id: str
    user_message: MessageOut
    assistant_message: MessageOut
    message_count: int
    outcome: str
    error: bool = False
    error_code: Optional[str] = None


class DeleteOut(ApiModel):
    deleted: bool
    conversation_id: str


class SidecarHealthOut(ApiModel):
    status: str
    sidecar_status: str
    available_models: List[str]
    latency_ms: int
    error: Optional[str] = None
