from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from .models import Message, format_ts, parse_ts, utcnow

DEFAULT_TITLE = "New Chat Session"


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    last_activity: datetime
    messages: List[Message] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Conversation":
        ts = now or utcnow()
        return cls(
            id=conversation_id or str(uuid4()),
            title=title or DEFAULT_TITLE,
            created_at=ts,
            last_activity=ts,
            metadata=dict(metadata or {}),
        )

    def snapshot(self) -> "Conversation":
        """返回一份浅拷贝；Message 本身不可变，拷贝列表即可。"""
        return Conversation(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            last_activity=self.last_activity,
            messages=list(self.messages),
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": format_ts(self.created_at),
            "last_activity": format_ts(self.last_activity),
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        """从 to_dict 的输出还原会话；任何字段不合法都抛 ValueError。"""
        if not isinstance(data.get("id"), str) or not data["id"]:
            raise ValueError("conversation id must be a non-empty string")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        messages = data.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("messages must be a list")
        now = utcnow()
        return cls(
            id=data["id"],
            title=str(data.get("title") or DEFAULT_TITLE),
            created_at=parse_ts(data["created_at"]) if data.get("created_at") else now,
            last_activity=parse_ts(data["last_activity"]) if data.get("last_activity") else now,
            messages=[Message.from_dict(m) for m in messages],
            metadata=dict(metadata),
        )


class ConversationStore(Protocol):
    def create_conversation(
        self,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    def list_conversations(self, limit: int = 20) -> List[Conversation]:
        ...

    def count(self) -> int:
        ...

    def delete_conversation(self, conversation_id: str) -> None:
        ...

    def append_message(self, conversation_id: str, message: Message) -> int:
        ...

    def touch(self, conversation_id: str) -> None:
        ...

    def conversation_lock(self, conversation_id: str) -> AbstractContextManager[Conversation]:
        ...

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        ...

    def statistics(self) -> Dict[str, Any]:
        ...

    def export_conversations(self, conversation_id: Optional[str] = None) -> Any:
        ...

    def import_conversations(self, data: Dict[str, Any]) -> int:
        ...
