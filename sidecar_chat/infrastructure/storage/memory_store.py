import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from sidecar_chat.config.settings import settings
from sidecar_chat.domain.conversation import Conversation, ConversationStore
from sidecar_chat.domain.exceptions import InvalidRequestError, NotFoundError
from sidecar_chat.domain.models import Message, format_ts, utcnow
from sidecar_chat.infrastructure.logging.logger import log_event


@dataclass
class _Entry:
    conversation: Conversation
    # 保护消息列表，只在追加/拷贝时短暂持有
    lock: threading.Lock = field(default_factory=threading.Lock)
    # 串行化同一会话的一次完整收发
    exchange_lock: threading.RLock = field(default_factory=threading.RLock)


class InMemoryConversationStore(ConversationStore):
    """进程内会话存储。

    - _lock 只保护会话字典本身，持有时间很短。
    - 每个会话另有自己的锁，同一会话的追加操作互斥，不同会话互不阻塞。
    - conversation_lock() 用于串行化同一会话的整轮收发，期间读取不受影响。
    - 对外返回的 Conversation 都是快照，外部无法修改内部状态。
    """

    def __init__(
        self,
        max_messages: Optional[int] = None,
        retention: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._max_messages = max_messages or settings.max_conversation_length
        self._retention = retention or timedelta(seconds=settings.conversation_ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @property
    def max_messages(self) -> int:
        return self._max_messages

    @property
    def retention(self) -> timedelta:
        return self._retention

    def create_conversation(
        self,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        conv = Conversation.new(title=title, metadata=metadata, conversation_id=conversation_id, now=self._clock())
        with self._lock:
            if conv.id in self._entries:
                raise InvalidRequestError(f"Conversation already exists: {conv.id}", code="CONVERSATION_EXISTS")
            self._entries[conv.id] = _Entry(conv)
        return conv.snapshot()

    def get_conversation(self, conversation_id: str) -> Conversation:
        entry = self._entry(conversation_id)
        with entry.lock:
            return entry.conversation.snapshot()

    def list_conversations(self, limit: int = 20) -> List[Conversation]:
        with self._lock:
            entries = list(self._entries.values())
        entries.sort(key=lambda e: e.conversation.last_activity, reverse=True)
        result = []
        for entry in entries[: max(0, limit)]:
            with entry.lock:
                result.append(entry.conversation.snapshot())
        return result

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            if self._entries.pop(conversation_id, None) is None:
                raise NotFoundError(f"Conversation not found: {conversation_id}")

    def append_message(self, conversation_id: str, message: Message) -> int:
        """追加一条消息，超过上限时丢弃最旧的消息，返回追加后的长度。"""
        entry = self._entry(conversation_id)
        with entry.lock:
            messages = entry.conversation.messages
            messages.append(message)
            if len(messages) > self._max_messages:
                del messages[: len(messages) - self._max_messages]
            entry.conversation.last_activity = self._clock()
            return len(messages)

    def touch(self, conversation_id: str) -> None:
        entry = self._entry(conversation_id)
        with entry.lock:
            entry.conversation.last_activity = self._clock()

    @contextmanager
    def conversation_lock(self, conversation_id: str) -> Iterator[Conversation]:
        """持有期间同一会话的其他收发会排队等待，返回进入时的快照。"""
        entry = self._entry(conversation_id)
        with entry.exchange_lock:
            with entry.lock:
                snap = entry.conversation.snapshot()
            yield snap

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - self._retention
        with self._lock:
            candidates = [(cid, e.conversation.last_activity) for cid, e in self._entries.items()]
        expired = [cid for cid, last in candidates if last < cutoff]
        removed = 0
        for cid in expired:
            with self._lock:
                entry = self._entries.get(cid)
                # 快照之后可能又有新消息
                if entry is None or entry.conversation.last_activity >= cutoff:
                    continue
                del self._entries[cid]
                removed += 1
        if removed:
            log_event(logging.INFO, "Cleaned up old conversations", {}, removed=removed)
        return removed

    def statistics(self) -> Dict[str, Any]:
        with self._lock:
            convs = [e.conversation for e in self._entries.values()]
        total_messages = sum(len(c.messages) for c in convs)
        average = total_messages / len(convs) if convs else 0.0
        return {
            "total_conversations": len(convs),
            "total_messages": total_messages,
            "average_conversation_length": round(average, 2),
            "oldest_conversation": format_ts(min(c.created_at for c in convs)) if convs else None,
            "newest_conversation": format_ts(max(c.last_activity for c in convs)) if convs else None,
        }

    def export_conversations(self, conversation_id: Optional[str] = None) -> Any:
        if conversation_id is not None:
            try:
                return self.get_conversation(conversation_id).to_dict()
            except NotFoundError:
                return None
        with self._lock:
            ids = list(self._entries)
        exported: Dict[str, Any] = {}
        for cid in ids:
            try:
                exported[cid] = self.get_conversation(cid).to_dict()
            except NotFoundError:
                continue
        return exported

    def import_conversations(self, data: Dict[str, Any]) -> int:
        """导入 export_conversations 的输出。

        - 没有 messages 列表的条目不是会话，直接跳过。
        - 其余条目先全部解析，任何一条不合法都整体拒绝，不写入任何数据。
        - 已存在的会话在原条目上替换内容，进行中的收发继续写入同一条目。

        Raises:
            InvalidRequestError: 数据不是对象，或某个会话/消息结构不合法。
        """
        if not isinstance(data, dict):
            raise InvalidRequestError("Import data must be an object keyed by conversation id")
        parsed: List[Conversation] = []
        for cid, raw in data.items():
            if not isinstance(raw, dict) or not isinstance(raw.get("messages"), list):
                continue
            try:
                conv = Conversation.from_dict({**raw, "id": raw.get("id") or cid})
            except (KeyError, TypeError, ValueError) as e:
                raise InvalidRequestError(
                    f"Invalid conversation {cid!r}: {e}",
                    code="INVALID_IMPORT",
                    conversation_id=cid,
                ) from e
            if len(conv.messages) > self._max_messages:
                conv.messages = conv.messages[-self._max_messages :]
            parsed.append(conv)

        with self._lock:
            for conv in parsed:
                entry = self._entries.get(conv.id)
                if entry is None:
                    self._entries[conv.id] = _Entry(conv)
                    continue
                with entry.lock:
                    entry.conversation = conv
        log_event(logging.INFO, "Imported conversations", {}, imported=len(parsed))
        return len(parsed)

    def _entry(self, conversation_id: str) -> _Entry:
        with self._lock:
            entry = self._entries.get(conversation_id)
        if entry is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return entry
