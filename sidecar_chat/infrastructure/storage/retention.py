"""后台会话清理线程。"""

import logging
import threading
from typing import Optional

from sidecar_chat.domain.conversation import ConversationStore
from sidecar_chat.infrastructure.logging.logger import log_event


class RetentionSweeper:
    """按固定周期调用 store.sweep_expired()，清理长时间不活跃的会话。"""

    def __init__(self, store: ConversationStore, interval_seconds: float):
        self._store = store
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._interval <= 0 or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> int:
        try:
            return self._store.sweep_expired()
        except Exception as e:  # noqa: BLE001
            log_event(logging.ERROR, "Retention sweep failed", {}, error=str(e))
            return 0

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()
