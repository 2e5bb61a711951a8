"""重试退避策略。

Sidecar 首次调用时常常还在加载模型，因此失败后按指数退避等待，
并用上限约束总的重试耗时。
"""

import random
from dataclasses import dataclass
from typing import Callable, Protocol


class Sleeper(Protocol):
    def __call__(self, seconds: float) -> None: ...


@dataclass(frozen=True)
class BackoffPolicy:
    """min(base * factor^(attempt-1), max)，可选按比例加入抖动。"""

    base_seconds: float = 1.0
    factor: float = 2.0
    max_seconds: float = 5.0
    jitter: float = 0.0

    def delay_for_attempt(self, attempt: int, rand: Callable[[float, float], float] = random.uniform) -> float:
        delay = min(self.base_seconds * (self.factor ** max(0, attempt - 1)), self.max_seconds)
        if self.jitter > 0 and delay > 0:
            delay = min(delay + rand(0.0, delay * self.jitter), self.max_seconds)
        return delay

    @classmethod
    def from_settings(cls, cfg) -> "BackoffPolicy":
        return cls(
            base_seconds=cfg.backoff_base_seconds,
            max_seconds=cfg.backoff_max_seconds,
            jitter=getattr(cfg, "backoff_jitter", 0.0),
        )
