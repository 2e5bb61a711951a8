"""推理客户端抽象接口。

上层 ChatService 不直接依赖 httpx，而是依赖此协议：

- SidecarClient 是默认实现，负责重试、退避与响应解析。
- 测试中可以用任意实现了同名方法的假对象替换。
"""

from typing import Protocol

from sidecar_chat.domain.models import InferenceRequest, InferenceResult, SidecarHealth


class InferenceClient(Protocol):
    """推理客户端协议。

    实现者需要提供：
    - name: 客户端名称，用于日志。
    - health_check(): 轻量探测，返回 SidecarHealth，不因 Sidecar 不健康而抛异常。
    - complete(req): 带重试的补全调用，传输层错误转换为 InferenceResult。
    """

    name: str

    def health_check(self) -> SidecarHealth:
        ...

    def complete(self, req: InferenceRequest) -> InferenceResult:
        ...
