"""推理客户端集成层。

该包下的模块负责：
- 定义推理客户端抽象接口 (base)。
- 重试退避策略 (retry)。
- Sidecar 的具体实现 (sidecar_client)。
"""

from sidecar_chat.config.settings import settings
from sidecar_chat.providers.base import InferenceClient
from sidecar_chat.providers.sidecar_client import SidecarClient


def create_inference_client(cfg=None) -> InferenceClient:
    """根据配置创建默认的推理客户端。"""

    return SidecarClient(cfg or settings)
