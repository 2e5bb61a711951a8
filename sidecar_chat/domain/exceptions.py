"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层做统一捕获，并映射为 HTTP 状态码。

注意：Sidecar 的传输层错误不会以异常形式越过 SidecarClient，
而是被转换为带 error 字段的 InferenceResult（见 domain.models）。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "NOT_FOUND"）。
        message: 可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 attempts、conversation_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class InvalidRequestError(BusinessError):
    """调用方输入有误（空消息、Sidecar 返回 4xx 等），不重试。"""

    def __init__(self, message: str, code: str = "INVALID_REQUEST", **extra):
        super().__init__(code=code, message=message, http_status=400, **extra)


class NotFoundError(BusinessError):
    """引用的会话不存在。"""

    def __init__(self, message: str, code: str = "NOT_FOUND", **extra):
        super().__init__(code=code, message=message, http_status=404, **extra)


class SidecarUnavailableError(BusinessError):
    """重试耗尽后 Sidecar 仍不可用。"""

    def __init__(self, message: str, attempts: int, last_error: str, **extra):
        super().__init__(
            code="SIDECAR_UNAVAILABLE",
            message=message,
            http_status=503,
            attempts=attempts,
            last_error=last_error,
            **extra,
        )

    @property
    def attempts(self) -> int:
        return self.extra["attempts"]

    @property
    def last_error(self) -> str:
        return self.extra["last_error"]


class ConfigurationError(BusinessError):
    """配置错误，例如 Sidecar 基础 URL 格式不合法。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="CONFIG_ERROR", message=message, http_status=500, **extra)
