"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或调用方做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def with_prefix(self, prefix: str) -> "BusinessError":
        """返回同类型、同错误码的新异常，消息前加上失败步骤的说明。"""

        return type(self)(
            code=self.code,
            message=f"{prefix}: {self.message}",
            http_status=self.http_status,
            **self.extra,
        )


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，本项目不做重试，直接交给调用方。"""


class StreamError(BusinessError):
    """流式响应读取过程中出现的错误。"""


class ValidationError(BusinessError):
    """参数、配置或实体校验失败。"""


class ChatEndedError(ValidationError):
    """会话已结束，不允许再追加消息。"""


class ChatNotFoundError(BusinessError):
    """按 ID 查找会话未命中。

    用例层据此决定新建会话，而不是中止请求。
    """

    def __init__(self, code: str = "CHAT_NOT_FOUND", message: str = "chat not found", http_status: int = 404, **extra):
        super().__init__(code, message, http_status, **extra)


class StoreError(BusinessError):
    """存储层读写失败。"""
