"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError。
注意：可恢复的错误（ChainBroken / AttachmentUnavailable）只在模块内部使用，
致命错误在 api 层被转换为 SendResult(status="failure"/"cancelled")，
不会以异常形式越过模块边界。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TRANSPORT_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 node_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ChainBroken(BusinessError):
    """节点图不一致（parent_id 指向不存在的节点或出现环），截断后继续。"""


class AttachmentUnavailable(BusinessError):
    """附件数据缺失，调用方用内联占位文本代替。"""


class RasterizationFailed(BusinessError):
    """手写（ink）节点导出 PNG 失败。"""


class TransportError(BusinessError):
    """传输层错误基类：非 2xx 响应或网络失败。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(TransportError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(TransportError):
    """Provider 限流错误，由上层负责重试/退避策略。"""


class StreamProtocolError(BusinessError):
    """流式响应格式错误，或 Provider 在流中报告错误。"""


class Cancelled(BusinessError):
    """调用方主动取消。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
