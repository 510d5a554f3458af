# File: src/cai_core/exceptions.py
"""
CAI-Core - 异常体系 (Exceptions)

定义库内统一使用的异常类，以便上层应用能够区分
"整条通道失败" 与 "单个请求失败"，并据此决定是否重试。
"""


class CAIError(Exception):
    """CAI-Core 所有内部异常的基类。

    上层应用可以通过捕获此异常来处理所有由 cai-core 抛出的已知错误。
    """

    pass


class ConfigError(CAIError):
    """配置加载或校验失败。

    触发场景:
    1. 字段类型错误 (如超时不是数字)。
    2. URL 协议头不合法。
    3. 找不到配置文件或环境变量。
    """

    pass


class StateError(CAIError):
    """会话状态错误。

    触发场景:
    1. 未认证时调用需要认证的接口。
    2. 已认证时重复调用 authenticate。
    """

    pass


class AuthError(CAIError):
    """认证被拒绝 (会话令牌无效或已过期)。"""

    pass


class APIError(CAIError):
    """REST 接口返回了非 2xx 状态码。"""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(CAIError):
    """网络层面的错误 (I/O 级别)。

    触发场景:
    1. HTTP 请求超时或 DNS 解析失败。
    2. WebSocket 传输层异常。

    注意: 此类错误通常是暂时的，上层逻辑可以自行决定是否重试。
    """

    pass


class ChannelConnectionError(NetworkError):
    """通道打开失败 (握手、预取元数据或传输层连接失败)。

    对于本次打开尝试是致命的，核心库内部不会无限重试。
    """

    pass


class NotConnectedError(NetworkError):
    """通道未处于 OPEN 状态时尝试发送数据。"""

    pass


class ProtocolError(CAIError):
    """协议交互错误 (逻辑级别)。"""

    pass


class MalformedFrameError(ProtocolError):
    """入站帧无法解析。

    这类帧无法归属到任何请求，因此只记录日志并丢弃，不会抛给调用方。
    """

    pass


class CorrelationError(CAIError):
    """单个挂起请求失败的基类，只影响该请求本身。"""

    def __init__(self, message: str, request_id: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class CorrelationTimeoutError(CorrelationError):
    """请求在配置的超时时间内没有收到匹配的回复。"""

    pass


class CorrelationLostError(CorrelationError):
    """请求挂起期间所属通道断开。

    同一通道上的所有挂起请求会同时收到此异常。
    """

    pass


class CommandRejectedError(CorrelationError):
    """服务器以错误帧回复了该请求。"""

    def __init__(
        self,
        message: str,
        request_id: str | None = None,
        frame: dict | None = None,
    ) -> None:
        super().__init__(message, request_id)
        self.frame = frame or {}
