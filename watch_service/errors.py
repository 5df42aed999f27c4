"""行情监控服务异常定义"""


class WatchServiceError(Exception):
    """服务内部异常基类"""


class UpstreamUnavailable(WatchServiceError):
    """上游数据源不可用（网络错误、返回格式无法解析）"""

    def __init__(self, source: str, code: str, reason: str = ""):
        self.source = source
        self.code = code
        self.reason = reason
        super().__init__(f"{source} 无法提供 {code} 的数据: {reason}")


class InsufficientHistory(WatchServiceError):
    """历史 K 线数量不足，无法计算技术指标"""

    def __init__(self, code: str, available: int, required: int):
        self.code = code
        self.available = available
        self.required = required
        super().__init__(f"{code} 历史 K 线不足: {available}/{required}")


class IndicatorError(WatchServiceError):
    """单个技术指标计算失败"""


class PersistenceError(WatchServiceError):
    """行情记录写入失败"""


class NotificationError(WatchServiceError):
    """桌面提醒发送失败"""


class ConfigLoadError(WatchServiceError):
    """配置无法读取且默认配置也无法写入"""
