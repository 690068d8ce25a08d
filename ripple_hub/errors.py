"""管线内部异常：在边缘抛出，在对应的恢复点捕获"""


class RippleHubError(Exception):
    pass


class SourceError(RippleHubError):
    """数据源不可用、限流或返回格式错误"""


class ClassificationError(RippleHubError):
    """AI 分类失败：网络、超时、格式不合法或置信度不足"""


class ChannelError(RippleHubError):
    """推送渠道发送失败"""


class AnalysisError(RippleHubError):
    """影响分析服务触发失败"""
