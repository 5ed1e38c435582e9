"""
异常定义 - 调用 AssemblyAI 过程中可能出现的各类失败。

所有异常都继承自 AssemblyError，并通过 kind 区分失败类型，
接口层据此返回 {"message": ..., "kind": ...}，调用方可以区分
超时、上游报错、网络故障等不同情况。
"""

from typing import Optional


class AssemblyError(Exception):
    """调用上游服务失败的基类。"""

    kind = "upstream"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(AssemblyError):
    """服务配置缺失（例如未设置 API Key）。"""

    kind = "configuration"


class UpstreamError(AssemblyError):
    """上游服务返回错误（非 2xx 或错误状态），message 为服务原文。"""

    kind = "upstream"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TranscriptionFailed(UpstreamError):
    """转录任务状态为 error。"""


class TransportError(AssemblyError):
    """网络层故障：连接失败、读取中断等。"""

    kind = "transport"


class UpstreamTimeout(AssemblyError):
    """单次请求超时，或轮询超过最长等待时间。"""

    kind = "timeout"


class RequestCancelled(AssemblyError):
    """请求在完成前被取消。"""

    kind = "cancelled"
