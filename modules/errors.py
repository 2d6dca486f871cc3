"""广告投放链路的异常定义。

所有异常继承自 DeliveryError，HTTP 层按类型映射状态码，
响应体中不包含路径、密钥或原始 ID。
"""

from __future__ import annotations

from typing import Optional


class DeliveryError(Exception):
    """投放链路异常基类"""


class ConfigurationError(DeliveryError):
    """配置缺失或非法（例如生产环境未配置密钥）"""


class DecodeError(DeliveryError):
    """嵌入 ID 解码失败（格式错误或被篡改）"""


class AccessDenied(DeliveryError):
    """域名访问被拒绝

    Args:
        reason: 拒绝原因，仅用于运维日志
        record_id: 对应的域名策略记录 ID
    """

    def __init__(self, reason: str = "Domain is blocked", record_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.record_id = record_id


class NotFoundError(DeliveryError):
    """资源或指定清晰度不存在"""


class EncodeFailure(DeliveryError):
    """单个清晰度档位转码失败，不影响其它档位"""

    def __init__(self, quality: int, reason: str):
        super().__init__(f"{quality}p: {reason}")
        self.quality = quality
        self.reason = reason


class EncoderUnavailable(DeliveryError):
    """编码器进程无法启动（例如找不到 ffmpeg），对当前任务是致命错误"""


class StoreUnavailable(DeliveryError):
    """元数据存储不可用"""


__all__ = [
    "DeliveryError",
    "ConfigurationError",
    "DecodeError",
    "AccessDenied",
    "NotFoundError",
    "EncodeFailure",
    "EncoderUnavailable",
    "StoreUnavailable",
]
