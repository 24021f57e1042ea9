"""
异常定义

所有异常都继承 WxLiveError, 消息均为可读字符串
"""

from typing import Optional


class WxLiveError(Exception):
    pass


class ConfigError(WxLiveError):
    """配置错误 (密钥格式不正确、密钥不成对等), 在输入边界直接拒绝"""

    def __init__(self, message):
        super().__init__(message)


class KeyResolutionError(WxLiveError):
    def __init__(self, message):
        super().__init__(message)


class DecryptError(WxLiveError):
    """数据库解密失败, page_number 为出错的页码 (从 1 开始)"""

    def __init__(self, message, page_number: Optional[int] = None):
        self.page_number = page_number
        if page_number is not None:
            message = f"page {page_number}: {message}"
        super().__init__(message)


class PageTooSmall(DecryptError):
    def __init__(self, page_number, length, minimum):
        self.length = length
        self.minimum = minimum
        message = f"页太小: {length} bytes (至少需要 {minimum} bytes)"
        super().__init__(message, page_number)


class HmacMismatch(DecryptError):
    def __init__(self, page_number=1):
        super().__init__("HMAC mismatch, 密钥不正确或文件已损坏", page_number)


class MediaDecryptError(WxLiveError):
    def __init__(self, message):
        super().__init__(message)


class UnknownFormat(MediaDecryptError):
    def __init__(self, message="解密结果不是已知的图片格式 (密钥错误或文件损坏)"):
        super().__init__(message)


class FileMonitorError(WxLiveError):
    def __init__(self, message):
        message = f"文件监控错误: {message}"
        super().__init__(message)


class ServiceStopped(WxLiveError):
    """服务已停止, 不再接受新的解密任务"""

    def __init__(self, message="服务已停止, 不再接受新任务"):
        super().__init__(message)
