#!/usr/bin/env python3
"""
日志配置模块

所有模块通过 get_logger(__name__) 获取 logger, 挂在 'wxlive' 之下,
由入口调用一次 setup_logger('wxlive', ...) 统一配置
"""

import logging
import re
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER = 'wxlive'

LOG_FORMAT = '[%(asctime)s] %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# 64 个十六进制字符的数据库密钥 (32 位的十六进制串多半是图片文件名的 md5, 不处理)
_KEY_PATTERN = re.compile(r'(?<![0-9a-fA-F])(?:0[xX])?[0-9a-fA-F]{64}(?![0-9a-fA-F])')

# 预定义的 logger 配置
LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}


def resolve_level(level: Union[int, str]) -> int:
    """
    把 'INFO' 这样的名字转换成 logging 级别

    Raises:
        ValueError: 未知的级别名
    """
    if isinstance(level, int):
        return level

    try:
        return LOG_LEVELS[str(level).upper()]
    except KeyError:
        raise ValueError(f"未知的日志级别: {level}")


class KeyMaskFilter(logging.Filter):
    """把日志中看起来像密钥的十六进制串替换成 ***"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _KEY_PATTERN.sub('***', message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logger(
        name: str = ROOT_LOGGER,
        log_file: Optional[str] = None,
        level: Union[int, str] = logging.INFO,
        console: bool = True
) -> logging.Logger:
    """
    创建并配置 logger

    Args:
        name: logger 名称
        log_file: 日志文件路径 (可选)
        level: 日志级别 (默认 INFO, 也可以是 'DEBUG' 等名字)
        console: 是否输出到控制台 (默认 True)

    Returns:
        配置好的 logger

    Example:
        logger = setup_logger('wxlive', 'logs/wxlive.log')
        logger.info('Hello World')
    """
    level = resolve_level(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # 重复调用只更新级别
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    handlers = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    for handler in handlers:
        _configure_handler(handler, level)
        logger.addHandler(handler)

    return logger


def _configure_handler(handler: logging.Handler, level: int):
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(KeyMaskFilter())



def get_logger(name: str) -> logging.Logger:
    """
    获取 logger

    Args:
        name: logger 名称 (一般传 __name__)

    Returns:
        logger 实例
    """
    return logging.getLogger(name)
