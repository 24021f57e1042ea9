"""
工具函数模块
"""

from .logger import setup_logger, get_logger, LOG_LEVELS
from .config_loader import Config, ServiceConfig

__all__ = [
    'setup_logger',
    'get_logger',
    'LOG_LEVELS',
    'Config',
    'ServiceConfig',
]
