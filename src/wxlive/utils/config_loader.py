#!/usr/bin/env python3
"""
配置加载模块

从 YAML 文件读取配置
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml

from ..core.errors import ConfigError

# macOS 微信 V4 的默认数据目录
DEFAULT_DATA_DIR = str(
    Path.home() / "Library/Containers/com.tencent.xinWeChat/Data/Documents/xwechat_files"
)
DEFAULT_WORK_DIR = "./data/decrypted"


class Config:
    """
    配置管理类

    用法:
        config = Config('config.yaml')
        log_level = config.get('logging.level', 'INFO')
        work_dir = config.get('wechat.work_dir')
    """

    def __init__(self, config_file: str = 'config.yaml'):
        """
        初始化配置

        Args:
            config_file: 配置文件路径

        Raises:
            FileNotFoundError: 配置文件不存在
            yaml.YAMLError: YAML 格式错误
        """
        self.config_file = Path(config_file)

        if not self.config_file.exists():
            raise FileNotFoundError(f"配置文件不存在: {config_file}")

        with open(self.config_file, 'r', encoding='utf-8') as f:
            self.data = yaml.safe_load(f)

        if self.data is None:
            self.data = {}

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        获取配置项 (支持点号路径)

        Args:
            key_path: 配置路径，用点号分隔 (例如: 'wechat.work_dir')
            default: 默认值 (如果配置项不存在)

        Returns:
            配置值

        Example:
            >>> config.get('wechat.work_dir')
            './data/decrypted'
            >>> config.get('non.existent.key', 'default_value')
            'default_value'
        """
        keys = key_path.split('.')
        value = self.data

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_path(self, key_path: str, default: Any = None) -> Optional[Path]:
        """
        获取配置项并转换为 Path 对象 (支持 ~)
        """
        value = self.get(key_path, default)
        if value is None:
            return None
        return Path(value).expanduser()

    def ensure_directories(self):
        """
        确保工作目录和日志目录存在
        """
        work_dir = self.get_path('wechat.work_dir', DEFAULT_WORK_DIR)
        work_dir.mkdir(parents=True, exist_ok=True)

        log_file = self.get_path('logging.file')
        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"Config(file='{self.config_file}')"

    def __str__(self) -> str:
        # 不输出密钥
        data = dict(self.data)
        if isinstance(data.get('keys'), dict):
            data['keys'] = {k: '***' for k, v in data['keys'].items() if v}
        return yaml.dump(data, allow_unicode=True, default_flow_style=False)


def _number(config: Config, key_path: str, default, kind=int, minimum=0):
    value = config.get(key_path, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key_path} 必须是数字, 实际: {value!r}")

    try:
        value = kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key_path} 必须是数字, 实际: {value!r}")

    if value < minimum:
        raise ConfigError(f"{key_path} 不能小于 {minimum}, 实际: {value}")
    return value


def _optional_str(config: Config, key_path: str) -> Optional[str]:
    value = config.get(key_path)
    if value is None:
        return None
    return str(value)


@dataclass
class ServiceConfig:
    """
    服务配置

    data_key / image_key 是用户提供的十六进制密钥, 在服务启动时校验
    """
    data_dir: str = DEFAULT_DATA_DIR
    work_dir: str = DEFAULT_WORK_DIR
    data_key: Optional[str] = field(default=None, repr=False)
    image_key: Optional[str] = field(default=None, repr=False)
    auto_decrypt: bool = True
    debounce_ms: int = 1000
    max_wait_ms: int = 10000
    watch_poll_interval: float = 0.5
    recursive: bool = True
    file_patterns: List[str] = field(default_factory=list)
    account_poll_interval: float = 10.0
    queue_size: int = 100
    max_workers: int = 4
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    def compiled_patterns(self) -> List[re.Pattern]:
        """
        Raises:
            ConfigError: 正则表达式不合法
        """
        patterns = []
        for raw in self.file_patterns:
            try:
                patterns.append(re.compile(raw))
            except re.error as e:
                raise ConfigError(f"monitor.file_patterns 中的正则不合法 {raw!r}: {e}")
        return patterns

    @classmethod
    def from_config(cls, config: Config) -> "ServiceConfig":
        """
        Raises:
            ConfigError: 配置值不合法
        """
        patterns = config.get('monitor.file_patterns') or []
        if not isinstance(patterns, list):
            raise ConfigError("monitor.file_patterns 必须是列表")

        return cls(
            data_dir=str(config.get_path('wechat.data_dir', DEFAULT_DATA_DIR)),
            work_dir=str(config.get_path('wechat.work_dir', DEFAULT_WORK_DIR)),
            data_key=_optional_str(config, 'keys.data_key'),
            image_key=_optional_str(config, 'keys.image_key'),
            auto_decrypt=bool(config.get('wechat.auto_decrypt', True)),
            debounce_ms=_number(config, 'monitor.debounce_ms', 1000),
            max_wait_ms=_number(config, 'monitor.max_wait_ms', 10000),
            watch_poll_interval=_number(config, 'monitor.poll_interval', 0.5, float, 0.01),
            recursive=bool(config.get('monitor.recursive', True)),
            file_patterns=[str(p) for p in patterns],
            account_poll_interval=_number(config, 'service.poll_interval', 10.0, float, 0.01),
            queue_size=_number(config, 'service.queue_size', 100, int, 1),
            max_workers=_number(config, 'service.max_workers', 4, int, 1),
            log_level=str(config.get('logging.level', 'INFO')).upper(),
            log_file=_optional_str(config, 'logging.file'),
        )

    @classmethod
    def from_file(cls, config_file: str = 'config.yaml') -> "ServiceConfig":
        return cls.from_config(Config(config_file))
