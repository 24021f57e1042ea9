"""
密钥对与密钥缓存

密钥只能由用户提供 (配置文件 / 接口), 不做任何内存提取
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from .crypto import KEY_SIZE, IMAGE_KEY_SIZE
from .errors import ConfigError

DATA_KEY_HEX_LEN = KEY_SIZE * 2  # 64
IMAGE_KEY_HEX_LEN = IMAGE_KEY_SIZE * 2  # 32


def normalize_hex_key(raw: str, expected_len: int, label: str) -> bytes:
    """
    规范化十六进制密钥

    去掉首尾空白和可选的 0x 前缀, 不区分大小写

    Args:
        raw: 原始字符串
        expected_len: 期望的十六进制字符数
        label: 字段名 (用于错误信息)

    Raises:
        ConfigError: 长度不对或包含非十六进制字符
    """
    if not isinstance(raw, str):
        raise ConfigError(f"{label} 必须是十六进制字符串")

    value = raw.strip().lower()
    if value.startswith('0x'):
        value = value[2:]

    if len(value) != expected_len:
        raise ConfigError(
            f"{label} 必须是 {expected_len} 个十六进制字符, 实际: {len(value)}"
        )

    if any(ch not in '0123456789abcdef' for ch in value):
        raise ConfigError(f"{label} 包含非十六进制字符")

    return bytes.fromhex(value)


@dataclass(frozen=True)
class KeyPair:
    """
    数据库密钥 (32 bytes) + 图片密钥 (16 bytes), 总是成对出现

    repr 中不显示密钥内容
    """
    data_key: bytes = field(repr=False)
    image_key: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.data_key) != KEY_SIZE:
            raise ConfigError(f"data_key 长度必须是 {KEY_SIZE} bytes, 实际: {len(self.data_key)}")
        if len(self.image_key) != IMAGE_KEY_SIZE:
            raise ConfigError(f"image_key 长度必须是 {IMAGE_KEY_SIZE} bytes, 实际: {len(self.image_key)}")

    @classmethod
    def from_hex(cls, data_key_hex: str, image_key_hex: str) -> "KeyPair":
        data_key = normalize_hex_key(data_key_hex, DATA_KEY_HEX_LEN, 'data_key')
        image_key = normalize_hex_key(image_key_hex, IMAGE_KEY_HEX_LEN, 'image_key')
        return cls(data_key, image_key)


def parse_key_pair(data_key_hex: Optional[str], image_key_hex: Optional[str]) -> Optional[KeyPair]:
    """
    解析一对可选的密钥

    Returns:
        两个都为空时返回 None

    Raises:
        ConfigError: 只提供了其中一个, 或格式不正确
    """
    if data_key_hex is None and image_key_hex is None:
        return None

    if data_key_hex is None or image_key_hex is None:
        raise ConfigError("data_key 和 image_key 必须同时提供")

    return KeyPair.from_hex(data_key_hex, image_key_hex)


class KeyCache:
    """
    账号 ID → 密钥对

    每个 ID 最多一个密钥对, 写入时整体覆盖. 内部加锁, 其它线程可以安全读取
    """

    def __init__(self):
        self._keys: Dict[int, KeyPair] = {}
        self._lock = threading.Lock()

    def get(self, pid: int) -> Optional[KeyPair]:
        with self._lock:
            return self._keys.get(pid)

    def set(self, pid: int, key_pair: KeyPair):
        if not isinstance(key_pair, KeyPair):
            raise ConfigError("只能存储完整的 KeyPair")
        with self._lock:
            self._keys[pid] = key_pair

    def remove(self, pid: int) -> Optional[KeyPair]:
        with self._lock:
            return self._keys.pop(pid, None)

    def ids(self) -> list:
        with self._lock:
            return sorted(self._keys)

    def clear(self):
        with self._lock:
            self._keys.clear()

    def __contains__(self, pid) -> bool:
        with self._lock:
            return pid in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def __repr__(self) -> str:
        return f"KeyCache(ids={self.ids()})"
