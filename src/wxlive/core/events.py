"""
服务事件

这是核心模块对外 (CLI / API / TUI) 的唯一输出, 事件中不包含任何密钥
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .account import Account


@dataclass(frozen=True)
class InstanceDetected:
    account: Account


@dataclass(frozen=True)
class InstanceTerminated:
    pid: int


@dataclass(frozen=True)
class DatabaseFile:
    path: Path


@dataclass(frozen=True)
class DecryptionComplete:
    input_path: Path
    output_path: Path
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class KeyResolutionComplete:
    pid: int
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str


# DatabaseFile 只是通知, 队列满时可以丢弃; 其它事件必须送达
DROPPABLE_EVENTS = (DatabaseFile,)
