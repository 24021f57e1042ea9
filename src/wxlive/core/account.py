"""
微信账号 (运行中的实例) 与账号检测接口
"""

from dataclasses import dataclass
from typing import List

# 配置文件提供的后备密钥存放在 ID 0, 永不过期
GLOBAL_ACCOUNT_ID = 0


@dataclass
class Account:
    pid: int
    name: str
    data_dir: str
    version: str = ''
    platform: str = ''

    @property
    def is_running(self) -> bool:
        return self.pid > 0


class AccountDetector:
    """
    账号检测接口

    由平台相关的实现提供 "当前有哪些账号在运行、数据目录在哪里"
    """

    def get_running_instances(self) -> List[Account]:
        raise NotImplementedError


class StaticAccountDetector(AccountDetector):
    """返回固定账号列表, 用于没有平台检测的环境"""

    def __init__(self, accounts=None):
        self.accounts = list(accounts or [])

    def get_running_instances(self) -> List[Account]:
        return list(self.accounts)
