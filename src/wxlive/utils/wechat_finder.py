"""
自动查找微信进程和数据目录 (macOS)

只读取进程列表和文件系统, 不读取进程内存
"""
import plistlib
import subprocess
from pathlib import Path
from typing import List, Optional

from ..core.account import Account, AccountDetector
from .logger import get_logger

logger = get_logger(__name__)


class WeChatFinder(AccountDetector):
    """微信进程和目录查找器"""

    # 可能的微信数据目录位置 (按优先级排序)
    BASE_PATHS = [
        # V4.1+ 新位置
        Path.home() / "Library/Containers/com.tencent.xinWeChat/Data/Documents/xwechat_files",
        # V4.0 旧位置
        Path.home() / "Library/Containers/com.tencent.xinWeChat/Data/Library/Application Support/com.tencent.xinWeChat",
    ]

    INFO_PLIST = Path("/Applications/WeChat.app/Contents/Info.plist")

    # 账号目录中的特征子目录
    MARKER_DIRS = ('db_storage', 'msg', 'Message')

    def find_wechat_pids(self) -> List[int]:
        """
        查找微信进程PID

        Returns:
            PID 列表, 微信未运行时为空
        """
        try:
            result = subprocess.run(
                ['pgrep', '-x', 'WeChat'],
                capture_output=True,
                text=True,
                timeout=5
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("查找微信进程出错: %s", e)
            return []

        if result.returncode != 0:
            return []

        pids = []
        for token in result.stdout.split():
            if token.isdigit():
                pids.append(int(token))
        return pids

    def find_wechat_data_dir(self) -> Optional[Path]:
        """
        查找微信账号数据目录

        Returns:
            最近修改的账号目录, 没找到时返回 None
        """
        for base_path in self.BASE_PATHS:
            if not base_path.is_dir():
                continue

            # V4.1+: 目录名格式如 wxid_xxx_b79a
            # V4.0:  目录名格式如 2:c123456789abcdef
            account_dirs = []
            try:
                for item in base_path.iterdir():
                    if not item.is_dir() or item.name.startswith('.'):
                        continue
                    if any((item / marker).exists() for marker in self.MARKER_DIRS):
                        account_dirs.append(item)
            except OSError as e:
                logger.warning("扫描目录出错 %s: %s", base_path, e)
                continue

            if account_dirs:
                return max(account_dirs, key=lambda x: x.stat().st_mtime)

        return None

    def get_wechat_version(self) -> str:
        """
        读取 Info.plist 中的版本号, 读取失败时返回空字符串
        """
        try:
            with open(self.INFO_PLIST, 'rb') as f:
                plist = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException) as e:
            logger.debug("获取微信版本失败: %s", e)
            return ''

        return str(plist.get('CFBundleShortVersionString', ''))

    def get_running_instances(self) -> List[Account]:
        pids = self.find_wechat_pids()
        if not pids:
            return []

        data_dir = self.find_wechat_data_dir()
        if data_dir is None:
            logger.warning("微信正在运行, 但未找到数据目录")
            return []

        version = self.get_wechat_version()
        return [
            Account(pid, data_dir.name, str(data_dir), version, 'macOS')
            for pid in pids
        ]
