"""
微信数据目录监控

微信运行时每秒会多次改写数据库文件, 原始事件先经过防抖合并再交给服务:
- PollingWatcher: 定期扫描目录树, 对比快照产生 创建/修改/删除 事件
- DebouncedEventStream: 合并一段时间内的事件, 只保留最新的一条
- FileMonitor: 把两者和文件名过滤组合在一起
"""

import asyncio
import re
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import FileMonitorError
from ..utils.logger import get_logger

logger = get_logger(__name__)

# 事件源关闭标记
CLOSED = object()


class FileEventKind(Enum):
    CREATED = 'created'
    MODIFIED = 'modified'
    DELETED = 'deleted'


@dataclass(frozen=True)
class FileEvent:
    kind: FileEventKind
    path: Path


@dataclass
class FileMonitorConfig:
    watch_dir: Path
    file_patterns: List[re.Pattern] = field(default_factory=list)
    debounce_ms: int = 1000
    max_wait_ms: int = 10000
    recursive: bool = True
    poll_interval: float = 0.5  # 秒
    queue_size: int = 100


def wechat_db_patterns() -> List[re.Pattern]:
    """微信数据库文件的默认匹配规则"""
    return [
        re.compile(r"Message/msg_\d+\.db$"),
        re.compile(r"db_storage/session/session\.db$"),
        re.compile(r"db_storage/chat/chat_\d+\.db$"),
        re.compile(r"db_storage/message/message_\d+\.db$"),
        re.compile(r"db_storage/contact/contact\.db$"),
    ]


def matches_pattern(path: Path, patterns: List[re.Pattern]) -> bool:
    """没有规则时全部接受"""
    if not patterns:
        return True

    path_str = Path(path).as_posix()
    return any(pattern.search(path_str) for pattern in patterns)


def close_queue(queue: asyncio.Queue):
    """
    放入关闭标记

    队列满时丢掉最旧的一条, 防抖只保留最新事件, 不影响结果
    """
    while True:
        try:
            queue.put_nowait(CLOSED)
            return
        except asyncio.QueueFull:
            queue.get_nowait()


# ==============================================================================
# 原始事件源
# ==============================================================================

Snapshot = Dict[Path, Tuple[int, int]]


class PollingWatcher:
    """
    轮询式目录监控

    每次扫描记录所有文件的 (mtime_ns, size), 和上一次扫描对比得到事件
    """

    def __init__(self, watch_dir, recursive: bool = True):
        self.watch_dir = Path(watch_dir)
        self.recursive = recursive
        self._snapshot: Optional[Snapshot] = None

    def check(self):
        """
        Raises:
            FileMonitorError: 目录不存在或不是目录
        """
        if not self.watch_dir.exists():
            raise FileMonitorError(f"目录不存在: {self.watch_dir}")
        if not self.watch_dir.is_dir():
            raise FileMonitorError(f"不是目录: {self.watch_dir}")

    def snapshot(self) -> Snapshot:
        files = {}
        entries = self.watch_dir.rglob('*') if self.recursive else self.watch_dir.iterdir()

        for path in entries:
            try:
                st = path.stat()
            except FileNotFoundError:
                # 扫描期间文件被删除
                continue

            if stat.S_ISREG(st.st_mode):
                files[path] = (st.st_mtime_ns, st.st_size)

        return files

    @staticmethod
    def diff(old: Snapshot, new: Snapshot) -> List[FileEvent]:
        events = []

        for path, info in new.items():
            previous = old.get(path)
            if previous is None:
                events.append(FileEvent(FileEventKind.CREATED, path))
            elif previous != info:
                events.append(FileEvent(FileEventKind.MODIFIED, path))

        for path in old:
            if path not in new:
                events.append(FileEvent(FileEventKind.DELETED, path))

        return events

    def prime(self):
        """记录初始快照, 已存在的文件不产生事件"""
        self.check()
        self._snapshot = self.snapshot()

    async def poll(self) -> List[FileEvent]:
        """扫描一次 (在线程池中执行), 返回变化"""
        loop = asyncio.get_running_loop()

        try:
            current = await loop.run_in_executor(None, self.snapshot)
        except OSError as e:
            logger.warning("扫描目录失败 %s: %s", self.watch_dir, e)
            return []

        previous = self._snapshot if self._snapshot is not None else {}
        self._snapshot = current
        return self.diff(previous, current)


# ==============================================================================
# 防抖
# ==============================================================================

class DebouncedEventStream:
    """
    防抖事件流

    - 新事件覆盖旧事件 (只保留最新的一条)
    - 最后一条事件之后安静 debounce_ms 即输出
    - 从调用 next() 开始最多等待 max_wait_ms 就强制输出
    - 事件源关闭时先输出待处理事件, 之后返回 None
    """

    def __init__(self, source: asyncio.Queue, debounce_ms: int = 1000, max_wait_ms: int = 10000):
        self._source = source
        self.debounce = debounce_ms / 1000
        self.max_wait = max_wait_ms / 1000
        self._last_event: Optional[Tuple[float, FileEvent]] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def next(self) -> Optional[FileEvent]:
        """获取下一条防抖后的事件, 事件源关闭后返回 None"""
        if self._closed:
            return self._take_event()

        loop = asyncio.get_running_loop()
        window_start = loop.time()

        while True:
            timeout = None
            if self._last_event is not None:
                now = loop.time()
                deadline = min(self._last_event[0] + self.debounce,
                               window_start + self.max_wait)
                if now >= deadline:
                    return self._take_event()
                timeout = deadline - now

            try:
                event = await asyncio.wait_for(self._source.get(), timeout)
            except asyncio.TimeoutError:
                return self._take_event()

            if event is CLOSED:
                self._closed = True
                return self._take_event()

            now = loop.time()
            if self._last_event is None and now - window_start >= self.max_wait:
                # 空闲超过上限之后的第一条事件, 重新开始计时
                window_start = now
            self._last_event = (now, event)

    def _take_event(self) -> Optional[FileEvent]:
        if self._last_event is None:
            return None
        event = self._last_event[1]
        self._last_event = None
        return event


# ==============================================================================
# 监控器
# ==============================================================================

class FileMonitor:
    """
    微信数据目录监控器

    用法:
        monitor = FileMonitor(FileMonitorConfig(watch_dir, wechat_db_patterns()))
        monitor.start()
        event = await monitor.next_event()
    """

    def __init__(self, config: FileMonitorConfig):
        self.config = config
        self._watcher = PollingWatcher(config.watch_dir, config.recursive)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self._stream = DebouncedEventStream(self._queue, config.debounce_ms, config.max_wait_ms)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self):
        """
        开始监控 (需要在事件循环中调用)

        Raises:
            FileMonitorError: 无法监控目录
        """
        if self._task is not None:
            return

        self._watcher.prime()
        self._task = asyncio.get_running_loop().create_task(self._watch())
        logger.info("开始监控目录: %s", self.config.watch_dir)

    async def stop(self):
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        close_queue(self._queue)
        logger.info("停止监控目录: %s", self.config.watch_dir)

    async def next_event(self) -> Optional[FileEvent]:
        """获取下一条防抖后的事件, 监控停止后返回 None"""
        return await self._stream.next()

    def accepts(self, event: FileEvent) -> bool:
        # 删除事件永远不触发解密
        if event.kind is FileEventKind.DELETED:
            return False
        return matches_pattern(event.path, self.config.file_patterns)

    async def handle_event(self, event: FileEvent):
        if self.accepts(event):
            await self._queue.put(event)

    async def _watch(self):
        while True:
            for event in await self._watcher.poll():
                await self.handle_event(event)
            await asyncio.sleep(self.config.poll_interval)
