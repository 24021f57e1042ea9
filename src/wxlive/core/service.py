"""
微信数据提取服务

把账号检测、目录监控和解密任务串起来:
- 任务 A: 定期检测运行中的账号, 产生 上线/下线 消息
- 任务 B: 目录监控, 转发防抖后的文件事件
- 任务 C: 分发循环, 唯一修改 账号表/密钥缓存 的地方
解密 (PBKDF2 / AES) 全部放到线程池执行, 不阻塞事件循环
"""

import asyncio
import sys
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .account import GLOBAL_ACCOUNT_ID, Account, AccountDetector, StaticAccountDetector
from .decryptor import decrypt_database, validate_key
from .errors import ConfigError, DecryptError, KeyResolutionError, ServiceStopped
from .events import (
    DROPPABLE_EVENTS,
    DatabaseFile,
    DecryptionComplete,
    ErrorEvent,
    InstanceDetected,
    InstanceTerminated,
    KeyResolutionComplete,
)
from .image_decryptor import DatImageDecryptResult, ImageDecryptor
from .keys import KeyCache, KeyPair, parse_key_pair
from .monitor import FileEvent, FileEventKind, FileMonitor, FileMonitorConfig, wechat_db_patterns
from ..utils.config_loader import ServiceConfig
from ..utils.logger import get_logger

logger = get_logger(__name__)

DATABASE_SUFFIX = '.db'

KEY_EXTRACTION_DISABLED = (
    "已禁用从进程内存提取密钥 (disabled in legal-safe mode), "
    "请通过配置文件或 set_keys() 提供密钥"
)

# 事件里的固定错误文本, 调用方按它匹配
NO_AVAILABLE_KEYS = "no available keys"


def is_database_file(path) -> bool:
    return Path(path).suffix.lower() == DATABASE_SUFFIX


def default_detector() -> AccountDetector:
    """macOS 上使用进程检测, 其它平台没有账号检测"""
    if sys.platform == 'darwin':
        from ..utils.wechat_finder import WeChatFinder
        return WeChatFinder()
    return StaticAccountDetector()


class ExtractionService:
    """
    微信数据提取服务

    用法:
        service = ExtractionService(ServiceConfig.from_file('config.yaml'))
        await service.start()
        while True:
            event = await service.next_event()
            ...
        await service.stop()
    """

    def __init__(self, config: ServiceConfig, detector: Optional[AccountDetector] = None,
                 executor: Optional[Executor] = None):
        self.config = config
        self.detector = detector if detector is not None else default_detector()

        self.accounts: Dict[int, Account] = {}
        self.keys = KeyCache()

        self._executor = executor
        self._owns_executor = executor is None

        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self._events: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)

        self._monitor: Optional[FileMonitor] = None
        self._tasks: List[asyncio.Task] = []
        self._jobs: Set[asyncio.Task] = set()
        # 每个输入文件同时只有一个解密任务, 运行期间的新请求合并成一次重跑
        self._active: Dict[Path, asyncio.Task] = {}
        self._rerun: Dict[Path, Tuple[Path, KeyPair]] = {}
        self._known_pids: Set[int] = set()
        self._running = False
        self._stopped = False
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_jobs(self) -> int:
        return len(self._jobs)

    # ==========================================================================
    # 生命周期
    # ==========================================================================

    async def start(self):
        """
        启动服务

        Raises:
            ConfigError: 配置中的密钥不合法
            FileMonitorError: 无法监控数据目录 (此时不会启动任何任务)
        """
        if self._running:
            return

        logger.info("启动微信数据提取服务")

        # 预加载配置中的密钥 (后备密钥)
        key_pair = self._config_key_pair()
        if key_pair is not None:
            self.keys.set(GLOBAL_ACCOUNT_ID, key_pair)
            logger.info("已加载配置中的后备密钥")

        monitor = None
        if self.config.auto_decrypt:
            monitor = FileMonitor(self._monitor_config())
            monitor.start()

        self._monitor = monitor
        self._running = True
        self._stopped = False
        self._stopping.clear()

        self._spawn(self._dispatch_loop(), 'wxlive-dispatch')
        self._spawn(self._poll_accounts(), 'wxlive-accounts')
        if monitor is not None:
            self._spawn(self._forward_file_events(), 'wxlive-monitor')

        logger.info("服务已启动")

    async def stop(self):
        """
        停止服务

        已经提交的解密任务会继续执行完 (stop 会等待它们), 但不再接受新任务.
        停止之后任务的结果事件不再等待队列空位, 队列满时丢弃并记录警告
        """
        self._stopped = True
        self._stopping.set()

        if self._running:
            logger.info("停止微信数据提取服务")
            self._running = False

            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

            if self._monitor is not None:
                await self._monitor.stop()
                self._monitor = None

        await self.wait_for_jobs()

        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def wait_for_jobs(self):
        """等待所有已提交的解密任务结束"""
        while self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

    async def next_event(self):
        """获取下一条服务事件 (按产生顺序)"""
        return await self._events.get()

    def get_accounts(self) -> List[Account]:
        return list(self.accounts.values())

    def _spawn(self, coro, name: str):
        self._tasks.append(asyncio.get_running_loop().create_task(coro, name=name))

    def _ensure_accepting(self):
        if self._stopped:
            raise ServiceStopped()

    def _get_executor(self) -> Executor:
        if self._executor is None:
            # stop 之后不再创建新的线程池
            self._ensure_accepting()
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix='wxlive-decrypt',
            )
        return self._executor

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._get_executor(), func, *args)

    def _config_key_pair(self) -> Optional[KeyPair]:
        return parse_key_pair(self.config.data_key, self.config.image_key)

    def _monitor_config(self) -> FileMonitorConfig:
        patterns = self.config.compiled_patterns() or wechat_db_patterns()
        return FileMonitorConfig(
            watch_dir=Path(self.config.data_dir),
            file_patterns=patterns,
            debounce_ms=self.config.debounce_ms,
            max_wait_ms=self.config.max_wait_ms,
            recursive=self.config.recursive,
            poll_interval=self.config.watch_poll_interval,
            queue_size=self.config.queue_size,
        )

    # ==========================================================================
    # 事件输出
    # ==========================================================================

    def _emit_nowait(self, event):
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("事件队列已满, 丢弃事件: %s", event)

    async def _emit(self, event):
        """
        输出事件

        DatabaseFile 通知从不等待. 其它事件等待队列空位, 但服务停止后
        (或等待期间服务被停止) 改为不等待, 避免 stop 卡在没人读的队列上
        """
        if isinstance(event, DROPPABLE_EVENTS) or self._stopped:
            self._emit_nowait(event)
            return

        put = asyncio.ensure_future(self._events.put(event))
        stopping = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({put, stopping}, return_when=asyncio.FIRST_COMPLETED)
            delivered = put.done()
        finally:
            stopping.cancel()
            if not put.done():
                put.cancel()

        if not delivered:
            self._emit_nowait(event)

    # ==========================================================================
    # 任务 A / B / C
    # ==========================================================================

    async def _poll_accounts(self):
        while True:
            await self._detect_once()
            await asyncio.sleep(self.config.account_poll_interval)

    async def _detect_once(self) -> List[Account]:
        """检测一次账号, 把 上线/下线 消息放入收件箱"""
        try:
            instances = await self._run_blocking(self.detector.get_running_instances)
        except Exception as e:
            logger.exception("账号检测失败")
            await self._inbox.put(ErrorEvent(f"账号检测失败: {e}"))
            return []

        active = set()
        for account in instances:
            if not account.is_running:
                continue
            active.add(account.pid)
            if account.pid not in self._known_pids:
                self._known_pids.add(account.pid)
                await self._inbox.put(InstanceDetected(account))

        for pid in sorted(self._known_pids - active):
            self._known_pids.discard(pid)
            await self._inbox.put(InstanceTerminated(pid))

        return instances

    async def _forward_file_events(self):
        while True:
            event = await self._monitor.next_event()
            if event is None:
                break
            await self._inbox.put(event)

    async def _dispatch_loop(self):
        while True:
            message = await self._inbox.get()
            try:
                await self._dispatch(message)
            except Exception as e:
                # 单条消息出错不能让分发循环退出
                logger.exception("处理 %s 失败", message)
                await self._emit(ErrorEvent(f"处理 {message} 失败: {e}"))

    async def _dispatch(self, message):
        if isinstance(message, InstanceDetected):
            await self.handle_instance_detected(message.account)
        elif isinstance(message, InstanceTerminated):
            await self.handle_instance_terminated(message.pid)
        elif isinstance(message, FileEvent):
            await self.handle_file_event(message)
        elif isinstance(message, ErrorEvent):
            await self._emit(message)
        else:
            logger.warning("未知消息: %r", message)

    async def detect_instances(self) -> List[Account]:
        """
        手动触发一次账号检测

        服务运行时交给分发循环处理, 否则直接处理

        Raises:
            ServiceStopped: 服务已经停止
        """
        self._ensure_accepting()
        instances = await self._detect_once()

        if not self._running:
            while not self._inbox.empty():
                await self._dispatch(self._inbox.get_nowait())

        return instances

    # ==========================================================================
    # 状态转换 (只在分发循环中调用)
    # ==========================================================================

    async def handle_instance_detected(self, account: Account):
        """Unknown → Known: 记录账号, 有后备密钥时复制给它"""
        if not account.is_running:
            return

        is_new = account.pid not in self.accounts
        self.accounts[account.pid] = account
        self._known_pids.add(account.pid)

        if is_new:
            logger.info("检测到微信账号: pid=%d, %s", account.pid, account.data_dir)
            await self._apply_fallback_keys(account.pid)
            await self._emit(InstanceDetected(account))

    async def _apply_fallback_keys(self, pid: int):
        if pid in self.keys:
            return

        fallback = self.keys.get(GLOBAL_ACCOUNT_ID)
        if fallback is None:
            try:
                fallback = self._config_key_pair()
            except ConfigError as e:
                await self._emit(KeyResolutionComplete(pid, False, str(e)))
                return

            if fallback is None:
                logger.info("pid=%d 暂无可用密钥, 等待用户提供", pid)
                return
            self.keys.set(GLOBAL_ACCOUNT_ID, fallback)

        self.keys.set(pid, fallback)
        await self._emit(KeyResolutionComplete(pid, True))

    async def handle_instance_terminated(self, pid: int):
        """Known → Gone: 删除账号和它的密钥"""
        if pid == GLOBAL_ACCOUNT_ID:
            return

        self.accounts.pop(pid, None)
        self.keys.remove(pid)
        self._known_pids.discard(pid)

        logger.info("微信账号已退出: pid=%d", pid)
        await self._emit(InstanceTerminated(pid))

    async def handle_file_event(self, event: FileEvent) -> Optional[asyncio.Task]:
        """
        File event → Job

        Returns:
            提交的解密任务, 没有提交时返回 None
        """
        if event.kind is FileEventKind.DELETED:
            return None

        path = Path(event.path)
        if not is_database_file(path):
            return None

        await self._emit(DatabaseFile(path))

        if self._stopped:
            logger.info("服务已停止, 不再提交解密任务: %s", path)
            return None

        choice = self._select_key(path)
        if choice is None:
            logger.warning("没有可用密钥, 跳过: %s", path)
            await self._emit(ErrorEvent(NO_AVAILABLE_KEYS))
            return None

        pid, key_pair = choice
        output_path = self.output_path_for(path, pid)
        return self._submit_decrypt(path, output_path, key_pair)

    def _owner_of(self, path: Path) -> Optional[int]:
        for pid, account in self.accounts.items():
            if pid == GLOBAL_ACCOUNT_ID or not account.data_dir:
                continue
            if path.is_relative_to(Path(account.data_dir)):
                return pid
        return None

    def _select_key(self, path: Path):
        """优先使用文件所属账号的密钥, 其次后备密钥"""
        owner = self._owner_of(path)
        if owner is not None:
            key_pair = self.keys.get(owner)
            if key_pair is not None:
                return owner, key_pair

        key_pair = self.keys.get(GLOBAL_ACCOUNT_ID)
        if key_pair is not None:
            return GLOBAL_ACCOUNT_ID, key_pair

        return None

    def output_path_for(self, input_path, pid: int) -> Path:
        """work_dir/<pid>/<原文件名>"""
        return Path(self.config.work_dir) / str(pid) / Path(input_path).name

    # ==========================================================================
    # 解密任务
    # ==========================================================================

    def _submit_decrypt(self, input_path: Path, output_path: Path,
                        key_pair: KeyPair) -> asyncio.Task:
        """
        提交解密任务

        同一个输入文件已有任务在运行时不再新建任务, 而是记下最新的
        输出路径和密钥, 当前任务结束后再解密一次, 返回的是已有的任务
        """
        active = self._active.get(input_path)
        if active is not None:
            self._rerun[input_path] = (output_path, key_pair)
            logger.debug("已有解密任务在运行, 结束后重新解密: %s", input_path)
            return active

        # 线程池在提交时创建, stop 之后任务仍然能用它跑完
        self._get_executor()

        task = asyncio.get_running_loop().create_task(
            self._run_path_jobs(input_path, output_path, key_pair)
        )
        self._active[input_path] = task
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        return task

    async def _run_path_jobs(self, input_path: Path, output_path: Path,
                             key_pair: KeyPair) -> Optional[Exception]:
        try:
            while True:
                error = await self._run_decrypt_job(input_path, output_path, key_pair)
                pending = self._rerun.pop(input_path, None)
                if pending is None or self._stopped:
                    return error
                output_path, key_pair = pending
                logger.info("文件在解密期间有变化, 重新解密: %s", input_path)
        finally:
            self._active.pop(input_path, None)
            self._rerun.pop(input_path, None)

    async def _run_decrypt_job(self, input_path: Path, output_path: Path,
                               key_pair: KeyPair) -> Optional[Exception]:
        """
        在线程池中解密, 结束后发出 DecryptionComplete

        Returns:
            失败时返回异常, 成功返回 None
        """
        logger.info("开始解密: %s", input_path)
        try:
            await self._run_blocking(decrypt_database, input_path, output_path, key_pair)
        except DecryptError as e:
            logger.warning("解密失败 %s: %s", input_path, e)
            await self._emit(DecryptionComplete(input_path, output_path, False, str(e)))
            return e
        except Exception as e:
            logger.exception("解密任务异常中止: %s", input_path)
            await self._emit(DecryptionComplete(
                input_path, output_path, False, f"解密任务异常中止: {e}"
            ))
            return e

        await self._emit(DecryptionComplete(input_path, output_path, True))
        return None

    # ==========================================================================
    # 手动操作
    # ==========================================================================

    async def set_keys(self, pid: int, data_key_hex: str, image_key_hex: str):
        """
        设置用户提供的密钥 (覆盖旧的)

        Raises:
            ConfigError: 密钥格式不正确, 此时不会存储任何内容
        """
        key_pair = KeyPair.from_hex(data_key_hex, image_key_hex)
        self.keys.set(pid, key_pair)
        logger.info("已设置 pid=%d 的密钥", pid)
        await self._emit(KeyResolutionComplete(pid, True))

    async def extract_keys_for_instance(self, pid: int):
        """
        从运行中的进程提取密钥

        本版本不支持读取进程内存, 总是失败

        Raises:
            KeyResolutionError: 总是抛出
        """
        logger.info("请求为 pid=%d 提取密钥, 已禁用", pid)
        await self._emit(KeyResolutionComplete(pid, False, KEY_EXTRACTION_DISABLED))
        raise KeyResolutionError(KEY_EXTRACTION_DISABLED)

    async def decrypt_database(self, input_path, pid: int) -> Path:
        """
        手动解密数据库

        同一个文件已有任务在运行时, 等待合并后的那次解密结束

        Raises:
            ServiceStopped: 服务已经停止
            DecryptError: 没有密钥或解密失败
        """
        self._ensure_accepting()

        input_path = Path(input_path)
        key_pair = self.keys.get(pid)
        if key_pair is None:
            raise DecryptError(f"没有找到 PID {pid} 的密钥")

        output_path = self.output_path_for(input_path, pid)
        task = self._submit_decrypt(input_path, output_path, key_pair)
        error = await asyncio.shield(task)
        if error is not None:
            raise error
        return output_path

    async def validate_keys(self, input_path, data_key_hex: str, image_key_hex: str) -> bool:
        """
        在使用前确认用户提供的密钥对能解开数据库

        Raises:
            ServiceStopped: 服务已经停止
            ConfigError: 密钥格式不正确
            DecryptError: 文件无法读取
        """
        self._ensure_accepting()
        key_pair = KeyPair.from_hex(data_key_hex, image_key_hex)
        return await self._run_blocking(validate_key, Path(input_path), key_pair)

    async def decrypt_image(self, input_path, pid: int = GLOBAL_ACCOUNT_ID,
                            output_dir=None) -> DatImageDecryptResult:
        """
        解密 .dat 图片, V4 容器使用账号 (或后备) 的图片密钥

        Raises:
            ServiceStopped: 服务已经停止
            MediaDecryptError: 解密失败
        """
        self._ensure_accepting()
        key_pair = self.keys.get(pid) or self.keys.get(GLOBAL_ACCOUNT_ID)
        image_key = key_pair.image_key if key_pair is not None else None

        if output_dir is None:
            output_dir = Path(self.config.work_dir) / str(pid) / 'images'

        decryptor = ImageDecryptor(image_key)
        return await self._run_blocking(decryptor.decrypt_file, Path(input_path), output_dir)


async def run_forever(config_file: str = 'config.yaml'):
    """加载配置并运行服务, 把事件输出到日志"""
    from ..utils.config_loader import Config
    from ..utils.logger import setup_logger

    raw_config = Config(config_file)
    raw_config.ensure_directories()
    config = ServiceConfig.from_config(raw_config)
    log = setup_logger('wxlive', config.log_file, config.log_level)

    service = ExtractionService(config)
    await service.start()
    try:
        while True:
            log.info("事件: %s", await service.next_event())
    finally:
        await service.stop()


if __name__ == "__main__":
    try:
        asyncio.run(run_forever(sys.argv[1] if len(sys.argv) > 1 else 'config.yaml'))
    except KeyboardInterrupt:
        pass
