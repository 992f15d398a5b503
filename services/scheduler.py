"""
任务调度器

单飞（single-flight）FIFO 队列：
- enqueue 把任务 ID 放入队列（去重），空闲时启动排空协程
- 排空协程逐个出队 → 标记 running → 按类型查表分发到处理器 → 写回终态
- 处理器抛出的任何异常都转换为 failed（exit_code=-1），不会中断排空
- pause / resume 只改状态（软暂停），底层进程继续运行；
  配置 scheduler.hard_pause 后对已登记的本地进程树发送 SIGSTOP/SIGCONT
- stop 取消本次分发的句柄（杀掉已登记的进程）并追加手动停止标记；delete 先 stop 再删除记录

每次分发对应一个 ActiveProcessHandle，句柄同时是这一次运行的凭证：
被取消的句柄上晚到的进程登记会立即被杀掉，晚到的处理结果会被丢弃。
手动"立即运行"也走 run_task → enqueue，不存在绕开队列的执行路径。
"""

import asyncio
import time
from typing import Optional

import psutil

from core.exceptions import HandlerError
from core.logger import get_logger
from models.task import (
    SCAN_TASK_TYPES,
    STOPPABLE_STATUSES,
    Task,
    TaskResult,
    TaskStatus,
    TaskType,
)
from services.handlers import ExternalScanHandler, ScanCallable, TaskHandler

_logger = get_logger("services.scheduler")

STOP_MARKER = "[任务已被手动停止]"


class ActiveProcessHandle:
    """
    运行中任务的进程句柄。

    自动化任务会登记真实的本地子进程；远程命令类任务没有本地进程，process 为 None。
    cancelled 置位后，这次运行的进程一律杀掉、结果一律丢弃。
    """

    def __init__(self, task_id: int, kind: TaskType, process=None):
        self.task_id = task_id
        self.kind = kind
        self.process = process
        self.cancelled = False

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def _process_tree(self) -> list[psutil.Process]:
        # 父进程在前：先杀子进程时 shell 会正常退出并返回 0
        if self.pid is None or getattr(self.process, "returncode", None) is not None:
            return []
        try:
            parent = psutil.Process(self.pid)
            return [parent] + parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return []

    def _signal_tree(self, action: str) -> bool:
        tree = self._process_tree()
        for proc in tree:
            try:
                getattr(proc, action)()
            except psutil.NoSuchProcess:
                continue
        return bool(tree)

    def terminate(self) -> bool:
        """杀掉整个进程树（ansible-playbook 会派生 ssh 子进程）"""
        return self._signal_tree("kill")

    def suspend(self) -> bool:
        return self._signal_tree("suspend")

    def resume(self) -> bool:
        return self._signal_tree("resume")

    def cancel(self) -> bool:
        """作废本次运行并杀掉已登记的进程树"""
        self.cancelled = True
        return self.terminate()


class TaskScheduler:
    """单飞 FIFO 任务调度器"""

    def __init__(self, datastore, hard_pause: bool = False):
        """
        Args:
            datastore: Datastore 实例
            hard_pause: pause 时是否真正挂起已登记的本地进程
        """
        self._datastore = datastore
        self._hard_pause = hard_pause

        self._queue: list[int] = []
        self._processing = False
        self._drain_task: Optional[asyncio.Task] = None

        self._handlers: dict[TaskType, TaskHandler] = {}
        self._active: dict[int, ActiveProcessHandle] = {}

    # ──────────────────────────────────────────
    # 处理器注册
    # ──────────────────────────────────────────

    def register_handler(self, task_type: TaskType, handler: TaskHandler):
        self._handlers[task_type] = handler
        _logger.debug(f"注册任务处理器: {task_type.value} → {type(handler).__name__}")

    def register_scan_handler(self, task_type: TaskType, handler: ScanCallable):
        """注册外部扫描处理器 handler(task_id)，由其自行写入任务终态"""
        if task_type not in SCAN_TASK_TYPES:
            raise ValueError(f"{task_type.value} 不是扫描类任务")
        self.register_handler(task_type, ExternalScanHandler(handler))

    def register_process(self, task_id: int, process, kind: TaskType = TaskType.AUTOMATION):
        """
        处理器登记"这个本地进程属于任务 N"，供 stop / delete 时杀掉。

        任务不在分发中或已被 stop 时，进程立即被杀掉，不做登记。
        """
        handle = self._active.get(task_id)
        if handle is None or handle.cancelled:
            orphan = handle or ActiveProcessHandle(task_id, kind)
            orphan.process = process
            orphan.terminate()
            _logger.warning(f"任务 {task_id} 已停止或不在运行，杀掉晚到的进程 PID={orphan.pid}")
            return
        handle.process = process
        _logger.info(f"任务 {task_id} 登记进程 PID={handle.pid} ({kind.value})")

    # ──────────────────────────────────────────
    # 队列
    # ──────────────────────────────────────────

    @property
    def queued_ids(self) -> list[int]:
        return list(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def enqueue(self, task_id: int):
        """加入队列（已在队列中则忽略），调度器空闲时启动排空"""
        if task_id not in self._queue:
            self._queue.append(task_id)

        if not self._processing:
            self._processing = True
            self._drain_task = asyncio.create_task(self._drain())

    async def initialize(self):
        """启动时把库里仍处于 queued 的任务重新入队"""
        queued = await self._datastore.get_tasks_by_status(TaskStatus.QUEUED)
        for task in queued:
            await self.enqueue(task.id)
        if queued:
            _logger.info(f"恢复 {len(queued)} 个排队中的任务")

    async def join(self):
        """等待队列排空"""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def shutdown(self):
        """停止排空协程并杀掉所有已登记进程"""
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        for handle in list(self._active.values()):
            handle.cancel()
        self._active.clear()
        self._queue.clear()
        self._processing = False
        _logger.info("任务调度器已停止")

    async def _drain(self):
        try:
            while self._queue:
                task_id = self._queue.pop(0)
                try:
                    await self._dispatch(task_id)
                except Exception:
                    # 存储层异常也不能让调度器停摆
                    _logger.exception(f"任务 {task_id} 分发异常")
        finally:
            self._processing = False

    async def _dispatch(self, task_id: int):
        task = await self._datastore.get_task(task_id)
        if task is None:
            _logger.warning(f"任务 {task_id} 不存在，跳过")
            return

        if task.status != TaskStatus.QUEUED:
            _logger.info(f"任务 {task_id} 状态为 {task.status.value}，跳过分发")
            return

        task = await self._datastore.update_task(
            task_id,
            status=TaskStatus.RUNNING,
            started_at=time.time(),
            executed_by=task.executed_by if task.executed_by is not None else task.created_by,
        )
        _logger.info(f"任务开始: {task_id} type={task.type.value}")

        # 排空协程串行分发，同一时刻每个任务至多一个句柄
        handle = self._active[task_id] = ActiveProcessHandle(task_id, task.type)
        try:
            result = await self._run_handler(task)
        finally:
            self._active.pop(task_id, None)

        if handle.cancelled:
            _logger.info(f"任务 {task_id} 本次运行已被停止，丢弃执行结果")
            return

        if result is None:
            current = await self._datastore.get_task(task_id)
            if current is not None and not current.is_terminal:
                _logger.warning(f"任务 {task_id} 的处理器未写入终态，当前状态 {current.status.value}")
            return

        await self._complete(task_id, result)

    async def _run_handler(self, task: Task) -> Optional[TaskResult]:
        try:
            handler = self._handlers.get(task.type)
            if handler is None:
                raise HandlerError(f"没有为任务类型 {task.type.value} 注册处理器")
            return await handler.run(task)
        except Exception as e:
            _logger.error(f"任务 {task.id} 执行失败: {e}")
            return TaskResult(
                status=TaskStatus.FAILED,
                output=str(e) or type(e).__name__,
                exit_code=-1,
            )

    async def _complete(self, task_id: int, result: TaskResult):
        """写入终态字段；任务已处于终态（例如已被 stop）时丢弃结果"""
        current = await self._datastore.get_task(task_id)
        if current is None:
            _logger.info(f"任务 {task_id} 已被删除，丢弃执行结果")
            return
        if current.is_terminal:
            _logger.info(f"任务 {task_id} 已是终态 {current.status.value}，丢弃执行结果")
            return

        await self._datastore.update_task(
            task_id,
            status=result.status,
            output=result.output,
            exit_code=result.exit_code,
            completed_at=time.time(),
        )
        _logger.info(f"任务完成: {task_id} status={result.status.value} exit_code={result.exit_code}")

    # ──────────────────────────────────────────
    # 生命周期控制
    # ──────────────────────────────────────────

    async def run_task(self, task_id: int, actor_id: Optional[int] = None) -> bool:
        """
        手动运行：重置为 queued 并入队。运行中 / 暂停中的任务拒绝。
        """
        task = await self._datastore.get_task(task_id)
        if task is None:
            return False
        if task.status in (TaskStatus.RUNNING, TaskStatus.PAUSED):
            _logger.warning(f"任务 {task_id} 正在运行 ({task.status.value})，不能重复运行")
            return False

        fields = {
            "status": TaskStatus.QUEUED,
            "output": None,
            "exit_code": None,
            "started_at": None,
            "completed_at": None,
        }
        if actor_id is not None:
            fields["executed_by"] = actor_id
        await self._datastore.update_task(task_id, **fields)
        await self.enqueue(task_id)
        return True

    async def pause(self, task_id: int) -> bool:
        task = await self._datastore.get_task(task_id)
        if task is None:
            _logger.warning(f"任务 {task_id} 不存在")
            return False
        if task.status != TaskStatus.RUNNING:
            _logger.warning(f"任务 {task_id} 状态为 {task.status.value}，不能暂停")
            return False

        handle = self._active.get(task_id)
        if self._hard_pause and handle is not None and handle.suspend():
            _logger.info(f"任务 {task_id} 的进程已挂起")
        else:
            _logger.info(f"任务 {task_id} 软暂停，底层进程继续运行")

        await self._datastore.update_task(task_id, status=TaskStatus.PAUSED)
        return True

    async def resume(self, task_id: int) -> bool:
        task = await self._datastore.get_task(task_id)
        if task is None:
            _logger.warning(f"任务 {task_id} 不存在")
            return False
        if task.status != TaskStatus.PAUSED:
            _logger.warning(f"任务 {task_id} 未暂停 (状态: {task.status.value})")
            return False

        handle = self._active.get(task_id)
        if self._hard_pause and handle is not None:
            handle.resume()

        await self._datastore.update_task(task_id, status=TaskStatus.RUNNING)
        return True

    async def stop(self, task_id: int) -> bool:
        task = await self._datastore.get_task(task_id)
        if task is None:
            _logger.warning(f"任务 {task_id} 不存在")
            return False
        if task.status not in STOPPABLE_STATUSES:
            _logger.warning(f"任务 {task_id} 状态为 {task.status.value}，不能停止")
            return False

        # 句柄留给分发协程在 finally 中移除
        handle = self._active.get(task_id)
        if handle is not None and handle.cancel():
            _logger.info(f"已终止任务 {task_id} 的进程 PID={handle.pid}")
        else:
            _logger.info(f"任务 {task_id} 没有可终止的本地进程，仅更新状态")

        if task_id in self._queue:
            self._queue.remove(task_id)

        await self._datastore.update_task(
            task_id,
            status=TaskStatus.STOPPED,
            completed_at=time.time(),
            output=f"{task.output or ''}\n\n{STOP_MARKER}",
        )
        return True

    async def delete(self, task_id: int) -> bool:
        """
        删除任务：非终态先 stop，再移出队列并删除记录。
        底层删除失败返回 False。
        """
        task = await self._datastore.get_task(task_id)
        if task is None:
            _logger.warning(f"任务 {task_id} 不存在")
            return False

        if not task.is_terminal:
            await self.stop(task_id)

        if task_id in self._queue:
            self._queue.remove(task_id)

        deleted = await self._datastore.delete_task(task_id)
        if deleted:
            _logger.info(f"任务 {task_id} 已删除")
        else:
            _logger.warning(f"任务 {task_id} 删除失败")
        return deleted

    def is_task_active(self, task_id: int) -> bool:
        handle = self._active.get(task_id)
        return handle is not None and not handle.cancelled

    def get_active_tasks(self) -> list[int]:
        return [task_id for task_id, handle in self._active.items() if not handle.cancelled]
