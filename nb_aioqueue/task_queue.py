"""
TaskQueue - 有界并发的异步任务调度器

和 nb_aiopool 家族的其他池不同，TaskQueue 的 submit 永远不阻塞、不抛 Queue full，
等待的任务放在无界的 deque 里，严格按提交顺序（FIFO）启动。

## 核心特性
- **硬并发上限**：任意时刻正在运行的任务数 <= max_concurrency
- **FIFO**：排队中的任务严格按提交顺序启动，没有优先级
- **错误隔离**：一个任务报错只会交给 error_handler，不影响其他任务，也不影响调度
- **wait_idle**：等待 pending 和 running 同时归零，不轮询，任务结束时直接唤醒所有等待者

## 使用示例

```python
queue = TaskQueue(max_concurrency=2)

async def job():
    await asyncio.sleep(0.05)

for _ in range(5):
    queue.submit(job)        # 注意传的是函数，不是 job() 协程对象

await queue.wait_idle()      # 5 个任务全部结束后返回

# 或者
async with TaskQueue(max_concurrency=2) as queue:
    queue.submit(job)        # 退出 async with 时自动 wait_idle
```
"""

import asyncio
import functools
import logging
import weakref
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Mapping, Optional, Set, Tuple, TypeVar

from nb_aioqueue.exceptions import QueueConfigError, TaskFailure

T = TypeVar("T")
TaskFactory = Callable[[], Awaitable[Any]]
ErrorHandler = Callable[[TaskFailure], None]

logger = logging.getLogger(__name__)

# 全局注册表，跟踪所有活跃的 queue 实例（用于 wait_all_task_queues）
_active_queues: weakref.WeakSet = weakref.WeakSet()


def _default_task_name(task: Callable) -> str:
    func = getattr(task, "func", task)  # functools.partial
    return getattr(func, "__qualname__", None) or repr(task)


def _check_task(task: Any) -> None:
    if asyncio.iscoroutine(task):
        raise TypeError(
            f"submit needs a zero-argument callable, not a coroutine object: {task!r}. "
            f"Pass the function itself, or wrap it with functools.partial / lambda."
        )
    if not callable(task):
        raise TypeError(f"task must be a zero-argument callable returning an awaitable, got {task!r}")


class TaskQueue:
    """
    有界并发的异步任务队列。

    :param max_concurrency: 最大并发数，必须是正整数，否则抛 QueueConfigError
    :param name: 队列名称，用于日志和 repr
    :param error_handler: 任务失败时的回调，参数是 TaskFailure；不传则用 logger.error 记录
    """

    def __init__(
        self,
        max_concurrency: int = 5,
        *,
        name: Optional[str] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        # bool 是 int 的子类，True 不能当 1 用
        if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int):
            raise QueueConfigError(f"max_concurrency must be a positive int, got {max_concurrency!r}")
        if max_concurrency < 1:
            raise QueueConfigError(f"max_concurrency must be >= 1, got {max_concurrency}")

        self._max_concurrency = max_concurrency
        self._name = name or f"TaskQueue-{id(self):x}"
        self._error_handler: ErrorHandler = error_handler or self._log_failure

        # (task, name, context)，队头是最早提交、还没启动的任务
        self._pending: Deque[Tuple[TaskFactory, str, Optional[Mapping[str, Any]]]] = deque()
        # 已启动未结束的任务句柄，同时防止 asyncio.Task 被 gc
        self._running: Set[asyncio.Task] = set()
        self._idle_waiters: List[asyncio.Future] = []

        _active_queues.add(self)

    # =================
    # 提交任务
    # =================
    def submit(
        self,
        task: TaskFactory,
        *,
        name: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        提交任务，立即返回，不等待任务开始或结束。
        必须在事件循环所在线程里调用，其他线程请用 sync_submit。

        :param task: 无参的异步函数（或返回 awaitable 的 callable）
        :param name: 任务名称，用于日志和 TaskFailure
        :param context: 附加信息，任务失败时原样放进 TaskFailure
        """
        _check_task(task)
        asyncio.get_running_loop()  # 没有运行中的事件循环时在入队之前就报错
        self._pending.append((task, name or _default_task_name(task), context))
        self._try_start()

    def sync_submit(
        self,
        task: TaskFactory,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        name: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        线程安全的提交，用于在非事件循环线程里提交任务
        :param loop: 运行该队列的事件循环
        """
        if loop is None:
            raise ValueError("please pass loop")
        _check_task(task)
        loop.call_soon_threadsafe(functools.partial(self.submit, task, name=name, context=context))

    async def run(self, task: Callable[[], Awaitable[T]], *, name: Optional[str] = None) -> T:
        """
        提交任务并等待它的结果，受同一个并发上限约束。
        和 submit 不同，任务的异常会抛给 await run 的调用者，而不是交给 error_handler。
        """
        _check_task(task)
        future = asyncio.get_running_loop().create_future()

        async def wrapper():
            try:
                result = await task()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

        self.submit(wrapper, name=name or _default_task_name(task))
        return await future

    # =================
    # 调度
    # =================
    async def _invoke(self, task: TaskFactory, name: str, context: Optional[Mapping[str, Any]]) -> None:
        handle = asyncio.current_task()
        error = None
        cancelled = False
        try:
            await task()
        except asyncio.CancelledError:
            cancelled = True
            raise
        except Exception as e:
            error = e
        finally:
            # 在任务自己的调用栈里归还名额并启动下一个，不等 done callback 的下一轮循环
            self._settle(handle, name, context, error=error, cancelled=cancelled)

    def _try_start(self) -> None:
        # 中间没有 await，检查和修改状态是一个原子步骤
        while len(self._running) < self._max_concurrency and self._pending:
            task, name, context = self._pending.popleft()
            handle = asyncio.create_task(self._invoke(task, name, context), name=f"{self._name}:{name}")
            self._running.add(handle)
            handle.add_done_callback(functools.partial(self._on_task_done, name, context))
            logger.debug(
                "start task %s, running=%d, pending=%d", name, len(self._running), len(self._pending)
            )

    def _on_task_done(self, name: str, context: Optional[Mapping[str, Any]], handle: asyncio.Task) -> None:
        # 兜底：还没开始执行就被取消的任务不会走到 _invoke 的 finally
        self._settle(handle, name, context, cancelled=handle.cancelled())

    def _settle(
        self,
        handle: asyncio.Task,
        name: str,
        context: Optional[Mapping[str, Any]],
        error: Optional[BaseException] = None,
        cancelled: bool = False,
    ) -> None:
        if handle not in self._running:
            return
        self._running.discard(handle)

        if cancelled:
            logger.warning("task %s of %s was cancelled", name, self._name)
        elif error is not None:
            self._report_failure(TaskFailure(name=name, error=error, context=context))

        self._try_start()
        if self.is_idle:
            self._wake_idle_waiters()

    def _report_failure(self, failure: TaskFailure) -> None:
        try:
            self._error_handler(failure)
        except Exception:
            logger.exception("error_handler of %s raised while handling: %s", self._name, failure)

    def _log_failure(self, failure: TaskFailure) -> None:
        logger.error("%s: %s", self._name, failure, exc_info=failure.error)

    # =================
    # 等待空闲
    # =================
    def _wake_idle_waiters(self) -> None:
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        if waiters:
            logger.debug("%s is idle, released %d waiter(s)", self._name, len(waiters))

    async def wait_idle(self) -> None:
        """
        等待队列空闲：pending 为空且没有正在运行的任务。
        等待期间新提交的任务也会被等待；已经空闲则直接返回。
        """
        if self.is_idle:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        try:
            await waiter
        finally:
            # 被取消（例如 wait_for 超时）的等待者要移除，否则繁忙的队列里会越积越多
            if waiter in self._idle_waiters:
                self._idle_waiters.remove(waiter)

    # =================
    # 状态
    # =================
    @property
    def name(self) -> str:
        return self._name

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def pending_count(self) -> int:
        """排队中、还没启动的任务数"""
        return len(self._pending)

    @property
    def running_count(self) -> int:
        """已启动、还没结束的任务数"""
        return len(self._running)

    @property
    def is_idle(self) -> bool:
        return not self._pending and not self._running

    def __repr__(self) -> str:
        return (
            f"TaskQueue("
            f"name={self._name!r}, "
            f"running={self.running_count}, "
            f"pending={self.pending_count}, "
            f"max={self._max_concurrency})"
        )

    # =================
    # Async Context Manager
    # =================
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.wait_idle()


async def wait_all_task_queues() -> None:
    """
    等待所有 TaskQueue 空闲，放在程序退出前执行，
    在你的 async def 的入口函数的最后一行写 await wait_all_task_queues()
    """
    while True:
        busy = [queue for queue in list(_active_queues) if not queue.is_idle]
        if not busy:
            return
        # 一个队列里的任务可能继续往别的队列提交任务，所以要循环到全部空闲
        for queue in busy:
            logger.info("Waiting for %r ...", queue)
            await queue.wait_idle()


if __name__ == '__main__':

    # ======================
    # 示例用法
    # ======================
    import time

    logging.basicConfig(level=logging.DEBUG)

    async def sample_task(x: int):
        await asyncio.sleep(0.1)
        print(time.strftime("%H:%M:%S"), x)
        if x == 3:
            raise ValueError(f"task {x} failed")

    async def main():
        queue = TaskQueue(max_concurrency=2, name="demo")
        for i in range(6):
            queue.submit(functools.partial(sample_task, i), context={"x": i})
        print(queue)
        await queue.wait_idle()
        print(queue)

    asyncio.run(main())
