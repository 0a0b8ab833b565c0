"""
ConcurrentRunner - 把一批 item 交给同一个异步函数处理，并发数由 TaskQueue 控制

每个 item 对应一个任务，成功的结果按完成顺序收集，失败的交给 error_handler（默认记日志），不进结果。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, Protocol, TypeVar

from nb_aioqueue.exceptions import TaskFailure
from nb_aioqueue.task_queue import ErrorHandler, TaskQueue

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)


class SupportsSubmit(Protocol):
    """ConcurrentRunner 对队列的全部要求，TaskQueue 满足这个协议"""

    def submit(self, task: Callable[[], Awaitable[Any]]) -> None: ...

    async def wait_idle(self) -> None: ...


class ConcurrentRunner(Generic[T, R]):
    """
    :param operation: 单参数的异步函数，item -> result
    :param queue: 任意满足 SupportsSubmit 的队列，一般是 TaskQueue
    :param error_handler: item 失败时的回调，参数是 TaskFailure（context 里有 item）；不传则用 logger.error 记录
    """

    def __init__(
        self,
        operation: Callable[[T], Awaitable[R]],
        queue: SupportsSubmit,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.operation = operation
        self.queue = queue
        self.error_handler: ErrorHandler = error_handler or self._log_failure

    @classmethod
    def create(
        cls,
        operation: Optional[Callable[[T], Awaitable[R]]] = None,
        max_concurrency: int = 5,
        error_handler: Optional[ErrorHandler] = None,
    ) -> "ConcurrentRunner[T, R]":
        """
        用新建的 TaskQueue 创建 runner，operation 不传时默认抓取 url
        """
        if operation is None:
            from nb_aioqueue.fetcher import fetch_url
            operation = fetch_url
        return cls(operation, TaskQueue(max_concurrency=max_concurrency), error_handler=error_handler)

    @property
    def operation_name(self) -> str:
        func = getattr(self.operation, "func", self.operation)  # functools.partial
        return getattr(func, "__qualname__", None) or type(func).__name__

    @staticmethod
    def _log_failure(failure: TaskFailure) -> None:
        logger.error("%s", failure, exc_info=failure.error)

    def _report_failure(self, failure: TaskFailure) -> None:
        try:
            self.error_handler(failure)
        except Exception:
            logger.exception("error_handler raised while handling: %s", failure)

    def _make_task(self, item: T, results: List[R]) -> Callable[[], Awaitable[None]]:
        async def task():
            try:
                result = await self.operation(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._report_failure(TaskFailure(name=self.operation_name, error=e, context={"item": item}))
                return
            results.append(result)

        return task

    async def run(self, items: Iterable[T]) -> List[R]:
        """
        处理所有 item，等队列空闲后返回成功的结果（完成顺序，不是输入顺序）
        """
        results: List[R] = []
        for item in items:
            self.queue.submit(self._make_task(item, results))

        await self.queue.wait_idle()
        logger.info("done, %d results collected", len(results))
        return results
