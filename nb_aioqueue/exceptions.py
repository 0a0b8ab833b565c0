from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


class QueueConfigError(ValueError):
    """TaskQueue 构造参数非法，例如 max_concurrency 不是正整数"""


@dataclass
class TaskFailure:
    """
    任务失败的诊断记录，不会被抛出，而是交给 TaskQueue 的 error_handler。

    :param name: 任务名称，submit 时传入，没传就用函数名
    :param error: 任务抛出的异常
    :param context: submit 时传入的附加信息
    """
    name: str
    error: BaseException
    context: Optional[Mapping[str, Any]] = field(default=None)

    def __str__(self) -> str:
        if self.context:
            return f"task {self.name} failed: {self.error!r}, context={dict(self.context)}"
        return f"task {self.name} failed: {self.error!r}"
