from nb_aioqueue.exceptions import QueueConfigError, TaskFailure
from nb_aioqueue.task_queue import TaskQueue, wait_all_task_queues
from nb_aioqueue.concurrent_runner import ConcurrentRunner, SupportsSubmit
from nb_aioqueue.fetcher import FetchResponse, fetch_url, fetch_urls_concurrently

__all__ = [
    'TaskQueue',
    'wait_all_task_queues',
    'ConcurrentRunner',
    'SupportsSubmit',
    'FetchResponse',
    'fetch_url',
    'fetch_urls_concurrently',
    'QueueConfigError',
    'TaskFailure',
]
