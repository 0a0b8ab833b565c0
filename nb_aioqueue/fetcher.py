"""
基于 aiohttp 的 url 抓取，演示 ConcurrentRunner + TaskQueue 的典型用法：
同时最多 max_concurrency 个请求，其余排队。
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Iterable, List, Optional

import aiohttp

from nb_aioqueue.concurrent_runner import ConcurrentRunner
from nb_aioqueue.task_queue import TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    url: str
    status: int
    data: Any


async def fetch_url(url: str, session: Optional[aiohttp.ClientSession] = None) -> FetchResponse:
    """
    GET 一个 url，把响应体按 json 解析。
    4xx/5xx 不抛异常，状态码放在 FetchResponse.status 里；网络错误和 json 解析错误会抛出。

    :param session: 共享的 ClientSession，不传则临时创建一个
    """
    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await fetch_url(url, own_session)

    logger.debug("Starting fetch for: %s", url)
    async with session.get(url) as response:
        # content_type=None: 不检查 Content-Type，只要求响应体是合法 json
        data = await response.json(content_type=None)
        logger.debug("Completed fetch for: %s", url)
        return FetchResponse(url=url, status=response.status, data=data)


async def fetch_urls_concurrently(urls: Iterable[str], max_concurrency: int = 5) -> List[FetchResponse]:
    """
    并发抓取所有 url，同时最多 max_concurrency 个请求，返回成功的响应（完成顺序）
    """
    async with aiohttp.ClientSession() as session:
        runner = ConcurrentRunner(partial(fetch_url, session=session), TaskQueue(max_concurrency=max_concurrency))
        return await runner.run(urls)


if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG)

    urls = [f"https://jsonplaceholder.typicode.com/posts/{i}" for i in range(1, 11)]

    async def main():
        responses = await fetch_urls_concurrently(urls, max_concurrency=2)
        for resp in responses:
            print(resp.status, resp.url, resp.data.get("title") if isinstance(resp.data, dict) else resp.data)
        print("DONE", len(responses))

    asyncio.run(main())
