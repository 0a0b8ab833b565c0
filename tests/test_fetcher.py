"""测试 aiohttp 抓取：用本地 aiohttp.web 服务，不访问外网"""
import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from nb_aioqueue import FetchResponse, fetch_url, fetch_urls_concurrently


class PostsServer:
    """本地 json 服务，同时统计并发请求数"""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self.hits = 0
        self.app = web.Application()
        self.app.router.add_get("/posts/{id}", self.post)
        self.app.router.add_get("/missing", self.missing)
        self.app.router.add_get("/broken", self.broken)
        self.server = test_utils.TestServer(self.app)

    async def post(self, request: web.Request) -> web.Response:
        self.hits += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.02)
            post_id = int(request.match_info["id"])
            return web.json_response({"id": post_id, "title": f"Post {post_id}"})
        finally:
            self.active -= 1

    async def missing(self, request: web.Request) -> web.Response:
        return web.json_response({"error": "not found"}, status=404)

    async def broken(self, request: web.Request) -> web.Response:
        return web.Response(text="<html>not json</html>", content_type="text/html")

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))


@pytest_asyncio.fixture
async def posts_server():
    server = PostsServer()
    await server.server.start_server()
    yield server
    await server.server.close()


@pytest.mark.asyncio
async def test_fetch_url_with_own_session(posts_server):
    url = posts_server.url("/posts/1")

    resp = await fetch_url(url)

    assert resp == FetchResponse(url=url, status=200, data={"id": 1, "title": "Post 1"})


@pytest.mark.asyncio
async def test_fetch_url_with_shared_session(posts_server):
    async with aiohttp.ClientSession() as session:
        first = await fetch_url(posts_server.url("/posts/1"), session)
        second = await fetch_url(posts_server.url("/posts/2"), session)

    assert first.data["id"] == 1
    assert second.data["id"] == 2
    assert posts_server.hits == 2


@pytest.mark.asyncio
async def test_fetch_url_reports_error_status(posts_server):
    resp = await fetch_url(posts_server.url("/missing"))

    assert resp.status == 404
    assert resp.data == {"error": "not found"}


@pytest.mark.asyncio
async def test_fetch_url_raises_on_invalid_json(posts_server):
    with pytest.raises(ValueError):
        await fetch_url(posts_server.url("/broken"))


@pytest.mark.asyncio
async def test_fetch_urls_concurrently(posts_server):
    urls = [posts_server.url(f"/posts/{i}") for i in range(1, 7)]
    urls.insert(3, posts_server.url("/broken"))

    responses = await fetch_urls_concurrently(urls, max_concurrency=2)

    assert len(responses) == 6
    assert sorted(r.data["id"] for r in responses) == [1, 2, 3, 4, 5, 6]
    assert all(r.status == 200 for r in responses)
    assert posts_server.peak <= 2


@pytest.mark.asyncio
async def test_fetch_urls_concurrently_empty():
    assert await fetch_urls_concurrently([], max_concurrency=2) == []
