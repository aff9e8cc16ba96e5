"""End-to-end tests of the operation facade against a fake API and CDN."""

import asyncio
import os

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bili_cli.api.client import BiliAPIClient
from bili_cli.api.rate_limiter import AdaptiveRateLimiter
from bili_cli.api.risk_control import RetryPolicy
from bili_cli.core.service import BiliService
from bili_cli.exceptions import InvalidTransitionError, JobNotFoundError
from bili_cli.models.config import DownloadConfig
from bili_cli.storage.session_store import SessionStore

from .media_server import MediaServer

CLIP = os.urandom(150 * 1024)

NAV_BODY = {
    "code": -101,
    "message": "账号未登录",
    "data": {
        "isLogin": False,
        "wbi_img": {
            "img_url": "https://i0.hdslb.com/bfs/wbi/7cd084941338484aae1ad9425b84077c.png",
            "sub_url": "https://i0.hdslb.com/bfs/wbi/4932caff0ff746eab6f01bf08b70ac45.png",
        },
    },
}


def build_app(media):
    async def nav(request):
        return web.json_response(NAV_BODY)

    async def view(request):
        assert request.query.get("w_rid")
        return web.json_response(
            {
                "code": 0,
                "data": {
                    "aid": 1,
                    "bvid": "BV1xx411c7mD",
                    "title": "Clip",
                    "pages": [{"cid": 11, "page": 1, "part": "Clip", "duration": 5}],
                },
            }
        )

    async def playurl(request):
        origin = str(request.url.origin())
        return web.json_response(
            {
                "code": 0,
                "data": {
                    "quality": 32,
                    "format": "flv480",
                    "durl": [{"order": 1, "url": f"{origin}/media/clip.flv", "size": len(CLIP)}],
                },
            }
        )

    app = web.Application()
    app.router.add_get("/x/web-interface/nav", nav)
    app.router.add_get("/x/web-interface/wbi/view", view)
    app.router.add_get("/x/player/wbi/playurl", playurl)
    app.router.add_get("/media/{name}", media.handle)
    return app


def with_service(tmp_path, scenario):
    media = MediaServer({"clip.flv": CLIP})

    async def run():
        async with TestServer(build_app(media)) as server:
            base = str(server.make_url("")).rstrip("/")
            store = SessionStore(tmp_path / "session.json")
            client = BiliAPIClient(
                store,
                retry_policy=RetryPolicy(attempts=2, base_delay=0.01, jitter=0),
                rate_limiter=AdaptiveRateLimiter(1000, 1000),
                api_base=base,
                passport_base=base,
            )
            config = DownloadConfig(output_dir=str(tmp_path / "downloads"), max_workers=2)
            async with BiliService(config, store, api_client=client) as service:
                return await scenario(service)

    return asyncio.run(run())


def test_download_and_progress(tmp_path):
    async def scenario(service):
        snapshots = await service.download("BV1xx411c7mD", quality="1080p", wait=True)
        return snapshots, service.list_downloads()

    snapshots, listing = with_service(tmp_path, scenario)

    assert len(snapshots) == 1
    snap = snapshots[0]
    assert snap["state"] == "completed"
    assert snap["effective_quality"] == "480P"
    assert snap["requested_quality"] == "1080P"
    assert snap["progress"] == 1.0
    assert listing == snapshots
    output = tmp_path / "downloads" / "Clip" / "Clip.flv"
    assert output.read_bytes() == CLIP


def test_parse_info_lists_episodes(tmp_path):
    info = with_service(tmp_path, lambda s: s.parse_info("https://www.bilibili.com/video/BV1xx411c7mD"))
    assert info["title"] == "Clip"
    assert info["kind"] == "video"
    assert [e["ordinal"] for e in info["episodes"]] == [1]


def test_cancel_and_retry_rules(tmp_path):
    async def scenario(service):
        [snap] = await service.download("BV1xx411c7mD", wait=True)
        with pytest.raises(InvalidTransitionError):
            service.retry_download(snap["id"])
        with pytest.raises(JobNotFoundError):
            service.cancel_download("nope")
        return service.cancel_download(snap["id"])

    snap = with_service(tmp_path, scenario)
    assert snap["state"] == "completed"


def test_login_status_without_session(tmp_path):
    async def scenario(service):
        return await service.login_status(), service.logout()

    status, logout = with_service(tmp_path, scenario)
    assert status["logged_in"] is False
    assert logout == {"logged_in": False}
