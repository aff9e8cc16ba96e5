"""Tests for API response classification against an in-process server."""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bili_cli.api.client import BiliAPIClient
from bili_cli.api.rate_limiter import AdaptiveRateLimiter
from bili_cli.api.risk_control import RetryPolicy, RiskControlGuard
from bili_cli.exceptions import (
    AccessUrlExpiredError,
    ApiResponseError,
    AuthExpiredError,
    AuthRequiredError,
    MalformedResponseError,
    RiskControlBlockedError,
    TransientError,
)
from bili_cli.models.session import Session
from bili_cli.storage.session_store import SessionStore

NAV_BODY = {
    "code": 0,
    "data": {
        "isLogin": True,
        "mid": 42,
        "uname": "tester",
        "wbi_img": {
            "img_url": "https://i0.hdslb.com/bfs/wbi/7cd084941338484aae1ad9425b84077c.png",
            "sub_url": "https://i0.hdslb.com/bfs/wbi/4932caff0ff746eab6f01bf08b70ac45.png",
        },
    },
}


def make_client(base, store=None, **overrides):
    options = {
        "retry_policy": RetryPolicy(attempts=4, base_delay=0.01, jitter=0),
        "risk_guard": RiskControlGuard(threshold=3, cooldown=0.01),
        "rate_limiter": AdaptiveRateLimiter(1000, 1000),
        "api_base": base,
        "passport_base": base,
    }
    options.update(overrides)
    return BiliAPIClient(store, **options)


def serve(routes, scenario, store=None, **overrides):
    """Runs `scenario(client)` against an app with the given GET routes."""

    async def run():
        app = web.Application()
        for path, handler in routes.items():
            app.router.add_get(path, handler)
        async with TestServer(app) as server:
            client = make_client(str(server.make_url("/")), store, **overrides)
            try:
                return await scenario(client)
            finally:
                await client.close()

    return asyncio.run(run())


def logged_in_store(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    store.save(Session.from_cookie_string("SESSDATA=abc; DedeUserID=42"))
    return store


def test_successful_call_sends_session_cookie(tmp_path):
    seen = []

    async def handler(request):
        seen.append(request.headers.get("Cookie"))
        return web.json_response({"code": 0, "data": {"answer": 42}})

    body = serve(
        {"/x/test": handler},
        lambda c: c.api_call("/x/test", foo="bar"),
        logged_in_store(tmp_path),
    )
    assert body["data"]["answer"] == 42
    assert seen == ["SESSDATA=abc; DedeUserID=42"]


def test_auth_failure_with_session_invalidates_it(tmp_path):
    store = logged_in_store(tmp_path)

    async def handler(request):
        return web.json_response({"code": -101, "message": "账号未登录"})

    with pytest.raises(AuthExpiredError):
        serve({"/x/test": handler}, lambda c: c.api_call("/x/test"), store)
    assert store.current is None
    assert SessionStore(tmp_path / "session.json").load() is None


def test_auth_failure_without_session_requires_login():
    async def handler(request):
        return web.json_response({"code": -101, "message": "账号未登录"})

    with pytest.raises(AuthRequiredError):
        serve({"/x/test": handler}, lambda c: c.api_call("/x/test"))


def test_risk_control_blocks_after_threshold():
    calls = []

    async def handler(request):
        calls.append(1)
        return web.Response(status=412, text="blocked")

    with pytest.raises(RiskControlBlockedError):
        serve({"/x/test": handler}, lambda c: c.api_call("/x/test"))
    assert len(calls) == 3


def test_risk_control_code_recovers_after_cooldown():
    calls = []

    async def handler(request):
        calls.append(1)
        if len(calls) == 1:
            return web.json_response({"code": -352, "message": "风控校验失败"})
        return web.json_response({"code": 0, "data": {}})

    async def scenario(client):
        body = await client.api_call("/x/test")
        return body, client.risk_guard.consecutive

    body, consecutive = serve({"/x/test": handler}, scenario)
    assert body["code"] == 0
    assert consecutive == 0
    assert len(calls) == 2


def test_transient_errors_are_retried():
    calls = []

    async def handler(request):
        calls.append(1)
        if len(calls) < 3:
            return web.Response(status=503)
        return web.json_response({"code": 0, "data": {}})

    body = serve({"/x/test": handler}, lambda c: c.api_call("/x/test"))
    assert body["code"] == 0
    assert len(calls) == 3


def test_transient_errors_surface_when_retries_are_exhausted():
    calls = []

    async def handler(request):
        calls.append(1)
        return web.Response(status=502)

    with pytest.raises(TransientError):
        serve({"/x/test": handler}, lambda c: c.api_call("/x/test"))
    assert len(calls) == 4


def test_non_json_body_is_malformed():
    async def handler(request):
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    with pytest.raises(MalformedResponseError):
        serve({"/x/test": handler}, lambda c: c.api_call("/x/test"))


def test_body_without_code_is_malformed():
    async def handler(request):
        return web.json_response({"data": {}})

    with pytest.raises(MalformedResponseError):
        serve({"/x/test": handler}, lambda c: c.api_call("/x/test"))


def test_other_business_codes_are_api_errors():
    async def handler(request):
        return web.json_response({"code": -404, "message": "啥都木有"})

    with pytest.raises(ApiResponseError) as excinfo:
        serve({"/x/test": handler}, lambda c: c.api_call("/x/test"))
    assert excinfo.value.code == -404


def test_signed_call_refreshes_key_once_on_rejection():
    nav_calls = []
    signatures = []

    async def nav(request):
        nav_calls.append(1)
        return web.json_response(NAV_BODY)

    async def view(request):
        signatures.append(request.query.get("w_rid"))
        if len(signatures) == 1:
            return web.json_response({"code": -403, "message": "访问权限不足"})
        return web.json_response({"code": 0, "data": {"title": "ok"}})

    async def scenario(client):
        data = await client.fetch_video_view(bvid="BV1xx411c7mD")
        return data, client.wbi_keys.refresh_count

    data, refreshes = serve(
        {"/x/web-interface/nav": nav, "/x/web-interface/wbi/view": view}, scenario
    )
    assert data["title"] == "ok"
    assert refreshes == 2
    assert len(nav_calls) == 2
    assert all(len(s) == 32 for s in signatures)


def test_expired_media_url():
    async def media(request):
        return web.Response(status=403)

    async def scenario(client):
        async with client.open_media(f"{client.api_base}/media.m4s", 0, 9):
            pass

    with pytest.raises(AccessUrlExpiredError):
        serve({"/media.m4s": media}, scenario)


def test_simultaneous_risk_control_responses_count_once():
    calls = []

    async def handler(request):
        calls.append(1)
        if len(calls) <= 3:
            # Keep the first three requests in flight together
            await asyncio.sleep(0.05)
            return web.Response(status=412, text="blocked")
        return web.json_response({"code": 0, "data": {}})

    async def scenario(client):
        bodies = await asyncio.gather(*(client.api_call("/x/test") for _ in range(3)))
        return bodies, client.risk_guard.consecutive

    bodies, consecutive = serve(
        {"/x/test": handler},
        scenario,
        risk_guard=RiskControlGuard(threshold=3, cooldown=0.05),
    )
    assert [b["code"] for b in bodies] == [0, 0, 0]
    assert len(calls) == 6
    assert consecutive == 0


def test_request_timeout_is_transient_and_retried():
    calls = []

    async def handler(request):
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(0.6)
        return web.json_response({"code": 0, "data": {}})

    body = serve(
        {"/x/test": handler},
        lambda c: c.api_call("/x/test"),
        request_timeout=0.2,
    )
    assert body["code"] == 0
    assert len(calls) == 2


def test_request_timeouts_surface_as_transient_when_retries_run_out():
    async def handler(request):
        await asyncio.sleep(0.6)
        return web.json_response({"code": 0, "data": {}})

    with pytest.raises(TransientError):
        serve(
            {"/x/test": handler},
            lambda c: c.api_call("/x/test"),
            request_timeout=0.1,
            retry_policy=RetryPolicy(attempts=2, base_delay=0.01, jitter=0),
        )
