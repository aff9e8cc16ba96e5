"""
Async API client with WBI signing, response classification and risk-control protection.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from http.cookies import Morsel
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable, Optional
from urllib.parse import quote, urlencode

import aiohttp

from bili_cli.exceptions import (
    AccessUrlExpiredError,
    ApiResponseError,
    AuthExpiredError,
    AuthRequiredError,
    MalformedResponseError,
    RiskControlError,
    TransientError,
)
from bili_cli.models.session import Session

from .rate_limiter import AdaptiveRateLimiter
from .risk_control import RetryPolicy, RiskControlGuard
from .signer import WbiKeyCache, key_from_url, sign_params

if TYPE_CHECKING:
    from bili_cli.models.config import DownloadConfig
    from bili_cli.storage.session_store import SessionStore

log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
REFERER = "https://www.bilibili.com/"

AUTH_CODES = {-101, -111}
RISK_CODES = {-352, -412, -509, -799}
RISK_STATUSES = {412, 429}
EXPIRED_MEDIA_STATUSES = {403, 404, 410}

ERROR_MESSAGES = {
    -400: "Bad request",
    -403: "Access denied",
    -404: "Content not found",
    -500: "Server error",
    -10403: "VIP membership required",
    6001: "Not available in your region",
    62002: "Video is not visible",
    62004: "Video is under review",
    62012: "Video is visible to its owner only",
}


@dataclass
class ApiResponse:
    """A decoded JSON body together with the cookies the server set."""

    body: dict[str, Any]
    cookies: dict[str, Morsel] = field(default_factory=dict)

    @property
    def code(self) -> int:
        return self.body["code"]


class BiliAPIClient:
    """
    Async client for the bilibili web API.

    Features:
    - WBI signing with a shared, lazily refreshed key cache
    - Response classification (auth, risk control, transient, malformed)
    - Risk-control cooldown guard and adaptive rate limiting
    - Ranged media fetches against the CDN
    """

    API_BASE = "https://api.bilibili.com"
    PASSPORT_BASE = "https://passport.bilibili.com"

    def __init__(
        self,
        session_store: Optional["SessionStore"] = None,
        *,
        session_override: Optional[Session] = None,
        max_workers: int = 8,
        request_timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        risk_guard: Optional[RiskControlGuard] = None,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        api_base: Optional[str] = None,
        passport_base: Optional[str] = None,
    ):
        """
        Initializes the API client.

        Args:
            session_store: The persisted session, read as a snapshot per request.
            session_override: An explicit credential that takes precedence over the
                store and is never persisted.
            max_workers: The number of concurrent segment fetches, used to tune the
                connection pool.
            request_timeout: Per-request timeout in seconds.
            api_base: Base URL override for the API host.
            passport_base: Base URL override for the login host.
        """
        self.session_store = session_store
        self.session_override = session_override
        self.max_workers = max_workers
        self.request_timeout = request_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.risk_guard = risk_guard or RiskControlGuard()
        self.api_base = (api_base or self.API_BASE).rstrip("/")
        self.passport_base = (passport_base or self.PASSPORT_BASE).rstrip("/")

        self._session: Optional[aiohttp.ClientSession] = None
        self._rate_limiter = rate_limiter or AdaptiveRateLimiter()
        self.wbi_keys = WbiKeyCache(self.fetch_wbi_keys, session_store)

    @classmethod
    def from_config(
        cls, config: "DownloadConfig", session_store: Optional["SessionStore"] = None
    ) -> "BiliAPIClient":
        """Builds a client from the validated application configuration."""
        override = Session.from_cookie_string(config.cookie) if config.cookie else None
        return cls(
            session_store,
            session_override=override,
            max_workers=config.max_workers,
            request_timeout=config.request_timeout,
            retry_policy=RetryPolicy(
                attempts=config.retry_attempts, base_delay=config.retry_base_delay
            ),
            risk_guard=RiskControlGuard(
                threshold=config.risk_threshold, cooldown=config.risk_cooldown
            ),
        )

    @property
    def session(self) -> Optional[Session]:
        """The session snapshot the next request will carry."""
        if self.session_override is not None:
            return self.session_override
        return self.session_store.current if self.session_store else None

    async def _initialize_session(self) -> None:
        """Ensures an active aiohttp session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.max_workers * 2,
                limit_per_host=self.max_workers,
                ttl_dns_cache=300,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                # Cookies are sent from the Session snapshot, never from a jar
                cookie_jar=aiohttp.DummyCookieJar(),
                headers={
                    "User-Agent": USER_AGENT,
                    "Referer": REFERER,
                    "Accept-Encoding": "gzip, deflate",
                },
                timeout=aiohttp.ClientTimeout(
                    total=self.request_timeout, connect=min(15, self.request_timeout)
                ),
            )

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "BiliAPIClient":
        await self._initialize_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def record_risk_control(self, reason: str, epoch: int) -> None:
        """
        Reports a risk-control response to a request sent under `epoch`. The
        caller retries after `risk_guard.wait()`.

        Raises:
            RiskControlBlockedError: When the guard's threshold is reached.
        """
        if await self.risk_guard.record(reason, epoch):
            self._rate_limiter.on_risk_control()

    async def record_success(self, epoch: int) -> None:
        await self.risk_guard.reset(epoch)
        self._rate_limiter.on_success()

    def _headers(self, session: Optional[Session]) -> dict[str, str]:
        if session is None:
            return {}
        cookie = session.cookie_header()
        return {"Cookie": cookie} if cookie else {}

    async def api_call(
        self,
        endpoint: str,
        *,
        signed: bool = False,
        base: Optional[str] = None,
        allow_codes: Iterable[int] = (),
        as_session: Optional[Session] = None,
        **params: Any,
    ) -> dict[str, Any]:
        """
        Makes an API call and returns the decoded JSON body.

        Args:
            endpoint: Path such as '/x/web-interface/view'.
            signed: Whether to add WBI `wts`/`w_rid` parameters.
            base: Host override (e.g. the passport host).
            allow_codes: Non-zero business codes the caller handles itself.
            as_session: Sends this session instead of the current one.
        """
        response = await self.api_call_raw(
            endpoint,
            signed=signed,
            base=base,
            allow_codes=allow_codes,
            as_session=as_session,
            **params,
        )
        return response.body

    async def api_call_raw(
        self,
        endpoint: str,
        *,
        signed: bool = False,
        base: Optional[str] = None,
        allow_codes: Iterable[int] = (),
        as_session: Optional[Session] = None,
        **params: Any,
    ) -> ApiResponse:
        """Like `api_call`, but also returns the cookies set by the response."""
        await self._initialize_session()
        url = (base or self.api_base) + endpoint
        allowed = set(allow_codes)
        transient_attempts = 0
        resigned = False

        while True:
            epoch = await self.risk_guard.wait()
            await self._rate_limiter.acquire()

            session = as_session or self.session
            query = {k: v for k, v in params.items() if v is not None}
            mixin_key = None
            if signed:
                mixin_key = await self.wbi_keys.get()
                query = sign_params(query, mixin_key)

            try:
                response = await self._send(url, query, session)
            except TransientError as e:
                transient_attempts += 1
                if transient_attempts >= self.retry_policy.attempts:
                    log.debug(f"Giving up on {endpoint}: {e}")
                    raise
                delay = self.retry_policy.delay(transient_attempts)
                log.debug(
                    f"Transient failure on {endpoint} ({e}); retry "
                    f"{transient_attempts}/{self.retry_policy.attempts - 1} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue
            except RiskControlError as e:
                await self.record_risk_control(f"{endpoint}: {e}", epoch)
                continue

            await self.record_success(epoch)
            code = response.code
            if code == 0 or code in allowed:
                return response

            if signed and code == -403 and not resigned:
                log.debug(f"Signature rejected on {endpoint}; refreshing WBI key.")
                resigned = True
                await self.wbi_keys.refresh(stale_key=mixin_key)
                continue

            error = self._classify_error(endpoint, response.body, session)
            if isinstance(error, AuthExpiredError) and self.session_override is None:
                if self.session_store is not None:
                    await self.session_store.invalidate_async()
            raise error

    async def _send(
        self, url: str, query: dict[str, Any], session: Optional[Session]
    ) -> ApiResponse:
        """Performs one GET and classifies transport-level outcomes."""
        if query:
            url = f"{url}?{urlencode(query, quote_via=quote)}"
        start_time = time.monotonic()
        try:
            async with self._session.get(url, headers=self._headers(session)) as r:
                if r.status in RISK_STATUSES:
                    raise RiskControlError(f"HTTP {r.status}")
                if r.status >= 500:
                    raise TransientError(f"HTTP {r.status} from {r.url.path}")
                text = await r.text()
                cookies = dict(r.cookies)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"{type(e).__name__}: {e}") from e

        log.debug(
            f"GET {url.split('?')[0]} -> {r.status} "
            f"({(time.monotonic() - start_time) * 1000:.0f}ms)"
        )

        try:
            body = json.loads(text)
        except ValueError as e:
            raise MalformedResponseError(
                f"Response from {r.url.path} is not JSON (HTTP {r.status})."
            ) from e
        if not isinstance(body, dict) or not isinstance(body.get("code"), int):
            raise MalformedResponseError(
                f"Response from {r.url.path} has no 'code' field."
            )

        data = body.get("data")
        if body["code"] in RISK_CODES or (
            isinstance(data, dict) and data.get("v_voucher")
        ):
            raise RiskControlError(f"code {body['code']}")

        return ApiResponse(body=body, cookies=cookies)

    def _classify_error(
        self, endpoint: str, body: dict[str, Any], session: Optional[Session]
    ) -> Exception:
        code = body["code"]
        message = body.get("message") or body.get("msg") or ""

        if code in AUTH_CODES:
            if session is None:
                return AuthRequiredError(
                    "This content requires a logged-in session. Run 'bili-cli login'."
                )
            return AuthExpiredError(
                "The session was rejected by the server and is no longer valid."
            )

        cause = ERROR_MESSAGES.get(code, "Request failed")
        detail = f" ({message})" if message and message != str(code) else ""
        return ApiResponseError(code, f"{cause}{detail} [code {code} on {endpoint}]")

    @asynccontextmanager
    async def open_media(
        self, url: str, start: Optional[int] = None, end: Optional[int] = None
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """
        Opens a (ranged) media GET against the CDN and yields the response for
        streaming. Errors raised while reading the body are classified too.
        """
        await self._initialize_session()
        headers = {}
        if start is not None:
            headers["Range"] = f"bytes={start}-{'' if end is None else end}"
        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=self.request_timeout, sock_read=self.request_timeout
        )
        try:
            async with self._session.get(url, headers=headers, timeout=timeout) as r:
                if r.status in EXPIRED_MEDIA_STATUSES:
                    raise AccessUrlExpiredError(
                        f"Media URL rejected with HTTP {r.status}; it has likely expired."
                    )
                if r.status in RISK_STATUSES:
                    raise RiskControlError(f"HTTP {r.status} from media host")
                if r.status >= 500:
                    raise TransientError(f"HTTP {r.status} from media host")
                if r.status not in (200, 206):
                    raise MalformedResponseError(
                        f"Unexpected HTTP {r.status} from media host."
                    )
                yield r
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"{type(e).__name__}: {e}") from e

    async def resolve_redirect(self, url: str) -> str:
        """Follows redirects (short links) and returns the final URL."""
        await self._initialize_session()
        try:
            async with self._session.get(url, allow_redirects=True) as r:
                return str(r.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"Could not expand {url}: {e}") from e

    # Public API Methods
    async def fetch_nav(self, as_session: Optional[Session] = None) -> dict[str, Any]:
        """The nav endpoint answers -101 when logged out but still carries wbi_img."""
        return await self.api_call(
            "/x/web-interface/nav", allow_codes=(-101,), as_session=as_session
        )

    async def fetch_wbi_keys(self) -> tuple[str, str]:
        nav = await self.fetch_nav()
        wbi_img = (nav.get("data") or {}).get("wbi_img") or {}
        img_url, sub_url = wbi_img.get("img_url"), wbi_img.get("sub_url")
        if not img_url or not sub_url:
            raise MalformedResponseError("Nav response does not contain WBI keys.")
        return key_from_url(img_url), key_from_url(sub_url)

    async def fetch_video_view(
        self, bvid: Optional[str] = None, aid: Optional[int] = None
    ) -> dict[str, Any]:
        body = await self.api_call(
            "/x/web-interface/wbi/view", signed=True, bvid=bvid, aid=aid
        )
        return body["data"]

    async def fetch_video_playurl(
        self, bvid: Optional[str], aid: Optional[int], cid: int, qn: int
    ) -> dict[str, Any]:
        body = await self.api_call(
            "/x/player/wbi/playurl",
            signed=True,
            bvid=bvid,
            avid=aid if not bvid else None,
            cid=cid,
            qn=qn,
            fnval=4048,
            fnver=0,
            fourk=1,
        )
        return body["data"]

    async def fetch_series_season(
        self, season_id: Optional[int] = None, ep_id: Optional[int] = None
    ) -> dict[str, Any]:
        body = await self.api_call(
            "/pgc/view/web/season", season_id=season_id, ep_id=ep_id
        )
        return body["result"]

    async def fetch_series_playurl(self, ep_id: int, cid: int, qn: int) -> dict[str, Any]:
        body = await self.api_call(
            "/pgc/player/web/playurl",
            ep_id=ep_id,
            cid=cid,
            qn=qn,
            fnval=4048,
            fnver=0,
            fourk=1,
        )
        return body["result"]

    async def fetch_course_season(
        self, season_id: Optional[int] = None, ep_id: Optional[int] = None
    ) -> dict[str, Any]:
        body = await self.api_call(
            "/pugv/view/web/season", season_id=season_id, ep_id=ep_id
        )
        return body["data"]

    async def fetch_course_playurl(
        self, aid: Optional[int], ep_id: int, cid: int, qn: int
    ) -> dict[str, Any]:
        body = await self.api_call(
            "/pugv/player/web/playurl",
            avid=aid,
            ep_id=ep_id,
            cid=cid,
            qn=qn,
            fnval=4048,
            fnver=0,
            fourk=1,
        )
        return body["data"]
