"""
Handles authentication: QR-code login, explicit cookie login, session status
checks and logout.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional
from urllib.parse import parse_qsl, urlparse

from bili_cli.exceptions import AuthRequiredError, QrLoginError
from bili_cli.models.session import CookieEntry, Session

if TYPE_CHECKING:
    from bili_cli.storage.session_store import SessionStore

    from .client import ApiResponse, BiliAPIClient

log = logging.getLogger(__name__)

QR_GENERATE_ENDPOINT = "/x/passport-login/web/qrcode/generate"
QR_POLL_ENDPOINT = "/x/passport-login/web/qrcode/poll"

# Cookies that make up a web login
LOGIN_COOKIE_NAMES = ("SESSDATA", "bili_jct", "DedeUserID", "DedeUserID__ckMd5", "sid")


class QrStatus(Enum):
    """States reported by the QR poll endpoint."""

    WAITING_FOR_SCAN = 86101
    PENDING_CONFIRM = 86090
    EXPIRED = 86038
    LOGGED_IN = 0


@dataclass(frozen=True)
class QrTicket:
    """A generated QR login: the URL to encode and the key to poll with."""

    url: str
    qrcode_key: str


@dataclass(frozen=True)
class QrPollResult:
    status: QrStatus
    message: str = ""
    session: Optional[Session] = None


@dataclass(frozen=True)
class LoginStatus:
    """The outcome of checking the current session against the nav endpoint."""

    logged_in: bool
    user_id: Optional[int] = None
    username: str = ""
    vip: bool = False
    source: str = "none"


class QRAuthenticator:
    """
    Manages the authentication flow for the API client.
    """

    def __init__(self, api_client: "BiliAPIClient", session_store: "SessionStore"):
        """
        Initializes the authenticator.

        Args:
            api_client: A reference to the main BiliAPIClient instance.
            session_store: Where a successful login is persisted.
        """
        self._api_client = api_client
        self._store = session_store

    async def start_qr_login(self) -> QrTicket:
        """Requests a new QR login ticket."""
        body = await self._api_client.api_call(
            QR_GENERATE_ENDPOINT, base=self._api_client.passport_base
        )
        data = body.get("data") or {}
        if not data.get("url") or not data.get("qrcode_key"):
            raise QrLoginError("QR login response is missing the URL or key.")
        log.debug(f"Generated QR login ticket {data['qrcode_key'][:8]}...")
        return QrTicket(url=data["url"], qrcode_key=data["qrcode_key"])

    async def poll_qr_login(self, qrcode_key: str) -> QrPollResult:
        """
        Polls a QR ticket once. On success the new session is saved and returned
        with the result.
        """
        response = await self._api_client.api_call_raw(
            QR_POLL_ENDPOINT,
            base=self._api_client.passport_base,
            qrcode_key=qrcode_key,
        )
        data = response.body.get("data") or {}
        try:
            status = QrStatus(data.get("code"))
        except ValueError:
            raise QrLoginError(
                f"Unknown QR login state {data.get('code')}: {data.get('message', '')}"
            ) from None

        if status is not QrStatus.LOGGED_IN:
            return QrPollResult(status=status, message=data.get("message", ""))

        session = self._session_from_login(response, data)
        if not session.get_cookie("SESSDATA"):
            raise QrLoginError("Login succeeded but no SESSDATA cookie was returned.")
        await self._store.save_async(session)
        log.info("[green]✓ Login successful.[/green]")
        return QrPollResult(status=status, message="Logged in", session=session)

    async def qr_login(
        self,
        timeout: float = 180.0,
        interval: float = 1.0,
        on_ticket: Optional[Callable[[QrTicket], None]] = None,
        on_status: Optional[Callable[[QrStatus], None]] = None,
    ) -> Session:
        """
        Runs the complete QR flow: generate, report the ticket, then poll until the
        login is confirmed, the code expires, or `timeout` elapses.
        """
        ticket = await self.start_qr_login()
        if on_ticket:
            on_ticket(ticket)

        deadline = time.monotonic() + timeout
        last_status = None
        while time.monotonic() < deadline:
            result = await self.poll_qr_login(ticket.qrcode_key)
            if result.status is not last_status:
                last_status = result.status
                log.debug(f"QR login state: {result.status.name}")
                if on_status:
                    on_status(result.status)

            if result.status is QrStatus.LOGGED_IN:
                return result.session
            if result.status is QrStatus.EXPIRED:
                raise QrLoginError("The QR code has expired. Please try again.")
            await asyncio.sleep(interval)

        raise QrLoginError(f"QR login timed out after {timeout:.0f}s.")

    async def login_with_cookie(self, cookie: str) -> LoginStatus:
        """
        Validates an explicit credential against the nav endpoint and persists it.

        Raises:
            AuthRequiredError: If the credential is not accepted by the server.
        """
        candidate = Session.from_cookie_string(cookie)
        if not candidate.get_cookie("SESSDATA"):
            raise AuthRequiredError("The cookie does not contain a SESSDATA value.")

        nav = await self._api_client.fetch_nav(as_session=candidate)
        status = self._status_from_nav(nav, source="cookie")
        if not status.logged_in:
            raise AuthRequiredError("The supplied cookie was rejected by the server.")

        if candidate.user_id is None and status.user_id is not None:
            candidate = candidate.model_copy(update={"user_id": status.user_id})
        await self._store.save_async(candidate)
        log.info(f"[green]✓ Logged in as {status.username}.[/green]")
        return status

    async def status(self) -> LoginStatus:
        """
        Checks whether the current session is accepted. A rejected stored
        session is invalidated.
        """
        session = self._api_client.session
        if session is None:
            return LoginStatus(logged_in=False)

        source = "cookie" if self._api_client.session_override else "stored"
        nav = await self._api_client.fetch_nav()
        status = self._status_from_nav(nav, source=source)
        if not status.logged_in and source == "stored":
            await self._store.invalidate_async()
        return status

    def logout(self) -> None:
        """Removes the stored session."""
        self._store.clear()
        log.info("Logged out.")

    @staticmethod
    def _status_from_nav(nav: dict[str, Any], source: str) -> LoginStatus:
        data = nav.get("data") or {}
        if nav.get("code") != 0 or not data.get("isLogin"):
            return LoginStatus(logged_in=False, source=source)
        return LoginStatus(
            logged_in=True,
            user_id=data.get("mid"),
            username=data.get("uname", ""),
            vip=bool(data.get("vipStatus")),
            source=source,
        )

    @staticmethod
    def _session_from_login(response: "ApiResponse", data: dict[str, Any]) -> Session:
        """
        Collects login cookies from Set-Cookie headers and from the query string
        of the cross-domain URL returned by the poll endpoint.
        """
        cookies: dict[str, CookieEntry] = {}
        for name, morsel in response.cookies.items():
            expires = None
            if morsel["max-age"]:
                expires = int(time.time()) + int(morsel["max-age"])
            cookies[name] = CookieEntry(
                name=name,
                value=morsel.value,
                domain=morsel["domain"] or ".bilibili.com",
                path=morsel["path"] or "/",
                expires=expires,
            )

        query = dict(parse_qsl(urlparse(data.get("url", "")).query))
        expires = int(query["Expires"]) if query.get("Expires", "").isdigit() else None
        if expires is not None and expires < 10**9:
            expires += int(time.time())
        for name in LOGIN_COOKIE_NAMES:
            if name in query and name not in cookies:
                cookies[name] = CookieEntry(name=name, value=query[name], expires=expires)

        user_id = cookies.get("DedeUserID")
        return Session(
            cookies=tuple(cookies.values()),
            user_id=int(user_id.value) if user_id and user_id.value.isdigit() else None,
        )
