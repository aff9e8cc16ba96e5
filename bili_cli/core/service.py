"""
A transport-independent operation surface.

Every method returns plain data (dicts and lists) so it can be exposed by any
front end: the CLI, a script, or a remote-control server.
"""

import logging
from dataclasses import asdict
from typing import Any, Optional

from bili_cli.api.auth import QRAuthenticator
from bili_cli.api.client import BiliAPIClient
from bili_cli.media.merger import Merger
from bili_cli.models.config import DownloadConfig
from bili_cli.storage.session_store import SessionStore

from .download_manager import DownloadManager

log = logging.getLogger(__name__)


class BiliService:
    """A thin adapter over `DownloadManager` and `QRAuthenticator`."""

    def __init__(
        self,
        config: DownloadConfig,
        session_store: SessionStore,
        api_client: Optional[BiliAPIClient] = None,
        merger: Optional[Merger] = None,
    ):
        self.config = config
        self.session_store = session_store
        self.client = api_client or BiliAPIClient.from_config(config, session_store)
        self.authenticator = QRAuthenticator(self.client, session_store)
        self.manager = DownloadManager(config, self.client, merger=merger)

    async def __aenter__(self) -> "BiliService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.close()

    # Downloads
    async def download(
        self,
        url: str,
        quality: Optional[str] = None,
        parts: Optional[str] = None,
        output_dir: Optional[str] = None,
        wait: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Resolves `url` and schedules one job per selected episode.

        Args:
            wait: Block until the submitted jobs finish instead of returning
                immediately after scheduling.
        """
        jobs = await self.manager.submit(url, quality, parts, output_dir)
        if wait:
            await self.manager.wait()
        return [job.snapshot() for job in jobs]

    async def parse_info(self, url: str, parts: Optional[str] = None) -> dict[str, Any]:
        content = await self.manager.resolver.parse_info(url, parts)
        return {
            "kind": content.ref.kind.value,
            "id": str(content.ref),
            "title": content.title,
            "episodes": [
                {
                    "ordinal": e.ordinal,
                    "title": e.title,
                    "duration": e.duration,
                    "key": e.key,
                }
                for e in content.episodes
            ],
        }

    def list_downloads(self) -> list[dict[str, Any]]:
        return self.manager.get_progress()

    def cancel_download(self, job_id: str) -> dict[str, Any]:
        return self.manager.cancel(job_id).snapshot()

    def retry_download(self, job_id: str) -> dict[str, Any]:
        return self.manager.retry(job_id).snapshot()

    async def wait(self) -> list[dict[str, Any]]:
        await self.manager.wait()
        return self.manager.get_progress()

    # Authentication
    async def login_status(self) -> dict[str, Any]:
        return asdict(await self.authenticator.status())

    async def qr_login_start(self) -> dict[str, Any]:
        return asdict(await self.authenticator.start_qr_login())

    async def qr_login_poll(self, qrcode_key: str) -> dict[str, Any]:
        result = await self.authenticator.poll_qr_login(qrcode_key)
        return {
            "status": result.status.name.lower(),
            "message": result.message,
            "logged_in": result.session is not None,
        }

    async def qr_login(self, timeout: float = 180.0) -> dict[str, Any]:
        session = await self.authenticator.qr_login(timeout=timeout)
        return {"logged_in": True, "user_id": session.user_id}

    async def login_with_cookie(self, cookie: str) -> dict[str, Any]:
        return asdict(await self.authenticator.login_with_cookie(cookie))

    def logout(self) -> dict[str, Any]:
        self.authenticator.logout()
        return {"logged_in": False}
