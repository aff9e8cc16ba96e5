"""
WBI request signing.

Signed endpoints expect two extra query parameters: `wts` (a unix timestamp) and
`w_rid`, an MD5 over the sorted, filtered query string concatenated with a
"mixin key" derived from two rotating keys published by the nav endpoint.
"""

import asyncio
import hashlib
import logging
import time
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional
from urllib.parse import quote, urlencode, urlparse

if TYPE_CHECKING:
    from bili_cli.storage.session_store import SessionStore

log = logging.getLogger(__name__)

MIXIN_KEY_ENC_TAB = [
    46, 47, 18, 2, 53, 8, 23, 32, 15, 50, 10, 31, 58, 3, 45, 35,
    27, 43, 5, 49, 33, 9, 42, 19, 29, 28, 14, 39, 12, 38, 41, 13,
    37, 48, 7, 16, 24, 55, 40, 61, 26, 17, 0, 1, 60, 51, 30, 4,
    22, 25, 54, 21, 56, 59, 6, 63, 57, 62, 11, 36, 20, 34, 44, 52,
]  # fmt: skip

FILTERED_CHARS = "!'()*"

DEFAULT_KEY_TTL = 3600.0


def get_mixin_key(img_key: str, sub_key: str) -> str:
    """Permutes the concatenated key pair and keeps the first 32 characters."""
    raw = img_key + sub_key
    return "".join(raw[i] for i in MIXIN_KEY_ENC_TAB)[:32]


def key_from_url(url: str) -> str:
    """Extracts a key from an image URL such as '.../bfs/wbi/<key>.png'."""
    return PurePosixPath(urlparse(url).path).stem


def sign_params(
    params: dict[str, Any], mixin_key: str, wts: Optional[int] = None
) -> dict[str, str]:
    """
    Returns a new parameter dict with `wts` and `w_rid` added.

    Args:
        params: The request's own query parameters.
        mixin_key: The current mixin key.
        wts: Timestamp override, for reproducible signatures.
    """
    signed = {k: str(v) for k, v in params.items()}
    signed["wts"] = str(int(time.time()) if wts is None else wts)
    signed = {
        k: "".join(ch for ch in signed[k] if ch not in FILTERED_CHARS)
        for k in sorted(signed)
    }
    query = urlencode(signed, quote_via=quote)
    signed["w_rid"] = hashlib.md5((query + mixin_key).encode("utf-8")).hexdigest()
    return signed


class WbiKeyCache:
    """
    Holds the current mixin key with a TTL. Refreshes are serialized behind one
    lock so concurrent callers share a single nav request.
    """

    def __init__(
        self,
        fetch_keys: Callable[[], Awaitable[tuple[str, str]]],
        session_store: Optional["SessionStore"] = None,
        ttl: float = DEFAULT_KEY_TTL,
    ):
        self._fetch_keys = fetch_keys
        self._session_store = session_store
        self.ttl = ttl
        self._key: Optional[str] = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()
        self.refresh_count = 0
        self._seed_from_session()

    def _seed_from_session(self) -> None:
        session = self._session_store.current if self._session_store else None
        if session and session.signing_key:
            self._key = session.signing_key
            self._fetched_at = session.signing_key_at
            log.debug("Seeded WBI key from stored session.")

    def _is_fresh(self) -> bool:
        return self._key is not None and time.time() - self._fetched_at < self.ttl

    async def get(self) -> str:
        """Returns a valid mixin key, refreshing it if it has expired."""
        if self._is_fresh():
            return self._key
        async with self._lock:
            if self._is_fresh():
                return self._key
            return await self._refresh_locked()

    async def refresh(self, stale_key: Optional[str] = None) -> str:
        """
        Forces a refresh after a signature rejection. If another caller already
        replaced `stale_key`, the newer key is returned without a second fetch.
        """
        async with self._lock:
            if stale_key is not None and self._key not in (None, stale_key):
                return self._key
            return await self._refresh_locked()

    async def _refresh_locked(self) -> str:
        img_key, sub_key = await self._fetch_keys()
        self._key = get_mixin_key(img_key, sub_key)
        self._fetched_at = time.time()
        self.refresh_count += 1
        log.debug("Refreshed WBI signing key.")
        if self._session_store is not None:
            await self._session_store.update_signing_key_async(self._key)
        return self._key
