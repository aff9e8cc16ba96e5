"""
Pydantic models for the persisted authentication record.
"""

import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CookieEntry(BaseModel):
    """A single cookie as captured at login time."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str
    domain: str = ".bilibili.com"
    path: str = "/"
    expires: Optional[int] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires is not None and self.expires <= (now or time.time())


class Session(BaseModel):
    """
    An authentication record: the cookie set plus the derived signing key.
    Instances are immutable; updates produce a new Session.
    """

    model_config = ConfigDict(frozen=True)

    cookies: tuple[CookieEntry, ...] = ()
    user_id: Optional[int] = None
    signing_key: Optional[str] = None
    signing_key_at: float = 0.0
    issued_at: float = Field(default_factory=time.time)
    refreshed_at: float = Field(default_factory=time.time)
    valid: bool = True

    def cookie_header(self) -> str:
        """Builds the Cookie header value from all unexpired cookies."""
        now = time.time()
        return "; ".join(
            f"{c.name}={c.value}" for c in self.cookies if not c.is_expired(now)
        )

    def get_cookie(self, name: str) -> Optional[str]:
        for cookie in self.cookies:
            if cookie.name == name:
                return cookie.value
        return None

    @classmethod
    def from_cookie_string(cls, raw: str) -> "Session":
        """
        Builds a session from an explicit credential: either a full Cookie header
        ("SESSDATA=...; bili_jct=...") or a bare SESSDATA value.
        """
        raw = raw.strip()
        if "=" not in raw:
            pairs = [("SESSDATA", raw)]
        else:
            pairs = []
            for part in raw.split(";"):
                name, sep, value = part.strip().partition("=")
                if sep and name:
                    pairs.append((name.strip(), value.strip()))

        cookies = tuple(CookieEntry(name=n, value=v) for n, v in pairs)
        user_id = next(
            (int(c.value) for c in cookies if c.name == "DedeUserID" and c.value.isdigit()),
            None,
        )
        return cls(cookies=cookies, user_id=user_id)
