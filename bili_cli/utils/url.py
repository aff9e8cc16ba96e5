"""
Parses bilibili URLs and bare IDs into content references.
"""

import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from bili_cli.exceptions import UnsupportedUrlError
from bili_cli.models.media import ContentKind, ContentRef, IdKind

SHORT_LINK_HOSTS = ("b23.tv", "bili2233.cn")
SITE_HOSTS = ("bilibili.com",)

_BVID = r"BV[0-9A-Za-z]{10}"

_PATH_PATTERNS = [
    (re.compile(rf"^/video/(?P<id>{_BVID})"), ContentKind.VIDEO, IdKind.BVID),
    (re.compile(r"^/video/av(?P<id>\d+)", re.I), ContentKind.VIDEO, IdKind.AID),
    (re.compile(r"^/bangumi/play/ep(?P<id>\d+)"), ContentKind.SERIES, IdKind.EPISODE),
    (re.compile(r"^/bangumi/play/ss(?P<id>\d+)"), ContentKind.SERIES, IdKind.SEASON),
    (re.compile(r"^/bangumi/media/md(?P<id>\d+)"), None, None),
    (re.compile(r"^/cheese/play/ep(?P<id>\d+)"), ContentKind.COURSE, IdKind.EPISODE),
    (re.compile(r"^/cheese/play/ss(?P<id>\d+)"), ContentKind.COURSE, IdKind.SEASON),
]

_BARE_PATTERNS = [
    (re.compile(rf"^(?P<id>{_BVID})$"), ContentKind.VIDEO, IdKind.BVID),
    (re.compile(r"^av(?P<id>\d+)$", re.I), ContentKind.VIDEO, IdKind.AID),
    (re.compile(r"^ep(?P<id>\d+)$", re.I), ContentKind.SERIES, IdKind.EPISODE),
    (re.compile(r"^ss(?P<id>\d+)$", re.I), ContentKind.SERIES, IdKind.SEASON),
    (re.compile(r"^cp(?P<id>\d+)$", re.I), ContentKind.COURSE, IdKind.EPISODE),
    (re.compile(r"^cs(?P<id>\d+)$", re.I), ContentKind.COURSE, IdKind.SEASON),
]


def is_short_url(url: str) -> bool:
    host = urlparse(_with_scheme(url)).hostname or ""
    return any(host == h or host.endswith("." + h) for h in SHORT_LINK_HOSTS)


def _with_scheme(url: str) -> str:
    return url if "://" in url else f"https://{url}"


def _page_index(query: str) -> Optional[int]:
    values = parse_qs(query).get("p")
    if values and values[0].isdigit() and int(values[0]) > 0:
        return int(values[0])
    return None


def parse_bili_url(url: str) -> ContentRef:
    """
    Parses a bilibili URL or a bare ID into a ContentRef.

    Accepts www./m. hosts and bare IDs: BV..., av..., ep..., ss..., and cp.../cs...
    for course episodes and seasons.

    Raises:
        UnsupportedUrlError: If the input matches no known pattern.
    """
    text = url.strip()
    for pattern, kind, id_kind in _BARE_PATTERNS:
        if match := pattern.match(text):
            return ContentRef(kind=kind, primary_id=match.group("id"), id_kind=id_kind)

    parsed = urlparse(_with_scheme(text))
    host = (parsed.hostname or "").lower()
    if not any(host == h or host.endswith("." + h) for h in SITE_HOSTS):
        raise UnsupportedUrlError(f"Not a bilibili URL: '{url}'")

    for pattern, kind, id_kind in _PATH_PATTERNS:
        if match := pattern.match(parsed.path):
            if kind is None:
                break
            sub_index = _page_index(parsed.query) if kind is ContentKind.VIDEO else None
            return ContentRef(
                kind=kind,
                primary_id=match.group("id"),
                id_kind=id_kind,
                sub_index=sub_index,
            )

    raise UnsupportedUrlError(f"Unsupported bilibili URL: '{url}'")
