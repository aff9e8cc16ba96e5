"""
Turns URLs into episodes, episodes into streams, and streams into a selection.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from bili_cli.api.client import BiliAPIClient
from bili_cli.exceptions import InvalidRangeError, MalformedResponseError, NoMatchingStreamError
from bili_cli.models.config import CODEC_IDS, DEFAULT_CODEC_PREFERENCE, get_quality_info
from bili_cli.models.media import (
    ContentKind,
    ContentRef,
    Episode,
    IdKind,
    Stream,
    StreamSelection,
    TrackType,
)
from bili_cli.utils.formatting import get_episode_title
from bili_cli.utils.ranges import apply_range
from bili_cli.utils.url import is_short_url, parse_bili_url

log = logging.getLogger(__name__)

# Request the highest tier; the server lists everything the account may access
MAX_QUALITY = 127

_CODEC_PREFIXES = {"avc": "avc", "hev": "hevc", "hvc": "hevc", "av01": "av1"}


@dataclass(frozen=True)
class ContentInfo:
    """Parsed content without any downloads: used by `info` and the service layer."""

    ref: ContentRef
    title: str
    episodes: list[Episode]


def _codec_from(item: dict[str, Any]) -> str:
    if (codec := CODEC_IDS.get(item.get("codecid"))) is not None:
        return codec
    codecs = str(item.get("codecs") or "")
    for prefix, name in _CODEC_PREFIXES.items():
        if codecs.startswith(prefix):
            return name
    return codecs.split(".")[0] or "unknown"


def _dash_stream(item: dict[str, Any], track: TrackType) -> Stream:
    return Stream(
        track=track,
        quality=int(item["id"]),
        codec=_codec_from(item) if track is TrackType.VIDEO else str(item.get("codecs") or "mp4a"),
        url=item.get("base_url") or item.get("baseUrl") or "",
        backup_urls=tuple(item.get("backup_url") or item.get("backupUrl") or ()),
        bandwidth=int(item.get("bandwidth") or 0),
        container="m4s",
    )


def _progressive_stream(parts: list[dict[str, Any]], quality: int, fmt: str) -> Stream:
    parts = sorted(parts, key=lambda d: d.get("order", 0))
    if len(parts) > 1:
        log.warning(
            f"[yellow]⚠ Progressive stream has {len(parts)} parts; only the first "
            "is downloaded.[/yellow]"
        )
    first = parts[0]
    container = "mp4" if "mp4" in fmt else "flv"
    return Stream(
        track=TrackType.COMBINED,
        quality=quality,
        codec="avc",
        url=first["url"],
        backup_urls=tuple(first.get("backup_url") or ()),
        size=first.get("size") or None,
        container=container,
    )


def parse_play_data(data: dict[str, Any]) -> list[Stream]:
    """
    Extracts streams from a playurl payload. DASH is preferred; progressive
    (`durl`/`durls`) payloads yield combined audio+video streams.
    """
    if dash := data.get("dash"):
        streams = [
            _dash_stream(v, TrackType.VIDEO) for v in dash.get("video") or []
        ]
        audio = list(dash.get("audio") or [])
        audio += (dash.get("dolby") or {}).get("audio") or []
        if flac := (dash.get("flac") or {}).get("audio"):
            audio.append(flac)
        streams += [_dash_stream(a, TrackType.AUDIO) for a in audio]
        return [s for s in streams if s.url]

    fmt = str(data.get("format") or "flv")
    if durls := data.get("durls"):
        return [
            _progressive_stream(entry["durl"], int(entry["quality"]), fmt)
            for entry in durls
            if entry.get("durl")
        ]
    if durl := data.get("durl"):
        return [_progressive_stream(durl, int(data.get("quality") or 0), fmt)]

    return []


def select_streams(
    episode: Episode,
    quality: int,
    codec_preference: Optional[Sequence[str]] = None,
) -> StreamSelection:
    """
    Applies the quality policy: the best video at or below `quality`, codec by
    preference among equal tiers, and the highest-bandwidth audio.

    Raises:
        NoMatchingStreamError: If no video stream is at or below the requested tier.
    """
    videos = episode.video_streams
    if not videos:
        raise NoMatchingStreamError(f"'{episode.title}' has no playable video streams.")

    eligible = [s for s in videos if s.quality <= quality]
    if not eligible:
        lowest = min(s.quality for s in videos)
        raise NoMatchingStreamError(
            f"No stream at or below {get_quality_info(quality)['name']} for "
            f"'{episode.title}' (lowest available is {get_quality_info(lowest)['name']})."
        )

    best_quality = max(s.quality for s in eligible)
    rank = {c: i for i, c in enumerate(codec_preference or DEFAULT_CODEC_PREFERENCE)}
    video = min(
        (s for s in eligible if s.quality == best_quality),
        key=lambda s: (rank.get(s.codec, len(rank)), -s.bandwidth),
    )

    audio = None
    if not video.is_progressive:
        audio = max(episode.audio_streams, key=lambda s: s.bandwidth, default=None)
        if audio is None:
            log.warning(f"[yellow]⚠ '{episode.title}' has no audio stream.[/yellow]")

    return StreamSelection(
        video=video,
        audio=audio,
        requested_quality=quality,
        effective_quality=video.quality,
    )


class ResourceResolver:
    """Resolves content references through the API client."""

    def __init__(self, client: BiliAPIClient):
        self.client = client

    @staticmethod
    def resolve(url: str) -> ContentRef:
        """Pure parse of a URL or bare ID; raises UnsupportedUrlError."""
        return parse_bili_url(url)

    async def expand_short_url(self, url: str) -> str:
        """Follows short-link redirects; other URLs are returned unchanged."""
        if not is_short_url(url):
            return url
        target = url if "://" in url else f"https://{url}"
        expanded = await self.client.resolve_redirect(target)
        log.debug(f"Expanded short link {url} -> {expanded}")
        return expanded

    async def resolve_url(self, url: str) -> ContentRef:
        return self.resolve(await self.expand_short_url(url))

    async def fetch_content(
        self, ref: ContentRef, episode_range: Optional[str] = None
    ) -> ContentInfo:
        """Fetches the content title and its (filtered) episodes."""
        if ref.kind is ContentKind.VIDEO:
            title, episodes = await self._video_episodes(ref)
        else:
            title, episodes = await self._season_episodes(ref)

        if not episodes:
            raise MalformedResponseError(f"No episodes found for {ref}.")

        if episode_range:
            episodes = apply_range(episodes, episode_range)
        elif ref.kind is ContentKind.VIDEO and ref.sub_index:
            episodes = [e for e in episodes if e.ordinal == ref.sub_index]
            if not episodes:
                raise InvalidRangeError(f"Part p{ref.sub_index} does not exist.")
        elif ref.id_kind is IdKind.EPISODE:
            episodes = [e for e in episodes if e.ep_id == int(ref.primary_id)]
            if not episodes:
                raise InvalidRangeError(f"Episode ep{ref.primary_id} was not found.")

        return ContentInfo(ref=ref, title=title, episodes=episodes)

    async def fetch_episodes(
        self, ref: ContentRef, episode_range: Optional[str] = None
    ) -> list[Episode]:
        return (await self.fetch_content(ref, episode_range)).episodes

    async def parse_info(
        self, url: str, episode_range: Optional[str] = None
    ) -> ContentInfo:
        """Resolves a URL and lists its episodes without downloading anything."""
        return await self.fetch_content(await self.resolve_url(url), episode_range)

    async def _video_episodes(self, ref: ContentRef) -> tuple[str, list[Episode]]:
        if ref.id_kind is IdKind.BVID:
            view = await self.client.fetch_video_view(bvid=ref.primary_id)
        else:
            view = await self.client.fetch_video_view(aid=int(ref.primary_id))

        title = view.get("title", "")
        pages = view.get("pages") or []
        multipart = len(pages) > 1
        return title, [
            Episode(
                kind=ContentKind.VIDEO,
                title=(page.get("part") or title) if multipart else title,
                ordinal=int(page.get("page", i)),
                duration=int(page.get("duration", 0)),
                cid=int(page["cid"]),
                parent_title=title,
                aid=view.get("aid"),
                bvid=view.get("bvid"),
            )
            for i, page in enumerate(pages, start=1)
        ]

    async def _season_episodes(self, ref: ContentRef) -> tuple[str, list[Episode]]:
        season_id = int(ref.primary_id) if ref.id_kind is IdKind.SEASON else None
        ep_id = int(ref.primary_id) if ref.id_kind is IdKind.EPISODE else None

        if ref.kind is ContentKind.SERIES:
            season = await self.client.fetch_series_season(season_id=season_id, ep_id=ep_id)
            # Series durations are reported in milliseconds
            scale = 1000
        else:
            season = await self.client.fetch_course_season(season_id=season_id, ep_id=ep_id)
            scale = 1

        title = season.get("title") or season.get("season_title") or ""
        return title, [
            Episode(
                kind=ref.kind,
                title=get_episode_title(ep),
                ordinal=i,
                duration=int(ep.get("duration") or 0) // scale,
                cid=int(ep["cid"]),
                parent_title=title,
                aid=ep.get("aid"),
                bvid=ep.get("bvid"),
                ep_id=int(ep["id"]),
            )
            for i, ep in enumerate(season.get("episodes") or [], start=1)
        ]

    async def fetch_streams(self, episode: Episode, quality: int = MAX_QUALITY) -> Episode:
        """Fetches playback info and returns the episode with its streams attached."""
        if episode.kind is ContentKind.VIDEO:
            data = await self.client.fetch_video_playurl(
                episode.bvid, episode.aid, episode.cid, quality
            )
        elif episode.kind is ContentKind.SERIES:
            data = await self.client.fetch_series_playurl(episode.ep_id, episode.cid, quality)
        else:
            data = await self.client.fetch_course_playurl(
                episode.aid, episode.ep_id, episode.cid, quality
            )

        streams = parse_play_data(data or {})
        if not streams:
            raise NoMatchingStreamError(f"No playable streams for '{episode.title}'.")
        log.debug(
            f"'{episode.title}': {len(streams)} streams, tiers "
            f"{sorted({s.quality for s in streams if s.track is not TrackType.AUDIO})}"
        )
        return episode.with_streams(streams)
