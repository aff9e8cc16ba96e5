"""
Immutable data structures describing resolved content: what a URL points to,
the episodes it contains, and the stream variants each episode offers.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .config import get_quality_info


class ContentKind(Enum):
    """The kind of content a URL refers to."""

    VIDEO = "video"
    SERIES = "series"
    COURSE = "course"


class IdKind(Enum):
    """Which identifier a ContentRef carries."""

    BVID = "bvid"
    AID = "aid"
    EPISODE = "ep"
    SEASON = "ss"


class TrackType(Enum):
    """The elementary track(s) a stream carries."""

    VIDEO = "video"
    AUDIO = "audio"
    COMBINED = "combined"


@dataclass(frozen=True)
class ContentRef:
    """Parsed URL identity."""

    kind: ContentKind
    primary_id: str
    id_kind: IdKind
    sub_index: Optional[int] = None

    def __str__(self) -> str:
        prefix = {IdKind.AID: "av", IdKind.EPISODE: "ep", IdKind.SEASON: "ss"}
        label = f"{prefix.get(self.id_kind, '')}{self.primary_id}"
        if self.sub_index:
            label += f" (p{self.sub_index})"
        return f"{self.kind.value} {label}"


@dataclass(frozen=True)
class Stream:
    """One quality/codec variant of one track of an episode."""

    track: TrackType
    quality: int
    codec: str
    url: str
    backup_urls: tuple[str, ...] = ()
    size: Optional[int] = None
    bandwidth: int = 0
    container: str = "m4s"

    @property
    def is_progressive(self) -> bool:
        return self.track is TrackType.COMBINED

    @property
    def quality_name(self) -> str:
        if self.track is TrackType.AUDIO:
            return f"audio {self.quality}"
        return get_quality_info(self.quality)["name"]

    def stream_key(self, episode_key: str) -> str:
        """A stable identity for checkpoints; excludes the expiring access URL."""
        return f"{episode_key}:{self.track.value}:{self.quality}:{self.codec}"


@dataclass(frozen=True)
class Episode:
    """
    A single downloadable episode. Streams are attached after playback info has
    been fetched by producing a new Episode via `with_streams`.
    """

    kind: ContentKind
    title: str
    ordinal: int
    duration: int
    cid: int
    parent_title: str = ""
    aid: Optional[int] = None
    bvid: Optional[str] = None
    ep_id: Optional[int] = None
    streams: tuple[Stream, ...] = ()

    @property
    def key(self) -> str:
        if self.ep_id is not None:
            return f"ep{self.ep_id}"
        return f"{self.bvid or f'av{self.aid}'}-{self.cid}"

    @property
    def video_streams(self) -> list[Stream]:
        return [s for s in self.streams if s.track is not TrackType.AUDIO]

    @property
    def audio_streams(self) -> list[Stream]:
        return [s for s in self.streams if s.track is TrackType.AUDIO]

    def with_streams(self, streams: list[Stream]) -> "Episode":
        return replace(self, streams=tuple(streams))


@dataclass(frozen=True)
class StreamSelection:
    """The result of applying the quality policy to an episode."""

    video: Stream
    audio: Optional[Stream]
    requested_quality: int
    effective_quality: int

    @property
    def downgraded(self) -> bool:
        return self.effective_quality < self.requested_quality


@dataclass(frozen=True)
class Segment:
    """An inclusive byte range of a stream."""

    index: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class Manifest:
    """The immutable segment layout of one stream."""

    total_size: int
    segments: tuple[Segment, ...] = field(default_factory=tuple)

    @classmethod
    def build(cls, total_size: int, segment_size: Optional[int]) -> "Manifest":
        """
        Splits `total_size` bytes into contiguous segments. A `segment_size` of
        None produces a single full-range segment.
        """
        if total_size <= 0:
            return cls(total_size=0, segments=())
        step = segment_size or total_size
        segments = tuple(
            Segment(index=i, start=start, end=min(start + step, total_size) - 1)
            for i, start in enumerate(range(0, total_size, step))
        )
        return cls(total_size=total_size, segments=segments)
