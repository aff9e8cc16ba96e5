"""
The lifecycle of a single episode download, from stream resolution to the
final merged file.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from rich.markup import escape

from bili_cli.exceptions import (
    AccessUrlExpiredError,
    BiliCliError,
    InvalidTransitionError,
    MergeFailureError,
)
from bili_cli.media.downloader import DownloadTask, SegmentDownloader
from bili_cli.media.merger import Merger
from bili_cli.models.config import get_quality_info
from bili_cli.models.media import Episode, StreamSelection
from bili_cli.models.stats import DownloadStats

from .resolver import ResourceResolver, select_streams

log = logging.getLogger(__name__)


class JobState(Enum):
    QUEUED = "queued"
    RESOLVING = "resolving"
    SELECTING = "selecting"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}

_ALWAYS = {JobState.FAILED, JobState.CANCELLED}
ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    # QUEUED -> COMPLETED is the "output already exists" skip
    JobState.QUEUED: {JobState.RESOLVING, JobState.COMPLETED} | _ALWAYS,
    JobState.RESOLVING: {JobState.SELECTING} | _ALWAYS,
    JobState.SELECTING: {JobState.DOWNLOADING} | _ALWAYS,
    # DOWNLOADING -> RESOLVING happens when an access URL expired
    JobState.DOWNLOADING: {JobState.MERGING, JobState.RESOLVING} | _ALWAYS,
    JobState.MERGING: {JobState.COMPLETED} | _ALWAYS,
    JobState.COMPLETED: set(),
    JobState.FAILED: {JobState.QUEUED},
    JobState.CANCELLED: {JobState.QUEUED},
}


@dataclass
class JobContext:
    """Collaborators shared by every job of a download manager."""

    resolver: ResourceResolver
    downloader: SegmentDownloader
    merger: Merger
    stats: Optional[DownloadStats] = None
    codec_preference: Sequence[str] = ()
    skip_existing: bool = True
    max_re_resolutions: int = 2
    on_update: Optional[Callable[["EpisodeJob"], None]] = None


class EpisodeJob:
    """
    Drives one episode through queued -> resolving -> selecting -> downloading
    -> merging -> completed. Any non-terminal state may end in failed or
    cancelled; both keep their checkpoints so `retry` resumes the transfer.
    """

    def __init__(
        self,
        episode: Episode,
        quality: int,
        output_base: Path,
        context: JobContext,
        job_id: Optional[str] = None,
    ):
        """
        Args:
            episode: The episode to download (streams are fetched by the job).
            quality: The requested quality tier id.
            output_base: Output path without extension; the extension follows
                the selected stream.
        """
        self.id = job_id or uuid.uuid4().hex[:8]
        self.episode = episode
        self.quality = quality
        self.output_base = output_base
        self.ctx = context

        self.state = JobState.QUEUED
        self.history: list[JobState] = [JobState.QUEUED]
        self.error: Optional[BaseException] = None
        self.selection: Optional[StreamSelection] = None
        self.tasks: list[DownloadTask] = []
        self.output_path: Optional[Path] = None
        self.skipped = False
        self.re_resolutions = 0
        self.created_at = time.time()
        self.updated_at = self.created_at
        self._cancel_event = asyncio.Event()

    def __repr__(self) -> str:
        return f"<EpisodeJob {self.id} {self.episode.title!r} {self.state.value}>"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def bytes_done(self) -> int:
        return sum(t.bytes_done for t in self.tasks)

    @property
    def total_bytes(self) -> int:
        return sum(t.total_size for t in self.tasks)

    def transition(self, new_state: JobState) -> None:
        """
        Moves the job to `new_state`.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current state.
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Job {self.id}: cannot move from {self.state.value} to {new_state.value}."
            )
        log.debug(f"Job {self.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        self.updated_at = time.time()
        self._notify()

    def _notify(self) -> None:
        if self.ctx.on_update:
            self.ctx.on_update(self)

    def _candidate_outputs(self) -> list[Path]:
        base = self.output_base
        return [base.with_name(f"{base.name}.{ext}") for ext in ("mp4", "flv")]

    async def run(self) -> None:
        """Runs the job to a terminal state. Errors are recorded, not raised."""
        if self.state is not JobState.QUEUED:
            return
        try:
            if self.ctx.skip_existing:
                existing = next((p for p in self._candidate_outputs() if p.is_file()), None)
                if existing is not None:
                    self.output_path = existing
                    self.skipped = True
                    if self.ctx.stats:
                        self.ctx.stats.episodes_skipped_exists += 1
                    log.info(
                        f"  [yellow]○ Skipping:[/] [dim]{escape(existing.name)}[/dim] "
                        "(already exists)"
                    )
                    self.transition(JobState.COMPLETED)
                    return

            video_path, audio_path = await self._resolve_and_download()

            self.transition(JobState.MERGING)
            if self._cancel_event.is_set():
                raise asyncio.CancelledError()
            result = await self.ctx.merger.merge(video_path, audio_path, self.output_path)
            if not result.ok:
                raise MergeFailureError(result.diagnostics)

            self.transition(JobState.COMPLETED)
            self._record_success()
        except asyncio.CancelledError:
            if not self.is_terminal:
                self.transition(JobState.CANCELLED)
            if self.ctx.stats:
                self.ctx.stats.episodes_cancelled += 1
            if not self._cancel_event.is_set():
                # Cancelled from outside (e.g. shutdown), not by `cancel()`
                raise
        except BiliCliError as e:
            self._fail(e)
        except Exception as e:
            log.debug(f"Job {self.id} raised an unexpected error", exc_info=True)
            self._fail(e)

    def _fail(self, error: Exception) -> None:
        self.error = error
        if self.ctx.stats:
            self.ctx.stats.episodes_failed += 1
        log.error(
            f"  [red]✗ Failed:[/] {escape(self.episode.title)} ({escape(str(error))})"
        )
        self.transition(JobState.FAILED)

    async def _resolve_and_download(self) -> tuple[Path, Optional[Path]]:
        while True:
            self.transition(JobState.RESOLVING)
            resolved = await self.ctx.resolver.fetch_streams(self.episode, self.quality)

            self.transition(JobState.SELECTING)
            self.selection = select_streams(
                resolved, self.quality, self.ctx.codec_preference
            )
            if self.selection.downgraded:
                log.warning(
                    f"  [yellow]⚠ {escape(self.episode.title)}: "
                    f"{get_quality_info(self.quality)['name']} unavailable, using "
                    f"{get_quality_info(self.selection.effective_quality)['name']}[/yellow]"
                )

            self.transition(JobState.DOWNLOADING)
            try:
                return await self._download(self.selection)
            except AccessUrlExpiredError:
                if self.re_resolutions >= self.ctx.max_re_resolutions:
                    raise
                self.re_resolutions += 1
                log.info(
                    f"  Access URL expired for {escape(self.episode.title)}; "
                    f"re-resolving ({self.re_resolutions}/{self.ctx.max_re_resolutions})"
                )

    async def _download(self, selection: StreamSelection) -> tuple[Path, Optional[Path]]:
        base = self.output_base
        video = selection.video
        if video.is_progressive:
            self.output_path = base.with_name(f"{base.name}.{video.container}")
            video_path = base.with_name(f"{base.name}.video.{video.container}")
        else:
            self.output_path = base.with_name(f"{base.name}.mp4")
            video_path = base.with_name(f"{base.name}.video.m4s")
        audio_path = (
            base.with_name(f"{base.name}.audio.m4s") if selection.audio else None
        )
        video_path.parent.mkdir(parents=True, exist_ok=True)

        streams = [(video, video_path)]
        if selection.audio:
            streams.append((selection.audio, audio_path))

        self.tasks = [
            self.ctx.downloader.start(
                stream,
                path,
                cancel_event=self._cancel_event,
                stream_key=stream.stream_key(self.episode.key),
                on_progress=lambda _n: self._notify(),
            )
            for stream, path in streams
        ]
        try:
            await asyncio.gather(*(t.wait() for t in self.tasks))
        except BaseException:
            for task in self.tasks:
                task.abort()
            await asyncio.gather(
                *(t._runner for t in self.tasks), return_exceptions=True
            )
            raise
        return video_path, audio_path

    def _record_success(self) -> None:
        if not self.ctx.stats:
            return
        self.ctx.stats.episodes_downloaded += 1
        if self.selection and self.selection.downgraded:
            self.ctx.stats.episodes_downgraded += 1
        log.info(f"  [green]✓ Done:[/] {escape(self.output_path.name)}")

    def cancel(self) -> None:
        """
        Requests cancellation. In-flight fetches are stopped by the caller
        cancelling the job's task; checkpoints stay on disk.
        """
        if self.is_terminal:
            return
        self._cancel_event.set()
        for task in self.tasks:
            task.abort()
        if self.state is JobState.QUEUED:
            self.transition(JobState.CANCELLED)

    def prepare_retry(self) -> None:
        """Resets a failed or cancelled job so it can run again."""
        self.transition(JobState.QUEUED)
        self.error = None
        self.tasks = []
        self.re_resolutions = 0
        self._cancel_event = asyncio.Event()

    def snapshot(self) -> dict[str, Any]:
        """A plain-data view of the job for progress reporting."""
        total = self.total_bytes
        return {
            "id": self.id,
            "title": self.episode.title,
            "parent": self.episode.parent_title,
            "ordinal": self.episode.ordinal,
            "state": self.state.value,
            "requested_quality": get_quality_info(self.quality)["name"],
            "effective_quality": (
                get_quality_info(self.selection.effective_quality)["name"]
                if self.selection
                else None
            ),
            "bytes_done": self.bytes_done,
            "total_bytes": total,
            "progress": (self.bytes_done / total) if total else 0.0,
            "output": str(self.output_path) if self.output_path else None,
            "skipped": self.skipped,
            "error": str(self.error) if self.error else None,
        }
