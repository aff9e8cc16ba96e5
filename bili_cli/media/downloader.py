"""
Segmented, resumable stream downloads.

Each stream is split into byte-range segments that are fetched concurrently
(bounded by a budget shared across every download) and written at their
offsets into a `.part` file. A segment is recorded in the checkpoint only after
its length was verified and the data fsynced, so a killed process resumes
without refetching completed work.
"""

import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import aiofiles

from bili_cli.api.client import BiliAPIClient
from bili_cli.api.risk_control import RetryPolicy
from bili_cli.exceptions import (
    BiliCliError,
    DownloadFailedError,
    IoFailureError,
    MalformedResponseError,
    RiskControlBlockedError,
    RiskControlError,
    SegmentIntegrityError,
    TransientError,
)
from bili_cli.models.media import Manifest, Segment, Stream
from bili_cli.models.stats import DownloadStats
from bili_cli.storage.checkpoint import Checkpoint, CheckpointStore, part_path_for

log = logging.getLogger(__name__)

_CONTENT_RANGE = re.compile(r"bytes\s+\d+-\d+/(\d+)")


class SegmentState(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETE = "complete"
    FAILED = "failed"


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SegmentBudget:
    """
    A counting permit pool shared by every download task. It bounds the number
    of segment fetches in flight across all jobs and remembers the peak.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak = 0

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        async with self._semaphore:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1


@dataclass
class DownloadTask:
    """The mutable transfer record of one stream."""

    stream: Stream
    destination: Path
    stream_key: str
    cancel_event: asyncio.Event
    manifest: Optional[Manifest] = None
    states: dict[int, SegmentState] = field(default_factory=dict)
    attempts: dict[int, int] = field(default_factory=dict)
    bytes_done: int = 0
    segments_fetched: int = 0
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[BaseException] = None
    _runner: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def part_path(self) -> Path:
        return part_path_for(self.destination)

    @property
    def total_size(self) -> int:
        return self.manifest.total_size if self.manifest else 0

    @property
    def done(self) -> bool:
        return self.status in (
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        )

    async def wait(self) -> "DownloadTask":
        """Waits for the transfer; re-raises its failure or cancellation."""
        await self._runner
        return self

    def cancel(self) -> None:
        self.cancel_event.set()
        self.abort()

    def abort(self) -> None:
        """Stops in-flight fetches without signalling the shared cancel event."""
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()


class SegmentDownloader:
    """Downloads streams as ranged segments with retry, checkpointing and resume."""

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(
        self,
        client: BiliAPIClient,
        budget: SegmentBudget,
        segment_size: int = 4 * 1024 * 1024,
        max_segment_attempts: int = 5,
        retry_policy: Optional[RetryPolicy] = None,
        stats: Optional[DownloadStats] = None,
    ):
        self.client = client
        self.budget = budget
        self.segment_size = segment_size
        self.max_segment_attempts = max_segment_attempts
        self.retry_policy = retry_policy or client.retry_policy
        self.stats = stats

    def start(
        self,
        stream: Stream,
        destination: Path,
        resume_from: Optional[Checkpoint] = None,
        cancel_event: Optional[asyncio.Event] = None,
        stream_key: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> DownloadTask:
        """
        Schedules the download of `stream` to `destination` on the running loop.

        Args:
            resume_from: A checkpoint to resume from instead of the one on disk.
            cancel_event: Checked before every new segment fetch.
            stream_key: Identity used to match checkpoints; defaults to a key
                derived from the stream and destination.
            on_progress: Called with the number of bytes written by each chunk.
        """
        task = DownloadTask(
            stream=stream,
            destination=destination,
            stream_key=stream_key or stream.stream_key(destination.name),
            cancel_event=cancel_event or asyncio.Event(),
        )
        task._runner = asyncio.ensure_future(self._run(task, resume_from, on_progress))
        return task

    async def download(self, stream: Stream, destination: Path, **kwargs) -> DownloadTask:
        return await self.start(stream, destination, **kwargs).wait()

    async def _run(
        self,
        task: DownloadTask,
        resume_from: Optional[Checkpoint],
        on_progress: Optional[Callable[[int], None]],
    ) -> None:
        task.status = TaskStatus.RUNNING
        name = task.destination.name
        try:
            manifest = await self._build_manifest(task.stream)
            task.manifest = manifest
            task.states = {s.index: SegmentState.PENDING for s in manifest.segments}

            store = CheckpointStore(task.destination)
            checkpoint = self._restore(task, store, resume_from)
            pending = [
                s for s in manifest.segments
                if task.states[s.index] is not SegmentState.COMPLETE
            ]
            log.debug(
                f"{name}: {len(manifest.segments)} segments, {len(pending)} to fetch "
                f"({manifest.total_size} bytes)"
            )

            lock = asyncio.Lock()
            await self._run_all(
                [
                    self._fetch_with_retry(task, seg, store, checkpoint, lock, on_progress)
                    for seg in pending
                ]
            )
            self._finalize(task, store)
            task.status = TaskStatus.COMPLETED
            log.debug(f"{name}: download complete")
        except asyncio.CancelledError:
            task.status = TaskStatus.CANCELLED
            log.debug(f"{name}: cancelled, checkpoint preserved")
            raise
        except BiliCliError as e:
            task.status = TaskStatus.FAILED
            task.error = e
            raise

    @staticmethod
    async def _run_all(coros: list) -> None:
        """Runs segment fetches; the first failure cancels the rest and propagates."""
        if not coros:
            return
        tasks = [asyncio.ensure_future(c) for c in coros]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for t in done:
            if not t.cancelled() and t.exception() is not None:
                raise t.exception()
        for t in done:
            if t.cancelled():
                raise asyncio.CancelledError()

    async def _build_manifest(self, stream: Stream) -> Manifest:
        if stream.is_progressive and stream.size:
            return Manifest.build(stream.size, None)
        total, ranged = await self._probe_size(stream.url)
        if stream.is_progressive or not ranged:
            return Manifest.build(total, None)
        return Manifest.build(total, self.segment_size)

    async def _probe_size(self, url: str) -> tuple[int, bool]:
        """Reads the total size from a one-byte ranged request."""
        while True:
            epoch = await self.client.risk_guard.wait()
            try:
                async with self.client.open_media(url, 0, 0) as r:
                    if r.status == 206:
                        content_range = r.headers.get("Content-Range", "")
                        match = _CONTENT_RANGE.search(content_range)
                        if match:
                            await self.client.record_success(epoch)
                            return int(match.group(1)), True
                    if r.content_length:
                        await self.client.record_success(epoch)
                        return r.content_length, False
                    break
            except RiskControlBlockedError:
                raise
            except RiskControlError as e:
                await self.client.record_risk_control(f"size probe: {e}", epoch)
        raise MalformedResponseError("Could not determine the size of the stream.")

    def _restore(
        self,
        task: DownloadTask,
        store: CheckpointStore,
        resume_from: Optional[Checkpoint],
    ) -> Checkpoint:
        """
        Matches a checkpoint against the manifest and re-verifies every claimed
        segment against the on-disk `.part` length.
        """
        manifest = task.manifest
        segment_size = manifest.segments[0].length if manifest.segments else 0
        checkpoint = resume_from or store.load()

        if checkpoint and not checkpoint.matches(
            task.stream_key, manifest.total_size, segment_size
        ):
            log.info(
                f"[yellow]⚠ Checkpoint for {task.destination.name} does not match "
                "the stream; starting over.[/yellow]"
            )
            checkpoint = None

        part = task.part_path
        try:
            if checkpoint is None:
                checkpoint = Checkpoint(
                    stream_key=task.stream_key,
                    total_size=manifest.total_size,
                    segment_size=segment_size,
                )
                part.parent.mkdir(parents=True, exist_ok=True)
                with open(part, "wb"):
                    pass
            elif not part.exists():
                checkpoint.completed.clear()
                with open(part, "wb"):
                    pass
            elif part.stat().st_size > manifest.total_size:
                os.truncate(part, manifest.total_size)
            on_disk = part.stat().st_size
        except OSError as e:
            raise IoFailureError(f"Cannot prepare {part}: {e}") from e

        verified = set()
        for seg in manifest.segments:
            if (seg.start, seg.end) in checkpoint.completed and on_disk >= seg.end + 1:
                task.states[seg.index] = SegmentState.COMPLETE
                task.bytes_done += seg.length
                verified.add((seg.start, seg.end))
        if dropped := len(checkpoint.completed) - len(verified):
            log.debug(f"{task.destination.name}: {dropped} claimed segment(s) failed verification")
        checkpoint.completed = verified
        return checkpoint

    async def _fetch_with_retry(
        self,
        task: DownloadTask,
        seg: Segment,
        store: CheckpointStore,
        checkpoint: Checkpoint,
        lock: asyncio.Lock,
        on_progress: Optional[Callable[[int], None]],
    ) -> None:
        attempt = 1
        while True:
            task.attempts[seg.index] = attempt
            try:
                await self._fetch_segment(task, seg, attempt, on_progress)
                break
            except RiskControlBlockedError:
                task.states[seg.index] = SegmentState.FAILED
                raise
            except RiskControlError as e:
                # Already reported to the guard; retry once its window closes
                task.states[seg.index] = SegmentState.PENDING
                log.debug(f"Segment {seg.index} of {task.destination.name}: {e}")
            except (TransientError, SegmentIntegrityError) as e:
                task.states[seg.index] = SegmentState.FAILED
                if attempt >= self.max_segment_attempts:
                    raise DownloadFailedError(
                        f"Segment {seg.index} of {task.destination.name} failed after "
                        f"{attempt} attempts: {e}"
                    ) from e
                delay = self.retry_policy.delay(attempt)
                log.debug(
                    f"Segment {seg.index} of {task.destination.name} failed ({e}); "
                    f"retrying in {delay:.1f}s"
                )
                attempt += 1
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                task.states[seg.index] = SegmentState.PENDING
                raise
            except BaseException:
                task.states[seg.index] = SegmentState.FAILED
                raise

        task.states[seg.index] = SegmentState.COMPLETE
        async with lock:
            checkpoint.completed.add((seg.start, seg.end))
            await store.save(checkpoint)

    async def _fetch_segment(
        self,
        task: DownloadTask,
        seg: Segment,
        attempt: int,
        on_progress: Optional[Callable[[int], None]],
    ) -> None:
        urls = [task.stream.url, *task.stream.backup_urls]
        url = urls[(attempt - 1) % len(urls)]
        full_range = seg.start == 0 and seg.end == task.manifest.total_size - 1
        received = 0

        async with self.budget.acquire():
            epoch = await self.client.risk_guard.wait()
            if task.cancel_event.is_set():
                raise asyncio.CancelledError()
            task.states[seg.index] = SegmentState.IN_FLIGHT
            task.segments_fetched += 1
            try:
                async with self.client.open_media(url, seg.start, seg.end) as r:
                    if r.status == 200 and not full_range:
                        raise MalformedResponseError(
                            "The media server ignored the Range header."
                        )
                    async with aiofiles.open(task.part_path, "r+b") as f:
                        await f.seek(seg.start)
                        async for chunk in r.content.iter_chunked(self.CHUNK_SIZE):
                            if received + len(chunk) > seg.length:
                                raise SegmentIntegrityError(
                                    f"Segment {seg.index} overflowed its range."
                                )
                            await f.write(chunk)
                            received += len(chunk)
                            task.bytes_done += len(chunk)
                            if self.stats:
                                await self.stats.add_bytes(len(chunk))
                            if on_progress:
                                on_progress(len(chunk))

                        if received != seg.length:
                            raise SegmentIntegrityError(
                                f"Segment {seg.index} is truncated: got {received} of "
                                f"{seg.length} bytes."
                            )
                        await f.flush()
                        await asyncio.to_thread(os.fsync, f.fileno())
            except BaseException as e:
                task.bytes_done -= received
                if on_progress and received:
                    on_progress(-received)
                if isinstance(e, OSError):
                    raise IoFailureError(f"Failed writing {task.part_path}: {e}") from e
                if isinstance(e, RiskControlError) and not isinstance(
                    e, RiskControlBlockedError
                ):
                    await self.client.record_risk_control(
                        f"segment {seg.index} of {task.destination.name}: {e}", epoch
                    )
                raise
            await self.client.record_success(epoch)

    def _finalize(self, task: DownloadTask, store: CheckpointStore) -> None:
        """Moves the verified `.part` file into place and removes the checkpoint."""
        part = task.part_path
        try:
            size = part.stat().st_size
            if size != task.manifest.total_size:
                raise DownloadFailedError(
                    f"{part.name} is {size} bytes, expected {task.manifest.total_size}."
                )
            os.replace(part, task.destination)
        except OSError as e:
            raise IoFailureError(f"Cannot finalize {task.destination}: {e}") from e
        store.discard()
