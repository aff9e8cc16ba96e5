"""Tests for the segmented, resumable download engine."""

import asyncio
import hashlib
import os

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bili_cli.api.client import BiliAPIClient
from bili_cli.api.risk_control import RetryPolicy, RiskControlGuard
from bili_cli.exceptions import (
    AccessUrlExpiredError,
    DownloadFailedError,
    RiskControlBlockedError,
)
from bili_cli.media.downloader import (
    SegmentBudget,
    SegmentDownloader,
    SegmentState,
    TaskStatus,
)
from bili_cli.models.media import Stream, TrackType
from bili_cli.storage.checkpoint import CheckpointStore, checkpoint_path_for, part_path_for

from .media_server import MediaServer

MB = 1024 * 1024
FAST_RETRY = RetryPolicy(attempts=3, base_delay=0.01, jitter=0)


def sha256(data):
    return hashlib.sha256(data).hexdigest()


def stream_for(base, name, backups=()):
    return Stream(
        TrackType.VIDEO,
        80,
        "avc",
        f"{base}/{name}",
        backup_urls=tuple(f"{base}/{b}" for b in backups),
    )


def run_with_server(
    media, scenario, budget=4, segment_size=MB, attempts=3, guard=None
):
    async def run():
        async with TestServer(media.app()) as server:
            base = str(server.make_url("")).rstrip("/")
            client = BiliAPIClient(
                retry_policy=FAST_RETRY,
                request_timeout=10,
                risk_guard=guard or RiskControlGuard(threshold=3, cooldown=0.01),
            )
            downloader = SegmentDownloader(
                client,
                SegmentBudget(budget),
                segment_size=segment_size,
                max_segment_attempts=attempts,
                retry_policy=FAST_RETRY,
            )
            try:
                return await scenario(downloader, base)
            finally:
                await client.close()

    return asyncio.run(run())


def test_full_download(tmp_path):
    data = os.urandom(3 * MB + 123)
    media = MediaServer({"v.m4s": data})
    dest = tmp_path / "out.video.m4s"

    async def scenario(downloader, base):
        return await downloader.download(stream_for(base, "v.m4s"), dest)

    task = run_with_server(media, scenario)

    assert task.status is TaskStatus.COMPLETED
    assert sha256(dest.read_bytes()) == sha256(data)
    assert len(task.manifest.segments) == 4
    assert len(media.segment_requests()) == 4
    assert not part_path_for(dest).exists()
    assert not checkpoint_path_for(dest).exists()


def test_resume_after_four_of_ten_segments(tmp_path):
    data = os.urandom(10 * MB)
    dest = tmp_path / "big.video.m4s"

    def fail_after_four(name, start, end, attempt):
        if start >= 4 * MB:
            return web.Response(status=503)
        return None

    first = MediaServer({"v.m4s": data}, behaviour=fail_after_four)

    async def interrupted(downloader, base):
        with pytest.raises(DownloadFailedError):
            await downloader.download(stream_for(base, "v.m4s"), dest)

    run_with_server(first, interrupted, budget=1, attempts=1)

    checkpoint = CheckpointStore(dest).load()
    assert checkpoint is not None
    assert sorted(checkpoint.completed) == [
        (i * MB, (i + 1) * MB - 1) for i in range(4)
    ]

    second = MediaServer({"v.m4s": data})

    async def resumed(downloader, base):
        return await downloader.download(stream_for(base, "v.m4s"), dest)

    task = run_with_server(second, resumed, budget=1, attempts=1)

    assert task.status is TaskStatus.COMPLETED
    assert len(second.segment_requests()) == 6
    assert all(start >= 4 * MB for _, start, _ in second.segment_requests())
    assert sha256(dest.read_bytes()) == sha256(data)
    assert not checkpoint_path_for(dest).exists()


def test_truncated_part_file_refetches_only_missing_segment(tmp_path):
    data = os.urandom(4 * MB)
    dest = tmp_path / "trunc.video.m4s"

    def fail_last(name, start, end, attempt):
        if start == 3 * MB:
            return web.Response(status=503)
        return None

    run_with_server(
        MediaServer({"v.m4s": data}, behaviour=fail_last),
        lambda d, base: _expect_failure(d, base, dest),
        budget=1,
        attempts=1,
    )

    # Claim the last segment too, but leave the file short of its end
    store = CheckpointStore(dest)
    checkpoint = store.load()
    checkpoint.completed.add((3 * MB, 4 * MB - 1))
    asyncio.run(store.save(checkpoint))
    os.truncate(part_path_for(dest), 3 * MB + 10)

    second = MediaServer({"v.m4s": data})

    async def resumed(downloader, base):
        return await downloader.download(stream_for(base, "v.m4s"), dest)

    run_with_server(second, resumed)
    assert second.segment_requests() == [("v.m4s", 3 * MB, 4 * MB - 1)]
    assert sha256(dest.read_bytes()) == sha256(data)


async def _expect_failure(downloader, base, dest):
    with pytest.raises(DownloadFailedError):
        await downloader.download(stream_for(base, "v.m4s"), dest)


def test_short_segment_body_is_refetched(tmp_path):
    data = os.urandom(2 * MB)
    dest = tmp_path / "short.video.m4s"

    def truncate_once(name, start, end, attempt):
        if start == MB and attempt == 1:
            return web.Response(
                status=206,
                body=data[start : start + 1000],
                headers={"Content-Range": f"bytes {start}-{end}/{len(data)}"},
            )
        return None

    media = MediaServer({"v.m4s": data}, behaviour=truncate_once)

    async def scenario(downloader, base):
        return await downloader.download(stream_for(base, "v.m4s"), dest)

    task = run_with_server(media, scenario)
    assert task.attempts[1] == 2
    assert task.bytes_done == len(data)
    assert sha256(dest.read_bytes()) == sha256(data)


def test_global_budget_caps_in_flight_fetches(tmp_path):
    files = {"a.m4s": os.urandom(MB), "b.m4s": os.urandom(MB)}
    media = MediaServer(files, delay=0.02)
    budget_holder = {}

    async def scenario(downloader, base):
        budget_holder["budget"] = downloader.budget
        tasks = [
            downloader.start(stream_for(base, name), tmp_path / f"{name}.out")
            for name in files
        ]
        await asyncio.gather(*(t.wait() for t in tasks))

    run_with_server(media, scenario, budget=2, segment_size=128 * 1024)

    assert len(media.segment_requests()) == 16
    assert media.peak <= 2
    assert budget_holder["budget"].peak == 2
    for name, data in files.items():
        assert (tmp_path / f"{name}.out").read_bytes() == data


def test_transient_segment_failure_is_retried(tmp_path):
    data = os.urandom(3 * MB)
    dest = tmp_path / "retry.video.m4s"

    def flaky(name, start, end, attempt):
        if start == 2 * MB and attempt == 1:
            return web.Response(status=503)
        return None

    media = MediaServer({"v.m4s": data}, behaviour=flaky)

    async def scenario(downloader, base):
        return await downloader.download(stream_for(base, "v.m4s"), dest)

    task = run_with_server(media, scenario)
    assert task.attempts[2] == 2
    assert sha256(dest.read_bytes()) == sha256(data)


def test_backup_url_is_used_when_primary_keeps_failing(tmp_path):
    data = os.urandom(MB)
    dest = tmp_path / "backup.video.m4s"

    def primary_down(name, start, end, attempt):
        if name == "main.m4s" and (start, end) != (0, 0):
            return web.Response(status=503)
        return None

    media = MediaServer({"main.m4s": data, "mirror.m4s": data}, behaviour=primary_down)

    async def scenario(downloader, base):
        return await downloader.download(
            stream_for(base, "main.m4s", backups=["mirror.m4s"]), dest
        )

    run_with_server(media, scenario, segment_size=MB)
    assert media.segment_requests("mirror.m4s")
    assert dest.read_bytes() == data


def test_expired_access_url_is_not_retried(tmp_path):
    data = os.urandom(2 * MB)
    dest = tmp_path / "expired.video.m4s"

    def expired(name, start, end, attempt):
        if (start, end) != (0, 0):
            return web.Response(status=403)
        return None

    media = MediaServer({"v.m4s": data}, behaviour=expired)

    async def scenario(downloader, base):
        with pytest.raises(AccessUrlExpiredError):
            await downloader.download(stream_for(base, "v.m4s"), dest)

    run_with_server(media, scenario, budget=1)
    requests = media.segment_requests()
    assert requests
    assert len(set(requests)) == len(requests)
    assert part_path_for(dest).exists()


def test_server_without_range_support_downloads_whole_file(tmp_path):
    data = os.urandom(300 * 1024)
    dest = tmp_path / "plain.video.m4s"
    media = MediaServer({"v.m4s": data}, honour_range=False)

    async def scenario(downloader, base):
        return await downloader.download(stream_for(base, "v.m4s"), dest)

    task = run_with_server(media, scenario, segment_size=64 * 1024)
    assert len(task.manifest.segments) == 1
    assert dest.read_bytes() == data


def test_risk_control_on_segment_cools_down_and_retries(tmp_path):
    data = os.urandom(2 * MB)
    dest = tmp_path / "throttled.video.m4s"
    guard = RiskControlGuard(threshold=3, cooldown=0.01)

    def throttle_once(name, start, end, attempt):
        if start == MB and attempt == 1:
            return web.Response(status=412)
        return None

    media = MediaServer({"v.m4s": data}, behaviour=throttle_once)

    async def scenario(downloader, base):
        return await downloader.download(stream_for(base, "v.m4s"), dest)

    # One transient attempt per segment: the throttled retry must not spend it
    task = run_with_server(media, scenario, attempts=1, guard=guard)

    assert task.status is TaskStatus.COMPLETED
    assert sha256(dest.read_bytes()) == sha256(data)
    assert media.segment_requests().count(("v.m4s", MB, 2 * MB - 1)) == 2
    assert task.attempts[1] == 1
    assert guard.consecutive == 0


def test_repeated_risk_control_on_segments_blocks_the_download(tmp_path):
    data = os.urandom(2 * MB)
    dest = tmp_path / "blocked.video.m4s"
    guard = RiskControlGuard(threshold=3, cooldown=0.01)

    def always_throttled(name, start, end, attempt):
        if (start, end) != (0, 0):
            return web.Response(status=412)
        return None

    media = MediaServer({"v.m4s": data}, behaviour=always_throttled)

    async def scenario(downloader, base):
        with pytest.raises(RiskControlBlockedError):
            await downloader.download(stream_for(base, "v.m4s"), dest)

    run_with_server(media, scenario, attempts=5, guard=guard)

    assert guard.blocked
    assert part_path_for(dest).exists()
    assert not dest.exists()


def test_cancelled_segments_are_left_pending(tmp_path):
    data = os.urandom(4 * MB)
    dest = tmp_path / "cancelled.video.m4s"
    media = MediaServer({"v.m4s": data}, delay=0.3)

    async def scenario(downloader, base):
        task = downloader.start(stream_for(base, "v.m4s"), dest)
        while SegmentState.IN_FLIGHT not in task.states.values():
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task.wait()
        return task

    task = run_with_server(media, scenario, budget=2)

    assert task.status is TaskStatus.CANCELLED
    assert set(task.states.values()) == {SegmentState.PENDING}
