"""Tests for the episode job state machine."""

import asyncio
import os
import stat

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bili_cli.api.client import BiliAPIClient
from bili_cli.api.risk_control import RetryPolicy
from bili_cli.core.job import EpisodeJob, JobContext, JobState
from bili_cli.exceptions import (
    InvalidTransitionError,
    IoFailureError,
    NoMatchingStreamError,
)
from bili_cli.media.downloader import SegmentBudget, SegmentDownloader
from bili_cli.media.merger import Merger
from bili_cli.models.media import ContentKind, Episode, Stream, TrackType
from bili_cli.models.stats import DownloadStats
from bili_cli.storage import checkpoint as checkpoint_module
from bili_cli.storage.checkpoint import part_path_for

from .media_server import MediaServer

KB = 1024
FAST_RETRY = RetryPolicy(attempts=2, base_delay=0.01, jitter=0)


def make_episode(ordinal=1, title="Episode"):
    return Episode(
        ContentKind.SERIES, f"{title} {ordinal}", ordinal, 60, 1000 + ordinal,
        "Show", ep_id=500 + ordinal,
    )


def dash_streams(base, video="v.m4s", audio="a.m4s"):
    return [
        Stream(TrackType.VIDEO, 80, "avc", f"{base}/{video}", bandwidth=2000),
        Stream(TrackType.AUDIO, 30280, "mp4a.40.2", f"{base}/{audio}", bandwidth=320000),
    ]


def progressive_streams(base, name="p.flv"):
    return [Stream(TrackType.COMBINED, 32, "avc", f"{base}/{name}", container="flv")]


class PlannedResolver:
    """Returns streams from `plan(base, episode, call_number)`."""

    def __init__(self, base, plan):
        self.base = base
        self.plan = plan
        self.calls = 0

    async def fetch_streams(self, episode, quality):
        self.calls += 1
        return episode.with_streams(self.plan(self.base, episode, self.calls))


def fake_ffmpeg(tmp_path):
    script = tmp_path / "ffmpeg"
    script.write_text('#!/bin/sh\ncat "$5" "$7" > "${10}"\n', encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


def run_jobs(media, scenario, tmp_path, budget=4, segment_size=64 * KB):
    async def run():
        async with TestServer(media.app()) as server:
            base = str(server.make_url("")).rstrip("/")
            client = BiliAPIClient(retry_policy=FAST_RETRY)
            downloader = SegmentDownloader(
                client,
                SegmentBudget(budget),
                segment_size=segment_size,
                max_segment_attempts=2,
                retry_policy=FAST_RETRY,
            )

            def context(plan, **kwargs):
                kwargs.setdefault("merger", Merger(ffmpeg_path=fake_ffmpeg(tmp_path)))
                kwargs.setdefault("stats", DownloadStats())
                return JobContext(
                    resolver=PlannedResolver(base, plan), downloader=downloader, **kwargs
                )

            try:
                return await scenario(context)
            finally:
                await client.close()

    return asyncio.run(run())


def test_dash_job_goes_through_every_state(tmp_path):
    video, audio = os.urandom(200 * KB), os.urandom(50 * KB)
    media = MediaServer({"v.m4s": video, "a.m4s": audio})
    base = tmp_path / "Show" / "01 - Episode 1"

    async def scenario(context):
        ctx = context(lambda b, e, n: dash_streams(b))
        job = EpisodeJob(make_episode(), 80, base, ctx)
        await job.run()
        return job, ctx

    job, ctx = run_jobs(media, scenario, tmp_path)

    assert job.history == [
        JobState.QUEUED,
        JobState.RESOLVING,
        JobState.SELECTING,
        JobState.DOWNLOADING,
        JobState.MERGING,
        JobState.COMPLETED,
    ]
    assert job.output_path == base.with_name(base.name + ".mp4")
    assert job.output_path.read_bytes() == video + audio
    assert not base.with_name(base.name + ".video.m4s").exists()
    assert ctx.stats.episodes_downloaded == 1
    assert job.snapshot()["state"] == "completed"


def test_progressive_job_skips_the_muxer(tmp_path):
    data = os.urandom(100 * KB)
    media = MediaServer({"p.flv": data})
    base = tmp_path / "Show" / "Episode 1"

    async def scenario(context):
        ctx = context(
            lambda b, e, n: progressive_streams(b),
            merger=Merger(ffmpeg_path=str(tmp_path / "missing-ffmpeg")),
        )
        job = EpisodeJob(make_episode(), 80, base, ctx)
        await job.run()
        return job

    job = run_jobs(media, scenario, tmp_path)

    assert job.state is JobState.COMPLETED
    assert job.selection.audio is None
    assert job.output_path.suffix == ".flv"
    assert job.output_path.read_bytes() == data
    assert job.selection.downgraded


def test_failure_does_not_affect_siblings(tmp_path):
    media = MediaServer({"v.m4s": os.urandom(64 * KB), "a.m4s": os.urandom(KB)})

    def plan(base, episode, call):
        if episode.ordinal == 1:
            raise NoMatchingStreamError("nothing playable")
        return dash_streams(base)

    async def scenario(context):
        ctx = context(plan)
        jobs = [
            EpisodeJob(make_episode(i), 80, tmp_path / f"ep{i}", ctx) for i in (1, 2)
        ]
        await asyncio.gather(*(j.run() for j in jobs))
        return jobs, ctx

    (broken, healthy), ctx = run_jobs(media, scenario, tmp_path)

    assert broken.state is JobState.FAILED
    assert isinstance(broken.error, NoMatchingStreamError)
    assert broken.snapshot()["error"] == "nothing playable"
    assert healthy.state is JobState.COMPLETED
    assert ctx.stats.episodes_failed == 1
    assert ctx.stats.episodes_downloaded == 1


def test_checkpoint_write_failure_fails_only_that_job(tmp_path, monkeypatch):
    media = MediaServer({"v.m4s": os.urandom(128 * KB), "a.m4s": os.urandom(KB)})
    real_write = checkpoint_module.write_json_atomic_async

    async def disk_full_for_ep1(path, payload):
        if path.name.startswith("ep1."):
            raise OSError(28, "No space left on device")
        await real_write(path, payload)

    monkeypatch.setattr(checkpoint_module, "write_json_atomic_async", disk_full_for_ep1)

    async def scenario(context):
        ctx = context(lambda b, e, n: dash_streams(b))
        jobs = [
            EpisodeJob(make_episode(i), 80, tmp_path / f"ep{i}", ctx) for i in (1, 2)
        ]
        await asyncio.gather(*(j.run() for j in jobs))
        return jobs, ctx

    (broken, healthy), ctx = run_jobs(media, scenario, tmp_path)

    assert broken.state is JobState.FAILED
    assert isinstance(broken.error, IoFailureError)
    assert healthy.state is JobState.COMPLETED
    assert healthy.output_path.exists()
    assert ctx.stats.episodes_failed == 1
    assert ctx.stats.episodes_downloaded == 1


def test_expired_url_triggers_re_resolution(tmp_path):
    video, audio = os.urandom(128 * KB), os.urandom(KB)

    def expired_once(name, start, end, attempt):
        if name == "old.m4s" and (start, end) != (0, 0):
            return web.Response(status=410)
        return None

    media = MediaServer(
        {"old.m4s": video, "v.m4s": video, "a.m4s": audio}, behaviour=expired_once
    )

    def plan(base, episode, call):
        return dash_streams(base, video="old.m4s" if call == 1 else "v.m4s")

    async def scenario(context):
        ctx = context(plan)
        job = EpisodeJob(make_episode(), 80, tmp_path / "ep", ctx)
        await job.run()
        return job, ctx

    job, ctx = run_jobs(media, scenario, tmp_path)

    assert job.state is JobState.COMPLETED
    assert job.re_resolutions == 1
    assert ctx.resolver.calls == 2
    assert job.history.count(JobState.RESOLVING) == 2
    assert job.output_path.read_bytes() == video + audio


def test_re_resolution_is_bounded(tmp_path):
    media = MediaServer(
        {"v.m4s": os.urandom(64 * KB), "a.m4s": os.urandom(KB)},
        behaviour=lambda n, s, e, a: None if (s, e) == (0, 0) else web.Response(status=403),
    )

    async def scenario(context):
        ctx = context(lambda b, e, n: dash_streams(b), max_re_resolutions=2)
        job = EpisodeJob(make_episode(), 80, tmp_path / "ep", ctx)
        await job.run()
        return job, ctx

    job, ctx = run_jobs(media, scenario, tmp_path)

    assert job.state is JobState.FAILED
    assert ctx.resolver.calls == 3


def test_cancel_keeps_checkpoint_and_retry_resumes(tmp_path):
    video, audio = os.urandom(1024 * KB), os.urandom(KB)
    media = MediaServer({"v.m4s": video, "a.m4s": audio}, delay=0.05)
    base = tmp_path / "ep"
    video_part = part_path_for(base.with_name("ep.video.m4s"))

    async def scenario(context):
        ctx = context(lambda b, e, n: dash_streams(b))
        job = EpisodeJob(make_episode(), 80, base, ctx)
        runner = asyncio.ensure_future(job.run())
        while job.bytes_done < 128 * KB:
            await asyncio.sleep(0.01)
        job.cancel()
        await runner
        cancelled_state = job.state
        requests_before = len(media.segment_requests("v.m4s"))

        job.prepare_retry()
        await job.run()
        return job, cancelled_state, requests_before

    job, cancelled_state, requests_before = run_jobs(media, scenario, tmp_path, budget=1)

    assert cancelled_state is JobState.CANCELLED
    assert JobState.CANCELLED in job.history
    assert job.state is JobState.COMPLETED
    assert job.output_path.read_bytes() == video + audio
    # 16 segments in total; completed ones were not fetched again
    assert len(media.segment_requests("v.m4s")) < 16 + requests_before
    assert not video_part.exists()


def test_existing_output_is_skipped(tmp_path):
    base = tmp_path / "ep"
    base.with_name("ep.mp4").write_bytes(b"done")

    async def scenario(context):
        ctx = context(lambda b, e, n: pytest.fail("should not resolve"))
        job = EpisodeJob(make_episode(), 80, base, ctx)
        await job.run()
        return job, ctx

    job, ctx = run_jobs(MediaServer({}), scenario, tmp_path)

    assert job.history == [JobState.QUEUED, JobState.COMPLETED]
    assert job.skipped
    assert ctx.stats.episodes_skipped_exists == 1


def test_invalid_transition_is_rejected(tmp_path):
    async def scenario(context):
        job = EpisodeJob(make_episode(), 80, tmp_path / "ep", context(lambda *a: []))
        with pytest.raises(InvalidTransitionError):
            job.transition(JobState.MERGING)
        with pytest.raises(InvalidTransitionError):
            job.prepare_retry()
        return job

    job = run_jobs(MediaServer({}), scenario, tmp_path)
    assert job.state is JobState.QUEUED


def test_cancelling_a_queued_job(tmp_path):
    async def scenario(context):
        job = EpisodeJob(make_episode(), 80, tmp_path / "ep", context(lambda *a: []))
        job.cancel()
        await job.run()
        return job

    job = run_jobs(MediaServer({}), scenario, tmp_path)
    assert job.state is JobState.CANCELLED
    assert job.history == [JobState.QUEUED, JobState.CANCELLED]
