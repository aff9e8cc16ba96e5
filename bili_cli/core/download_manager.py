"""
The main orchestrator for handling URLs, creating episode jobs, and managing the download queue.
"""

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from rich.markup import escape

from bili_cli.api.client import BiliAPIClient
from bili_cli.exceptions import BiliCliError, InvalidTransitionError, JobNotFoundError
from bili_cli.media.downloader import SegmentBudget, SegmentDownloader
from bili_cli.media.merger import Merger
from bili_cli.models.config import DownloadConfig, get_quality_info, quality_id_for
from bili_cli.models.media import Episode
from bili_cli.models.stats import DownloadStats
from bili_cli.utils.path import PathFormatter

from .job import EpisodeJob, JobContext, JobState
from .resolver import ResourceResolver

if TYPE_CHECKING:
    from bili_cli.cli.progress_manager import ProgressManager

log = logging.getLogger(__name__)


class DownloadManager:
    """Orchestrates the entire download process."""

    def __init__(
        self,
        config: DownloadConfig,
        api_client: BiliAPIClient,
        progress_manager: Optional["ProgressManager"] = None,
        merger: Optional[Merger] = None,
    ):
        self.config = config
        self.api_client = api_client
        self.progress_manager = progress_manager
        self.stats = DownloadStats()
        self.resolver = ResourceResolver(api_client)
        self.budget = SegmentBudget(config.max_workers)
        self.downloader = SegmentDownloader(
            api_client,
            self.budget,
            segment_size=config.segment_size,
            max_segment_attempts=config.max_segment_attempts,
            stats=self.stats,
        )
        self.path_formatter = PathFormatter(config.output_template)
        self.context = JobContext(
            resolver=self.resolver,
            downloader=self.downloader,
            merger=merger or Merger(config.ffmpeg_path, config.verify_container),
            stats=self.stats,
            codec_preference=config.codec_preference,
            skip_existing=config.skip_existing,
            on_update=progress_manager.on_job_update if progress_manager else None,
        )

        self.jobs: dict[str, EpisodeJob] = {}
        self._runners: dict[str, asyncio.Task] = {}
        self._job_slots = asyncio.Semaphore(config.max_concurrent_jobs)

    async def submit(
        self,
        url: str,
        quality: Optional[str] = None,
        episode_range: Optional[str] = None,
        output_dir: Optional[str] = None,
    ) -> list[EpisodeJob]:
        """
        Resolves `url`, creates one job per selected episode and schedules them.

        Returns:
            The newly created jobs, in episode order.
        """
        quality_id = quality_id_for(quality) if quality else self.config.quality_id
        content = await self.resolver.parse_info(url, episode_range)
        self.stats.contents_processed.add(str(content.ref))

        log.info(
            f"\n[bold cyan]▶ {content.ref.kind.value.title()}:[/] {escape(content.title)} "
            f"[dim]({len(content.episodes)} episode(s), "
            f"{get_quality_info(quality_id)['name']})[/dim]"
        )

        base_dir = Path(output_dir or self.config.output_dir)
        jobs = [
            EpisodeJob(
                episode,
                quality_id,
                self._output_base(base_dir, episode),
                self.context,
            )
            for episode in content.episodes
        ]
        for job in jobs:
            self.jobs[job.id] = job
            self._schedule(job)
        return jobs

    def _output_base(self, base_dir: Path, episode: Episode) -> Path:
        multipart = episode.title != episode.parent_title
        relative = self.path_formatter.format_path(episode, "mp4", multipart=multipart)
        return base_dir / relative.with_suffix("")

    def _schedule(self, job: EpisodeJob) -> None:
        self._runners[job.id] = asyncio.ensure_future(self._run_job(job))

    async def _run_job(self, job: EpisodeJob) -> None:
        async with self._job_slots:
            await job.run()

    def get_job(self, job_id: str) -> EpisodeJob:
        try:
            return self.jobs[job_id]
        except KeyError:
            raise JobNotFoundError(f"No job with ID '{job_id}'.") from None

    def get_progress(self, job_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Snapshots of one job, or of every job in submission order."""
        if job_id is not None:
            return [self.get_job(job_id).snapshot()]
        return [job.snapshot() for job in self.jobs.values()]

    def cancel(self, job_id: str) -> EpisodeJob:
        """Cancels a job; its checkpoints are preserved for a later retry."""
        job = self.get_job(job_id)
        if job.is_terminal:
            return job
        job.cancel()
        if (runner := self._runners.get(job_id)) and not runner.done():
            runner.cancel()
        log.info(f"Cancelled job {job_id} ({escape(job.episode.title)}).")
        return job

    def retry(self, job_id: str) -> EpisodeJob:
        """Re-queues a failed or cancelled job; completed segments are reused."""
        job = self.get_job(job_id)
        if job.state not in (JobState.FAILED, JobState.CANCELLED):
            raise InvalidTransitionError(
                f"Job {job_id} is {job.state.value}; only failed or cancelled jobs can be retried."
            )
        job.prepare_retry()
        self._schedule(job)
        return job

    async def wait(self) -> None:
        """Waits until every scheduled job (including retries) has finished."""
        while pending := [r for r in self._runners.values() if not r.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    async def execute_downloads(
        self, on_submitted: Optional[Callable[[list[EpisodeJob]], None]] = None
    ) -> None:
        """Processes all URLs from the config and executes downloads."""
        if not self.config.source_urls:
            log.info("No source URLs provided. Nothing to do.")
            return

        expanded_urls = []
        for source in self.config.source_urls:
            if Path(source).is_file():
                log.info(f"Reading URLs from file: [dim]{source}[/dim]")
                try:
                    with open(source, "r", encoding="utf-8") as f:
                        expanded_urls.extend(
                            line.strip()
                            for line in f
                            if line.strip() and not line.startswith("#")
                        )
                except (IOError, UnicodeDecodeError) as e:
                    log.error(f"[red]Could not read file {source}: {e}[/red]")
            else:
                expanded_urls.append(source)

        unique_urls = list(dict.fromkeys(expanded_urls))
        if len(unique_urls) < len(expanded_urls):
            log.info(f"Removed {len(expanded_urls) - len(unique_urls)} duplicate URLs.")

        for url in unique_urls:
            try:
                jobs = await self.submit(url, episode_range=self.config.parts or None)
            except BiliCliError as e:
                log.error(f"[red]✗ {escape(url)}: {escape(str(e))}[/red]")
                continue
            if on_submitted:
                on_submitted(jobs)

        await self.wait()
