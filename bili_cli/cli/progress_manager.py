"""
Manages a Rich Live display for concurrent episode jobs.
Shows overall progress, one bar per active job, and real-time statistics.
"""

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table
from rich.text import Text

from bili_cli.core.job import JobState
from bili_cli.models.config import get_quality_info

if TYPE_CHECKING:
    from bili_cli.core.job import EpisodeJob

log = logging.getLogger("bili_cli")

STATE_STYLES = {
    JobState.QUEUED: "dim",
    JobState.RESOLVING: "cyan",
    JobState.SELECTING: "cyan",
    JobState.DOWNLOADING: "white",
    JobState.MERGING: "magenta",
}


class ProgressManager:
    """
    Renders job progress. `on_job_update` is handed to the download manager and
    is called on every state transition and every written chunk.
    """

    def __init__(self, console: Console):
        self.console = console

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=20),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=console,
            transient=False,
        )

        self.overall_progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "[dim]{task.completed}/{task.total} episodes[/dim]",
            console=console,
        )

        self._live: Optional[Live] = None
        self._overall_task_id: Optional[TaskID] = None
        self._job_tasks: dict[str, TaskID] = {}
        self._seen: set[str] = set()
        self._finished: set[str] = set()

        self._stats = {
            "total_jobs": 0,
            "completed": 0,
            "failed": 0,
            "skipped": 0,
            "cancelled": 0,
            "active_jobs": 0,
            "peak_concurrent": 0,
            "start_time": None,
        }

    def on_job_update(self, job: "EpisodeJob") -> None:
        """Reflects a job's current state and byte counters in the display."""
        if job.id not in self._seen:
            self._seen.add(job.id)
            self._add_to_total(1)

        if job.is_terminal:
            self._finish_job(job)
            return

        # A retried job is live again
        if job.id in self._finished:
            self._finished.discard(job.id)
            self._count_retry(job)

        task_id = self._job_tasks.get(job.id)
        if task_id is None:
            task_id = self.progress.add_task(
                self._describe(job), total=None, start=True
            )
            self._job_tasks[job.id] = task_id
            self._stats["active_jobs"] = len(self._job_tasks)
            self._stats["peak_concurrent"] = max(
                self._stats["peak_concurrent"], self._stats["active_jobs"]
            )

        total = job.total_bytes or None
        self.progress.update(
            task_id,
            description=self._describe(job),
            total=total,
            completed=job.bytes_done,
        )
        self._refresh()

    def _describe(self, job: "EpisodeJob") -> str:
        title = job.episode.title
        if len(title) > 40:
            title = title[:38] + "…"
        style = STATE_STYLES.get(job.state, "white")
        quality = job.selection.effective_quality if job.selection else job.quality
        info = get_quality_info(quality)
        return (
            f"[{style}]{title}[/{style}] "
            f"[[{info['color']}]{info['name']}[/{info['color']}] | "
            f"[dim]{job.state.value}[/dim]]"
        )

    def _finish_job(self, job: "EpisodeJob") -> None:
        if job.id in self._finished:
            return
        self._finished.add(job.id)

        if (task_id := self._job_tasks.pop(job.id, None)) is not None:
            self.progress.remove_task(task_id)
        self._stats["active_jobs"] = len(self._job_tasks)

        if job.state is JobState.COMPLETED:
            key = "skipped" if job.skipped else "completed"
        elif job.state is JobState.CANCELLED:
            key = "cancelled"
        else:
            key = "failed"
        self._stats[key] += 1
        self._update_overall()

    def _count_retry(self, job: "EpisodeJob") -> None:
        # The previous terminal outcome no longer counts
        previous = job.history[-2] if len(job.history) > 1 else None
        if previous is JobState.FAILED:
            self._stats["failed"] -= 1
        elif previous is JobState.CANCELLED:
            self._stats["cancelled"] -= 1
        self._update_overall()

    def _add_to_total(self, count: int) -> None:
        self._stats["total_jobs"] += count
        if self._overall_task_id is not None:
            self.overall_progress.update(
                self._overall_task_id, total=self._stats["total_jobs"]
            )

    def _update_overall(self) -> None:
        if self._overall_task_id is not None:
            done = sum(
                self._stats[k] for k in ("completed", "failed", "skipped", "cancelled")
            )
            self.overall_progress.update(self._overall_task_id, completed=done)
        self._refresh()

    def _generate_stats_table(self) -> Table:
        stats_table = Table.grid(padding=(0, 2))
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")
        stats_table.add_row(
            "Downloaded:",
            f"[green]{self._stats['completed']}[/green]",
            "Failed:",
            f"[red]{self._stats['failed']}[/red]",
        )
        stats_table.add_row(
            "Skipped:",
            f"[yellow]{self._stats['skipped']}[/yellow]",
            "Active:",
            f"[cyan]{self._stats['active_jobs']}[/cyan]",
        )
        return stats_table

    def _render(self) -> Group:
        if self._stats["start_time"]:
            elapsed = (datetime.now() - self._stats["start_time"]).total_seconds()
        else:
            elapsed = 0
        header = Text()
        header.append("📺 bili-cli ", style="bold cyan")
        header.append("│ ", style="dim")
        header.append(
            f"Session: {int(elapsed // 60):02d}:{int(elapsed % 60):02d}",
            style="yellow",
        )

        summary = Table.grid()
        summary.add_row(self._generate_stats_table())
        summary.add_row("")
        summary.add_row(self.overall_progress)

        downloads: Any
        if self._job_tasks:
            downloads = self.progress
        else:
            downloads = Text(
                "Waiting for downloads to start...", style="dim italic", justify="center"
            )
        return Group(
            Panel(header, border_style="cyan"),
            Panel(summary, title="[bold]📊 Session[/bold]", border_style="blue"),
            Panel(
                downloads,
                title=f"[bold]📥 Active Jobs ({len(self._job_tasks)})[/bold]",
                border_style="green",
            ),
        )

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._render())

    def get_statistics(self) -> dict:
        return self._stats.copy()

    async def __aenter__(self) -> "ProgressManager":
        self._stats["start_time"] = datetime.now()
        self._overall_task_id = self.overall_progress.add_task(
            "Overall Progress", total=self._stats["total_jobs"] or None, start=True
        )
        self._live = Live(
            self._render(),
            console=self.console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._live:
            await asyncio.sleep(0.2)
            self._live.update(self._render())
            self._live.stop()
            self._live = None
