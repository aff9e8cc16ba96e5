"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from bili_cli.models.stats import DownloadStats
from bili_cli.utils.formatting import format_duration, format_size

SUGGESTIONS = {
    "AuthRequiredError": [
        "• This content needs a logged-in account.",
        "• Run `bili-cli login` to sign in with a QR code.",
        "• Or pass a cookie with `--cookie SESSDATA=...`.",
    ],
    "AuthExpiredError": [
        "• Your saved login is no longer accepted.",
        "• Run `bili-cli login` again.",
    ],
    "RiskControlError": [
        "• The server is throttling requests from this client.",
        "• Wait a few minutes before trying again.",
        "• Logging in with `bili-cli login` usually raises the limit.",
    ],
    "RiskControlBlockedError": [
        "• Requests were blocked repeatedly, so the session stopped.",
        "• Wait several minutes, then retry with fewer `--workers`.",
        "• Logging in with `bili-cli login` usually raises the limit.",
    ],
    "UnsupportedUrlError": [
        "• Supported: video (BV/av), series (ep/ss) and course (cheese) URLs.",
        "• Short links (b23.tv) are expanded automatically.",
    ],
    "InvalidRangeError": [
        "• Use 1-based episode numbers, e.g. `-p 1-5,7,9-12`.",
    ],
    "NoMatchingStreamError": [
        "• No stream exists at or below the requested quality.",
        "• Try a different quality with the -q flag.",
        "• Higher tiers may need a logged-in or VIP account.",
    ],
    "MergeFailureError": [
        "• Check that ffmpeg is installed and on your PATH.",
        "• Or set `ffmpeg_path` in the configuration file.",
        "• The downloaded tracks were kept so the merge can be retried.",
    ],
    "ConfigurationError": [
        "• Review the configuration file (`bili-cli --show-config`).",
        "• Delete a broken key to restore its default value.",
    ],
    "IoFailureError": [
        "• Check free disk space and write permissions of the output directory.",
    ],
    "TransientError": [
        "• A network connection issue occurred.",
        "• Please try again in a few minutes.",
    ],
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions = SUGGESTIONS.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration, hiding the stored cookie."""
    console = Console()
    content = ""
    for key, value in config_data.items():
        if key == "cookie" and value:
            value = "[hidden]"
        elif isinstance(value, list):
            value = ", ".join(value)
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_login_status(status: dict[str, Any]):
    """Displays the result of a login check."""
    console = Console()
    if not status.get("logged_in"):
        console.print(
            "[yellow]○ Not logged in.[/yellow] "
            "Run [cyan]bili-cli login[/cyan] to sign in."
        )
        return

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_row("User:", f"[green]{status.get('username') or '?'}[/green]")
    table.add_row("User ID:", str(status.get("user_id") or "?"))
    table.add_row("VIP:", "✓ Yes" if status.get("vip") else "✗ No")
    table.add_row("Source:", f"[dim]{status.get('source')}[/dim]")
    console.print(
        Panel(table, title="[bold green]✓ Logged In[/bold green]", border_style="green")
    )


def print_content_info(info: dict[str, Any]):
    """Displays a resolved content item and its episodes."""
    console = Console()
    table = Table(
        title=f"[bold]{info['title']}[/bold] [dim]({info['id']})[/dim]",
        box=box.ROUNDED,
    )
    table.add_column("#", style="dim", justify="right")
    table.add_column("Title", style="cyan")
    table.add_column("Duration", justify="right", style="green")
    for episode in info["episodes"]:
        table.add_row(
            str(episode["ordinal"]),
            episode["title"],
            format_duration(episode["duration"]),
        )
    console.print(table)
    console.print(f"[dim]{len(info['episodes'])} episode(s), kind: {info['kind']}[/dim]")


def print_summary_panel(
    stats: DownloadStats, duration_s: float, progress_stats: dict | None = None
):
    """Displays the final summary of the download session."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "✓ Downloaded:", f"[bold green]{stats.episodes_downloaded}[/bold green]"
    )
    if stats.episodes_skipped_exists > 0:
        stats_table.add_row(
            "○ Skipped:", f"[yellow]{stats.episodes_skipped_exists} (exists)[/yellow]"
        )
    if stats.episodes_downgraded > 0:
        stats_table.add_row(
            "⚠ Lower Quality:", f"[yellow]{stats.episodes_downgraded}[/yellow]"
        )
    if stats.episodes_cancelled > 0:
        stats_table.add_row(
            "○ Cancelled:", f"[yellow]{stats.episodes_cancelled}[/yellow]"
        )
    if stats.episodes_failed > 0:
        stats_table.add_row(
            "✗ Failed:", f"[bold red]{stats.episodes_failed}[/bold red]"
        )

    stats_table.add_row("", "")

    stats_table.add_row(
        "Total Size:", f"[cyan]{format_size(stats.total_size_downloaded)}[/cyan]"
    )
    avg_speed = stats.total_size_downloaded / duration_s if duration_s > 0 else 0
    stats_table.add_row(
        "Avg. Speed:", f"[magenta]{format_size(int(avg_speed))}/s[/magenta]"
    )
    if stats.peak_speed_bps > 0:
        stats_table.add_row(
            "Peak Speed:",
            f"[magenta]{format_size(int(stats.peak_speed_bps))}/s[/magenta]",
        )
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    if progress_stats:
        stats_table.add_row("", "")
        stats_table.add_row(
            "Peak Concurrent:",
            f"[green]{progress_stats.get('peak_concurrent', 0)}[/green]",
        )

    border_color = "red" if stats.episodes_failed else "green"
    console.print()
    console.print(
        Panel(
            stats_table,
            title="📺 [bold]Download Complete![/bold]",
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()
