"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from bili_cli import __version__
from bili_cli.api.auth import QrStatus, QrTicket
from bili_cli.api.client import BiliAPIClient
from bili_cli.core.download_manager import DownloadManager
from bili_cli.core.service import BiliService
from bili_cli.exceptions import BiliCliError
from bili_cli.models.config import QUALITY_NAMES
from bili_cli.storage.config_manager import ConfigManager
from bili_cli.storage.session_store import SessionStore

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_content_info,
    print_login_status,
    print_summary_panel,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("bili_cli")

app = typer.Typer(
    name="bili-cli",
    help=(
        "A concurrent, resumable downloader for bilibili videos, series and"
        " courses. Use 'bili-cli <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

QR_STATUS_MESSAGES = {
    QrStatus.WAITING_FOR_SCAN: "[dim]Waiting for the code to be scanned...[/dim]",
    QrStatus.PENDING_CONFIRM: "[cyan]Scanned. Confirm the login in the mobile app.[/cyan]",
    QrStatus.EXPIRED: "[red]✗ The QR code has expired.[/red]",
    QrStatus.LOGGED_IN: "[green]✓ Confirmed.[/green]",
}


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "bili-cli"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_service(cli_options: dict | None = None) -> BiliService:
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load_config(cli_options)
    return BiliService(config, SessionStore(config_manager.session_path))


def _exit_with_error(error: BiliCliError) -> None:
    console.print(format_error_with_suggestions(error))
    raise typer.Exit(code=1) from error


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-v for job details, -vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """bilibili Downloader CLI"""
    if version:
        console.print(f"[bold]bili-cli[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    if verbose >= 2:
        logging.getLogger("bili_cli").setLevel("DEBUG")
    elif verbose == 1:
        logging.getLogger("bili_cli").setLevel("INFO")
        logging.getLogger("bili_cli.core").setLevel("DEBUG")

    if show_config:
        config_manager = ConfigManager(CONFIG_FILE)
        try:
            config_manager.load_config()
        except BiliCliError as e:
            _exit_with_error(e)
        print_config(CONFIG_FILE, config_manager._get_config_as_dict())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def login(
    cookie: str | None = typer.Option(
        None,
        "--cookie",
        help="Log in with a browser cookie string (or a bare SESSDATA value).",
    ),
    timeout: float = typer.Option(
        180.0, "--timeout", help="Seconds to wait for the QR code to be confirmed."
    ),
):
    """Log in with a QR code (scan it with the mobile app) or a cookie."""

    def show_ticket(ticket: QrTicket) -> None:
        console.print(
            "\n[bold cyan]Open this link on a device where you are logged in,[/]"
            "\n[bold cyan]or turn it into a QR code and scan it with the app:[/]\n"
        )
        console.print(f"  [link={ticket.url}]{ticket.url}[/link]\n")

    def show_status(status: QrStatus) -> None:
        console.print(QR_STATUS_MESSAGES[status])

    async def _login_async():
        async with _load_service() as service:
            if cookie:
                result = await service.login_with_cookie(cookie)
                print_login_status(result)
                return
            await service.authenticator.qr_login(
                timeout=timeout, on_ticket=show_ticket, on_status=show_status
            )
            print_login_status(await service.login_status())

    try:
        asyncio.run(_login_async())
    except BiliCliError as e:
        _exit_with_error(e)


@app.command()
def logout():
    """Remove the saved login session."""
    config_manager = ConfigManager(CONFIG_FILE)
    SessionStore(config_manager.session_path).clear()
    console.print("[green]✓ Logged out.[/green]")


@app.command()
def status():
    """Check whether the saved login is still accepted."""

    async def _status_async():
        async with _load_service() as service:
            print_login_status(await service.login_status())

    try:
        asyncio.run(_status_async())
    except BiliCliError as e:
        _exit_with_error(e)


@app.command()
def info(
    url: str = typer.Argument(..., help="A video, series or course URL."),
    parts: str | None = typer.Option(
        None, "-p", "--parts", help="Episode range to show, e.g. '1-5,7,9-12'."
    ),
):
    """Show the title and episode list of a URL without downloading."""

    async def _info_async():
        async with _load_service() as service:
            print_content_info(await service.parse_info(url, parts))

    try:
        asyncio.run(_info_async())
    except BiliCliError as e:
        _exit_with_error(e)


@app.command(name="download")
def download_command(
    urls: list[str] = typer.Argument(  # noqa: B008
        ..., help="One or more URLs, or paths to files containing URLs."
    ),
    quality: str | None = typer.Option(
        None,
        "-q",
        "--quality",
        help=f"Maximum quality tier: {', '.join(QUALITY_NAMES)}.",
    ),
    parts: str | None = typer.Option(
        None,
        "-p",
        "--parts",
        help="1-based episode range applied to every URL, e.g. '1-5,7,9-12'.",
    ),
    output_dir: str | None = typer.Option(
        None, "-o", "--output", help="Directory to download into."
    ),
    workers: int | None = typer.Option(
        None,
        "-w",
        "--workers",
        help="Number of simultaneous segment fetches (default 8).",
    ),
    cookie: str | None = typer.Option(
        None,
        "--cookie",
        help="Use this cookie for this run instead of the saved login.",
    ),
):
    """Download videos, series episodes or course lessons."""
    cli_options = {
        "source_urls": urls,
        "quality": quality,
        "parts": parts,
        "output_dir": output_dir,
        "max_workers": workers,
        "cookie": cookie,
    }

    async def _download_async():
        api_client = None
        manager = None
        duration = 0.0
        progress_stats = None

        async with ProgressManager(console=console) as progress_manager:
            try:
                config_manager = ConfigManager(CONFIG_FILE)
                config = config_manager.load_config(cli_options)
                store = SessionStore(config_manager.session_path)
                api_client = BiliAPIClient.from_config(config, store)
                if api_client.session is None:
                    log.info(
                        "[yellow]⚠ Not logged in; quality is limited to 480P."
                        " Run [cyan]bili-cli login[/cyan] for more.[/yellow]"
                    )

                manager = DownloadManager(config, api_client, progress_manager)
                console.print("[bold cyan]📺 Starting download session...[/bold cyan]")
                start_time = time.monotonic()
                await manager.execute_downloads()
                duration = time.monotonic() - start_time
                progress_stats = progress_manager.get_statistics()
            except BiliCliError as e:
                console.print(format_error_with_suggestions(e))
                raise typer.Exit(code=1) from e
            except Exception as e:
                console.print(f"[bold red]Unexpected error: {e}[/bold red]")
                log.debug("Full traceback:", exc_info=True)
                raise typer.Exit(code=1) from e
            finally:
                if api_client:
                    await api_client.close()

        if manager:
            print_summary_panel(manager.stats, duration, progress_stats)
            if manager.stats.episodes_failed:
                raise typer.Exit(code=1)

    asyncio.run(_download_async())
